"""Internal building blocks; import from ``batchgate`` instead."""
