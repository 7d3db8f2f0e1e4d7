"""Core job execution: scheduling, dispatch, aggregation and collaborators."""
