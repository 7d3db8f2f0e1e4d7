"""HTTP ``GenerationClient`` on httpx.

The client posts one prompt per request to
``{base_url}/v1/models/{model_id}:generate`` and accepts either a JSON body
(``{"data": <base64>, "mime_type": ...}``) or raw bytes with a
``Content-Type`` header. Failures are returned, not raised, unless
``raise_transient`` is set; in that case throttling (429), server errors
(5xx) and transport errors raise ``TransientItemError`` so a retry strategy
can try again.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, Optional

import httpx

from batchgate.core.exceptions import TransientItemError
from batchgate.core.types import GenerationResult

logger = logging.getLogger(__name__)

_DEFAULT_MIME = "application/octet-stream"


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class HTTPGenerationClient:
    """Generation API client sharing one connection pool across threads."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        raise_transient: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Root URL of the generation API.
            timeout: Per-request timeout in seconds.
            raise_transient: Raise ``TransientItemError`` for retryable failures
                instead of returning them.
            transport: Optional httpx transport (``httpx.MockTransport`` in tests).
            headers: Extra headers sent with every request.
        """
        base_url = base_url.strip().rstrip("/")
        if not base_url:
            raise ValueError("base_url must not be empty")
        self.base_url = base_url
        self.raise_transient = raise_transient
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )

    def __enter__(self) -> HTTPGenerationClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def generate(
        self, prompt: Any, model_id: str, *, api_key: Optional[str] = None, **options: Any
    ) -> GenerationResult:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        body = {"prompt": prompt, "options": options}
        try:
            response = self._client.post(
                f"/v1/models/{model_id}:generate", json=body, headers=headers
            )
        except httpx.TransportError as exc:
            return self._failure(
                f"Generation request failed: {exc}", transient=True, model_id=model_id
            )

        if not response.is_success:
            detail = response.text.strip()[:500]
            return self._failure(
                f"Generation API returned HTTP {response.status_code}"
                + (f": {detail}" if detail else ""),
                transient=_is_transient_status(response.status_code),
                model_id=model_id,
                status_code=response.status_code,
            )

        return self._parse(response, model_id)

    def _parse(self, response: httpx.Response, model_id: str) -> GenerationResult:
        content_type = response.headers.get("content-type", _DEFAULT_MIME)
        if not content_type.startswith("application/json"):
            return GenerationResult(
                success=True,
                data=response.content,
                mime_type=content_type.split(";")[0].strip() or _DEFAULT_MIME,
            )

        try:
            payload = response.json()
        except ValueError:
            return self._failure("Generation API returned invalid JSON", model_id=model_id)

        if not isinstance(payload, dict):
            return self._failure("Generation API returned an unexpected body", model_id=model_id)
        if payload.get("error"):
            return self._failure(str(payload["error"]), model_id=model_id)

        encoded = payload.get("data")
        if not isinstance(encoded, str):
            return self._failure("No generated data in response", model_id=model_id)
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return self._failure("Generated data is not valid base64", model_id=model_id)

        return GenerationResult(
            success=True,
            data=data,
            mime_type=str(payload.get("mime_type") or _DEFAULT_MIME),
        )

    def _failure(
        self, message: str, *, transient: bool = False, **context: Any
    ) -> GenerationResult:
        if transient and self.raise_transient:
            raise TransientItemError(message, context=context)
        logger.debug("Generation failed (%s): %s", context.get("model_id"), message)
        return GenerationResult(success=False, error=message)


__all__ = ["HTTPGenerationClient"]
