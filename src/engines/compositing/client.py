"""
Remote compositing API client.

Sends one foreground and one background buffer, returns the composited
image bytes. Every failure is classified here, once, as either
TransientRemoteError (retryable) or PermanentRemoteError.
"""

import json
from typing import Optional

import httpx

from src.core.exceptions import PermanentRemoteError, TransientRemoteError
from src.core.logging import get_logger
from src.core.metrics import record_compositing_call

logger = get_logger(__name__)

SERVICE_NAME = "compositing"


def extract_error_message(response: httpx.Response) -> str:
    """Pull a readable message out of the API's JSON error body."""
    fallback = f"HTTP {response.status_code}"
    try:
        payload = json.loads(response.content)
    except (ValueError, UnicodeDecodeError):
        return fallback

    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return f"Compositing API: {', '.join(str(e) for e in errors)}"
        if payload.get("message"):
            return f"Compositing API: {payload['message']}"
    return fallback


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and server faults are worth another attempt."""
    return status_code == 429 or status_code >= 500


class CompositingClient:
    """Thin async wrapper around the packshot compositing endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_url = api_url
        self.api_key = api_key
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def composite(self, foreground: bytes, background: bytes) -> bytes:
        """
        Composite a foreground onto a background.

        Raises:
            TransientRemoteError: network failure, timeout, 429 or 5xx
            PermanentRemoteError: any other non-success response
        """
        files = {
            "image_file": ("foreground.jpg", foreground, "image/jpeg"),
            "background_image_file": ("background.jpg", background, "image/jpeg"),
        }
        headers = {"x-api-key": self.api_key or ""}

        try:
            response = await self._client.post(self.api_url, files=files, headers=headers)
        except httpx.TimeoutException as e:
            record_compositing_call(status="timeout")
            raise TransientRemoteError(f"Compositing API timeout: {e}", service=SERVICE_NAME) from e
        except httpx.TransportError as e:
            record_compositing_call(status="network_error")
            raise TransientRemoteError(f"Compositing API unreachable: {e}", service=SERVICE_NAME) from e

        if response.is_success:
            record_compositing_call(status="success", http_status=response.status_code)
            return response.content

        record_compositing_call(status="error", http_status=response.status_code)
        message = extract_error_message(response)
        logger.warning(
            "compositing_api_error",
            http_status=response.status_code,
            error=message
        )

        if is_retryable_status(response.status_code):
            raise TransientRemoteError(message, service=SERVICE_NAME, http_status=response.status_code)
        raise PermanentRemoteError(message, service=SERVICE_NAME, http_status=response.status_code)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
