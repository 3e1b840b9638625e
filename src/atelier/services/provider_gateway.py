"""HTTP gateway to external image generation providers.

One POST per job. The call is bounded by a hard deadline that cancels the
in-flight request, and every failure is normalized into a ProviderCallError
subclass so the job runner can record it without inspecting httpx types.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from atelier.services.exceptions import (
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderTransportError,
)

logger = structlog.get_logger()

ELLIPSIS = "…"


@dataclass
class ProviderImage:
    """Successful provider response."""

    content: bytes
    content_type: Optional[str]
    width: int
    height: int
    color: Optional[str]


def build_provider_headers(auth_token: Optional[str]) -> dict[str, str]:
    """Request headers for a provider call, with Bearer auth when a token is set."""
    headers = {"Content-Type": "application/json", "Accept": "image/png"}
    token = (auth_token or "").strip()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def provider_body_to_message(body: Any) -> str:
    """Human-readable message from a provider error body."""
    if body is None:
        return "Provider request failed"
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value
    try:
        return json.dumps(body)
    except (TypeError, ValueError):
        return "Provider request failed"


def parse_dimension(value: Optional[str], default: int) -> int:
    """Positive integer from a header value, falling back to `default`."""
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


class ProviderGateway:
    """Provider client used by all job variants."""

    def __init__(
        self,
        timeout_seconds: float = 50.0,
        error_body_limit: int = 20_000,
        default_width: int = 1024,
        default_height: int = 1024,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the gateway.

        Args:
            timeout_seconds: Hard deadline for one provider call
            error_body_limit: Maximum characters kept from an error body or message
            default_width: Width used when the provider omits X-Image-Width
            default_height: Height used when the provider omits X-Image-Height
            client: Shared httpx client; a short-lived one is opened per call when None
        """
        self.timeout_seconds = timeout_seconds
        self.error_body_limit = error_body_limit
        self.default_width = default_width
        self.default_height = default_height
        self._client = client

    async def invoke(
        self, base_url: str, auth_token: Optional[str], payload: dict[str, Any]
    ) -> ProviderImage:
        """Send one generation request.

        Args:
            base_url: Provider endpoint
            auth_token: Provider token, sent as Bearer auth when non-empty
            payload: JSON body, ``{"method": ..., "args": {...}}``

        Returns:
            ProviderImage with raw bytes and declared dimensions

        Raises:
            ProviderTimeoutError: Deadline exceeded (request cancelled)
            ProviderResponseError: Non-2xx status, body captured for diagnostics
            ProviderTransportError: Connection failure
        """
        headers = build_provider_headers(auth_token)
        try:
            response = await asyncio.wait_for(
                self._post(base_url, headers, payload), timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ProviderTimeoutError(
                f"Provider did not respond within {self.timeout_seconds:g}s"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderTransportError(f"Network error: {e}") from e

        if not response.is_success:
            content_type = response.headers.get("content-type")
            body = self._read_error_body(response, content_type)
            message = self._cap(provider_body_to_message(body))
            logger.warning(
                "provider.call.rejected",
                base_url=base_url,
                status=response.status_code,
                content_type=content_type,
            )
            raise ProviderResponseError(
                message,
                status=response.status_code,
                status_text=response.reason_phrase,
                content_type=content_type,
                body=self._cap_body(body),
            )

        return ProviderImage(
            content=response.content,
            content_type=response.headers.get("content-type"),
            width=parse_dimension(response.headers.get("x-image-width"), self.default_width),
            height=parse_dimension(response.headers.get("x-image-height"), self.default_height),
            color=response.headers.get("x-image-color") or None,
        )

    async def _post(
        self, base_url: str, headers: dict[str, str], payload: dict[str, Any]
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(base_url, headers=headers, json=payload)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(base_url, headers=headers, json=payload)

    def _cap(self, text: str) -> str:
        if len(text) > self.error_body_limit:
            return text[: self.error_body_limit] + ELLIPSIS
        return text

    def _cap_body(self, body: Any) -> Any:
        """Keep small JSON bodies as-is; oversized ones are stored as capped text."""
        if isinstance(body, str):
            return self._cap(body)
        dumped = json.dumps(body)
        if len(dumped) > self.error_body_limit:
            return self._cap(dumped)
        return body

    @staticmethod
    def _read_error_body(response: httpx.Response, content_type: Optional[str]) -> Any:
        if content_type and "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                pass
        return response.text
