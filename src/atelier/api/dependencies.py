"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Broker callback signature validation
- Access to the shared job context
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from atelier.core.config import Settings
from atelier.services.callback_signature import validate_callback_signature
from atelier.workers.context import JobContext


def get_settings(request: Request) -> Settings:
    """Settings loaded once at startup."""
    return request.app.state.settings


def get_job_context(request: Request) -> JobContext:
    """Job context (uow factory, gateway, storage, scheduler) from app state."""
    return request.app.state.job_context


async def validate_broker_callback(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate the broker's signature before a job callback is processed.

    The signature is the hex HMAC-SHA256 of the raw body, made with the
    broker's current signing key (or the next one during rotation).

    Args:
        request: FastAPI Request object (contains raw body)
        upstash_signature: Signature from the Upstash-Signature header
        settings: Application settings (injected via dependency)

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 503 if no signing key is configured, 401 if the
            signature is missing or invalid
    """
    signing_keys = settings.signing_keys
    if not signing_keys:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job callbacks are not configured",
        )

    if not upstash_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Upstash-Signature header"
        )

    raw_body = await request.body()

    if not validate_callback_signature(raw_body, upstash_signature, signing_keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid callback signature"
        )

    return raw_body
