"""Short-lived share tokens for unpublished images.

Providers fetch source images over plain HTTP. For an image that is not
published, the job hands the provider a URL carrying a signed token scoped
to one image and expiring after a TTL.
"""

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime

from atelier.core.timezone import utcnow
from atelier.services.exceptions import ShareTokenError

TOKEN_VERSION = "v1"


@dataclass
class ShareClaims:
    image_id: int
    shared_by_user_id: int
    expires_at: int


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class ShareTokenSigner:
    """Mints and verifies HMAC-signed share tokens."""

    def __init__(self, secret: str, ttl_seconds: int, public_base_url: str):
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.public_base_url = public_base_url.rstrip("/")

    def mint(self, image_id: int, shared_by_user_id: int, now: datetime | None = None) -> str:
        """Create a token for one image.

        Raises:
            ShareTokenError: No signing secret is configured
        """
        if not self.secret:
            raise ShareTokenError("Share token secret is not configured")
        issued = now or utcnow()
        claims = {
            "img": image_id,
            "uid": shared_by_user_id,
            "exp": int(issued.timestamp()) + self.ttl_seconds,
        }
        payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
        return f"{TOKEN_VERSION}.{payload}.{self._sign(payload)}"

    def verify(self, token: str, now: datetime | None = None) -> ShareClaims:
        """Check signature and expiry.

        Raises:
            ShareTokenError: Token is malformed, tampered with or expired
        """
        if not self.secret:
            raise ShareTokenError("Share token secret is not configured")
        try:
            version, payload, signature = token.split(".")
        except ValueError as e:
            raise ShareTokenError("Malformed share token") from e
        if version != TOKEN_VERSION:
            raise ShareTokenError(f"Unsupported share token version: {version}")
        if not hmac.compare_digest(self._sign(payload), signature):
            raise ShareTokenError("Invalid share token signature")
        try:
            claims = json.loads(_b64decode(payload))
            parsed = ShareClaims(
                image_id=int(claims["img"]),
                shared_by_user_id=int(claims["uid"]),
                expires_at=int(claims["exp"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ShareTokenError("Malformed share token payload") from e
        if parsed.expires_at < int((now or utcnow()).timestamp()):
            raise ShareTokenError("Share token expired")
        return parsed

    def image_url(self, image_id: int, shared_by_user_id: int) -> str:
        """Public URL serving the image behind a freshly minted token."""
        token = self.mint(image_id, shared_by_user_id)
        return f"{self.public_base_url}/api/share/{TOKEN_VERSION}/{token}/image"

    def _sign(self, payload: str) -> str:
        return hmac.new(
            self.secret.encode("utf-8"), payload.encode("ascii"), hashlib.sha256
        ).hexdigest()
