"""HMAC signature validation for broker job callbacks.

The broker signs every callback body with its current signing key. During
key rotation a callback may be signed with the next key instead, so both
are accepted.
"""

import hashlib
import hmac
from collections.abc import Sequence


def compute_callback_signature(raw_body: bytes, signing_key: str) -> str:
    """Hex-encoded HMAC-SHA256 of the raw body."""
    return hmac.new(
        key=signing_key.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256
    ).hexdigest()


def validate_callback_signature(
    raw_body: bytes, signature: str, signing_keys: Sequence[str]
) -> bool:
    """Validate a callback signature against any of the active signing keys.

    Args:
        raw_body: Raw request body bytes, exactly as received
        signature: Hex signature from the callback header
        signing_keys: Current and next signing keys (empty entries are skipped)

    Returns:
        True if the signature matches one of the keys, False otherwise
    """
    if not signature:
        return False
    candidate = signature.strip().lower()
    matched = False
    for key in signing_keys:
        if not key:
            continue
        # Compare against every key so timing does not reveal which one matched
        if hmac.compare_digest(compute_callback_signature(raw_body, key), candidate):
            matched = True
    return matched
