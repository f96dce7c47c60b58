"""HMAC-SHA256 signatures for job callbacks, keyed by the job's callback token."""

import hashlib
import hmac
from typing import Optional

from ..errors import AuthenticationError

SIGNATURE_HEADER = "X-Callback-Signature"


def sign_callback(callback_token: str, body: bytes) -> str:
    return hmac.new(callback_token.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_callback_signature(
    callback_token: Optional[str],
    body: bytes,
    signature: Optional[str],
    required: bool = False,
) -> None:
    """
    Raise AuthenticationError unless the signature matches the body.

    A missing signature is accepted unless ``required`` is set.
    """
    if not signature:
        if required:
            raise AuthenticationError(f"Missing {SIGNATURE_HEADER} header")
        return

    if not callback_token:
        raise AuthenticationError("Invalid callback signature")

    expected = sign_callback(callback_token, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise AuthenticationError("Invalid callback signature")
