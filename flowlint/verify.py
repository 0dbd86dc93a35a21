import hashlib
import hmac
import logging
from typing import Optional

log = logging.getLogger("flowlint.verify")

SIGNATURE_PREFIX = "sha256="


class SignatureError(Exception):
    """Raised when a webhook delivery cannot be authenticated."""


def sign(secret: str, body: bytes) -> str:
    return SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def body_fingerprint(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def verify_signature(body: Optional[bytes], signature: Optional[str], secret: str) -> None:
    """Authenticate a webhook body against its ``X-Hub-Signature-256`` header.

    Raises SignatureError("Missing signature") when the header, the secret or
    the body is absent, and SignatureError("Invalid signature") on a digest
    mismatch. Mismatches are logged with the received and expected values and
    a hash of the body; the secret and the body itself are never logged.
    """
    secret = (secret or "").strip()
    if not signature or not secret or body is None:
        raise SignatureError("Missing signature")

    expected = sign(secret, body)
    received = signature.encode("utf-8")
    # length is checked before the constant-time compare
    if len(received) != len(expected) or not hmac.compare_digest(received, expected.encode("utf-8")):
        log.warning(
            "webhook signature mismatch received=%s expected=%s body_sha256=%s",
            signature, expected, body_fingerprint(body),
        )
        raise SignatureError("Invalid signature")


def is_valid_signature(body: Optional[bytes], signature: Optional[str], secret: str) -> bool:
    try:
        verify_signature(body, signature, secret)
    except SignatureError:
        return False
    return True
