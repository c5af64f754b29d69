import base64
import hashlib
import hmac
from typing import Optional

from reconciler.errors import SignatureVerificationError

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_signature(body: bytes, signature_key: str, notification_url: str) -> str:
    """Square signs the notification URL followed by the raw request body."""
    digest = hmac.new(signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: Optional[str], signature_key: str, notification_url: str) -> bool:
    if not signature:
        return False
    expected = compute_signature(body, signature_key, notification_url)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def ensure_signature(body: bytes, signature: Optional[str], signature_key: str, notification_url: str) -> None:
    if not verify_signature(body, signature, signature_key, notification_url):
        raise SignatureVerificationError("Square webhook signature does not match")
