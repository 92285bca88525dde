"""
Shopify webhook verification.

Shopify signs the raw request body with the app secret:
X-Shopify-Hmac-Sha256 = base64(HMAC-SHA256(secret, body)).
"""
import base64
import hashlib
import hmac
from typing import Optional


def sign_webhook_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_hmac(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of the X-Shopify-Hmac-Sha256 header."""
    if not signature or not secret:
        return False
    expected = sign_webhook_body(body, secret)
    return hmac.compare_digest(signature.strip(), expected)
