"""Request signing helpers shared by the HTTP gateways.

Webhooks are authenticated with HMAC-SHA256 over a canonical request string
made of the method, the path, a unix timestamp and the body digest. Satispay
outbound calls are signed with RSA-SHA256 over the same kind of string.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

logger = logging.getLogger(__name__)

# Max age of a signed webhook, in seconds
TIMESTAMP_TOLERANCE = 300


def body_digest(body: bytes) -> str:
    """``SHA-256=<base64 digest>`` of a request body."""
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode()


def canonical_string(method: str, path: str, timestamp: str, body: bytes) -> str:
    return "\n".join([method.upper(), path, timestamp, body_digest(body)])


def hmac_signature(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_hmac_signature(
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    method: str,
    path: str,
    body: bytes,
    tolerance: int = TIMESTAMP_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """Check an HMAC-SHA256 hex signature over the canonical string.

    Args:
        secret: Shared webhook secret.
        signature: Hex signature from the request header.
        timestamp: Unix timestamp header the sender signed.
        method: HTTP method of the webhook call.
        path: Request path of the webhook call.
        body: Raw request body.
        tolerance: Allowed clock skew in seconds.
        now: Current unix time, for tests.

    Returns:
        True if the signature matches and the timestamp is fresh.
    """
    if not signature or not timestamp:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = now if now is not None else time.time()
    if abs(current - sent_at) > tolerance:
        logger.warning(f"Webhook timestamp {timestamp} outside tolerance")
        return False
    expected = hmac_signature(secret, canonical_string(method, path, timestamp, body))
    return hmac.compare_digest(expected, signature.strip().lower())


def load_private_key(pem: str):
    # env files often carry the key with literal \n sequences
    data = pem.replace("\\n", "\n").encode()
    return serialization.load_pem_private_key(data, password=None)


def rsa_sign(private_key, message: str) -> str:
    """Base64 RSA-SHA256 (PKCS#1 v1.5) signature of ``message``."""
    signature = private_key.sign(message.encode(), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode()


def rsa_verify(public_key, message: str, signature: str) -> bool:
    try:
        public_key.verify(base64.b64decode(signature), message.encode(), padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, ValueError):
        return False
    return True
