"""HMAC signature verification for GitHub webhook deliveries.

GitHub signs each delivery with HMAC-SHA256 over the raw request body and
sends the result in the ``X-Hub-Signature-256`` header as
``sha256=<hex digest>``. The digest must be computed over the exact bytes
received; a parsed-then-reserialized body is not guaranteed to be
byte-identical.
"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_payload: bytes, secret: str) -> str:
    """Compute the ``sha256=<hex>`` signature header value for a payload.

    Args:
        raw_payload: The exact request body bytes.
        secret: The shared webhook secret.

    Returns:
        The header value GitHub would send for this payload.
    """
    digest = hmac.new(
        secret.encode("utf-8"), raw_payload, hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: str,
) -> bool:
    """Check a webhook signature header against the raw payload.

    Never raises for a bad or missing signature; returns False instead.

    Args:
        raw_payload: The exact request body bytes.
        signature_header: Value of the X-Hub-Signature-256 header, if any.
        secret: The shared webhook secret.

    Returns:
        True if the signature was produced with ``secret`` over ``raw_payload``.
    """
    if not isinstance(signature_header, str) or not signature_header:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    if not isinstance(raw_payload, (bytes, bytearray)):
        return False

    expected = compute_signature(bytes(raw_payload), secret)
    try:
        return hmac.compare_digest(
            expected.encode("ascii"), signature_header.encode("ascii")
        )
    except UnicodeEncodeError:
        # Non-ASCII header values can never match a hex digest
        return False


class SignatureVerifier:
    """Verifies webhook payloads against a shared secret.

    The secret is bound at construction so a missing secret fails at
    startup rather than on the first delivery.

    Attributes:
        secret: The shared webhook secret.
    """

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ValueError("Webhook secret must be configured")
        self.secret = secret

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        """Return True if ``signature_header`` matches ``raw_payload``."""
        return verify_signature(raw_payload, signature_header, self.secret)
