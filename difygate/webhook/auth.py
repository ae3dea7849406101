"""WhatsApp webhook authentication.

POST deliveries are signed with HMAC-SHA256 over the raw body using the app
secret (``X-Hub-Signature-256: sha256=<hex>``). The GET subscription handshake
echoes a challenge back when the caller presents the configured verify token.
Both comparisons are constant-time via ``hmac.compare_digest``.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: bytes) -> str:
    """Return the lowercase hex HMAC-SHA256 of ``raw_body``."""
    return hmac.new(secret, raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: bytes) -> bool:
    """Return True if ``signature_header`` matches the body's HMAC.

    The ``sha256=`` prefix is optional. An empty secret or a missing header
    always rejects.
    """
    if not secret or not signature_header:
        return False

    received = signature_header.removeprefix(SIGNATURE_PREFIX)
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(received.encode(), expected.encode())


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str | None:
    """Handle the Meta subscribe handshake.

    Returns the challenge to echo back, or None when the request must be
    refused with 403.
    """
    if mode != "subscribe" or not expected_token:
        return None
    if not hmac.compare_digest((token or "").encode(), expected_token.encode()):
        return None
    return challenge or ""
