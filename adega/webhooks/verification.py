"""Webhook signature verification: constant-time HMAC for Bling.

Security contract:
- Bling sends X-Bling-Signature-256: sha256=<hex HMAC-SHA256 of the raw body>
- The HMAC is computed over the exact request bytes, never a re-serialized body
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Malformed or missing signatures return False, never raise
- Empty secret -> verification always fails (fail-closed); the pipeline
  reports an unset secret as a configuration fault before getting here
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-bling-signature-256"
_PREFIX = "sha256="
_DIGEST_SIZE = hashlib.sha256().digest_size


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_payload(body: bytes, secret: str) -> str:
    """Build the header value Bling would send for ``body``."""
    return _PREFIX + compute_signature(body, secret)


def _strip_prefix(signature_header: str) -> str:
    value = signature_header.strip()
    if value[: len(_PREFIX)].lower() == _PREFIX:
        value = value[len(_PREFIX):]
    return value.strip()


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a Bling webhook HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature_header: Value of X-Bling-Signature-256 (optional ``sha256=`` prefix)
        secret: Bling app client secret

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Bling client secret not set, rejecting webhook")
        return False
    if not signature_header or not isinstance(signature_header, str):
        return False

    try:
        supplied = binascii.unhexlify(_strip_prefix(signature_header))
    except (binascii.Error, ValueError):
        logger.debug("Bling signature is not valid hex")
        return False

    if len(supplied) != _DIGEST_SIZE:
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(expected, supplied)


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """Return the signature header value regardless of header casing."""
    for name, value in headers.items():
        if name.lower() == SIGNATURE_HEADER:
            return value
    return None
