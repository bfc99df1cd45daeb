"""
Utility functions for the gateway: platform signature check and
answer sanitizing for the archive.
"""

import hashlib
import hmac
import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_ASSISTANT_LABEL = "AI:"


def compute_signature(secret: str, timestamp: str, nonce: str) -> str:
    """
    Compute the platform signature for a request.

    The three values are sorted lexicographically, concatenated and
    hashed with SHA-1.

    Returns:
        Lower-case hex digest
    """
    joined = "".join(sorted([secret, timestamp, nonce]))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def verify_signature(
    secret: Optional[str],
    signature: Optional[str],
    timestamp: Optional[str],
    nonce: Optional[str],
) -> bool:
    """
    Verify a platform signature.

    Args:
        secret: Shared token configured on the platform
        signature: Hex signature from the query string
        timestamp: Timestamp from the query string
        nonce: Nonce from the query string

    Returns:
        True if signature is valid, False otherwise (including any blank input)
    """
    if any(value is None or not value.strip() for value in (secret, signature, timestamp, nonce)):
        logger.info("Signature verification: missing parameters")
        return False

    expected_signature = compute_signature(secret, timestamp, nonce)
    logger.debug(f"Expected signature: {expected_signature[:8]}...")

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature.strip().lower())
    logger.info(f"Signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sanitize_answer(answer: str) -> str:
    """
    Clean a model answer before it is archived.

    Control characters (newlines included) are removed, then a leading
    assistant speaker label is dropped.
    """
    cleaned = _CONTROL_CHARS.sub("", answer)
    if cleaned.startswith(_ASSISTANT_LABEL):
        cleaned = cleaned[len(_ASSISTANT_LABEL):]
    return cleaned.strip()
