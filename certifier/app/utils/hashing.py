"""
Cryptographic primitives for certified artifact integrity.

This module provides the low-level digest used by the certification
pipeline. The digest of a certified PDF is the identifier encoded in the
verification URL carried by its QR code.

Current scope:
- Deterministic SHA-256 hashing of final artifact bytes

Explicit non-scope:
- PDF parsing or manipulation
- URL construction (see ``certifier.app.utils.urls``)

IMPORTANT DESIGN RULE:
- This module hashes bytes, and bytes only.
"""

import hashlib
import re
from typing import Union

DIGEST_HEX_LENGTH = 64

# Sentinel candidate used before any artifact has been hashed.
ZERO_DIGEST = "0" * DIGEST_HEX_LENGTH

_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def compute_digest(data: Union[bytes, bytearray]) -> str:
    """
    Compute the content digest of an artifact.

    Args:
        data:
            Raw bytes of the artifact (e.g. the final certified PDF).

    Returns:
        Lower-case hexadecimal SHA-256 digest, 64 characters long.
        Unlike the document content hash, no algorithm prefix is added:
        the value is embedded verbatim in verification URLs.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(
            "compute_digest expects bytes, "
            f"got {type(data).__name__}"
        )

    return hashlib.sha256(data).hexdigest()


def is_hex_digest(value: object) -> bool:
    """Return True if ``value`` is a lower-case 64-character hex digest."""
    return isinstance(value, str) and bool(_HEX_DIGEST_RE.match(value))


def digest_prefix(digest: str, length: int = 12) -> str:
    """Leading characters of a digest, used in content-addressed paths."""
    if not is_hex_digest(digest):
        raise ValueError(f"Not a SHA-256 hex digest: {digest!r}")
    if length < 1 or length > DIGEST_HEX_LENGTH:
        raise ValueError(f"Invalid digest prefix length: {length}")
    return digest[:length]
