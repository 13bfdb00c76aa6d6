"""
Hash-first verification URLs.

The verification terminal resolves a certified artifact by its digest.
The URL encoded in the QR code is the configured base URL with a single
``hash`` query parameter; any other query parameters of the base are
kept as-is.
"""

from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

HASH_PARAM = "hash"

VerifyUrlBuilder = Callable[[str], str]


def build_verify_url(base: str, digest: str) -> str:
    """Return ``base`` with its ``hash`` query parameter set to ``digest``."""
    parts = urlsplit(base)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ValueError(f"Verification base URL must be absolute http(s): {base!r}")

    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key != HASH_PARAM
    ]
    query.append((HASH_PARAM, digest))

    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


def extract_hash_param(url: str) -> Optional[str]:
    """Return the ``hash`` query parameter of a verification URL, if any."""
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key == HASH_PARAM:
            return value
    return None


def verify_url_builder(base: str) -> VerifyUrlBuilder:
    """Bind a base URL into the ``digest -> url`` callable used by the resolver."""
    # Fail on a bad base before any document is composed.
    build_verify_url(base, "0")

    def _build(digest: str) -> str:
        return build_verify_url(base, digest)

    return _build
