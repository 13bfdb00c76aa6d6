import hashlib

import pytest

from certifier.app.utils.hashing import (
    ZERO_DIGEST,
    compute_digest,
    digest_prefix,
    is_hex_digest,
)
from certifier.app.utils.urls import (
    build_verify_url,
    extract_hash_param,
    verify_url_builder,
)

BASE = "https://registry.example.org/verify.html"


def test_digest_is_lowercase_sha256_hex():
    digest = compute_digest(b"minute book")
    assert digest == hashlib.sha256(b"minute book").hexdigest()
    assert is_hex_digest(digest)


def test_digest_rejects_non_bytes():
    with pytest.raises(TypeError):
        compute_digest("not bytes")


def test_zero_digest_sentinel_is_a_valid_digest():
    assert is_hex_digest(ZERO_DIGEST)
    assert set(ZERO_DIGEST) == {"0"}


def test_digest_prefix():
    digest = compute_digest(b"x")
    assert digest_prefix(digest) == digest[:12]
    with pytest.raises(ValueError):
        digest_prefix("not-a-digest")


def test_verify_url_sets_hash_parameter():
    digest = compute_digest(b"x")
    url = build_verify_url(BASE, digest)
    assert url == f"{BASE}?hash={digest}"
    assert extract_hash_param(url) == digest


def test_verify_url_replaces_existing_hash_and_keeps_other_params():
    url = build_verify_url(f"{BASE}?lane=sandbox&hash=stale", "abc")
    assert extract_hash_param(url) == "abc"
    assert "lane=sandbox" in url
    assert "stale" not in url


def test_verify_url_requires_absolute_http_base():
    with pytest.raises(ValueError):
        build_verify_url("verify.html", "abc")
    with pytest.raises(ValueError):
        verify_url_builder("ftp://registry.example.org/verify")


def test_builder_binds_base():
    build = verify_url_builder(BASE)
    assert build("abc") == build_verify_url(BASE, "abc")


def test_extract_hash_param_absent():
    assert extract_hash_param(BASE) is None
