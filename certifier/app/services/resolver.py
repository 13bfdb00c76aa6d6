"""
Fixed-point hash resolution.

A certified artifact carries a QR code whose verification URL contains
the SHA-256 digest of the artifact itself. The digest depends on the
bytes, the bytes depend on the QR code, and the QR code depends on the
digest. This module resolves that cycle.

Algorithm
---------
Let f(h) = digest(compose(source, url(h), metadata)).

    FAST_ITERATING   up to ``max_fast_iterations`` rounds of
                     candidate <- f(candidate), starting from the
                     all-zero digest. f(candidate) == candidate is a
                     true fixed point: return converged.
    POLISH_ITERATING the same loop for up to ``max_polish_iterations``
                     further rounds, tracked separately.
    FORCE_ALIGNING   one more round with the last candidate. A match is
                     a late fixed point. Otherwise compose once more
                     from the digest just computed, hash that buffer and
                     return it with forced_alignment=True.
    DONE             always reached, always with a result whose digest is
                     the digest of its own bytes.

A fixed point of SHA-256 composed with PDF serialization is not
guaranteed to exist, so the forced path is expected in practice. When
it is taken, ``embedded_digest`` reports the digest the QR code actually
carries.

Bound: at most ``max_fast_iterations + max_polish_iterations + 2``
compositions.

This module performs no I/O and never raises for non-convergence.
Composition errors propagate unchanged.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

from certifier.app.schemas.certification import (
    CertificationMetadata,
    CertificationResult,
)
from certifier.app.services.composer import compose_certified_pdf
from certifier.app.utils.hashing import ZERO_DIGEST, compute_digest
from certifier.app.utils.urls import VerifyUrlBuilder

logger = logging.getLogger(__name__)

Composer = Callable[[bytes, str, CertificationMetadata], bytes]
Hasher = Callable[[bytes], str]

DEFAULT_MAX_FAST_ITERATIONS = 16
DEFAULT_MAX_POLISH_ITERATIONS = 6


class _Cycle:
    """One compose + hash step, counted."""

    def __init__(
        self,
        source_bytes: bytes,
        verify_url_builder: VerifyUrlBuilder,
        metadata: CertificationMetadata,
        composer: Composer,
        hasher: Hasher,
    ) -> None:
        self._source_bytes = source_bytes
        self._build_url = verify_url_builder
        self._metadata = metadata
        self._composer = composer
        self._hasher = hasher
        self.count = 0

    def __call__(self, candidate: str) -> Tuple[bytes, str]:
        self.count += 1
        pdf_bytes = self._composer(
            self._source_bytes,
            self._build_url(candidate),
            self._metadata,
        )
        return pdf_bytes, self._hasher(pdf_bytes)


def _iterate(cycle: _Cycle, candidate: str, limit: int) -> Tuple[str, Optional[bytes]]:
    """
    Run up to ``limit`` rounds from ``candidate``.

    Returns the last candidate and, on convergence, the fixed-point bytes.
    """
    for _ in range(limit):
        pdf_bytes, digest = cycle(candidate)
        if digest == candidate:
            return candidate, pdf_bytes
        candidate = digest
    return candidate, None


def resolve(
    source_bytes: bytes,
    verify_url_builder: VerifyUrlBuilder,
    metadata: CertificationMetadata,
    max_fast_iterations: int = DEFAULT_MAX_FAST_ITERATIONS,
    max_polish_iterations: int = DEFAULT_MAX_POLISH_ITERATIONS,
    *,
    composer: Composer = compose_certified_pdf,
    hasher: Hasher = compute_digest,
) -> CertificationResult:
    """
    Produce a self-consistent certified artifact.

    Args:
        source_bytes:
            Evidentiary source PDF. Never modified.
        verify_url_builder:
            Maps a digest to the verification URL encoded in the QR code.
        metadata:
            Labels for the certification page.
        max_fast_iterations / max_polish_iterations:
            Iteration budgets for the two search phases.
        composer / hasher:
            Injection points; default to the real composer and SHA-256.

    Returns:
        CertificationResult with ``hasher(result.pdf_bytes) == result.digest``
        and ``result.verification_url == verify_url_builder(result.digest)``.
    """
    if max_fast_iterations < 0 or max_polish_iterations < 0:
        raise ValueError("Iteration budgets must be non-negative.")

    cycle = _Cycle(source_bytes, verify_url_builder, metadata, composer, hasher)

    def _converged(digest: str, pdf_bytes: bytes, phase: str) -> CertificationResult:
        logger.info(
            "fixed_point_converged",
            extra={"phase": phase, "compositions": cycle.count},
        )
        return CertificationResult(
            pdf_bytes=pdf_bytes,
            digest=digest,
            verification_url=verify_url_builder(digest),
            converged=True,
            forced_alignment=False,
            embedded_digest=digest,
            compositions=cycle.count,
        )

    # FAST_ITERATING
    candidate, fixed_point = _iterate(cycle, ZERO_DIGEST, max_fast_iterations)
    if fixed_point is not None:
        return _converged(candidate, fixed_point, "fast")

    # POLISH_ITERATING
    logger.debug(
        "fixed_point_polish_started",
        extra={"compositions": cycle.count},
    )
    candidate, fixed_point = _iterate(cycle, candidate, max_polish_iterations)
    if fixed_point is not None:
        return _converged(candidate, fixed_point, "polish")

    # FORCE_ALIGNING
    pdf_bytes, digest = cycle(candidate)
    if digest == candidate:
        return _converged(digest, pdf_bytes, "fallback")

    aligned_bytes, aligned_digest = cycle(digest)

    logger.info(
        "fixed_point_forced_alignment",
        extra={
            "compositions": cycle.count,
            "embedded_digest": digest,
            "digest": aligned_digest,
        },
    )

    return CertificationResult(
        pdf_bytes=aligned_bytes,
        digest=aligned_digest,
        verification_url=verify_url_builder(aligned_digest),
        converged=False,
        forced_alignment=True,
        embedded_digest=digest,
        compositions=cycle.count,
    )
