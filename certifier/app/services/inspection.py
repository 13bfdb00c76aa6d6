"""
Certified artifact inspection.

Deterministic post-hoc checks of a certified PDF, answering the questions
a verification terminal asks of an artifact it is handed:

- What is the digest of these exact bytes?
- Does the QR code on the certification page encode the verification
  URL for that digest?
- Does the certification page leak the digest or the URL as text?

The QR code is checked by re-rasterizing the expected URL with the same
options and comparing the embedded image samples, so no optical QR
decoder is involved.

These checks are purely structural and MUST NOT modify the artifact.
"""

from __future__ import annotations

import io
import logging
from typing import Optional

import pikepdf
import pypdf
from pydantic import BaseModel, ConfigDict

from certifier.app.services.composer import QR_RESOURCE_NAME, CompositionError
from certifier.app.services.qr import MonochromeBitmap, QrOptions, rasterize
from certifier.app.utils.hashing import compute_digest
from certifier.app.utils.urls import build_verify_url

logger = logging.getLogger(__name__)


class CertificationInspection(BaseModel):
    """Outcome of inspecting a certified artifact."""

    digest: str
    verification_url: str
    page_count: int
    qr_present: bool
    qr_matches_digest: bool
    plaintext_leak: bool

    model_config = ConfigDict(frozen=True)

    @property
    def self_consistent(self) -> bool:
        return self.qr_matches_digest and not self.plaintext_leak


def read_embedded_qr(pdf_bytes: bytes) -> Optional[MonochromeBitmap]:
    """
    Return the QR raster embedded on the last page, or None if absent.

    Raises:
        CompositionError: If the PDF cannot be parsed.
    """
    try:
        with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
            if len(pdf.pages) == 0:
                return None

            resources = pdf.pages[-1].obj.get("/Resources")
            xobjects = resources.get("/XObject") if resources is not None else None
            image = xobjects.get(QR_RESOURCE_NAME) if xobjects is not None else None
            if image is None or image.get("/Subtype") != pikepdf.Name.Image:
                return None

            width = int(image.Width)
            height = int(image.Height)
            samples = image.read_bytes()

    except pikepdf.PdfError as exc:
        raise CompositionError(f"Failed to read certified PDF: {exc}") from exc

    if width != height or len(samples) != width * height:
        return None

    # Module geometry is unknown here; callers compare raw samples.
    return MonochromeBitmap(
        width=width,
        height=height,
        modules=width,
        pixels_per_module=1,
        pixels=samples,
    )


def extract_certification_page_text(pdf_bytes: bytes) -> str:
    """Extract visible text of the last page. Returns "" if none is found."""
    try:
        reader = pypdf.PdfReader(io.BytesIO(pdf_bytes))
        if not reader.pages:
            return ""
        return reader.pages[-1].extract_text() or ""
    except pypdf.errors.PdfReadError:
        logger.warning("certification_page_text_unreadable")
        return ""


def qr_encodes(bitmap: MonochromeBitmap, url: str, options: QrOptions) -> bool:
    """True if ``bitmap`` is exactly the raster of ``url`` under ``options``."""
    expected = rasterize(url, options)
    return (
        bitmap.width == expected.width
        and bitmap.height == expected.height
        and bitmap.pixels == expected.pixels
    )


def inspect_certified_pdf(
    pdf_bytes: bytes,
    verify_base_url: str,
    qr_options: Optional[QrOptions] = None,
) -> CertificationInspection:
    """
    Inspect a certified artifact against the hash-first verification URL.

    Raises:
        CompositionError: If the PDF cannot be parsed.
    """
    qr_options = qr_options or QrOptions()

    digest = compute_digest(pdf_bytes)
    verification_url = build_verify_url(verify_base_url, digest)

    try:
        with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
            page_count = len(pdf.pages)
    except pikepdf.PdfError as exc:
        raise CompositionError(f"Failed to read certified PDF: {exc}") from exc

    bitmap = read_embedded_qr(pdf_bytes)
    qr_matches = bitmap is not None and qr_encodes(bitmap, verification_url, qr_options)

    page_text = extract_certification_page_text(pdf_bytes)
    leak = digest in page_text or verification_url in page_text

    return CertificationInspection(
        digest=digest,
        verification_url=verification_url,
        page_count=page_count,
        qr_present=bitmap is not None,
        qr_matches_digest=qr_matches,
        plaintext_leak=leak,
    )
