"""
Certified document composition.

Builds a certified artifact from an evidentiary source PDF:

- every source page is copied, in order, with no edits to its content
- exactly one US Letter certification page is appended
- the appended page carries the certification metadata and a QR code
  encoding the verification URL

Trust boundary:
- The source document is never modified. Certification only appends.
- The verification URL and the digest it carries are NEVER printed as
  text. The QR code is the only channel for the verification link, so
  the registry's hash-first terminal is always the path a reader takes.

This module performs no I/O. Serialization is delegated to
``serialize_deterministically`` so that identical inputs give identical
bytes.
"""

from __future__ import annotations

import io
import re
from typing import List, Optional, Sequence, Tuple

import pikepdf
from pikepdf import Dictionary, Name, Operator, String

from certifier.app.schemas.certification import CertificationMetadata
from certifier.app.services.pdf_serialization import serialize_deterministically
from certifier.app.services.qr import MonochromeBitmap, QrOptions, rasterize

PAGE_SIZE = (612, 792)  # US Letter, points
MARGIN = 56

QR_RESOURCE_NAME = "/QR0"
QR_DISPLAY_SIZE = 112

TITLE_MAX_CHARS = 120
VALUE_MAX_CHARS = 64

DEFAULT_ISSUER_NAME = "Verified Registry"

Color = Tuple[float, float, float]

INK: Color = (0.12, 0.14, 0.18)
MUTED: Color = (0.45, 0.48, 0.55)
HAIRLINE: Color = (0.86, 0.88, 0.91)
BAND: Color = (0.06, 0.09, 0.12)
TEAL: Color = (0.10, 0.78, 0.72)
BAND_TEXT: Color = (0.86, 0.88, 0.90)
PANEL: Color = (0.99, 0.99, 1.0)
FOOTER: Color = (0.60, 0.64, 0.70)
RULE: Color = (0.30, 0.32, 0.36)

_WHITESPACE_RE = re.compile(r"\s+")


class CompositionError(RuntimeError):
    """Raised when a certified document cannot be composed."""


# ------------------------------------------------------------------
# Content stream helpers
# ------------------------------------------------------------------

def pdf_text(value: object, limit: int = VALUE_MAX_CHARS) -> bytes:
    """
    Reduce a label to printable ASCII for the standard Type1 fonts.

    Whitespace runs collapse to a single space; other characters outside
    the printable ASCII range become ``?``.
    """
    text = _WHITESPACE_RE.sub(" ", str(value)).strip()
    text = "".join(ch if " " <= ch <= "~" else "?" for ch in text)
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text.encode("ascii")


class _PageCanvas:
    """Accumulates content stream instructions for a single page."""

    def __init__(self) -> None:
        self._instructions: List[Tuple[Sequence[object], Operator]] = []

    def _op(self, operator: str, *operands: object) -> None:
        self._instructions.append((list(operands), Operator(operator)))

    def fill_rect(self, x: float, y: float, w: float, h: float, color: Color) -> None:
        self._op("q")
        self._op("rg", *color)
        self._op("re", x, y, w, h)
        self._op("f")
        self._op("Q")

    def panel(
        self,
        x: float,
        y: float,
        w: float,
        h: float,
        *,
        fill: Color,
        stroke: Color,
        width: float = 1,
    ) -> None:
        self._op("q")
        self._op("rg", *fill)
        self._op("RG", *stroke)
        self._op("w", width)
        self._op("re", x, y, w, h)
        self._op("B")
        self._op("Q")

    def line(
        self,
        x0: float,
        y0: float,
        x1: float,
        y1: float,
        *,
        color: Color,
        width: float,
    ) -> None:
        self._op("q")
        self._op("RG", *color)
        self._op("w", width)
        self._op("m", x0, y0)
        self._op("l", x1, y1)
        self._op("S")
        self._op("Q")

    def text(
        self,
        x: float,
        y: float,
        value: bytes,
        *,
        font: str,
        size: float,
        color: Color,
    ) -> None:
        self._op("BT")
        self._op("rg", *color)
        self._op("Tf", Name(font), size)
        self._op("Td", x, y)
        self._op("Tj", String(value))
        self._op("ET")

    def image(self, name: str, x: float, y: float, w: float, h: float) -> None:
        self._op("q")
        self._op("cm", w, 0, 0, h, x, y)
        self._op("Do", Name(name))
        self._op("Q")

    def render(self) -> bytes:
        return pikepdf.unparse_content_stream(self._instructions)


# ------------------------------------------------------------------
# Composer
# ------------------------------------------------------------------

class DocumentComposer:
    """
    Composes certified artifacts.

    A composer is immutable configuration only; ``compose`` is a pure
    function of its arguments and may be called concurrently.
    """

    def __init__(
        self,
        qr_options: Optional[QrOptions] = None,
        issuer_name: str = DEFAULT_ISSUER_NAME,
    ) -> None:
        self.qr_options = qr_options or QrOptions()
        self.issuer_name = issuer_name

    def compose(
        self,
        source_bytes: bytes,
        verification_url: str,
        metadata: CertificationMetadata,
    ) -> bytes:
        """
        Append a certification page to ``source_bytes``.

        Raises:
            CompositionError:
                If the source is not a readable PDF, has no pages, or the
                verification URL cannot be encoded as a QR code.
        """
        if not isinstance(source_bytes, (bytes, bytearray)):
            raise TypeError(
                "compose expects source PDF bytes, "
                f"got {type(source_bytes).__name__}"
            )

        # Rasterize first: an unencodable URL fails before any PDF work.
        try:
            bitmap = rasterize(verification_url, self.qr_options)
        except ValueError as exc:
            raise CompositionError(
                f"Failed to encode verification URL as QR code: {exc}"
            ) from exc

        try:
            with pikepdf.open(io.BytesIO(bytes(source_bytes))) as source, \
                    pikepdf.new() as output:
                if len(source.pages) == 0:
                    raise CompositionError("Source PDF has no pages.")

                output.pages.extend(source.pages)
                self._append_certification_page(output, bitmap, metadata)

                return serialize_deterministically(output)

        except pikepdf.PdfError as exc:
            raise CompositionError(
                f"Failed to compose certified PDF: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Certification page
    # ------------------------------------------------------------------

    def _append_certification_page(
        self,
        pdf: pikepdf.Pdf,
        bitmap: MonochromeBitmap,
        metadata: CertificationMetadata,
    ) -> None:
        width, height = PAGE_SIZE

        page = pdf.add_blank_page(page_size=PAGE_SIZE)

        font = pdf.make_indirect(
            Dictionary(
                Type=Name.Font,
                Subtype=Name.Type1,
                BaseFont=Name.Helvetica,
                Encoding=Name.WinAnsiEncoding,
            )
        )
        font_bold = pdf.make_indirect(
            Dictionary(
                Type=Name.Font,
                Subtype=Name.Type1,
                BaseFont=Name("/Helvetica-Bold"),
                Encoding=Name.WinAnsiEncoding,
            )
        )

        qr_image = pdf.make_stream(bitmap.pixels)
        qr_image.Type = Name.XObject
        qr_image.Subtype = Name.Image
        qr_image.Width = bitmap.width
        qr_image.Height = bitmap.height
        qr_image.ColorSpace = Name.DeviceGray
        qr_image.BitsPerComponent = 8
        qr_image.Interpolate = False

        page.Resources = Dictionary(
            Font=Dictionary(F1=font, F2=font_bold),
            XObject=Dictionary({QR_RESOURCE_NAME: qr_image}),
        )

        canvas = _PageCanvas()

        # Header band
        band_height = 92
        canvas.fill_rect(0, height - band_height, width, band_height, BAND)
        canvas.text(
            MARGIN, height - 42, pdf_text(self.issuer_name),
            font="/F2", size=14, color=TEAL,
        )
        canvas.text(
            MARGIN, height - 64, b"Certification Record",
            font="/F1", size=10, color=BAND_TEXT,
        )

        # Intro and document identity
        intro_y = height - band_height - 48
        canvas.text(
            MARGIN, intro_y,
            b"This certification confirms the archival integrity of the following document:",
            font="/F1", size=9.5, color=MUTED,
        )
        canvas.text(
            MARGIN, intro_y - 34, pdf_text(metadata.title, TITLE_MAX_CHARS),
            font="/F2", size=14, color=INK,
        )
        canvas.text(
            MARGIN, intro_y - 54, pdf_text(metadata.entity_label),
            font="/F1", size=10, color=MUTED,
        )

        # Metadata grid
        grid_top = intro_y - 96
        rows = [
            ("Entity:", metadata.entity_label),
            ("Lane:", metadata.lane.label),
            ("Document:", metadata.document_class.value),
            ("Operator:", metadata.operator_label),
            ("Certified At:", metadata.certified_at_label),
        ]
        for index, (label, value) in enumerate(rows):
            y = grid_top - index * 16
            canvas.text(MARGIN, y, label.encode("ascii"), font="/F2", size=9, color=INK)
            canvas.text(MARGIN + 110, y, pdf_text(value), font="/F1", size=9, color=MUTED)

        divider_y = grid_top - len(rows) * 16 - 10
        canvas.line(MARGIN, divider_y, width - MARGIN, divider_y, color=HAIRLINE, width=0.7)

        # Verification note
        note_y = divider_y - 30
        canvas.text(MARGIN, note_y, b"Verification", font="/F2", size=11, color=INK)
        canvas.text(
            MARGIN, note_y - 18,
            b"To verify registry status and integrity, scan the QR code with any camera or QR reader.",
            font="/F1", size=8.5, color=MUTED,
        )
        canvas.text(
            MARGIN, note_y - 32,
            b"Verification resolves by content hash through the registry verification terminal.",
            font="/F1", size=8.5, color=MUTED,
        )
        canvas.text(
            MARGIN, note_y - 46,
            b"Authority is conferred exclusively by " + pdf_text(self.issuer_name) + b".",
            font="/F1", size=8.5, color=MUTED,
        )

        # Registry attestation box
        box_y = 92
        canvas.panel(MARGIN, box_y, 260, 72, fill=PANEL, stroke=HAIRLINE)
        canvas.text(
            MARGIN + 12, box_y + 52, b"Registry Attestation",
            font="/F2", size=8.5, color=MUTED,
        )
        canvas.line(
            MARGIN + 12, box_y + 26, MARGIN + 248, box_y + 26,
            color=RULE, width=0.8,
        )

        # QR bottom-right
        qr_x = width - MARGIN - QR_DISPLAY_SIZE
        qr_y = 92
        canvas.panel(
            qr_x - 12, qr_y - 18, QR_DISPLAY_SIZE + 24, QR_DISPLAY_SIZE + 36,
            fill=PANEL, stroke=HAIRLINE,
        )
        canvas.image(QR_RESOURCE_NAME, qr_x, qr_y, QR_DISPLAY_SIZE, QR_DISPLAY_SIZE)
        canvas.text(
            qr_x + 30, qr_y - 10, b"Scan to verify",
            font="/F1", size=8, color=MUTED,
        )

        # Footer
        canvas.text(
            MARGIN, 44,
            b"This certification page was appended to preserve the original document pages. "
            b"Verification resolves by hash (QR).",
            font="/F1", size=7.5, color=FOOTER,
        )

        page.Contents = pdf.make_stream(canvas.render())


_default_composer = DocumentComposer()


def compose_certified_pdf(
    source_bytes: bytes,
    verification_url: str,
    metadata: CertificationMetadata,
) -> bytes:
    """Compose with default QR options and issuer name."""
    return _default_composer.compose(source_bytes, verification_url, metadata)
