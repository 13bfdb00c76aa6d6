"""
QR matrix rasterization.

Turns a verification URL into a square monochrome raster that the
document composer embeds as an image XObject on the certification page.

Properties:
- pure: text + options -> raster, no I/O
- deterministic: identical inputs give byte-identical rasters
- explicit geometry: module size and quiet zone are options, never
  derived from a target image size
"""

from __future__ import annotations

import io
from typing import List, Literal

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

ErrorCorrectionLevel = Literal["L", "M", "Q", "H"]

_ERROR_CORRECTION = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}

DARK = 0
LIGHT = 255


class QrEncodingError(ValueError):
    """Raised when text cannot be encoded at the requested error-correction level."""


class QrOptions(BaseModel):
    """Rasterization options. ``M`` balances symbol size and resilience."""

    pixels_per_module: int = Field(6, ge=1, le=64)
    margin_modules: int = Field(2, ge=0, le=16)
    error_correction: ErrorCorrectionLevel = "M"

    model_config = ConfigDict(frozen=True)


class MonochromeBitmap(BaseModel):
    """
    8-bit grayscale raster of a QR symbol.

    ``pixels`` is row-major, one byte per pixel, 0 for dark modules and
    255 for the background and quiet zone.
    """

    width: int
    height: int
    modules: int = Field(..., description="Module count per side, quiet zone included")
    pixels_per_module: int
    pixels: bytes

    model_config = ConfigDict(frozen=True)

    def is_dark(self, x: int, y: int) -> bool:
        return self.pixels[y * self.width + x] == DARK

    def module_matrix(self) -> List[List[bool]]:
        """Recover the module matrix (quiet zone included) from the raster."""
        step = self.pixels_per_module
        return [
            [self.is_dark(col * step, row * step) for col in range(self.modules)]
            for row in range(self.modules)
        ]

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        image = Image.frombytes("L", (self.width, self.height), self.pixels)
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def encode_matrix(text: str, error_correction: ErrorCorrectionLevel = "M") -> List[List[bool]]:
    """Return the QR module matrix for ``text`` without any quiet zone."""
    if not text:
        raise QrEncodingError("QR text must be non-empty.")

    try:
        level = _ERROR_CORRECTION[error_correction]
    except KeyError as exc:
        raise QrEncodingError(
            f"Unsupported error correction level: {error_correction!r}"
        ) from exc

    qr = qrcode.QRCode(version=None, error_correction=level, border=0)
    qr.add_data(text)
    try:
        qr.make(fit=True)
    except (DataOverflowError, ValueError) as exc:
        raise QrEncodingError(
            f"Text of {len(text)} characters exceeds QR capacity "
            f"at error correction level {error_correction}: {exc}"
        ) from exc

    return [list(row) for row in qr.get_matrix()]


def rasterize(text: str, options: QrOptions | None = None) -> MonochromeBitmap:
    """
    Rasterize ``text`` into a QR bitmap.

    Raises:
        QrEncodingError:
            If ``text`` is empty or too long for the chosen level.
    """
    options = options or QrOptions()

    matrix = encode_matrix(text, options.error_correction)
    margin = options.margin_modules
    scale = options.pixels_per_module

    modules = len(matrix) + 2 * margin
    size = modules * scale

    light_row = bytes([LIGHT]) * size
    rows: List[bytes] = []

    for _ in range(margin * scale):
        rows.append(light_row)

    for matrix_row in matrix:
        row = bytearray(light_row)
        for col, dark in enumerate(matrix_row):
            if dark:
                start = (col + margin) * scale
                row[start:start + scale] = bytes([DARK]) * scale
        rows.extend([bytes(row)] * scale)

    for _ in range(margin * scale):
        rows.append(light_row)

    return MonochromeBitmap(
        width=size,
        height=size,
        modules=modules,
        pixels_per_module=scale,
        pixels=b"".join(rows),
    )
