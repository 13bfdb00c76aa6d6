"""
Deterministic PDF serialization.

Every certified artifact is written through ``serialize_deterministically``
so that identical logical inputs always produce byte-identical files. The
fixed-point resolver depends on this: if two compositions of the same
document could differ, comparing digests across iterations would be
meaningless.

Fixed configuration:
- /CreationDate and /ModDate are a constant sentinel, never "now"
- /Producer and /Creator are constant
- object streams are disabled (plain cross-reference table)
- the trailer /ID is qpdf's static identifier, not a random value
- no linearization, no QDF, no XMP metadata rewriting

Streams are still Flate-compressed; zlib output is deterministic for a
given input and compression level.
"""

from __future__ import annotations

import io

import pikepdf
from pikepdf import Name, String

SENTINEL_PDF_DATE = "D:20000101000000Z"
PRODUCER = "certifier"


def apply_fixed_docinfo(pdf: pikepdf.Pdf) -> None:
    """Replace the document information dictionary with constant values."""
    docinfo = pdf.docinfo
    for key in list(docinfo.keys()):
        del docinfo[key]

    docinfo[Name.Producer] = String(PRODUCER)
    docinfo[Name.Creator] = String(PRODUCER)
    docinfo[Name.CreationDate] = String(SENTINEL_PDF_DATE)
    docinfo[Name.ModDate] = String(SENTINEL_PDF_DATE)


def serialize_deterministically(pdf: pikepdf.Pdf) -> bytes:
    """
    Serialize ``pdf`` to bytes with the fixed configuration above.

    The document information dictionary of ``pdf`` is overwritten.
    """
    apply_fixed_docinfo(pdf)

    buffer = io.BytesIO()
    pdf.save(
        buffer,
        static_id=True,
        object_stream_mode=pikepdf.ObjectStreamMode.disable,
        compress_streams=True,
        normalize_content=False,
        linearize=False,
        qdf=False,
        fix_metadata_version=False,
    )
    return buffer.getvalue()
