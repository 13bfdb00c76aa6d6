"""
Certification value objects.

These models are transient: they exist for the duration of one
certification request and are never persisted by the core. The
orchestrator owns persistence of the outcome.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ENTRY_TITLE = "Minute Book Filing"


class Lane(str, Enum):
    """
    Environment partition.

    A lane selects the storage destination only; it never changes how a
    document is composed or hashed.
    """

    PRODUCTION = "production"
    SANDBOX = "sandbox"

    @property
    def label(self) -> str:
        return "TRUTH" if self is Lane.PRODUCTION else "SANDBOX"


class DocumentClass(str, Enum):
    """Registry document classes a minute-book entry may be certified as."""

    RESOLUTION = "resolution"
    INVOICE = "invoice"
    CERTIFICATE = "certificate"
    REPORT = "report"
    MINUTES = "minutes"
    TAX_FILING = "tax_filing"
    OTHER = "other"


class CertificationMetadata(BaseModel):
    """
    Labels rendered on the appended certification page.

    ``certified_at`` is normalized to UTC with second precision so that
    two requests built from the same logical inputs render identically.
    """

    title: str = Field(DEFAULT_ENTRY_TITLE, min_length=1)
    entity_label: str = Field(..., min_length=1)
    lane: Lane = Lane.PRODUCTION
    document_class: DocumentClass = DocumentClass.REPORT
    operator_label: str = Field(..., min_length=1)
    certified_at: datetime

    model_config = ConfigDict(frozen=True)

    @field_validator("certified_at")
    @classmethod
    def normalize_certified_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("certified_at must be timezone-aware.")
        return v.astimezone(timezone.utc).replace(microsecond=0)

    @property
    def certified_at_label(self) -> str:
        return self.certified_at.strftime("%Y-%m-%d %H:%M:%S UTC")


class CertificationResult(BaseModel):
    """
    Output of the fixed-point hash resolver.

    Invariant: ``compute_digest(pdf_bytes) == digest`` and the ``hash``
    parameter of ``verification_url`` equals ``digest``.

    Diagnostics:
    - converged:
        A true fixed point was found: the QR in ``pdf_bytes`` encodes
        ``digest``.
    - forced_alignment:
        No fixed point was found within the iteration budget; the
        result was re-composed from the last computed digest.
    - embedded_digest:
        The digest carried by the QR code inside ``pdf_bytes``. Equal to
        ``digest`` whenever ``converged`` is true.
    - compositions:
        Number of compose + hash cycles executed.
    """

    pdf_bytes: bytes
    digest: str
    verification_url: str
    converged: bool
    forced_alignment: bool
    embedded_digest: str
    compositions: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True)

    @property
    def byte_size(self) -> int:
        return len(self.pdf_bytes)
