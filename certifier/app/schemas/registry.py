"""
Records exchanged with the certification collaborators.

These mirror the rows the governance console keeps for minute-book
entries, their supporting documents and the verified-documents registry.
Only the fields the certification flow reads or writes are modeled.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from certifier.app.schemas.certification import DocumentClass, Lane

VERIFICATION_LEVEL_CERTIFIED = "certified"


class MinuteBookEntry(BaseModel):
    """A logical minute-book entry, the unit of certification."""

    entry_id: str
    entity_slug: str = Field(..., min_length=1)
    title: Optional[str] = None
    entry_type: Optional[str] = None
    domain_key: Optional[str] = None
    is_test: Optional[bool] = Field(
        None,
        description="Lane hint from the governance ledger; None if unknown",
    )

    model_config = ConfigDict(frozen=True)


class SupportingDocument(BaseModel):
    """Pointer to a file attached to a minute-book entry."""

    file_path: str
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    file_size: Optional[int] = None
    registry_visible: bool = False
    version: int = 0
    uploaded_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_pdf(self) -> bool:
        return self.file_path.strip().lower().endswith(".pdf")


class SourceDocument(BaseModel):
    """Evidentiary source bytes with the hash recorded at upload, if any."""

    pdf_bytes: bytes
    known_hash: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class VerifiedRecord(BaseModel):
    """
    Verified-documents registry row.

    Keyed by ``entry_id``: there is at most one row per minute-book entry.
    ``record_id`` is assigned on first insert and preserved on update.
    """

    record_id: str
    entry_id: str
    entity_slug: str
    title: str
    document_class: DocumentClass
    lane: Lane
    storage_bucket: str
    storage_path: str
    file_hash: Optional[str] = None
    byte_size: Optional[int] = None
    verification_level: str = VERIFICATION_LEVEL_CERTIFIED
    certified_at: Optional[datetime] = Field(
        None,
        description="Timestamp printed on the certification page; reused on reissue",
    )
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_certified(self) -> bool:
        return (
            (self.verification_level or "").lower() == VERIFICATION_LEVEL_CERTIFIED
            and bool(self.file_hash)
        )


class RegistryPrecondition(BaseModel):
    """
    Compare-and-set guard for a registry upsert.

    The upsert applies only if the row for the entry currently carries
    ``file_hash``. ``None`` means no certified row may exist yet.
    """

    file_hash: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def holds_for(self, current: Optional[VerifiedRecord]) -> bool:
        current_hash = current.file_hash if current is not None else None
        return current_hash == self.file_hash


class WriteOutcome(str, Enum):
    """Result of an artifact write that reached the store."""

    WRITTEN = "written"
    CONFLICT = "conflict"
