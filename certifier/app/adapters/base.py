"""
Collaborator interfaces consumed by the certification orchestrator.

Implementations are injected at construction time; there are no
module-level clients. Transport failures are raised as the typed errors
below so the orchestrator can map them to outcomes without inspecting
backend-specific exceptions.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from certifier.app.schemas.registry import (
    MinuteBookEntry,
    RegistryPrecondition,
    SourceDocument,
    SupportingDocument,
    VerifiedRecord,
    WriteOutcome,
)


class StorageError(RuntimeError):
    """Raised when an artifact store cannot complete a write."""


class SourceUnavailableError(RuntimeError):
    """Raised when source bytes cannot be retrieved."""


class RegistryError(RuntimeError):
    """Raised when the verified-documents registry cannot be read or written."""


class RegistryConflictError(RegistryError):
    """Raised when an upsert precondition no longer holds."""


class SourceRepository(Protocol):
    """
    Read-only access to minute-book entries and their source PDFs.

    Every method raises SourceUnavailableError when the backing store
    cannot be read or holds malformed data.
    """

    async def get_entry(self, entry_id: str) -> Optional[MinuteBookEntry]:
        ...

    async def list_documents(self, entry_id: str) -> List[SupportingDocument]:
        ...

    async def fetch(self, document: SupportingDocument) -> SourceDocument:
        """Raises SourceUnavailableError on transport failure."""
        ...


class ArtifactStore(Protocol):
    """
    Destination storage for certified artifacts.

    ``write`` with ``overwrite=False`` MUST NOT replace an existing
    object; it returns ``WriteOutcome.CONFLICT`` instead. The check and
    the write must be atomic with respect to concurrent writers.
    """

    async def write(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        overwrite: bool,
    ) -> WriteOutcome:
        """Raises StorageError on transport failure."""
        ...


class VerifiedRegistry(Protocol):
    """Verified-documents registry, one record per entry."""

    async def find(self, entry_id: str) -> Optional[VerifiedRecord]:
        ...

    async def upsert(
        self,
        record: VerifiedRecord,
        *,
        precondition: Optional[RegistryPrecondition] = None,
    ) -> VerifiedRecord:
        """
        Insert or replace the record for ``record.entry_id``.

        Returns the stored record; an existing ``record_id`` and
        ``created_*`` fields are preserved. When ``precondition`` is given
        it is checked atomically with the write; a violation raises
        RegistryConflictError and leaves the row untouched.
        """
        ...
