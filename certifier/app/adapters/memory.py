"""
In-process collaborator implementations.

Used by tests and by callers embedding the certifier without external
storage. Each adapter guards its state with an ``asyncio.Lock`` so the
conflict semantics of ``ArtifactStore.write`` hold under concurrency.

Failure injection (``fail_*`` flags) simulates transport errors.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

from certifier.app.adapters.base import (
    RegistryConflictError,
    RegistryError,
    SourceUnavailableError,
    StorageError,
)
from certifier.app.schemas.registry import (
    MinuteBookEntry,
    RegistryPrecondition,
    SourceDocument,
    SupportingDocument,
    VerifiedRecord,
    WriteOutcome,
)


class InMemorySourceRepository:
    def __init__(self) -> None:
        self._entries: Dict[str, MinuteBookEntry] = {}
        self._documents: Dict[str, List[SupportingDocument]] = {}
        self._files: Dict[str, bytes] = {}
        self.fail_fetch = False

    def add_entry(
        self,
        entry: MinuteBookEntry,
        documents: Optional[Dict[SupportingDocument, bytes]] = None,
    ) -> None:
        self._entries[entry.entry_id] = entry
        self._documents[entry.entry_id] = list((documents or {}).keys())
        for document, data in (documents or {}).items():
            self._files[document.file_path] = data

    def replace_file(self, file_path: str, data: bytes) -> None:
        self._files[file_path] = data

    async def get_entry(self, entry_id: str) -> Optional[MinuteBookEntry]:
        return self._entries.get(entry_id)

    async def list_documents(self, entry_id: str) -> List[SupportingDocument]:
        return list(self._documents.get(entry_id, []))

    async def fetch(self, document: SupportingDocument) -> SourceDocument:
        if self.fail_fetch:
            raise SourceUnavailableError(f"Simulated download failure: {document.file_path}")
        try:
            data = self._files[document.file_path]
        except KeyError as exc:
            raise SourceUnavailableError(f"No object at {document.file_path}") from exc
        return SourceDocument(pdf_bytes=data, known_hash=document.file_hash)


class InMemoryArtifactStore:
    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.fail_write = False
        self._lock = asyncio.Lock()

    async def write(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        overwrite: bool,
    ) -> WriteOutcome:
        if self.fail_write:
            raise StorageError(f"Simulated upload failure: {bucket}/{path}")

        async with self._lock:
            key = (bucket, path)
            if key in self.objects and not overwrite:
                return WriteOutcome.CONFLICT
            self.objects[key] = bytes(data)
            return WriteOutcome.WRITTEN

    def read(self, bucket: str, path: str) -> bytes:
        return self.objects[(bucket, path)]


class InMemoryVerifiedRegistry:
    def __init__(self) -> None:
        self.records: Dict[str, VerifiedRecord] = {}
        self.fail_upsert = False
        self._lock = asyncio.Lock()

    async def find(self, entry_id: str) -> Optional[VerifiedRecord]:
        return self.records.get(entry_id)

    async def upsert(
        self,
        record: VerifiedRecord,
        *,
        precondition: Optional[RegistryPrecondition] = None,
    ) -> VerifiedRecord:
        if self.fail_upsert:
            raise RegistryError(f"Simulated registry failure: {record.entry_id}")

        async with self._lock:
            existing = self.records.get(record.entry_id)
            if precondition is not None and not precondition.holds_for(existing):
                raise RegistryConflictError(
                    f"Registry row for {record.entry_id} changed concurrently"
                )
            if existing is not None:
                record = record.model_copy(
                    update={
                        "record_id": existing.record_id,
                        "created_by": existing.created_by,
                        "created_at": existing.created_at,
                    }
                )
            self.records[record.entry_id] = record
            return record
