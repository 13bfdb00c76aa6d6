"""
Directory-rooted collaborator implementations.

Layout under ``root``:

    <source_bucket>/entries/<entry_id>.json   entry manifest
    <source_bucket>/<file_path>               source PDFs
    <bucket>/<path>                           certified artifacts
    registry/<entry_id>.json                  verified-documents rows

Blocking file operations run in worker threads via anyio.

First-time artifact writes use exclusive creation, so two concurrent
writers of the same destination cannot both succeed. Overwrites go
through a temporary file and an atomic replace.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import anyio
from pydantic import ValidationError

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

logger = logging.getLogger(__name__)


def _resolve_within(root: Path, *parts: str) -> Path:
    """Join ``parts`` onto ``root``, rejecting paths that escape it."""
    base = root.resolve()
    candidate = base.joinpath(*parts).resolve()
    if candidate != base and base not in candidate.parents:
        raise ValueError(f"Path escapes storage root: {'/'.join(parts)}")
    return candidate


def _temp_sibling(target: Path) -> Path:
    """Unique temporary path next to ``target``, one per writer."""
    return target.with_name(f".{target.name}.{uuid4().hex}.tmp")


class FilesystemSourceRepository:
    def __init__(self, root: Path, bucket: str) -> None:
        self._root = Path(root)
        self._bucket = bucket

    def _manifest(self, entry_id: str) -> Optional[dict]:
        path = _resolve_within(self._root, self._bucket, "entries", f"{entry_id}.json")
        if not path.is_file():
            return None
        manifest = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(manifest, dict) or not isinstance(manifest.get("entry"), dict):
            raise ValueError("manifest must be an object with an 'entry' object")
        return manifest

    async def _load_manifest(self, entry_id: str) -> Optional[dict]:
        try:
            return await anyio.to_thread.run_sync(self._manifest, entry_id)
        except (OSError, ValueError) as exc:
            raise SourceUnavailableError(
                f"Failed to read manifest for entry {entry_id}: {exc}"
            ) from exc

    async def get_entry(self, entry_id: str) -> Optional[MinuteBookEntry]:
        manifest = await self._load_manifest(entry_id)
        if manifest is None:
            return None
        try:
            return MinuteBookEntry.model_validate({**manifest["entry"], "entry_id": entry_id})
        except ValidationError as exc:
            raise SourceUnavailableError(f"Malformed entry {entry_id}: {exc}") from exc

    async def list_documents(self, entry_id: str) -> List[SupportingDocument]:
        manifest = await self._load_manifest(entry_id)
        if manifest is None:
            return []
        try:
            return [
                SupportingDocument.model_validate(row)
                for row in manifest.get("documents", [])
            ]
        except (TypeError, ValidationError) as exc:
            raise SourceUnavailableError(
                f"Malformed documents for entry {entry_id}: {exc}"
            ) from exc

    async def fetch(self, document: SupportingDocument) -> SourceDocument:
        try:
            path = _resolve_within(self._root, self._bucket, document.file_path)
            data = await anyio.to_thread.run_sync(path.read_bytes)
        except (OSError, ValueError) as exc:
            raise SourceUnavailableError(
                f"Failed to read source {self._bucket}/{document.file_path}: {exc}"
            ) from exc
        return SourceDocument(pdf_bytes=data, known_hash=document.file_hash)


class FilesystemArtifactStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def _write_sync(self, target: Path, data: bytes, overwrite: bool) -> WriteOutcome:
        target.parent.mkdir(parents=True, exist_ok=True)

        if not overwrite:
            try:
                with target.open("xb") as handle:
                    handle.write(data)
            except FileExistsError:
                return WriteOutcome.CONFLICT
            return WriteOutcome.WRITTEN

        tmp = _temp_sibling(target)
        tmp.write_bytes(data)
        os.replace(tmp, target)
        return WriteOutcome.WRITTEN

    async def write(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        overwrite: bool,
    ) -> WriteOutcome:
        try:
            target = _resolve_within(self._root, bucket, path)
            return await anyio.to_thread.run_sync(self._write_sync, target, data, overwrite)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to write {bucket}/{path}: {exc}") from exc


class FilesystemVerifiedRegistry:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = asyncio.Lock()

    def _row_path(self, entry_id: str) -> Path:
        return _resolve_within(self._root, "registry", f"{entry_id}.json")

    def _read_sync(self, entry_id: str) -> Optional[VerifiedRecord]:
        path = self._row_path(entry_id)
        if not path.is_file():
            return None
        return VerifiedRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _write_sync(self, record: VerifiedRecord) -> None:
        path = self._row_path(record.entry_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_sibling(path)
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def find(self, entry_id: str) -> Optional[VerifiedRecord]:
        try:
            return await anyio.to_thread.run_sync(self._read_sync, entry_id)
        except (OSError, ValueError, ValidationError) as exc:
            raise RegistryError(f"Failed to read registry row {entry_id}: {exc}") from exc

    async def upsert(
        self,
        record: VerifiedRecord,
        *,
        precondition: Optional[RegistryPrecondition] = None,
    ) -> VerifiedRecord:
        async with self._lock:
            try:
                existing = await anyio.to_thread.run_sync(self._read_sync, record.entry_id)
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
                await anyio.to_thread.run_sync(self._write_sync, record)
            except (OSError, ValueError) as exc:
                raise RegistryError(
                    f"Failed to write registry row {record.entry_id}: {exc}"
                ) from exc

        logger.debug(
            "registry_row_written",
            extra={"entry_id": record.entry_id, "record_id": record.record_id},
        )
        return record
