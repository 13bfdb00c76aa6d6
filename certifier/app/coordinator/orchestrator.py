"""
Certification orchestrator.

Thin coordination over the injected collaborators. The orchestrator MUST
NOT compose, hash or inspect documents itself; that is the resolver's
job. Its responsibilities are:

- validating input before any expensive work
- resolving the source pointer and the lane
- enforcing the reuse / reissue policy
- sequencing download -> resolve -> upload -> registry upsert
- mapping collaborator failures onto typed outcomes
- publishing an audit event on a detached task

Concurrency:
    Requests for different entries share no mutable state. Two requests
    for the same entry race safely: the destination write is exclusive
    unless reissue was requested, and the registry upsert is conditional
    on the row read before composing. The loser receives a Conflict
    outcome instead of silently replacing the winner's artifact.

Determinism:
    The certification timestamp printed on the page comes from the
    previous certification or the source upload time, so a retry or a
    reissue of an unchanged source reproduces the same bytes and digest.
    The clock is consulted only when neither is known.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set
from uuid import uuid4

import anyio

from certifier.app.adapters.base import (
    ArtifactStore,
    RegistryConflictError,
    RegistryError,
    SourceRepository,
    SourceUnavailableError,
    StorageError,
    VerifiedRegistry,
)
from certifier.app.core.config import Settings
from certifier.app.events import (
    CertificationEvent,
    CertificationEventEmitter,
    CertificationEventType,
    NullEventEmitter,
)
from certifier.app.schemas.certification import (
    DEFAULT_ENTRY_TITLE,
    CertificationMetadata,
    CertificationResult,
    DocumentClass,
    Lane,
)
from certifier.app.schemas.outcomes import (
    CertificationConflict,
    CertificationFailure,
    CertificationNotFound,
    CertificationOutcome,
    CertificationSuccess,
    CertifiedPointer,
    CertifyRequest,
    ErrorCode,
)
from certifier.app.schemas.registry import (
    VERIFICATION_LEVEL_CERTIFIED,
    MinuteBookEntry,
    RegistryPrecondition,
    SupportingDocument,
    VerifiedRecord,
    WriteOutcome,
)
from certifier.app.services.composer import CompositionError, DocumentComposer
from certifier.app.services.resolver import resolve
from certifier.app.utils.hashing import compute_digest, digest_prefix, is_hex_digest
from certifier.app.utils.urls import build_verify_url, verify_url_builder

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ------------------------------------------------------------------
# Pure helpers
# ------------------------------------------------------------------

def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))


def map_document_class(
    entry_type: Optional[str],
    domain_key: Optional[str],
) -> DocumentClass:
    """
    Map minute-book entry signals onto the registry document classes.

    Corporate profiles, formation documents and filings default to
    ``report``.
    """
    kind = (entry_type or "").strip().lower()
    domain = (domain_key or "").strip().lower()

    if kind == "resolution" or "resolution" in domain:
        return DocumentClass.RESOLUTION
    if kind == "minutes" or "minutes" in domain:
        return DocumentClass.MINUTES
    if "tax" in domain:
        return DocumentClass.TAX_FILING
    if "invoice" in domain:
        return DocumentClass.INVOICE
    if "certificate" in domain:
        return DocumentClass.CERTIFICATE
    return DocumentClass.REPORT


def select_primary_pdf(
    documents: List[SupportingDocument],
) -> Optional[SupportingDocument]:
    """
    Choose the evidentiary PDF of an entry.

    Preference: registry-visible first, then highest version, then the
    most recent upload. Only ``.pdf`` pointers qualify.
    """

    def _rank(document: SupportingDocument):
        uploaded = (
            document.uploaded_at.timestamp()
            if document.uploaded_at is not None
            else float("-inf")
        )
        return (document.registry_visible, document.version, uploaded)

    for document in sorted(documents, key=_rank, reverse=True):
        if document.is_pdf:
            return document
    return None


def certified_path(prefix: str, entry_id: str, digest: str) -> str:
    """Content-addressed destination: ``<prefix>/<entry_id>-<12 hex>.pdf``."""
    return f"{prefix}/{entry_id}-{digest_prefix(digest, 12)}.pdf"


def _normalize_known_hash(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = value.strip().lower()
    for prefix in ("sha-256:", "sha256:"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    return text if is_hex_digest(text) else None


def stable_certified_at(
    existing: Optional[VerifiedRecord],
    document: SupportingDocument,
) -> Optional[datetime]:
    """
    Certification timestamp derived from stored state, not from the clock.

    A previous certification of the entry wins, then the source upload
    time. Returns None when neither is known. Naive values are taken as UTC.
    """
    previous = existing.certified_at if existing is not None else None
    for candidate in (previous, document.uploaded_at):
        if candidate is not None:
            if candidate.tzinfo is None:
                return candidate.replace(tzinfo=timezone.utc)
            return candidate
    return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------------

class CertificationOrchestrator:
    """
    Coordinates one certification request end to end.

    Collaborators are injected; there are no module-level clients.
    """

    def __init__(
        self,
        settings: Settings,
        sources: SourceRepository,
        store: ArtifactStore,
        registry: VerifiedRegistry,
        emitter: Optional[CertificationEventEmitter] = None,
        composer: Optional[DocumentComposer] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._sources = sources
        self._store = store
        self._registry = registry
        self._emitter = emitter or NullEventEmitter()
        self._composer = composer or DocumentComposer(
            qr_options=settings.qr_options,
            issuer_name=settings.issuer_name,
        )
        self._clock = clock
        self._pending_audits: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def certify(self, request: CertifyRequest) -> CertificationOutcome:
        """Certify a minute-book entry. Never raises for expected failures."""
        outcome = await self._certify(request)
        self._publish_audit(request, outcome)
        return outcome

    async def drain(self) -> None:
        """Wait for all pending audit publications."""
        if self._pending_audits:
            await asyncio.gather(*list(self._pending_audits))

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def _certify(self, request: CertifyRequest) -> CertificationOutcome:
        entry_id = (request.entry_id or "").strip()
        actor_id = (request.actor_id or "").strip() or None

        # ----------------------------------------------------------
        # 1. Input validation
        # ----------------------------------------------------------
        if not is_uuid(entry_id):
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.INVALID_REQUEST,
                details="entry_id must be a UUID",
            )
        if actor_id is not None and not is_uuid(actor_id):
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.INVALID_REQUEST,
                details="actor_id must be a UUID",
            )

        verify_base = request.verify_base_url or self._settings.verify_base_url
        try:
            build_url = verify_url_builder(verify_base)
        except ValueError as exc:
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.INVALID_REQUEST,
                details=str(exc),
            )

        # ----------------------------------------------------------
        # 2. Entry, lane and source pointer
        # ----------------------------------------------------------
        try:
            entry = await self._sources.get_entry(entry_id)
            documents = (
                await self._sources.list_documents(entry_id) if entry is not None else []
            )
        except SourceUnavailableError as exc:
            logger.warning(
                "source_lookup_failed",
                extra={"entry_id": entry_id, "error": str(exc)},
            )
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.DOWNLOAD_FAILED,
                details=str(exc),
                retryable=True,
            )

        if entry is None:
            return CertificationNotFound(
                entry_id=entry_id,
                error_code=ErrorCode.ENTRY_NOT_FOUND,
                details=f"No minute book entry {entry_id}",
            )

        lane = self._resolve_lane(request, entry)
        bucket = self._settings.lane_bucket(lane)

        source_pointer = select_primary_pdf(documents)
        if source_pointer is None:
            return CertificationNotFound(
                entry_id=entry_id,
                error_code=ErrorCode.SOURCE_NOT_FOUND,
                details="No PDF supporting document found for this entry.",
            )

        # ----------------------------------------------------------
        # 3. Reuse policy
        # ----------------------------------------------------------
        try:
            existing = await self._registry.find(entry_id)
        except RegistryError as exc:
            logger.warning(
                "registry_read_failed",
                extra={"entry_id": entry_id, "error": str(exc)},
            )
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.REGISTRY_READ_FAILED,
                details=str(exc),
                retryable=True,
            )

        if (
            existing is not None
            and existing.is_certified
            and existing.storage_bucket == bucket
            and not request.force_reissue
        ):
            logger.info(
                "certification_reused",
                extra={"entry_id": entry_id, "record_id": existing.record_id},
            )
            return CertificationSuccess(
                entry_id=entry_id,
                reused=True,
                verified_document_id=existing.record_id,
                verify_url=build_url(existing.file_hash),
                certified=CertifiedPointer(
                    bucket=existing.storage_bucket,
                    path=existing.storage_path,
                    hash=existing.file_hash,
                    byte_size=existing.byte_size,
                ),
            )

        # ----------------------------------------------------------
        # 4. Download
        # ----------------------------------------------------------
        try:
            source = await self._sources.fetch(source_pointer)
        except SourceUnavailableError as exc:
            logger.warning(
                "source_download_failed",
                extra={"entry_id": entry_id, "path": source_pointer.file_path},
            )
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.DOWNLOAD_FAILED,
                details=str(exc),
                retryable=True,
            )

        if len(source.pdf_bytes) > self._settings.max_pdf_bytes:
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.SOURCE_TOO_LARGE,
                details=f"Source exceeds {self._settings.max_pdf_size_mb} MB",
            )

        known_hash = _normalize_known_hash(source.known_hash)
        if known_hash is not None:
            actual = compute_digest(source.pdf_bytes)
            if actual != known_hash:
                return CertificationFailure(
                    entry_id=entry_id,
                    error_code=ErrorCode.SOURCE_HASH_MISMATCH,
                    details={"expected": known_hash, "actual": actual},
                )

        # ----------------------------------------------------------
        # 5. Resolve
        # ----------------------------------------------------------
        document_class = map_document_class(entry.entry_type, entry.domain_key)
        title = entry.title or DEFAULT_ENTRY_TITLE

        metadata = CertificationMetadata(
            title=title,
            entity_label=entry.entity_slug,
            lane=lane,
            document_class=document_class,
            operator_label=actor_id or self._settings.default_operator_label,
            # Printed on the page, so it must not vary between retries.
            certified_at=stable_certified_at(existing, source_pointer) or self._clock(),
        )

        try:
            result = await self._run_resolver(source.pdf_bytes, build_url, metadata)
        except CompositionError as exc:
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.COMPOSITION_FAILED,
                details=str(exc),
            )
        except TimeoutError:
            logger.warning("resolver_timeout", extra={"entry_id": entry_id})
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.RESOLVE_TIMEOUT,
                details=f"Resolver exceeded {self._settings.resolve_timeout_seconds}s",
                retryable=True,
            )

        # ----------------------------------------------------------
        # 6. Upload
        # ----------------------------------------------------------
        path = certified_path(self._settings.lane_prefix(lane), entry_id, result.digest)

        try:
            written = await self._store.write(
                bucket,
                path,
                result.pdf_bytes,
                overwrite=request.force_reissue,
            )
        except StorageError as exc:
            logger.warning(
                "certified_upload_failed",
                extra={"entry_id": entry_id, "bucket": bucket, "path": path},
            )
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.UPLOAD_FAILED,
                details=str(exc),
                retryable=True,
            )

        if written is WriteOutcome.CONFLICT:
            logger.info(
                "certified_destination_conflict",
                extra={"entry_id": entry_id, "bucket": bucket, "path": path},
            )
            return CertificationConflict(entry_id=entry_id, bucket=bucket, path=path)

        # ----------------------------------------------------------
        # 7. Registry
        # ----------------------------------------------------------
        now = self._clock()
        record = VerifiedRecord(
            record_id=existing.record_id if existing is not None else str(uuid4()),
            entry_id=entry_id,
            entity_slug=entry.entity_slug,
            title=title,
            document_class=document_class,
            lane=lane,
            storage_bucket=bucket,
            storage_path=path,
            file_hash=result.digest,
            byte_size=result.byte_size,
            verification_level=VERIFICATION_LEVEL_CERTIFIED,
            certified_at=metadata.certified_at,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )

        # Without reissue the row must still be what step 3 read.
        precondition = None
        if not request.force_reissue:
            precondition = RegistryPrecondition(
                file_hash=existing.file_hash if existing is not None else None
            )

        try:
            stored = await self._registry.upsert(record, precondition=precondition)
        except RegistryConflictError:
            logger.info(
                "registry_row_conflict",
                extra={"entry_id": entry_id, "bucket": bucket, "path": path},
            )
            return CertificationConflict(entry_id=entry_id, bucket=bucket, path=path)
        except RegistryError as exc:
            logger.warning(
                "registry_write_failed",
                extra={"entry_id": entry_id, "path": path},
            )
            return CertificationFailure(
                entry_id=entry_id,
                error_code=ErrorCode.REGISTRY_WRITE_FAILED,
                details=str(exc),
                retryable=True,
            )

        logger.info(
            "certification_issued",
            extra={
                "entry_id": entry_id,
                "record_id": stored.record_id,
                "bucket": bucket,
                "path": path,
                "converged": result.converged,
                "forced_alignment": result.forced_alignment,
                "compositions": result.compositions,
            },
        )

        return CertificationSuccess(
            entry_id=entry_id,
            reused=False,
            verified_document_id=stored.record_id,
            verify_url=result.verification_url,
            certified=CertifiedPointer(
                bucket=bucket,
                path=path,
                hash=result.digest,
                byte_size=result.byte_size,
            ),
            converged=result.converged,
            forced_alignment=result.forced_alignment,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_lane(request: CertifyRequest, entry: MinuteBookEntry) -> Lane:
        if request.lane is not None:
            return request.lane
        if entry.is_test is not None:
            return Lane.SANDBOX if entry.is_test else Lane.PRODUCTION
        return Lane.PRODUCTION

    async def _run_resolver(
        self,
        source_bytes: bytes,
        build_url: Callable[[str], str],
        metadata: CertificationMetadata,
    ) -> CertificationResult:
        """Run the CPU-bound resolver in a worker thread, optionally under a deadline."""
        call = functools.partial(
            resolve,
            source_bytes,
            build_url,
            metadata,
            self._settings.max_fast_iterations,
            self._settings.max_polish_iterations,
            composer=self._composer.compose,
        )

        timeout = self._settings.resolve_timeout_seconds
        if timeout is None:
            return await anyio.to_thread.run_sync(call)

        with anyio.fail_after(timeout):
            return await anyio.to_thread.run_sync(call, abandon_on_cancel=True)

    # ------------------------------------------------------------------
    # Audit side channel
    # ------------------------------------------------------------------

    def _publish_audit(self, request: CertifyRequest, outcome: CertificationOutcome) -> None:
        event = CertificationEvent(
            entry_id=outcome.entry_id,
            actor_id=request.actor_id,
            event_type=_event_type_for(outcome),
            details=_event_details(outcome),
        )
        task = asyncio.create_task(self._emit_safely(event))
        self._pending_audits.add(task)
        task.add_done_callback(self._pending_audits.discard)

    async def _emit_safely(self, event: CertificationEvent) -> None:
        try:
            await self._emitter.emit(event)
        except Exception:
            # Audit is observational only; the outcome is already settled.
            logger.exception(
                "audit_emit_failed",
                extra={"entry_id": event.entry_id, "event_type": event.event_type.value},
            )


def _event_type_for(outcome: CertificationOutcome) -> CertificationEventType:
    if isinstance(outcome, CertificationSuccess):
        return (
            CertificationEventType.CERTIFICATION_REUSED
            if outcome.reused
            else CertificationEventType.CERTIFICATION_ISSUED
        )
    if isinstance(outcome, CertificationConflict):
        return CertificationEventType.CERTIFICATION_CONFLICT
    return CertificationEventType.CERTIFICATION_FAILED


def _event_details(outcome: CertificationOutcome) -> dict:
    if isinstance(outcome, CertificationSuccess):
        return {
            "verified_document_id": outcome.verified_document_id,
            "bucket": outcome.certified.bucket,
            "path": outcome.certified.path,
            "hash": outcome.certified.hash,
            "forced_alignment": outcome.forced_alignment,
        }
    if isinstance(outcome, CertificationConflict):
        return {"bucket": outcome.bucket, "path": outcome.path}
    return {"error_code": outcome.error_code.value}
