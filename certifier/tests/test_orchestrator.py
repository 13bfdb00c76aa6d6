import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from certifier.app.adapters import (
    InMemoryArtifactStore,
    InMemorySourceRepository,
    InMemoryVerifiedRegistry,
    RegistryConflictError,
    RegistryError,
    SourceUnavailableError,
)
from certifier.app.coordinator.orchestrator import (
    CertificationOrchestrator,
    certified_path,
    is_uuid,
    map_document_class,
    select_primary_pdf,
    stable_certified_at,
)
from certifier.app.core.config import Settings
from certifier.app.events import CertificationEventType, MemoryQueueEventEmitter
from certifier.app.schemas.certification import CertificationMetadata, DocumentClass, Lane
from certifier.app.schemas.outcomes import (
    CertificationConflict,
    CertificationFailure,
    CertificationNotFound,
    CertificationSuccess,
    CertifyRequest,
    ErrorCode,
)
from certifier.app.schemas.registry import (
    MinuteBookEntry,
    RegistryPrecondition,
    SupportingDocument,
    VerifiedRecord,
)
from certifier.app.services.composer import DocumentComposer
from certifier.app.services.inspection import extract_certification_page_text
from certifier.app.utils.hashing import compute_digest

from certifier.tests.fixtures.clock import AdvancingClock
from certifier.tests.fixtures.pdf_factory import (
    not_a_pdf,
    page_count,
    source_pdf,
)

pytestmark = pytest.mark.anyio

ENTRY_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"
ACTOR_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
BASE = "https://registry.example.org/verify.html"
UPLOADED_AT = datetime(2025, 2, 3, 14, 5, 9, tzinfo=timezone.utc)


# ------------------------------------------------------------------
# Harness
# ------------------------------------------------------------------

class Harness:
    def __init__(self, settings=None, emitter=None, composer=None, registry=None, sources=None):
        self.settings = settings or Settings(
            verify_base_url=BASE,
            max_fast_iterations=2,
            max_polish_iterations=1,
        )
        self.sources = sources or InMemorySourceRepository()
        self.store = InMemoryArtifactStore()
        self.registry = registry or InMemoryVerifiedRegistry()
        self.emitter = emitter
        self.clock = AdvancingClock()
        self.orchestrator = CertificationOrchestrator(
            settings=self.settings,
            sources=self.sources,
            store=self.store,
            registry=self.registry,
            emitter=emitter,
            composer=composer,
            clock=self.clock,
        )

    def add_entry(
        self,
        pdf_bytes=None,
        file_hash="auto",
        uploaded_at=UPLOADED_AT,
        **entry_fields,
    ):
        pdf_bytes = source_pdf(page_count=1) if pdf_bytes is None else pdf_bytes
        if file_hash == "auto":
            file_hash = compute_digest(pdf_bytes)

        fields = dict(
            entry_id=ENTRY_ID,
            entity_slug="holdings-co",
            title="Board Resolution 2025-014",
            entry_type="resolution",
            domain_key="governance",
            is_test=False,
        )
        fields.update(entry_fields)

        document = SupportingDocument(
            file_path=f"holdings-co/{ENTRY_ID}/resolution.pdf",
            file_hash=file_hash,
            registry_visible=True,
            version=1,
            uploaded_at=uploaded_at,
        )
        self.sources.add_entry(MinuteBookEntry(**fields), {document: pdf_bytes})
        return pdf_bytes

    async def certify(self, **overrides):
        values = dict(entry_id=ENTRY_ID, actor_id=ACTOR_ID)
        values.update(overrides)
        return await self.orchestrator.certify(CertifyRequest(**values))


class FailingReadRegistry(InMemoryVerifiedRegistry):
    async def find(self, entry_id):
        raise RegistryError("registry unavailable")


class UnreadableSources(InMemorySourceRepository):
    async def get_entry(self, entry_id):
        raise SourceUnavailableError("manifest is corrupt")


class RaisingEmitter:
    async def emit(self, event):
        raise RuntimeError("audit sink down")


class SlowComposer(DocumentComposer):
    def compose(self, source_bytes, verification_url, metadata):
        time.sleep(0.5)
        return super().compose(source_bytes, verification_url, metadata)


# ------------------------------------------------------------------
# Issuance
# ------------------------------------------------------------------

async def test_issues_certified_artifact():
    harness = Harness()
    harness.add_entry()

    outcome = await harness.certify()

    assert isinstance(outcome, CertificationSuccess)
    assert outcome.reused is False
    assert outcome.converged != outcome.forced_alignment

    pointer = outcome.certified
    assert pointer.bucket == "governance_truth"
    assert pointer.path == f"truth/uploads/{ENTRY_ID}-{pointer.hash[:12]}.pdf"
    assert outcome.verify_url == f"{BASE}?hash={pointer.hash}"

    stored = harness.store.read(pointer.bucket, pointer.path)
    assert compute_digest(stored) == pointer.hash
    assert len(stored) == pointer.byte_size
    assert page_count(stored) == 2

    record = harness.registry.records[ENTRY_ID]
    assert record.record_id == outcome.verified_document_id
    assert record.file_hash == pointer.hash
    assert record.document_class is DocumentClass.RESOLUTION
    assert record.lane is Lane.PRODUCTION
    assert record.created_by == ACTOR_ID


async def test_operator_falls_back_to_service_label():
    harness = Harness()
    harness.add_entry()

    outcome = await harness.certify(actor_id=None)

    stored = harness.store.read(outcome.certified.bucket, outcome.certified.path)
    assert "Registry Service" in extract_certification_page_text(stored)


async def test_known_hash_with_algorithm_prefix_is_accepted():
    harness = Harness()
    pdf_bytes = source_pdf()
    harness.add_entry(pdf_bytes, file_hash="sha256:" + compute_digest(pdf_bytes).upper())

    outcome = await harness.certify()

    assert isinstance(outcome, CertificationSuccess)


# ------------------------------------------------------------------
# Reuse and reissue
# ------------------------------------------------------------------

async def test_second_request_reuses_existing_certification():
    harness = Harness()
    harness.add_entry()

    first = await harness.certify()
    second = await harness.certify()

    assert second.reused is True
    assert second.verified_document_id == first.verified_document_id
    assert second.certified == first.certified
    assert second.verify_url == first.verify_url
    assert len(harness.store.objects) == 1


async def test_force_reissue_overwrites_and_keeps_record_id():
    harness = Harness()
    harness.add_entry()

    first = await harness.certify()
    second = await harness.certify(force_reissue=True)

    assert isinstance(second, CertificationSuccess)
    assert second.reused is False
    assert second.verified_document_id == first.verified_document_id
    assert second.certified == first.certified
    assert len(harness.registry.records) == 1
    assert len(harness.store.objects) == 1


async def test_reissue_reuses_recorded_timestamp_without_upload_time():
    harness = Harness()
    harness.add_entry(uploaded_at=None)

    first = await harness.certify()
    harness.clock.now += timedelta(days=30)
    second = await harness.certify(force_reissue=True)

    assert second.certified.hash == first.certified.hash
    assert len(harness.store.objects) == 1
    record = harness.registry.records[ENTRY_ID]
    assert record.certified_at == datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


async def test_certification_page_shows_source_upload_time():
    harness = Harness()
    harness.add_entry()

    outcome = await harness.certify()

    stored = harness.store.read(outcome.certified.bucket, outcome.certified.path)
    assert "2025-02-03 14:05:09 UTC" in extract_certification_page_text(stored)
    assert harness.registry.records[ENTRY_ID].certified_at == UPLOADED_AT


async def test_untitled_entry_uses_default_title():
    harness = Harness()
    harness.add_entry(title=None)

    outcome = await harness.certify()

    stored = harness.store.read(outcome.certified.bucket, outcome.certified.path)
    assert "Minute Book Filing" in extract_certification_page_text(stored)
    assert harness.registry.records[ENTRY_ID].title == "Minute Book Filing"


# ------------------------------------------------------------------
# Concurrent first-time certification
# ------------------------------------------------------------------

@pytest.mark.parametrize("uploaded_at", [UPLOADED_AT, None])
async def test_concurrent_first_certifications_admit_one_winner(uploaded_at):
    harness = Harness()
    harness.add_entry(uploaded_at=uploaded_at)

    outcomes = await asyncio.gather(harness.certify(), harness.certify())

    winners = [o for o in outcomes if isinstance(o, CertificationSuccess)]
    losers = [o for o in outcomes if isinstance(o, CertificationConflict)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert winners[0].reused is False

    record = harness.registry.records[ENTRY_ID]
    assert record.file_hash == winners[0].certified.hash
    assert record.storage_path == winners[0].certified.path


async def test_concurrent_requests_with_upload_time_share_one_artifact():
    harness = Harness()
    harness.add_entry()

    await asyncio.gather(harness.certify(), harness.certify())

    assert len(harness.store.objects) == 1


async def test_registry_precondition_rejects_changed_row():
    registry = InMemoryVerifiedRegistry()
    record = VerifiedRecord(
        record_id="rec-1",
        entry_id=ENTRY_ID,
        entity_slug="holdings-co",
        title="Board Resolution 2025-014",
        document_class=DocumentClass.RESOLUTION,
        lane=Lane.PRODUCTION,
        storage_bucket="governance_truth",
        storage_path="truth/uploads/a.pdf",
        file_hash="a" * 64,
    )

    await registry.upsert(record, precondition=RegistryPrecondition())
    with pytest.raises(RegistryConflictError):
        await registry.upsert(record, precondition=RegistryPrecondition())

    updated = record.model_copy(update={"file_hash": "b" * 64})
    stored = await registry.upsert(
        updated, precondition=RegistryPrecondition(file_hash="a" * 64)
    )
    assert stored.file_hash == "b" * 64


async def test_existing_destination_without_reissue_is_a_conflict():
    harness = Harness()
    harness.add_entry()

    first = await harness.certify()
    harness.registry.records.clear()

    second = await harness.certify()

    assert isinstance(second, CertificationConflict)
    assert second.error_code is ErrorCode.ALREADY_EXISTS_CONFLICT
    assert second.path == first.certified.path
    assert harness.registry.records == {}


async def test_reuse_requires_same_lane_bucket():
    harness = Harness()
    harness.add_entry()

    first = await harness.certify()
    second = await harness.certify(lane=Lane.SANDBOX)

    assert second.reused is False
    assert second.certified.bucket == "governance_sandbox"
    assert second.certified.path.startswith("sandbox/uploads/")
    assert second.verified_document_id == first.verified_document_id


# ------------------------------------------------------------------
# Lane resolution
# ------------------------------------------------------------------

async def test_test_entries_default_to_sandbox_lane():
    harness = Harness()
    harness.add_entry(is_test=True)

    outcome = await harness.certify()

    assert outcome.certified.bucket == "governance_sandbox"
    assert harness.registry.records[ENTRY_ID].lane is Lane.SANDBOX


async def test_explicit_lane_overrides_entry_hint():
    harness = Harness()
    harness.add_entry(is_test=True)

    outcome = await harness.certify(lane=Lane.PRODUCTION)

    assert outcome.certified.bucket == "governance_truth"


# ------------------------------------------------------------------
# Validation and lookup failures
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "overrides",
    [
        {"entry_id": "not-a-uuid"},
        {"entry_id": ""},
        {"actor_id": "operator-7"},
        {"verify_base_url": "verify.html"},
    ],
)
async def test_invalid_request(overrides):
    harness = Harness()
    harness.add_entry()

    outcome = await harness.certify(**overrides)

    assert isinstance(outcome, CertificationFailure)
    assert outcome.error_code is ErrorCode.INVALID_REQUEST
    assert harness.store.objects == {}


async def test_unknown_entry():
    harness = Harness()

    outcome = await harness.certify()

    assert isinstance(outcome, CertificationNotFound)
    assert outcome.error_code is ErrorCode.ENTRY_NOT_FOUND


async def test_entry_without_pdf_source():
    harness = Harness()
    document = SupportingDocument(file_path="holdings-co/notes.docx", registry_visible=True)
    harness.sources.add_entry(
        MinuteBookEntry(entry_id=ENTRY_ID, entity_slug="holdings-co"),
        {document: b"docx"},
    )

    outcome = await harness.certify()

    assert isinstance(outcome, CertificationNotFound)
    assert outcome.error_code is ErrorCode.SOURCE_NOT_FOUND


# ------------------------------------------------------------------
# Source failures
# ------------------------------------------------------------------

async def test_download_failure_is_retryable():
    harness = Harness()
    harness.add_entry()
    harness.sources.fail_fetch = True

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.DOWNLOAD_FAILED
    assert outcome.retryable is True


async def test_source_hash_mismatch():
    harness = Harness()
    harness.add_entry(file_hash="0" * 64)

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.SOURCE_HASH_MISMATCH
    assert outcome.details["expected"] == "0" * 64
    assert harness.store.objects == {}


async def test_oversized_source():
    settings = Settings(verify_base_url=BASE, max_pdf_size_mb=1)
    harness = Harness(settings=settings)
    harness.add_entry(b"%PDF" + b"0" * (1024 * 1024), file_hash=None)

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.SOURCE_TOO_LARGE


async def test_unreadable_source_fails_composition():
    harness = Harness()
    harness.add_entry(not_a_pdf())

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.COMPOSITION_FAILED
    assert outcome.retryable is False


async def test_resolver_deadline():
    settings = Settings(
        verify_base_url=BASE,
        max_fast_iterations=2,
        max_polish_iterations=1,
        resolve_timeout_seconds=0.05,
    )
    harness = Harness(settings=settings, composer=SlowComposer())
    harness.add_entry()

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.RESOLVE_TIMEOUT
    assert outcome.retryable is True


# ------------------------------------------------------------------
# Destination failures
# ------------------------------------------------------------------

async def test_upload_failure_is_retryable_and_skips_registry():
    harness = Harness()
    harness.add_entry()
    harness.store.fail_write = True

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.UPLOAD_FAILED
    assert outcome.retryable is True
    assert harness.registry.records == {}


async def test_registry_read_failure():
    harness = Harness(registry=FailingReadRegistry())
    harness.add_entry()

    outcome = await harness.certify()

    assert outcome.error_code is ErrorCode.REGISTRY_READ_FAILED
    assert harness.store.objects == {}


async def test_registry_write_failure_leaves_artifact_for_retry():
    harness = Harness()
    harness.add_entry()
    harness.registry.fail_upsert = True

    failed = await harness.certify()
    assert failed.error_code is ErrorCode.REGISTRY_WRITE_FAILED
    assert len(harness.store.objects) == 1
    ((bucket, path),) = harness.store.objects

    harness.registry.fail_upsert = False
    retried = await harness.certify(force_reissue=True)

    assert isinstance(retried, CertificationSuccess)
    assert (retried.certified.bucket, retried.certified.path) == (bucket, path)
    assert len(harness.store.objects) == 1


async def test_source_lookup_failure_is_typed():
    harness = Harness(sources=UnreadableSources())

    outcome = await harness.certify()

    assert isinstance(outcome, CertificationFailure)
    assert outcome.error_code is ErrorCode.DOWNLOAD_FAILED
    assert outcome.retryable is True


# ------------------------------------------------------------------
# Audit side channel
# ------------------------------------------------------------------

async def test_audit_events_follow_outcomes():
    emitter = MemoryQueueEventEmitter()
    harness = Harness(emitter=emitter)
    harness.add_entry()

    issued = await harness.certify()
    await harness.certify()
    await harness.orchestrator.drain()

    events = emitter.drain_nowait()
    assert [event.event_type for event in events] == [
        CertificationEventType.CERTIFICATION_ISSUED,
        CertificationEventType.CERTIFICATION_REUSED,
    ]
    assert events[0].entry_id == ENTRY_ID
    assert events[0].actor_id == ACTOR_ID
    assert events[0].details["hash"] == issued.certified.hash


async def test_failures_are_audited():
    emitter = MemoryQueueEventEmitter()
    harness = Harness(emitter=emitter)

    await harness.certify()
    await harness.orchestrator.drain()

    (event,) = emitter.drain_nowait()
    assert event.event_type is CertificationEventType.CERTIFICATION_FAILED
    assert event.details == {"error_code": "ENTRY_NOT_FOUND"}


async def test_audit_failure_never_changes_outcome():
    harness = Harness(emitter=RaisingEmitter())
    harness.add_entry()

    outcome = await harness.certify()
    await harness.orchestrator.drain()

    assert isinstance(outcome, CertificationSuccess)


# ------------------------------------------------------------------
# Pure helpers
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "entry_type, domain_key, expected",
    [
        ("resolution", None, DocumentClass.RESOLUTION),
        (None, "board_resolutions", DocumentClass.RESOLUTION),
        ("Minutes", None, DocumentClass.MINUTES),
        ("filing", "tax_returns", DocumentClass.TAX_FILING),
        (None, "vendor_invoices", DocumentClass.INVOICE),
        (None, "share_certificates", DocumentClass.CERTIFICATE),
        ("formation", "corporate_profile", DocumentClass.REPORT),
        (None, None, DocumentClass.REPORT),
    ],
)
def test_map_document_class(entry_type, domain_key, expected):
    assert map_document_class(entry_type, domain_key) is expected


def test_select_primary_pdf_prefers_visible_then_version_then_recent():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    hidden_latest = SupportingDocument(file_path="a.pdf", version=9, uploaded_at=now)
    visible_v1 = SupportingDocument(file_path="b.pdf", registry_visible=True, version=1)
    visible_v2_old = SupportingDocument(
        file_path="c.pdf", registry_visible=True, version=2, uploaded_at=now,
    )
    visible_v2_new = SupportingDocument(
        file_path="d.PDF", registry_visible=True, version=2,
        uploaded_at=now + timedelta(days=1),
    )
    visible_docx = SupportingDocument(file_path="e.docx", registry_visible=True, version=5)

    documents = [hidden_latest, visible_v1, visible_v2_old, visible_v2_new, visible_docx]

    assert select_primary_pdf(documents) == visible_v2_new
    assert select_primary_pdf([hidden_latest, visible_docx]) == hidden_latest
    assert select_primary_pdf([visible_docx]) is None
    assert select_primary_pdf([]) is None


def test_certified_path_is_content_addressed():
    digest = compute_digest(b"artifact")
    assert certified_path("truth/uploads", ENTRY_ID, digest) == (
        f"truth/uploads/{ENTRY_ID}-{digest[:12]}.pdf"
    )


def test_is_uuid():
    assert is_uuid(ENTRY_ID)
    assert is_uuid(ENTRY_ID.upper())
    assert not is_uuid("0f8fad5b-d9cb-469f-a165")
    assert not is_uuid(None)


def test_stable_certified_at_prefers_recorded_timestamp():
    recorded = datetime(2024, 11, 5, 9, 30, tzinfo=timezone.utc)
    existing = VerifiedRecord(
        record_id="rec-1",
        entry_id=ENTRY_ID,
        entity_slug="holdings-co",
        title="Board Resolution 2025-014",
        document_class=DocumentClass.RESOLUTION,
        lane=Lane.PRODUCTION,
        storage_bucket="governance_truth",
        storage_path="truth/uploads/a.pdf",
        file_hash="a" * 64,
        certified_at=recorded,
    )
    uploaded = SupportingDocument(file_path="a.pdf", uploaded_at=UPLOADED_AT)

    assert stable_certified_at(existing, uploaded) == recorded
    assert stable_certified_at(None, uploaded) == UPLOADED_AT
    unrecorded = existing.model_copy(update={"certified_at": None})
    assert stable_certified_at(unrecorded, uploaded) == UPLOADED_AT


def test_stable_certified_at_treats_naive_times_as_utc():
    naive = SupportingDocument(file_path="a.pdf", uploaded_at=datetime(2025, 2, 3, 14, 5, 9))

    assert stable_certified_at(None, naive) == UPLOADED_AT


def test_stable_certified_at_is_unknown_without_inputs():
    assert stable_certified_at(None, SupportingDocument(file_path="a.pdf")) is None


def test_certification_metadata_default_title():
    metadata = CertificationMetadata(
        entity_label="holdings-co",
        operator_label="Registry Service",
        certified_at=UPLOADED_AT,
    )

    assert metadata.title == "Minute Book Filing"
