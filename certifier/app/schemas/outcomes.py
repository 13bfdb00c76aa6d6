"""
Certification request and outcome contract.

Outcomes are a tagged union discriminated on ``status``. Callers match
on the concrete type; every outcome renders the same wire response
shape through ``to_response``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from certifier.app.schemas.certification import Lane


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    SOURCE_TOO_LARGE = "SOURCE_TOO_LARGE"
    SOURCE_HASH_MISMATCH = "SOURCE_HASH_MISMATCH"
    COMPOSITION_FAILED = "COMPOSITION_FAILED"
    RESOLVE_TIMEOUT = "RESOLVE_TIMEOUT"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    ALREADY_EXISTS_CONFLICT = "ALREADY_EXISTS_CONFLICT"
    REGISTRY_READ_FAILED = "REGISTRY_READ_FAILED"
    REGISTRY_WRITE_FAILED = "REGISTRY_WRITE_FAILED"


_WIRE = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class CertifyRequest(BaseModel):
    """
    Certification request.

    Identifiers are validated by the orchestrator, not here, so that a
    malformed identifier surfaces as an ``INVALID_REQUEST`` outcome.
    """

    entry_id: str
    actor_id: Optional[str] = None
    lane: Optional[Lane] = None
    force_reissue: bool = False
    verify_base_url: Optional[str] = None

    model_config = _WIRE


# ---------------------------------------------------------------------------
# Wire response
# ---------------------------------------------------------------------------

class CertifiedPointer(BaseModel):
    bucket: str
    path: str
    hash: str
    byte_size: Optional[int] = None

    model_config = _WIRE


class CertifyResponse(BaseModel):
    ok: bool
    reused: Optional[bool] = None
    verified_document_id: Optional[str] = None
    verify_url: Optional[str] = None
    certified: Optional[CertifiedPointer] = None
    error_code: Optional[ErrorCode] = None
    details: Optional[Any] = None

    model_config = _WIRE

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class CertificationSuccess(BaseModel):
    status: Literal["success"] = "success"
    entry_id: str
    reused: bool
    verified_document_id: str
    verify_url: str
    certified: CertifiedPointer
    converged: Optional[bool] = Field(
        None, description="Resolver diagnostic; None when reused"
    )
    forced_alignment: Optional[bool] = Field(
        None, description="Resolver diagnostic; None when reused"
    )

    model_config = ConfigDict(frozen=True)

    def to_response(self) -> CertifyResponse:
        return CertifyResponse(
            ok=True,
            reused=self.reused,
            verified_document_id=self.verified_document_id,
            verify_url=self.verify_url,
            certified=self.certified,
        )


class CertificationConflict(BaseModel):
    """Destination already holds an artifact and reissue was not requested."""

    status: Literal["conflict"] = "conflict"
    entry_id: str
    error_code: ErrorCode = ErrorCode.ALREADY_EXISTS_CONFLICT
    bucket: str
    path: str

    model_config = ConfigDict(frozen=True)

    def to_response(self) -> CertifyResponse:
        return CertifyResponse(
            ok=False,
            error_code=self.error_code,
            details={
                "bucket": self.bucket,
                "path": self.path,
                "hint": "Retry with forceReissue to overwrite.",
            },
        )


class CertificationNotFound(BaseModel):
    status: Literal["not_found"] = "not_found"
    entry_id: str
    error_code: ErrorCode
    details: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_response(self) -> CertifyResponse:
        return CertifyResponse(ok=False, error_code=self.error_code, details=self.details)


class CertificationFailure(BaseModel):
    """
    Any other failure.

    ``retryable`` marks transient I/O failures; certification is a pure
    function of its inputs, so a full retry recomputes identical bytes.
    """

    status: Literal["failure"] = "failure"
    entry_id: str
    error_code: ErrorCode
    details: Optional[Any] = None
    retryable: bool = False

    model_config = ConfigDict(frozen=True)

    def to_response(self) -> CertifyResponse:
        return CertifyResponse(ok=False, error_code=self.error_code, details=self.details)


CertificationOutcome = Annotated[
    Union[
        CertificationSuccess,
        CertificationConflict,
        CertificationNotFound,
        CertificationFailure,
    ],
    Field(discriminator="status"),
]
