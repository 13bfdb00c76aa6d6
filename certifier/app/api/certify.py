"""
Certification endpoints.

Clients name a minute-book entry; locating the source, composing the
certification page, resolving the self-referential digest, storing the
artifact and recording it in the registry happen exclusively inside the
service.

    POST /certify/minute-book-entry   certify (or reuse) an entry
    POST /certify/inspect             inspect a certified PDF
"""

import logging
from typing import Annotated, Optional

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from certifier.app.coordinator.orchestrator import CertificationOrchestrator
from certifier.app.core.config import Settings
from certifier.app.schemas.outcomes import (
    CertificationConflict,
    CertificationFailure,
    CertificationNotFound,
    CertificationSuccess,
    CertifyRequest,
    CertifyResponse,
    ErrorCode,
)
from certifier.app.services.composer import CompositionError
from certifier.app.services.inspection import (
    CertificationInspection,
    inspect_certified_pdf,
)

logger = logging.getLogger("certifier.api")

router = APIRouter(tags=["Certification"])

_FAILURE_STATUS = {
    ErrorCode.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SOURCE_HASH_MISMATCH: status.HTTP_409_CONFLICT,
    ErrorCode.SOURCE_TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.COMPOSITION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.RESOLVE_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.DOWNLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.UPLOAD_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.REGISTRY_READ_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.REGISTRY_WRITE_FAILED: status.HTTP_502_BAD_GATEWAY,
}

# =============================================================================
# Dependency providers
# =============================================================================

def get_orchestrator(request: Request) -> CertificationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("orchestrator not initialized")
    return orchestrator


def get_app_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("settings not initialized")
    return settings


# =============================================================================
# POST /certify/minute-book-entry
# =============================================================================

@router.post(
    "/minute-book-entry",
    summary="Certify a minute book entry (append a QR certification page)",
    response_model=CertifyResponse,
    response_model_by_alias=True,
    responses={
        404: {"description": "Entry or source PDF not found"},
        409: {"description": "Certified artifact already exists; reissue required"},
        400: {"description": "Invalid request"},
        422: {"description": "Source PDF cannot be certified"},
        502: {"description": "Storage or registry failure (retryable)"},
        504: {"description": "Resolver deadline exceeded (retryable)"},
    },
)
async def certify_minute_book_entry(
    body: CertifyRequest,
    orchestrator: Annotated[
        CertificationOrchestrator,
        Depends(get_orchestrator),
    ],
) -> JSONResponse:
    outcome = await orchestrator.certify(body)

    if isinstance(outcome, CertificationSuccess):
        status_code = status.HTTP_200_OK
    elif isinstance(outcome, CertificationNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(outcome, CertificationConflict):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(outcome, CertificationFailure):
        status_code = _FAILURE_STATUS.get(
            outcome.error_code,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    else:
        raise TypeError(f"Unhandled certification outcome: {type(outcome).__name__}")

    return JSONResponse(
        status_code=status_code,
        content=outcome.to_response().to_wire(),
    )


# =============================================================================
# POST /certify/inspect
# =============================================================================

@router.post(
    "/inspect",
    summary="Inspect a certified PDF against its hash-first verification URL",
    response_model=CertificationInspection,
    responses={
        413: {"description": "Payload too large"},
        415: {"description": "Unsupported media type"},
        422: {"description": "Unreadable PDF"},
    },
)
async def inspect_certified(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
    verify_base_url: Annotated[
        Optional[str],
        Query(description="Override of the configured verification base URL"),
    ] = None,
) -> CertificationInspection:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("application/pdf"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Only 'application/pdf' bodies are accepted.",
        )

    pdf_bytes = await request.body()
    if not pdf_bytes:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Empty request body.",
        )
    if len(pdf_bytes) > settings.max_pdf_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"PDF exceeds {settings.max_pdf_size_mb} MB.",
        )

    base = verify_base_url or settings.verify_base_url

    try:
        return await anyio.to_thread.run_sync(
            inspect_certified_pdf,
            pdf_bytes,
            base,
            settings.qr_options,
        )
    except CompositionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
