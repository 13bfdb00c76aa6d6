import logging

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from certifier.app.adapters import (
    FilesystemArtifactStore,
    FilesystemSourceRepository,
    FilesystemVerifiedRegistry,
)
from certifier.app.api.certify import router as certify_router
from certifier.app.coordinator.orchestrator import CertificationOrchestrator
from certifier.app.core.config import get_settings
from certifier.app.events import LoggingEventEmitter

logger = logging.getLogger("certifier.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("certifier")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - Collaborators are constructed once and injected, never global
    - Pending audit events are flushed on shutdown
    """
    logger.info(
        "certifier_startup_begin",
        extra={"service": "certifier", "version": get_app_version()},
    )

    try:
        settings = get_settings()
    except Exception:
        logger.exception("invalid_certifier_configuration")
        raise

    root = settings.storage_root

    orchestrator = CertificationOrchestrator(
        settings=settings,
        sources=FilesystemSourceRepository(root, settings.source_bucket),
        store=FilesystemArtifactStore(root),
        registry=FilesystemVerifiedRegistry(root),
        emitter=LoggingEventEmitter(),
    )

    app.state.settings = settings
    app.state.orchestrator = orchestrator

    logger.info(
        "certifier_startup_complete",
        extra={"storage_root": str(root), "verify_base_url": settings.verify_base_url},
    )

    try:
        yield
    finally:
        await orchestrator.drain()
        logger.info("certifier_shutdown_complete")


app = FastAPI(
    title="certifier",
    description="Deterministic minute book certification service",
    version=get_app_version(),
    lifespan=lifespan,
)

app.include_router(certify_router, prefix="/certify")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["*"],
)
