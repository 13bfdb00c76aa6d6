from __future__ import annotations

import logging
from typing import Protocol

from certifier.app.events.models import CertificationEvent

logger = logging.getLogger("certifier.audit")


class CertificationEventEmitter(Protocol):
    """
    Interface for publishing certification audit events.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - observational only

    The orchestrator runs ``emit`` on a detached task and logs any
    exception it raises; emission can never fail a request.
    """

    async def emit(self, event: CertificationEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when:
    - audit publishing is disabled
    - tests that do not care about events
    """

    async def emit(self, event: CertificationEvent) -> None:
        return


class LoggingEventEmitter:
    """Writes each event as a structured log record."""

    async def emit(self, event: CertificationEvent) -> None:
        logger.info(
            event.event_type.value,
            extra={
                "event_id": str(event.event_id),
                "entry_id": event.entry_id,
                "actor_id": event.actor_id,
                "details": event.details or {},
            },
        )
