from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class CertificationEventType(str, Enum):
    """
    Audit events emitted after a certification request settles.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    CERTIFICATION_ISSUED = "certification_issued"
    CERTIFICATION_REUSED = "certification_reused"
    CERTIFICATION_CONFLICT = "certification_conflict"
    CERTIFICATION_FAILED = "certification_failed"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class CertificationEvent(BaseModel):
    """
    An immutable audit observation of a certification outcome.

    Events are:
    - strictly observational
    - transport-agnostic
    - never able to change an outcome
    """

    event_id: UUID = Field(default_factory=uuid4)
    entry_id: str = Field(..., description="The certified minute-book entry")
    actor_id: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: CertificationEventType

    # Optional contextual metadata (digest, path, error code, etc.)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
