"""
Centralized configuration management for the Certifier service.

Pydantic v2 settings management to enforce strict validation and
fast-failure on invalid configuration.

Configuration is read-only at runtime. None of these values influence
the certified bytes in non-deterministic ways: iteration budgets and QR
options are part of the composition contract and must be stable across
processes that certify the same registry.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from certifier.app.schemas.certification import Lane
from certifier.app.services.qr import ErrorCorrectionLevel, QrOptions
from certifier.app.utils.urls import build_verify_url


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

BucketName = Annotated[
    str,
    Field(
        pattern=r"^[a-z0-9][a-z0-9_-]{1,62}$",
        description="Storage namespace, lower-case alphanumeric/underscore/hyphen",
    ),
]

PathPrefix = Annotated[
    str,
    Field(
        pattern=r"^[A-Za-z0-9_-]+(/[A-Za-z0-9_-]+)*$",
        description="Relative path prefix without leading or trailing slash",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment (``CERTIFIER_*``).
    """

    # ---------------------------------------------------------------------
    # Verification terminal
    # ---------------------------------------------------------------------

    verify_base_url: Annotated[
        str,
        Field(
            default="https://registry.example.org/verify.html",
            description=(
                "Hash-first verification terminal. The certified digest is "
                "appended as the 'hash' query parameter."
            ),
        ),
    ]

    issuer_name: Annotated[
        str,
        Field(
            default="Verified Registry",
            min_length=1,
            max_length=64,
            description="Issuer shown in the certification page title band",
        ),
    ]

    default_operator_label: Annotated[
        str,
        Field(
            default="Registry Service",
            min_length=1,
            description="Operator label used when a request carries no actor",
        ),
    ]

    # ---------------------------------------------------------------------
    # Fixed-point resolution
    # ---------------------------------------------------------------------

    max_fast_iterations: Annotated[int, Field(default=16, ge=0, le=256)]
    max_polish_iterations: Annotated[int, Field(default=6, ge=0, le=64)]

    resolve_timeout_seconds: Annotated[
        Optional[float],
        Field(
            default=None,
            gt=0,
            description=(
                "Optional deadline for one resolver run. Expiry is reported "
                "as a retryable failure."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # QR rasterization
    # ---------------------------------------------------------------------

    qr_pixels_per_module: Annotated[int, Field(default=6, ge=1, le=64)]
    qr_margin_modules: Annotated[int, Field(default=2, ge=0, le=16)]
    qr_error_correction: ErrorCorrectionLevel = "M"

    # ---------------------------------------------------------------------
    # Storage layout
    # ---------------------------------------------------------------------

    source_bucket: BucketName = "minute_book"

    production_bucket: BucketName = "governance_truth"
    production_prefix: PathPrefix = "truth/uploads"

    sandbox_bucket: BucketName = "governance_sandbox"
    sandbox_prefix: PathPrefix = "sandbox/uploads"

    storage_root: Annotated[
        Path,
        Field(
            default=Path("./var/certifier"),
            description="Root directory of the filesystem storage adapters",
        ),
    ]

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    max_pdf_size_mb: Annotated[
        int,
        Field(
            default=25,
            ge=1,
            le=100,
            description="Upper bound on source and inspected PDF size",
        ),
    ]

    model_config = SettingsConfigDict(
        env_prefix="CERTIFIER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    # ---------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ---------------------------------------------------------------------

    @field_validator("verify_base_url")
    @classmethod
    def validate_verify_base_url(cls, v: str) -> str:
        build_verify_url(v, "0")
        return v

    # ---------------------------------------------------------------------
    # Derived values
    # ---------------------------------------------------------------------

    @property
    def qr_options(self) -> QrOptions:
        return QrOptions(
            pixels_per_module=self.qr_pixels_per_module,
            margin_modules=self.qr_margin_modules,
            error_correction=self.qr_error_correction,
        )

    @property
    def max_pdf_bytes(self) -> int:
        return self.max_pdf_size_mb * 1024 * 1024

    def lane_bucket(self, lane: Lane) -> str:
        return self.production_bucket if lane is Lane.PRODUCTION else self.sandbox_bucket

    def lane_prefix(self, lane: Lane) -> str:
        return self.production_prefix if lane is Lane.PRODUCTION else self.sandbox_prefix


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()
