from .base import (
    ArtifactStore,
    RegistryConflictError,
    RegistryError,
    SourceRepository,
    SourceUnavailableError,
    StorageError,
    VerifiedRegistry,
)
from .filesystem import (
    FilesystemArtifactStore,
    FilesystemSourceRepository,
    FilesystemVerifiedRegistry,
)
from .memory import (
    InMemoryArtifactStore,
    InMemorySourceRepository,
    InMemoryVerifiedRegistry,
)

__all__ = [
    "ArtifactStore",
    "RegistryConflictError",
    "RegistryError",
    "SourceRepository",
    "SourceUnavailableError",
    "StorageError",
    "VerifiedRegistry",
    "FilesystemArtifactStore",
    "FilesystemSourceRepository",
    "FilesystemVerifiedRegistry",
    "InMemoryArtifactStore",
    "InMemorySourceRepository",
    "InMemoryVerifiedRegistry",
]
