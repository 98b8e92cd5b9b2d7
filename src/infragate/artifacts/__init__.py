"""Write-once, content-addressed artifact storage for stage hand-off."""

from infragate.artifacts.models import ArtifactRef
from infragate.artifacts.store import (
    ArtifactBackend,
    ArtifactIntegrityError,
    ArtifactNotFoundError,
    ArtifactStoreClient,
    FileSystemArtifactBackend,
    InMemoryArtifactBackend,
    content_hash,
)

__all__ = [
    "ArtifactRef",
    "ArtifactBackend",
    "ArtifactIntegrityError",
    "ArtifactNotFoundError",
    "ArtifactStoreClient",
    "FileSystemArtifactBackend",
    "InMemoryArtifactBackend",
    "content_hash",
]
