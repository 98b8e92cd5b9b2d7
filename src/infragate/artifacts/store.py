"""Content-addressed artifact hand-off between stages.

The ArtifactStoreClient hashes payloads on write and delegates storage to
an ArtifactBackend. Artifacts are write-once: there is no mutation or
deletion API, and garbage collection is left to the storage policy of the
backend's owner. Because keys are content-addressed per run and stage,
concurrent unsynchronized writers are safe.

Backends:
- InMemoryArtifactBackend: Dictionary storage for local use and tests
- FileSystemArtifactBackend: One file per artifact under a base directory
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

from infragate.artifacts.models import ArtifactRef


logger = logging.getLogger(__name__)


class ArtifactNotFoundError(Exception):
    """Raised when an artifact reference has no stored payload.

    Attributes:
        ref: The reference that could not be resolved.
    """

    def __init__(self, ref: ArtifactRef):
        self.ref = ref
        super().__init__(f"Artifact not found: {ref.key}")


class ArtifactIntegrityError(Exception):
    """Raised when a stored payload does not match its content hash.

    Attributes:
        ref: The reference whose payload failed verification.
        actual_hash: Digest of the payload actually read.
    """

    def __init__(self, ref: ArtifactRef, actual_hash: str):
        self.ref = ref
        self.actual_hash = actual_hash
        super().__init__(
            f"Artifact {ref.key} failed integrity check: got {actual_hash}"
        )


@runtime_checkable
class ArtifactBackend(Protocol):
    """Storage contract for write-once artifact payloads."""

    async def write_if_absent(self, key: str, data: bytes) -> bool:
        """Store data under key unless the key already exists.

        Returns:
            True if the payload was written, False if it already existed.
        """
        ...

    async def read(self, key: str) -> Optional[bytes]:
        """Return the payload stored under key, or None."""
        ...


def content_hash(data: bytes) -> str:
    """Return the hex SHA-256 digest used to address a payload."""
    return hashlib.sha256(data).hexdigest()


class ArtifactStoreClient:
    """Versioned, content-addressed artifact client used by the engine.

    Example:
        >>> client = ArtifactStoreClient(InMemoryArtifactBackend())
        >>> ref = await client.put("run-1", "plan", b"{...}")
        >>> data = await client.get(ref)
    """

    def __init__(self, backend: ArtifactBackend):
        self.backend = backend

    async def put(self, run_id: str, stage: str, data: bytes) -> ArtifactRef:
        """Store a stage's payload and return its reference.

        Idempotent: writing identical content for the same run and stage
        returns the same reference and stores nothing new.

        Args:
            run_id: Run producing the artifact.
            stage: Stage producing the artifact.
            data: Payload bytes.

        Returns:
            ArtifactRef addressing the payload.
        """
        ref = ArtifactRef(
            run_id=run_id,
            stage=stage,
            content_hash=content_hash(data),
            size_bytes=len(data),
        )
        written = await self.backend.write_if_absent(ref.key, data)

        logger.info(
            "Stored artifact" if written else "Artifact already stored",
            extra={
                "run_id": run_id,
                "stage": stage,
                "content_hash": ref.content_hash,
                "size_bytes": ref.size_bytes,
            },
        )
        return ref

    async def get(self, ref: ArtifactRef) -> bytes:
        """Load and verify an artifact payload.

        Raises:
            ArtifactNotFoundError: If nothing is stored for the reference.
            ArtifactIntegrityError: If the stored bytes do not match the hash.
        """
        data = await self.backend.read(ref.key)
        if data is None:
            raise ArtifactNotFoundError(ref)

        actual = content_hash(data)
        if actual != ref.content_hash:
            raise ArtifactIntegrityError(ref, actual)
        return data


class InMemoryArtifactBackend:
    """Dictionary-backed artifact storage."""

    def __init__(self) -> None:
        self._objects: Dict[str, bytes] = {}

    async def write_if_absent(self, key: str, data: bytes) -> bool:
        if key in self._objects:
            return False
        self._objects[key] = bytes(data)
        return True

    async def read(self, key: str) -> Optional[bytes]:
        return self._objects.get(key)

    def __len__(self) -> int:
        return len(self._objects)


class FileSystemArtifactBackend:
    """Stores each artifact as a file under a base directory.

    Files are published with a hard link, so the first writer wins and existing
    artifacts are never overwritten.

    Attributes:
        base_path: Root directory for artifact files.
    """

    FILE_PERMISSIONS = 0o444

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def _path_for(self, key: str) -> Path:
        return self.base_path.joinpath(*key.split("/"))

    async def write_if_absent(self, key: str, data: bytes) -> bool:
        path = self._path_for(key)
        if path.exists():
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp_path.write_bytes(data)
        try:
            os.link(tmp_path, path)
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)

        path.chmod(self.FILE_PERMISSIONS)
        return True

    async def read(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
