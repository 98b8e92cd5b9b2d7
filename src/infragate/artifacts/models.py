"""Artifact reference model."""

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRef(BaseModel):
    """Reference to an immutable artifact produced by a stage.

    An artifact is identified by (run_id, stage, content_hash). The hash is
    the hex SHA-256 digest of the payload, so identical content written twice
    under the same run and stage yields an identical reference.

    Attributes:
        run_id: Run that produced the artifact.
        stage: Stage that produced the artifact.
        content_hash: Hex SHA-256 digest of the payload.
        size_bytes: Payload length.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(..., min_length=1)
    stage: str = Field(..., min_length=1)
    content_hash: str = Field(..., min_length=64, max_length=64)
    size_bytes: int = Field(default=0, ge=0)

    @property
    def key(self) -> str:
        """Storage key for the artifact."""
        return f"{self.run_id}/{self.stage}/{self.content_hash}"
