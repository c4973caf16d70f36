"""
Remote file references - the handoff units between orchestrator and workers.

A RemoteFile names an object (bucket + key) on the embedded object-store
server. Workers fetch every RemoteFile in their work specification before
running commands, and publish results to the Return destination.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from .build_meta import Artifact

if TYPE_CHECKING:
    from podstage.minio_server import MinioServer


def _server_dict(server: Optional["MinioServer"]) -> Optional[dict[str, Any]]:
    return server.to_dict() if server is not None else None


@dataclass(frozen=True)
class RemoteFile:
    """
    A reference to an object served by the embedded object store.

    Attributes:
        bucket: Bucket name
        object: Object key within the bucket
        server: Server that serves the object (None in dry runs)
        compressed: The object is a compressed payload to unpack
        artifact: The build artifact this object corresponds to
    """
    bucket: str
    object: str
    server: Optional["MinioServer"] = None
    compressed: bool = False
    artifact: Optional[Artifact] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.bucket, self.object)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a worker's environment."""
        result: dict[str, Any] = {
            "bucket": self.bucket,
            "object": self.object,
            "minio": _server_dict(self.server),
        }
        if self.compressed:
            result["compressed"] = True
        if self.artifact is not None:
            result["artifact"] = {"name": self.artifact.name, **self.artifact.to_dict()}
        return result


@dataclass(frozen=True)
class Return:
    """Where workers publish their results."""
    bucket: str
    server: Optional["MinioServer"] = None

    def to_dict(self) -> dict[str, Any]:
        return {"bucket": self.bucket, "minio": _server_dict(self.server)}
