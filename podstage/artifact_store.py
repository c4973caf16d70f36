"""
ArtifactStore - read named objects from a file tree or an object store.

The store exposes two operations that look the same regardless of backend:
- open(path): a binary stream for "bucket/key" (or a path below the file root)
- list(path): a lazy iterator of ObjectInfo descriptors, recursive

Storage backends:
- File-based (the context directory; each top-level directory is a bucket)
- Object-store based (a pre-authenticated minio client)

Exactly one backend is active at a time. The StoreSelector owned by a run's
context switches between them; call sites never choose a backend themselves.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, BinaryIO, Iterator, Optional

from minio.error import S3Error

from podstage.errors import NoClientError, ObjectNotFoundError
from podstage.utils import iter_files

if TYPE_CHECKING:
    from minio import Minio

logger = logging.getLogger(__name__)

# S3 error codes that mean "the object is not there (yet)"
_MISSING_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchObject"})


@dataclass(frozen=True)
class ObjectInfo:
    """
    Descriptor of a stored object, shaped the same for both backends.

    Attributes:
        name: Base name of the object
        path: Full path ("bucket/key" or path relative to the file root)
        size: Size in bytes
        mod_time: Last modification time (UTC)
        is_dir: Always False for remote objects
    """
    name: str
    path: str
    size: int
    mod_time: datetime
    is_dir: bool = False


def split_bucket_path(path: str) -> tuple[str, str]:
    """
    Split "bucket/some/key" into ("bucket", "some/key").

    The first path segment is the bucket, the remainder the object key.
    """
    parts = path.strip("/").split("/")
    return parts[0], "/".join(parts[1:])


class ArtifactStore(ABC):
    """
    Abstract base class for artifact storage backends.

    Implementations must provide:
    - open: a readable binary stream for a path
    - list: descriptors for every object below a path
    """

    @abstractmethod
    def open(self, path: str) -> BinaryIO:
        """
        Open an object for reading.

        Args:
            path: Object path, first segment is the bucket

        Returns:
            A binary stream; the caller closes it

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    def list(self, path: str) -> Iterator[ObjectInfo]:
        """
        List objects below a path, recursively.

        Args:
            path: Directory (file backend) or bucket/prefix (object store)

        Returns:
            Lazy iterator of ObjectInfo
        """
        pass

    def read_bytes(self, path: str) -> bytes:
        """Read a whole object."""
        stream = self.open(path)
        try:
            return stream.read()
        finally:
            stream.close()


class FileArtifactStore(ArtifactStore):
    """
    File-based implementation of ArtifactStore.

    Paths are resolved relative to root. Listing yields regular files only.
    """

    def __init__(self, root: Path | str):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def open(self, path: str) -> BinaryIO:
        full = self._root / path
        try:
            return open(full, "rb")
        except (FileNotFoundError, NotADirectoryError) as e:
            raise ObjectNotFoundError(f"No such object: {path}") from e

    def list(self, path: str) -> Iterator[ObjectInfo]:
        base = self._root / path
        if base.is_file():
            candidates: Iterator[Path] = iter([base])
        elif base.is_dir():
            candidates = iter_files(base)
        else:
            return
        for file_path in candidates:
            stat = file_path.stat()
            yield ObjectInfo(
                name=file_path.name,
                path=file_path.relative_to(self._root).as_posix(),
                size=stat.st_size,
                mod_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )


class _ObjectStream:
    """Readable wrapper that releases the HTTP connection of a minio response."""

    def __init__(self, response):
        self._response = response

    def read(self, amt: Optional[int] = None) -> bytes:
        if amt is None:
            return self._response.read()
        return self._response.read(amt)

    def close(self) -> None:
        try:
            self._response.close()
        finally:
            self._response.release_conn()

    def __enter__(self) -> "_ObjectStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class MinioArtifactStore(ArtifactStore):
    """
    Object-store implementation of ArtifactStore backed by a minio client.

    The client must be authenticated by the caller.
    """

    def __init__(self, client: Optional["Minio"] = None):
        self._client = client

    @property
    def client(self) -> Optional["Minio"]:
        return self._client

    def attach(self, client: "Minio") -> None:
        """Attach the client used for all subsequent calls."""
        self._client = client

    def _require_client(self) -> "Minio":
        if self._client is None:
            raise NoClientError()
        return self._client

    def open(self, path: str) -> BinaryIO:
        logger.debug("opening remote file %s", path)
        client = self._require_client()
        bucket, key = split_bucket_path(path)
        try:
            response = client.get_object(bucket_name=bucket, object_name=key)
        except S3Error as e:
            if e.code in _MISSING_CODES:
                raise ObjectNotFoundError(f"No such object: {path}") from e
            raise
        return _ObjectStream(response)  # type: ignore[return-value]

    def list(self, path: str) -> Iterator[ObjectInfo]:
        logger.debug("requesting remote listing %s", path)
        client = self._require_client()
        bucket, prefix = split_bucket_path(path)
        if prefix:
            prefix = prefix + "/"
        try:
            for obj in client.list_objects(bucket_name=bucket, prefix=prefix or None, recursive=True):
                key = obj.object_name
                yield ObjectInfo(
                    name=PurePosixPath(key).name,
                    path=f"{bucket}/{key}",
                    size=obj.size or 0,
                    mod_time=obj.last_modified or datetime.fromtimestamp(0, tz=timezone.utc),
                    is_dir=False,
                )
        except S3Error as e:
            if e.code == "NoSuchBucket":
                return
            raise


class StoreSelector(ArtifactStore):
    """
    Holds the single active backend for a run.

    Switching backends changes the selector's state for every caller that
    holds it. The selector starts file-backed at the given root.
    """

    def __init__(self, root: Path | str):
        self._active: ArtifactStore = FileArtifactStore(root)

    @property
    def active(self) -> ArtifactStore:
        return self._active

    def use_file(self, root: Path | str) -> None:
        """Switch to the file backend rooted at root."""
        self._active = FileArtifactStore(root)
        logger.info("Artifact store switched to file backend at %s", root)

    def use_minio(self, client: "Minio") -> None:
        """
        Switch to the object-store backend.

        Raises:
            ValueError: If client is None
        """
        if client is None:
            raise ValueError("minio client must not be None")
        self._active = MinioArtifactStore(client)
        logger.info("Artifact store switched to object-store backend")

    def open(self, path: str) -> BinaryIO:
        return self._active.open(path)

    def list(self, path: str) -> Iterator[ObjectInfo]:
        return self._active.list(path)
