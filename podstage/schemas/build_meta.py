"""
Build metadata - the evolving record of an in-progress build.

Worker stages write two kinds of JSON documents into the "builds" tree:
- builds/builds.json: index of builds, newest first, with their arches
- builds/<build_id>/<arch>/meta.json: the build record, listing artifacts

Both are read through an ArtifactStore so the same code works against the
local context directory and the object store.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Optional

from podstage.artifact_store import ArtifactStore
from podstage.errors import ArtifactNotFoundError, ObjectNotFoundError

logger = logging.getLogger(__name__)

BUILDS_BUCKET = "builds"
BUILDS_JSON = "builds.json"
META_JSON = "meta.json"


@dataclass(frozen=True)
class Artifact:
    """A named build artifact and its path relative to the build directory."""
    name: str
    path: str
    sha256: str = ""
    size: int = 0

    @property
    def basename(self) -> str:
        return PurePosixPath(self.path).name

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path}
        if self.sha256:
            result["sha256"] = self.sha256
        if self.size:
            result["size"] = self.size
        return result


@dataclass(frozen=True)
class BuildMeta:
    """
    The build record from meta.json.

    Attributes:
        build_id: Build identifier ("buildid")
        arch: Architecture ("coreos-assembler.basearch")
        artifacts: Artifacts by name ("images")
    """
    build_id: str
    arch: str = ""
    artifacts: dict[str, Artifact] = field(default_factory=dict)

    def get_artifact(self, name: str) -> Artifact:
        """
        Look up an artifact by name.

        Raises:
            ArtifactNotFoundError: If the record does not list the artifact
        """
        try:
            return self.artifacts[name]
        except KeyError:
            raise ArtifactNotFoundError(
                f"Artifact '{name}' is not listed in build {self.build_id}"
            ) from None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildMeta":
        images = data.get("images") or {}
        build_id = data.get("buildid", "")
        if not isinstance(build_id, str):
            raise TypeError(f"buildid must be a string, got {type(build_id).__name__}")
        return cls(
            build_id=build_id,
            arch=data.get("coreos-assembler.basearch", ""),
            artifacts={
                name: Artifact(
                    name=name,
                    path=info.get("path", ""),
                    sha256=info.get("sha256", ""),
                    size=int(info.get("size", 0) or 0),
                )
                for name, info in images.items()
                if isinstance(info, dict) and info.get("path")
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "buildid": self.build_id,
            "coreos-assembler.basearch": self.arch,
            "images": {name: a.to_dict() for name, a in self.artifacts.items()},
        }


@dataclass(frozen=True)
class BuildsIndex:
    """The builds/builds.json index. Builds are listed newest first."""
    schema_version: str = ""
    builds: tuple[tuple[str, tuple[str, ...]], ...] = ()
    timestamp: str = ""

    def latest(self, arch: str) -> Optional[str]:
        """Return the newest build ID that includes arch."""
        for build_id, arches in self.builds:
            if arch in arches:
                return build_id
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildsIndex":
        return cls(
            schema_version=data.get("schema-version", ""),
            builds=tuple(
                (b.get("id", ""), tuple(b.get("arches") or ()))
                for b in data.get("builds") or []
            ),
            timestamp=data.get("timestamp", ""),
        )


def build_path(build_id: str, arch: str) -> str:
    """Key prefix of a build inside the builds bucket: <build_id>/<arch>."""
    return f"{build_id}/{arch}"


# Valid JSON with an unexpected shape (lists for mappings, strings for numbers)
_SHAPE_ERRORS = (AttributeError, TypeError, ValueError)


def _read_json(store: ArtifactStore, path: str) -> Optional[dict[str, Any]]:
    try:
        raw = store.read_bytes(path)
    except ObjectNotFoundError:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        # Workers may be mid-write; the next poll sees the finished document
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def read_builds_index(store: ArtifactStore) -> Optional[BuildsIndex]:
    """Read builds/builds.json, or None when it does not exist yet."""
    path = f"{BUILDS_BUCKET}/{BUILDS_JSON}"
    data = _read_json(store, path)
    if data is None:
        return None
    try:
        return BuildsIndex.from_dict(data)
    except _SHAPE_ERRORS as e:
        logger.warning("Ignoring malformed %s: %s", path, e)
        return None


def read_build(store: ArtifactStore, build_id: str, arch: str) -> Optional[BuildMeta]:
    """
    Read the build record for build_id/arch.

    An empty build_id resolves to the newest build for arch listed in
    builds/builds.json.

    Args:
        store: Store to read from
        build_id: Build identifier, or "" for the latest
        arch: Architecture name

    Returns:
        The BuildMeta, or None if no record exists yet
    """
    if not build_id:
        index = read_builds_index(store)
        if index is None:
            return None
        latest = index.latest(arch)
        if latest is None:
            return None
        build_id = latest

    path = f"{BUILDS_BUCKET}/{build_path(build_id, arch)}/{META_JSON}"
    data = _read_json(store, path)
    if data is None:
        return None
    try:
        meta = BuildMeta.from_dict(data)
    except _SHAPE_ERRORS as e:
        logger.warning("Ignoring malformed %s: %s", path, e)
        return None
    if not meta.build_id:
        meta = BuildMeta(build_id=build_id, arch=meta.arch or arch, artifacts=meta.artifacts)
    return meta
