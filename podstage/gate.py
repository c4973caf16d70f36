"""
Readiness gate - decides when a stage's required artifacts exist.

Stages never talk to each other. A stage that needs artifacts produced by an
earlier group waits until the build metadata written by those workers lists
every artifact it requires. The gate is a polling predicate: callers invoke
check() on a fixed interval until it reports ready or the run terminates.

Each check also accumulates the remote files the stage's worker must fetch:
every meta*.json of the current build plus one reference per required
artifact.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from podstage.artifact_store import ArtifactStore
from podstage.errors import ArtifactNotFoundError
from podstage.schemas.build_meta import BUILDS_BUCKET, BuildMeta, build_path, read_build
from podstage.schemas.remote_file import RemoteFile

if TYPE_CHECKING:
    from podstage.minio_server import MinioServer

logger = logging.getLogger(__name__)

META_PREFIX = "meta"
META_SUFFIX = ".json"


@dataclass(frozen=True)
class GateResult:
    """
    Outcome of one readiness check.

    Attributes:
        ready: True when every required artifact resolved
        remote_files: Metadata and artifact references for the worker
        build_id: Build ID the lookups were keyed by
    """
    ready: bool
    remote_files: tuple[RemoteFile, ...] = field(default_factory=tuple)
    build_id: str = ""


def is_meta_file(name: str) -> bool:
    """True for build metadata file names (meta*.json)."""
    return name.startswith(META_PREFIX) and name.endswith(META_SUFFIX)


class ReadinessGate:
    """
    Polling predicate over the build metadata.

    One gate is shared by all stage tasks of a run. The current build ID is
    lock-protected: when a worker initializes or rotates the build ID, the
    gate adopts the newest one for all later lookups.

    Usage:
        gate = ReadinessGate(store, arch="x86_64", server=server)
        result = gate.check(["ostree"])
        if result.ready:
            work = work.with_remote_files(result.remote_files, result.build_id)
    """

    def __init__(
        self,
        store: ArtifactStore,
        arch: str,
        build_id: str = "",
        server: Optional["MinioServer"] = None,
    ):
        self._store = store
        self._arch = arch
        self._build_id = build_id
        self._server = server
        self._lock = threading.Lock()

    @property
    def build_id(self) -> str:
        with self._lock:
            return self._build_id

    @property
    def arch(self) -> str:
        return self._arch

    def check(self, require_artifacts: Iterable[str], stage_id: str = "") -> GateResult:
        """
        Check whether the required artifacts exist.

        A missing or unreadable metadata record is "not ready", never an
        error. The result is computed completely on every call.

        Args:
            require_artifacts: Artifact names the stage needs
            stage_id: Stage the check is for (logging only)

        Returns:
            GateResult with the remote files resolved by this attempt
        """
        required = list(require_artifacts)
        meta = read_build(self._store, self.build_id, self._arch)
        build_id = self._adopt(meta, stage_id)

        remote_files: list[RemoteFile] = []
        if build_id:
            remote_files.extend(self._meta_files(build_id, stage_id))

        ready = True
        for name in required:
            if meta is None:
                logger.debug(
                    "No build metadata yet, waiting for %s", name,
                    extra={"stage": stage_id},
                )
                ready = False
                continue
            try:
                artifact = meta.get_artifact(name)
            except ArtifactNotFoundError:
                logger.debug(
                    "Artifact %s not in build %s yet", name, build_id,
                    extra={"stage": stage_id},
                )
                ready = False
                continue
            remote_files.append(RemoteFile(
                bucket=BUILDS_BUCKET,
                object=f"{build_path(build_id, self._arch)}/{artifact.basename}",
                server=self._server,
                artifact=artifact,
            ))

        return GateResult(ready=ready, remote_files=tuple(remote_files), build_id=build_id)

    def _adopt(self, meta: Optional[BuildMeta], stage_id: str) -> str:
        with self._lock:
            if meta is not None and meta.build_id and meta.build_id != self._build_id:
                logger.info(
                    "Found new build ID: %s", meta.build_id,
                    extra={"stage": stage_id, "metadata": {"previous": self._build_id}},
                )
                self._build_id = meta.build_id
            return self._build_id

    def _meta_files(self, build_id: str, stage_id: str) -> list[RemoteFile]:
        prefix = f"{BUILDS_BUCKET}/{build_path(build_id, self._arch)}"
        files = []
        for info in self._store.list(prefix):
            if info.path != f"{prefix}/{info.name}" or not is_meta_file(info.name):
                logger.debug("Excluding %s from remote files", info.path, extra={"stage": stage_id})
                continue
            files.append(RemoteFile(
                bucket=BUILDS_BUCKET,
                object=f"{build_path(build_id, self._arch)}/{info.name}",
                server=self._server,
            ))
        return files
