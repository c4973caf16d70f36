import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from minio.error import S3Error

from podstage.config import Settings
from podstage.schemas.job_spec import JobSpec, Stage


@pytest.fixture(autouse=True)
def restore_podstage_logger():
    """setup_logging() reconfigures the package logger; undo it after each test."""
    logger = logging.getLogger("podstage")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def s3_error(code: str) -> S3Error:
    return S3Error(
        code=code,
        message=f"{code} raised by fake client",
        resource="/fake",
        request_id="req-1",
        host_id="host-1",
        response=MagicMock(),
    )


class FakeMinioClient:
    """
    Minimal stand-in for minio.Minio serving a directory tree.

    Top-level directories are buckets, files below them are keys, the same
    way the embedded server serves the context dir.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.calls: list[tuple[str, dict]] = []

    def get_object(self, bucket_name: str, object_name: str):
        self.calls.append(("get_object", {"bucket_name": bucket_name, "object_name": object_name}))
        bucket = self.root / bucket_name
        if not bucket.is_dir():
            raise s3_error("NoSuchBucket")
        path = bucket / object_name
        if not path.is_file():
            raise s3_error("NoSuchKey")
        data = path.read_bytes()
        response = MagicMock()
        response.read.side_effect = lambda amt=None: data
        return response

    def list_objects(self, bucket_name: str, prefix=None, recursive=False):
        self.calls.append(("list_objects", {"bucket_name": bucket_name, "prefix": prefix, "recursive": recursive}))
        bucket = self.root / bucket_name
        if not bucket.is_dir():
            raise s3_error("NoSuchBucket")
        for dirpath, dirnames, filenames in os.walk(bucket):
            dirnames.sort()
            for name in sorted(filenames):
                path = Path(dirpath) / name
                key = path.relative_to(bucket).as_posix()
                if prefix and not key.startswith(prefix):
                    continue
                stat = path.stat()
                yield SimpleNamespace(
                    object_name=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )


@pytest.fixture
def fake_minio():
    """Factory for a FakeMinioClient over a directory."""
    return FakeMinioClient


@pytest.fixture
def srv_dir(tmp_path):
    """An empty context directory."""
    srv = tmp_path / "srv"
    srv.mkdir()
    return srv


@pytest.fixture
def settings(srv_dir):
    return Settings(srv_dir=srv_dir, arch="x86_64", poll_interval=0.05)


@pytest.fixture
def write_build(srv_dir):
    """
    Write a build the way a worker does: builds.json plus meta.json.

    Usage:
        write_build("36.1", {"ostree": "fedora-36.1-ostree.x86_64.tar"})
    """

    def _write(build_id: str, images: dict, arch: str = "x86_64", extra_files=(), artifact_files=True):
        build_dir = srv_dir / "builds" / build_id / arch
        build_dir.mkdir(parents=True, exist_ok=True)
        meta = {
            "buildid": build_id,
            "coreos-assembler.basearch": arch,
            "images": {
                name: {"path": path, "sha256": "0" * 64, "size": 4}
                for name, path in images.items()
            },
        }
        (build_dir / "meta.json").write_text(json.dumps(meta))
        (srv_dir / "builds" / "builds.json").write_text(json.dumps({
            "schema-version": "1.0.0",
            "builds": [{"id": build_id, "arches": [arch]}],
            "timestamp": "2026-10-19T00:00:00Z",
        }))
        if artifact_files:
            for path in images.values():
                (build_dir / Path(path).name).write_bytes(b"data")
        for name in extra_files:
            (build_dir / name).write_text("{}")
        return build_dir

    return _write


@pytest.fixture
def make_job_spec():
    """Build a JobSpec from (id, execution_order, require_artifacts) tuples."""

    def _make(*stages, strict: bool = False) -> JobSpec:
        spec = JobSpec()
        spec.job.strict = strict
        for stage_id, order, *rest in stages:
            spec.add_stage(Stage(
                id=stage_id,
                execution_order=order,
                commands=[f"echo {stage_id}"],
                require_artifacts=list(rest[0]) if rest else [],
            ))
        return spec

    return _make


@pytest.fixture
def make_s3_error():
    return s3_error
