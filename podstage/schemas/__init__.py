"""
podstage.schemas - Data structures for the orchestration layer.

JobSpec -> Stage -> WorkSpec -> RemoteFile / Return

Lifecycle:
1. JobSpec: stages with execution orders and required artifacts (YAML)
2. BuildMeta: the build record workers keep updating in the object store
3. RemoteFile: an object a worker must fetch before running
4. WorkSpec: the payload of one dispatched worker
"""

from .job_spec import (
    JobSpec,
    Job,
    Recipe,
    Stage,
    ARTIFACT_SHORTHANDS,
    get_artifact_shorthand_names,
)
from .build_meta import (
    Artifact,
    BuildMeta,
    BuildsIndex,
    BUILDS_BUCKET,
    read_build,
    read_builds_index,
    build_path,
)
from .remote_file import RemoteFile, Return
from .work_spec import WorkSpec, WORK_SPEC_ENV_VAR

__all__ = [
    # Job specification
    "JobSpec",
    "Job",
    "Recipe",
    "Stage",
    "ARTIFACT_SHORTHANDS",
    "get_artifact_shorthand_names",
    # Build metadata
    "Artifact",
    "BuildMeta",
    "BuildsIndex",
    "BUILDS_BUCKET",
    "read_build",
    "read_builds_index",
    "build_path",
    # Handoff
    "RemoteFile",
    "Return",
    "WorkSpec",
    "WORK_SPEC_ENV_VAR",
]
