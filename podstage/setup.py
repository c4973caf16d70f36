"""
One-time setup performed before the orchestration loop starts.

Setup prepares the served tree and the job specification:
- locate the job specification (local file, git repository, or empty)
- receive the binary input, unpack a source payload, pick up an embedded
  job specification
- register builds/builds.json for the workers
- add the implied stages (COSA_CMDS and *.cosa.sh scripts) unless the job
  runs in strict mode

Every step raises on failure; nothing here is retried.
"""

import logging
import shlex
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Optional

from podstage.config import BuildSpec, Settings
from podstage.errors import JobSpecError, SetupError
from podstage.schemas.build_meta import BUILDS_BUCKET, BUILDS_JSON
from podstage.schemas.job_spec import JobSpec, Stage
from podstage.schemas.remote_file import RemoteFile
from podstage.utils import copy_file_exclusive

if TYPE_CHECKING:
    from podstage.minio_server import MinioServer

logger = logging.getLogger(__name__)

SOURCE_BUCKET = "source"
SOURCE_PAYLOAD = "source.bin"
SCRIPT_PATTERN = "*.cosa.sh"
STRICT_SHELL_PREFIX = "/bin/bash -xeu -o pipefail"

ENV_STAGE_ID = "envVar"
SCRIPT_STAGE_ID = "cosa.sh"

NO_WORK_MESSAGE = """No work to do. Please define one of the following:
    - 'COSA_CMDS' environment variable with the commands to execute
    - Job specification stages in your job spec file
    - Files ending in .cosa.sh

Files can be provided in the git tree or through the binary build input."""


@dataclass
class SetupResult:
    """
    Output of setup.

    Attributes:
        job_spec: The job specification to run (possibly from the payload)
        build: Platform build, with its git source overridden when the
               embedded job spec names a repository
        remote_files: Files every worker fetches
    """
    job_spec: JobSpec
    build: Optional[BuildSpec] = None
    remote_files: list[RemoteFile] = field(default_factory=list)


def locate_job_spec(settings: Settings) -> JobSpec:
    """
    Find the job specification for a run.

    A file in the context directory wins over a repository URL. Without
    either an empty JobSpec is returned; implied stages may still fill it.

    Raises:
        JobSpecError: If the file or repository cannot be read
    """
    if settings.jobspec_path.exists():
        logger.info("Using job specification %s", settings.jobspec_path)
        return JobSpec.from_file(settings.jobspec_path)
    if settings.jobspec_url:
        return JobSpec.from_repo(settings.jobspec_url, settings.jobspec_ref, settings.jobspec_file)
    logger.info("No job specification found, starting from an empty one")
    return JobSpec()


def receive_input_binary(settings: Settings, stream: Optional[BinaryIO]) -> Optional[Path]:
    """
    Save the binary build input.

    The payload is written to <srv>/source/<asFile or source.bin>.

    Returns:
        Path of the saved payload, or None when the build has no binary input
    """
    build = settings.build
    if build is None or not build.has_binary or stream is None:
        return None

    dest = settings.srv_dir / SOURCE_BUCKET / (build.binary_as_file or SOURCE_PAYLOAD)
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with open(dest, "wb") as out:
            shutil.copyfileobj(stream, out)
    except OSError as e:
        raise SetupError(f"Failed to receive binary input: {e}") from e
    logger.info("Received binary input %s (%d bytes)", dest.name, dest.stat().st_size)
    return dest


def decompress(payload: Path, dest: Path) -> None:
    """
    Unpack a tar payload (any compression) into dest.

    Raises:
        SetupError: If the payload is not a readable archive
    """
    try:
        with tarfile.open(payload, "r:*") as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise SetupError(f"Failed to decompress {payload.name}: {e}") from e


def process_binary_input(
    settings: Settings,
    job_spec: JobSpec,
    stream: Optional[BinaryIO],
    server: Optional["MinioServer"] = None,
) -> SetupResult:
    """
    Receive the binary input and apply what it contains.

    A source.bin payload is unpacked into the context directory and served
    to workers as a compressed remote file. A job specification in the
    payload (the configured file name, or the payload itself when its name
    ends in "yaml") replaces job_spec, and its recipe repository replaces
    the build's git source.

    Returns:
        SetupResult with the effective job spec and build
    """
    result = SetupResult(job_spec=job_spec, build=settings.build)
    payload = receive_input_binary(settings, stream)
    if payload is None:
        return result

    if payload.name == SOURCE_PAYLOAD:
        decompress(payload, settings.srv_dir)
        result.remote_files.append(RemoteFile(
            bucket=payload.parent.name,
            object=payload.name,
            server=server,
            compressed=True,
        ))
        logger.info("Binary input will be served to workers")

    spec_file: Optional[Path] = None
    if settings.jobspec_path.exists():
        logger.info("Found job specification in binary payload")
        spec_file = settings.jobspec_path
    if result.build is not None and result.build.binary_as_file.endswith("yaml"):
        spec_file = payload

    if spec_file is not None:
        logger.info("Treating %s as the job specification", spec_file)
        try:
            result.job_spec = JobSpec.from_file(spec_file)
        except JobSpecError as e:
            raise SetupError(f"Invalid job specification in binary input: {e}") from e
        recipe = result.job_spec.recipe
        if recipe.git_url and result.build is not None:
            logger.info("Job specification references a git repo, ignoring the build's git source")
            result.build = result.build.with_git_source(recipe.git_url, recipe.git_ref)
    return result


def builds_json_file(settings: Settings, server: Optional["MinioServer"] = None) -> Optional[RemoteFile]:
    """Remote file for builds/builds.json when it exists."""
    if not (settings.srv_dir / BUILDS_BUCKET / BUILDS_JSON).exists():
        return None
    return RemoteFile(bucket=BUILDS_BUCKET, object=BUILDS_JSON, server=server)


def discover_stages(
    job_spec: JobSpec,
    settings: Settings,
    server: Optional["MinioServer"] = None,
) -> list[RemoteFile]:
    """
    Add the implied stages to job_spec.

    Unless the job is strict, COSA_CMDS becomes the "envVar" stage and every
    *.cosa.sh script in the context directory runs in a single "cosa.sh"
    stage. Scripts are copied into the source bucket and served to workers.
    Both stages run with a strict bash ahead of the explicit stages.

    Returns:
        Remote files for the copied scripts

    Raises:
        SetupError: If a script cannot be copied
    """
    if job_spec.job.strict:
        logger.info("Job strict mode is set, skipping implied stage discovery")
        return []
    logger.info("Strict mode is off: COSA_CMDS and %s files are implied stages", SCRIPT_PATTERN)

    if settings.cosa_cmds:
        job_spec.add_stage(Stage(
            id=ENV_STAGE_ID,
            description="COSA_CMDS defined commands",
            commands=[f"{STRICT_SHELL_PREFIX} -c {shlex.quote(settings.cosa_cmds)}"],
            direct_exec=True,
        ))

    remote_files: list[RemoteFile] = []
    commands: list[str] = []
    source_dir = settings.srv_dir / SOURCE_BUCKET
    for script in sorted(settings.srv_dir.glob(SCRIPT_PATTERN)):
        dest = source_dir / script.name
        try:
            copy_file_exclusive(script, dest)
        except OSError as e:
            raise SetupError(f"Failed to copy {script.name} into the source bucket: {e}") from e
        # Scripts travel through the object store, not the job spec env var
        remote_files.append(RemoteFile(bucket=SOURCE_BUCKET, object=script.name, server=server))
        commands.append(f"{STRICT_SHELL_PREFIX} {dest}")

    if commands:
        job_spec.add_stage(Stage(
            id=SCRIPT_STAGE_ID,
            description=f"{SCRIPT_PATTERN} scripts",
            commands=commands,
            direct_exec=True,
        ))
    return remote_files


def prepare(
    settings: Settings,
    job_spec: JobSpec,
    stream: Optional[BinaryIO] = None,
    server: Optional["MinioServer"] = None,
) -> SetupResult:
    """
    Run all setup steps in order.

    Raises:
        SetupError: If any step fails
    """
    result = process_binary_input(settings, job_spec, stream, server)

    builds_json = builds_json_file(settings, server)
    if builds_json is not None:
        result.remote_files.append(builds_json)

    result.remote_files.extend(discover_stages(result.job_spec, settings, server))
    return result


def cleanup_source(settings: Settings) -> None:
    """Remove the source bucket written during setup."""
    shutil.rmtree(settings.srv_dir / SOURCE_BUCKET, ignore_errors=True)
