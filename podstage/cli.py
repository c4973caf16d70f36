"""
CLI interface for the podstage build orchestrator.

Provides commands to generate job specifications, run them, and inspect the
build metadata stages leave behind.
"""

from datetime import datetime, timezone
from pathlib import Path

import click

from podstage import __version__
from podstage.errors import PodstageError


def _header() -> str:
    now = datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")
    return f"# Generated by podstage CLI\n# {now}\n"


def build_cli_spec(
    spec_file: str | None,
    artifacts: tuple[str, ...],
    commands: tuple[str, ...],
    requires: tuple[str, ...],
    single_stage: bool,
):
    """
    Read or generate a job specification from CLI arguments.

    A spec file wins and the generation flags are ignored. Otherwise stages
    are generated from the artifact shorthands; --cmd and --req go into the
    first stage and force single stage mode. A repository list is always
    present in the result.
    """
    import logging

    from podstage.schemas.job_spec import JobSpec, Stage

    logger = logging.getLogger("podstage.cli")

    if spec_file:
        spec = JobSpec.from_file(spec_file)
        logger.info(
            "Using job specification from %s, -A/--build-artifact, --cmd and --req are ignored",
            spec_file,
        )
        spec.ensure_repos()
        return spec

    spec = JobSpec()
    if commands or requires:
        logger.info("--cmd and --req force single stage mode, only one stage will be run")
        single_stage = True

    spec.generate_stages(artifacts, single_stage=single_stage)
    if not spec.stages:
        spec.add_stage(Stage(id="CLI Commands", execution_order=1))

    spec.stages[0].add_commands(commands)
    spec.stages[0].add_requires(requires)
    spec.ensure_repos()
    return spec


@click.group()
@click.version_option(version=__version__, prog_name="podstage")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option(
    "--log-format",
    type=click.Choice(["pretty", "structured"]),
    default=None,
    help="Log output format",
)
@click.pass_context
def main(ctx, log_level: str | None, log_format: str | None):
    """
    podstage - Stage orchestrator for multi-pod image builds.

    Runs the stages of a job specification as workers coordinated through an
    object store.
    """
    import os

    from podstage.utils import setup_logging

    ctx.ensure_object(dict)
    setup_logging(
        log_level=log_level or os.environ.get("PODSTAGE_LOG_LEVEL", "INFO"),
        log_format=log_format or os.environ.get("PODSTAGE_LOG_FORMAT", "pretty"),
    )


def _generate(spec_file, artifacts, commands, requires, single_stage, yaml_out):
    try:
        spec = build_cli_spec(spec_file, artifacts, commands, requires, single_stage)
    except PodstageError as e:
        click.echo(f"✗ Failed to build job specification: {e}", err=True)
        raise SystemExit(1)

    text = _header() + spec.to_yaml()
    if yaml_out:
        try:
            Path(yaml_out).write_text(text)
        except OSError as e:
            click.echo(f"✗ Unable to write {yaml_out}: {e}", err=True)
            raise SystemExit(1)
        click.echo(f"✓ Job specification written to {yaml_out}", err=True)
    else:
        click.echo(text, nl=False)


def _artifact_help() -> str:
    from podstage.schemas.job_spec import get_artifact_shorthand_names

    return f"Build artifact for any of: {', '.join(get_artifact_shorthand_names())}"


@main.command("generate")
@click.option("-A", "--build-artifact", "artifacts", multiple=True, help=_artifact_help())
@click.option("--spec", "spec_file", type=click.Path(dir_okay=False), help="Use this job spec file")
@click.option("--cmd", "commands", multiple=True, help="Command to run in the first stage")
@click.option("--req", "requires", multiple=True, help="Artifact the first stage requires")
@click.option("--yaml-out", type=click.Path(dir_okay=False), help="Write YAML to file")
def generate(artifacts, spec_file, commands, requires, yaml_out):
    """Generate a job specification from CLI arguments."""
    _generate(spec_file, artifacts, commands, requires, False, yaml_out)


@main.command("generate-single-pod")
@click.option("-A", "--build-artifact", "artifacts", multiple=True, help=_artifact_help())
@click.option("--spec", "spec_file", type=click.Path(dir_okay=False), help="Use this job spec file")
@click.option("--cmd", "commands", multiple=True, help="Command to run in the stage")
@click.option("--req", "requires", multiple=True, help="Artifact to require")
@click.option("--yaml-out", type=click.Path(dir_okay=False), help="Write YAML to file")
def generate_single_pod(artifacts, spec_file, commands, requires, yaml_out):
    """Generate a single stage job specification."""
    _generate(spec_file, artifacts, commands, requires, True, yaml_out)


@main.command("run")
@click.option(
    "--backend",
    type=click.Choice(["local", "noop"]),
    default="local",
    help="Where stage workers run",
)
@click.option("--spec", "spec_file", type=click.Path(exists=True, dir_okay=False), help="Job spec file")
@click.option("--env-file", type=click.Path(exists=True, dir_okay=False), help="Dotenv file to load")
@click.option("--no-server", is_flag=True, help="Serve artifacts from the context dir, without minio")
def run(backend: str, spec_file: str | None, env_file: str | None, no_server: bool):
    """Run the stages of a job specification."""
    from podstage.config import load_config
    from podstage.dispatch import DispatcherRegistry
    from podstage.minio_server import MinioServer
    from podstage.orchestrator import Orchestrator
    from podstage.schemas.job_spec import JobSpec

    try:
        settings = load_config(Path(env_file) if env_file else None)
        job_spec = JobSpec.from_file(spec_file) if spec_file else None
    except PodstageError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    registry = DispatcherRegistry.create_default(work_dir=settings.srv_dir)
    server = None
    if not no_server:
        server = MinioServer(settings.srv_dir, host=settings.pod_ip, port=settings.minio_port)

    orchestrator = Orchestrator(
        settings,
        dispatcher=registry.get(backend),
        job_spec=job_spec,
        server=server,
        handle_signals=True,
    )

    binary_stream = None
    if settings.build is not None and settings.build.has_binary:
        binary_stream = click.get_binary_stream("stdin")

    try:
        result = orchestrator.execute(binary_stream=binary_stream)
    except PodstageError as e:
        click.echo(f"✗ Orchestration failed: {e}", err=True)
        raise SystemExit(1)

    if not result.success:
        click.echo(f"✗ Orchestration failed: {result.error}", err=True)
        if result.skipped:
            click.echo(f"  Skipped: {', '.join(result.skipped)}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ {len(result.completed)} stage(s) completed in {result.duration_ms}ms")


@main.command("inspect-build")
@click.option("--srv-dir", type=click.Path(exists=True, file_okay=False), default=".", help="Context dir")
@click.option("--build-id", default="", help="Build ID (default: latest)")
@click.option("--arch", default=None, help="Architecture (default: host)")
def inspect_build(srv_dir: str, build_id: str, arch: str | None):
    """Show the build metadata record of a build."""
    from podstage.artifact_store import FileArtifactStore
    from podstage.config import builder_arch
    from podstage.schemas.build_meta import read_build

    arch = arch or builder_arch()
    meta = read_build(FileArtifactStore(srv_dir), build_id, arch)
    if meta is None:
        click.echo(f"✗ No build metadata found for {build_id or 'latest'} ({arch})", err=True)
        raise SystemExit(1)

    click.echo(f"Build ID: {meta.build_id}")
    click.echo(f"Arch: {meta.arch or arch}")
    click.echo(f"Artifacts ({len(meta.artifacts)}):")
    for name in sorted(meta.artifacts):
        click.echo(f"  {name:<16} {meta.artifacts[name].path}")


if __name__ == "__main__":
    main()
