"""
Configuration management for podstage.

Settings are read from an explicit, enumerated list of environment variables
(optionally seeded from a dotenv file). The platform build specification is
supplied as JSON in the BUILD environment value and parsed into a BuildSpec.
"""

import json
import os
import platform
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from podstage.errors import ConfigError


DEFAULT_SRV_DIR = "/srv"
DEFAULT_JOBSPEC_FILE = "jobspec.yaml"
DEFAULT_POLL_INTERVAL = 15.0
DEFAULT_MINIO_PORT = 9000

# Build strategies the orchestrator can run under
SUPPORTED_STRATEGIES = ("", "Custom")

# Host machine names mapped to the architecture names used in build trees
_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


def builder_arch() -> str:
    """Return the build architecture name for the host."""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


@dataclass(frozen=True)
class BuildSpec:
    """
    The subset of the platform build object the orchestrator consumes.

    Attributes:
        name: Build name (metadata.name)
        strategy_type: Build strategy (spec.strategy.type), "" or "Custom"
        context_dir: Source context directory (spec.source.contextDir)
        binary_as_file: File name of a binary source (spec.source.binary.asFile)
        has_binary: True when the build declares a binary source
        git_uri: Git source URI (spec.source.git.uri)
        git_ref: Git source ref (spec.source.git.ref)
        annotations: Build annotations (metadata.annotations)
    """
    name: str = ""
    strategy_type: str = ""
    context_dir: str = ""
    binary_as_file: str = ""
    has_binary: bool = False
    git_uri: str = ""
    git_ref: str = ""
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildSpec":
        """Build from a decoded platform build object."""
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        strategy = spec.get("strategy") or {}
        source = spec.get("source") or {}
        binary = source.get("binary")
        git = source.get("git") or {}
        return cls(
            name=metadata.get("name", ""),
            strategy_type=strategy.get("type", ""),
            context_dir=source.get("contextDir", ""),
            binary_as_file=(binary or {}).get("asFile", ""),
            has_binary=binary is not None,
            git_uri=git.get("uri", ""),
            git_ref=git.get("ref", ""),
            annotations=dict(metadata.get("annotations") or {}),
        )

    @classmethod
    def from_json(cls, raw: str) -> "BuildSpec":
        """
        Parse and validate the platform build specification.

        Raises:
            ConfigError: If the JSON is invalid or the strategy is unsupported
        """
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid build specification: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("Invalid build specification: expected a JSON object")

        build = cls.from_dict(data)
        if build.strategy_type not in SUPPORTED_STRATEGIES:
            raise ConfigError(f"Unsupported build strategy: {build.strategy_type}")
        return build

    def with_git_source(self, uri: str, ref: str) -> "BuildSpec":
        """Return a copy whose git source points at uri/ref."""
        return replace(self, git_uri=uri, git_ref=ref)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "strategy_type": self.strategy_type,
            "context_dir": self.context_dir,
            "binary_as_file": self.binary_as_file,
            "git_uri": self.git_uri,
            "git_ref": self.git_ref,
            "annotations": self.annotations,
        }


@dataclass
class Settings:
    """Runtime settings for one orchestration run."""

    srv_dir: Path = Path(DEFAULT_SRV_DIR)
    jobspec_url: str = ""
    jobspec_ref: str = ""
    jobspec_file: str = DEFAULT_JOBSPEC_FILE
    cosa_cmds: str = ""
    pod_name: str = ""
    pod_ip: str = ""
    pod_namespace: str = ""
    arch: str = field(default_factory=builder_arch)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    minio_port: int = DEFAULT_MINIO_PORT
    log_level: str = "INFO"
    log_format: str = "pretty"
    build: Optional[BuildSpec] = None

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "Settings":
        """
        Load settings from environment variables.

        Each setting maps to exactly one named variable. The context directory
        comes from the build specification unless it is empty or "/".

        Raises:
            ConfigError: If BUILD is present but invalid, or a number is malformed
        """
        env = os.environ if environ is None else environ

        build = None
        raw_build = env.get("BUILD")
        if raw_build:
            build = BuildSpec.from_json(raw_build)

        srv_dir = Path(env.get("PODSTAGE_SRV_DIR", DEFAULT_SRV_DIR))
        if build is not None and build.context_dir not in ("", "/"):
            srv_dir = Path(build.context_dir)

        try:
            poll_interval = float(env.get("PODSTAGE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL))
            minio_port = int(env.get("PODSTAGE_MINIO_PORT", DEFAULT_MINIO_PORT))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        return cls(
            srv_dir=srv_dir,
            jobspec_url=env.get("COSA_JOBSPEC_URL", ""),
            jobspec_ref=env.get("COSA_JOBSPEC_REF", ""),
            jobspec_file=env.get("COSA_JOBSPEC_FILE") or DEFAULT_JOBSPEC_FILE,
            cosa_cmds=env.get("COSA_CMDS", ""),
            pod_name=env.get("COSA_POD_NAME", ""),
            pod_ip=env.get("COSA_POD_IP", ""),
            pod_namespace=env.get("COSA_POD_NAMESPACE", ""),
            arch=env.get("PODSTAGE_ARCH") or builder_arch(),
            poll_interval=poll_interval,
            minio_port=minio_port,
            log_level=env.get("PODSTAGE_LOG_LEVEL", "INFO").upper(),
            log_format=env.get("PODSTAGE_LOG_FORMAT", "pretty"),
            build=build,
        )

    @property
    def jobspec_path(self) -> Path:
        """Absolute path of the job specification inside the context dir."""
        return self.srv_dir / self.jobspec_file

    def require_build(self) -> BuildSpec:
        """Return the build specification, failing when none was supplied."""
        if self.build is None:
            raise ConfigError("No build specification found in the BUILD environment value")
        return self.build

    def validate(self) -> None:
        """Validate settings that must hold before setup begins."""
        if not self.srv_dir.is_dir():
            raise ConfigError(f"Context dir {str(self.srv_dir)!r} does not exist")
        if self.poll_interval <= 0:
            raise ConfigError("Poll interval must be positive")


def load_config(env_file: Optional[Path] = None) -> Settings:
    """
    Load podstage settings.

    Args:
        env_file: Optional dotenv file. Defaults to $PODSTAGE_ENV_FILE when set.
                  Variables already in the environment are not overridden.

    Returns:
        Settings instance

    Raises:
        ConfigError: If the environment holds invalid values
    """
    if env_file is None and os.environ.get("PODSTAGE_ENV_FILE"):
        env_file = Path(os.environ["PODSTAGE_ENV_FILE"])
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f"Env file not found: {env_file}")
        load_dotenv(env_file, override=False)

    return Settings.from_env()
