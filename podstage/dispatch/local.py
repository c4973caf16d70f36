"""
Local process dispatcher.

Runs a stage's commands as child processes of the orchestrator. Used when the
orchestrator itself runs inside the build environment, and in tests.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from podstage.dispatch.base import Dispatcher, PodHandle
from podstage.errors import DispatchError
from podstage.schemas.work_spec import WorkSpec
from podstage.termination import CancellationToken

logger = logging.getLogger(__name__)

STRICT_SHELL = ("/bin/bash", "-xeu", "-o", "pipefail")

# How often a running process is checked against the cancellation token
_WAIT_INTERVAL = 0.2


class LocalDispatcher(Dispatcher):
    """
    Dispatcher that runs stage commands locally.

    Stages with direct_exec run each command through the shell, one after
    the other. Other stages have their commands written to a script run by a
    strict bash (exit on error, unset variable error, pipefail).

    Args:
        work_dir: Working directory of the processes
        shell: Shell used for generated scripts
    """

    def __init__(self, work_dir: Path | str, shell: tuple[str, ...] = STRICT_SHELL):
        self.work_dir = Path(work_dir)
        self.shell = shell

    def construct_pod(self, work: WorkSpec, index: int) -> PodHandle:
        stages = work.stages
        if len(stages) != 1:
            raise DispatchError(
                ",".join(work.execute_stages),
                f"expected exactly one stage, got {len(stages)}",
            )
        stage = stages[0]
        invocations = []
        if stage.direct_exec:
            invocations = [["/bin/sh", "-c", cmd] for cmd in stage.commands]
        return PodHandle(
            name=f"local-worker-{index}",
            work=work,
            index=index,
            spec={
                "direct_exec": stage.direct_exec,
                "commands": list(stage.commands),
                "invocations": invocations,
            },
        )

    def run_pod(self, pod: PodHandle, token: CancellationToken, env: dict[str, str]) -> None:
        """
        Run the handle's processes in order.

        Raises:
            DispatchError: On a non-zero exit or cancellation
        """
        full_env = {**os.environ, **env}
        if pod.spec["direct_exec"]:
            for argv in pod.spec["invocations"]:
                self._run(pod, argv, full_env, token)
            return

        if not pod.spec["commands"]:
            logger.info("Stage has no commands", extra={"stage": pod.stage_id})
            return

        script = "\n".join(pod.spec["commands"]) + "\n"
        with tempfile.NamedTemporaryFile("w", suffix=".sh", prefix="podstage-", delete=False) as f:
            f.write(script)
            script_path = f.name
        try:
            self._run(pod, [*self.shell, script_path], full_env, token)
        finally:
            os.unlink(script_path)

    def _run(
        self,
        pod: PodHandle,
        argv: list[str],
        env: dict[str, str],
        token: CancellationToken,
    ) -> None:
        if token.cancelled():
            raise DispatchError(pod.stage_id, "cancelled before start")

        logger.debug("Executing: %s", " ".join(argv), extra={"stage": pod.stage_id})
        proc = subprocess.Popen(argv, cwd=self.work_dir, env=env)
        returncode = self._wait(proc, token)
        if token.cancelled() and returncode != 0:
            raise DispatchError(pod.stage_id, "cancelled while running")
        if returncode != 0:
            logger.error(
                "Command failed with exit code %d", returncode,
                extra={"stage": pod.stage_id, "metadata": {"exit_code": returncode}},
            )
            raise DispatchError(pod.stage_id, f"command exited with code {returncode}")

    def _wait(self, proc: subprocess.Popen, token: CancellationToken) -> int:
        returncode: Optional[int] = None
        while returncode is None:
            if token.wait(_WAIT_INTERVAL):
                logger.info("Cancellation requested, stopping process %d", proc.pid)
                proc.terminate()
                try:
                    return proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    return proc.wait()
            returncode = proc.poll()
        return returncode
