"""
Orchestrator - runs the stages of a job specification.

The Orchestrator:
1. Performs the one-time setup (binary input, implied stages)
2. Starts the embedded object-store server and switches the store to it
3. Groups stages by execution order and runs the groups in ascending order,
   one thread per stage, with a barrier between groups
4. In each stage thread, polls the readiness gate until the stage's required
   artifacts exist, then dispatches the stage's worker
5. Stops launching work as soon as termination is broadcast (first worker
   error, SIGINT/SIGTERM, cancellation, or an internal stop request)

Usage:
    orchestrator = Orchestrator(settings, dispatcher=LocalDispatcher(settings.srv_dir))
    result = orchestrator.execute(binary_stream=sys.stdin.buffer)
    if not result.success:
        raise result.error
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional

from podstage.artifact_store import StoreSelector
from podstage.config import BuildSpec, Settings
from podstage.dispatch.base import Dispatcher
from podstage.errors import TerminatedError
from podstage.gate import ReadinessGate
from podstage.minio_server import MinioServer
from podstage.schemas.build_meta import BUILDS_BUCKET
from podstage.schemas.job_spec import JobSpec, Stage
from podstage.schemas.remote_file import RemoteFile, Return
from podstage.schemas.work_spec import WorkSpec
from podstage.setup import NO_WORK_MESSAGE, cleanup_source, locate_job_spec, prepare
from podstage.termination import CancellationToken, Termination, TerminationCoordinator
from podstage.utils import iter_files

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """
    Everything a run shares between its components.

    Attributes:
        settings: Runtime settings
        store: The run's artifact store; starts file backed at the context dir
        termination: Broadcast termination state of the current run
        server: Embedded object-store server, when the run uses one
    """
    settings: Settings
    store: StoreSelector
    termination: Termination = field(default_factory=Termination)
    server: Optional[MinioServer] = None

    @classmethod
    def create(cls, settings: Settings, server: Optional[MinioServer] = None) -> "RunContext":
        return cls(settings=settings, store=StoreSelector(settings.srv_dir), server=server)


@dataclass
class OrchestrationResult:
    """Result of an orchestration run.

    - success: true when no termination happened
    - completed: stages whose worker finished successfully
    - failed: stages whose worker failed
    - skipped: stages that never dispatched because the run terminated
    - error: the single terminal error of the run
    - termination_reason: why the run terminated
    - duration_ms: wall time of the run
    """
    success: bool = True
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    termination_reason: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            result["error"] = str(self.error)
        if self.termination_reason:
            result["termination_reason"] = self.termination_reason
        return result


class _Outcome:
    """Thread-safe collector of per-stage outcomes."""

    def __init__(self):
        self._lock = threading.Lock()
        self.completed: list[str] = []
        self.failed: list[str] = []
        self.skipped: list[str] = []

    def record(self, bucket: list[str], stage_id: str) -> None:
        with self._lock:
            bucket.append(stage_id)


class Orchestrator:
    """
    Runs a job specification's stages against a dispatcher.

    Args:
        settings: Runtime settings
        job_spec: Job specification; located from settings when None
        dispatcher: Dispatcher that runs ready stages
        server: Object-store server; runs without one stay file backed
        poll_interval: Readiness poll interval, defaults to the settings value
        handle_signals: Install SIGINT/SIGTERM handlers for the run
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: Dispatcher,
        job_spec: Optional[JobSpec] = None,
        server: Optional[MinioServer] = None,
        poll_interval: Optional[float] = None,
        handle_signals: bool = False,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.job_spec = job_spec
        self.context = RunContext.create(settings, server)
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.handle_signals = handle_signals
        self.build: Optional[BuildSpec] = settings.build
        self.remote_files: list[RemoteFile] = []

    def prepare(self, binary_stream: Optional[BinaryIO] = None) -> JobSpec:
        """
        Run the one-time setup.

        Returns:
            The job specification the run will execute

        Raises:
            ConfigError: On invalid settings or job specification
            SetupError: If a setup step fails
        """
        self.settings.validate()
        job_spec = self.job_spec if self.job_spec is not None else locate_job_spec(self.settings)
        result = prepare(self.settings, job_spec, binary_stream, self.context.server)
        self.job_spec = result.job_spec
        self.build = result.build
        self.remote_files = result.remote_files
        return self.job_spec

    def execute(
        self,
        binary_stream: Optional[BinaryIO] = None,
        token: Optional[CancellationToken] = None,
    ) -> OrchestrationResult:
        """
        Prepare, start the object-store server and run all stages.

        The server is stopped and the source bucket removed on the way out.
        """
        token = token or CancellationToken()
        server = self.context.server
        try:
            job_spec = self.prepare(binary_stream)
            if not job_spec.stages:
                logger.info(NO_WORK_MESSAGE)
                return OrchestrationResult()

            if server is not None:
                server.start(token)
                server.ensure_bucket_exists(BUILDS_BUCKET)
                self.context.store.use_minio(server.client())

            logger.info("Using job specification:\n%s", job_spec.to_yaml())
            return self.run(token)
        finally:
            if server is not None:
                server.kill()
            cleanup_source(self.settings)

    def run(self, token: Optional[CancellationToken] = None) -> OrchestrationResult:
        """
        Run the stage groups.

        Groups run in ascending execution order; a group starts only after
        every stage of the previous group finished. Once termination is
        broadcast no further stage dispatches and later groups are skipped.

        Args:
            token: Governing cancellation token, passed to the dispatcher

        Returns:
            OrchestrationResult; error holds the first worker error, or a
            TerminatedError when a signal or cancellation ended the run
        """
        token = token or CancellationToken()
        job_spec = self.job_spec if self.job_spec is not None else JobSpec()
        start_time = time.time()

        groups = job_spec.stage_groups()
        if not groups:
            logger.info(NO_WORK_MESSAGE)
            return OrchestrationResult()

        termination = Termination()
        self.context.termination = termination
        gate = ReadinessGate(self.context.store, self.settings.arch, server=self.context.server)
        indexes = {stage.id: idx for idx, stage in enumerate(job_spec.stages)}
        outcome = _Outcome()

        with TerminationCoordinator(termination, token, self.handle_signals) as coordinator:
            for order, stages in groups:
                if termination.is_set() or token.cancelled():
                    logger.info(
                        "Skipping group %d after termination", order,
                        extra={"metadata": {"execution_order": order}},
                    )
                    for stage in stages:
                        outcome.record(outcome.skipped, stage.id)
                    continue

                logger.info(
                    "Starting group of workers", extra={"metadata": {"execution_order": order}},
                )
                threads = []
                for stage in stages:
                    # Each task works on its own copy of the job specification
                    task_spec = job_spec.deep_copy()
                    thread = threading.Thread(
                        target=self._stage_task,
                        args=(task_spec, task_spec.get_stage(stage.id), indexes[stage.id],
                              gate, coordinator, token, outcome),
                        name=f"stage-{stage.id}",
                        daemon=True,
                    )
                    threads.append(thread)
                    thread.start()
                for thread in threads:
                    thread.join()

        self._inventory()

        result = OrchestrationResult(
            success=not termination.is_set(),
            completed=outcome.completed,
            failed=outcome.failed,
            skipped=outcome.skipped,
            termination_reason=termination.reason,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        if termination.is_set():
            result.error = termination.error or TerminatedError(termination.reason or "terminated")
        return result

    def _stage_task(
        self,
        job_spec: JobSpec,
        stage: Stage,
        index: int,
        gate: ReadinessGate,
        coordinator: TerminationCoordinator,
        token: CancellationToken,
        outcome: _Outcome,
    ) -> None:
        termination = coordinator.termination
        log_extra = {"stage": stage.id, "metadata": {"required_artifacts": stage.require_artifacts}}
        logger.info("Stage started", extra=log_extra)

        while True:
            if termination.is_set() or token.cancelled():
                logger.info("Stage stopped by termination", extra={"stage": stage.id})
                outcome.record(outcome.skipped, stage.id)
                return

            work = WorkSpec(
                build_context=self.build,
                execute_stages=(stage.id,),
                job_spec=job_spec,
                remote_files=tuple(self.remote_files),
                return_to=Return(bucket=BUILDS_BUCKET, server=self.context.server),
            )
            try:
                check = gate.check(stage.require_artifacts, stage.id)
            except Exception as e:
                coordinator.report_error(stage.id, e)
                outcome.record(outcome.failed, stage.id)
                return

            if not check.ready:
                logger.warning("Waiting for dependencies", extra={"stage": stage.id})
                termination.wait(self.poll_interval)
                continue

            logger.info("Worker dependencies have been met", extra={"stage": stage.id})
            work = work.with_remote_files(check.remote_files, check.build_id)
            if termination.is_set() or token.cancelled():
                continue

            logger.info("Executing worker", extra={"stage": stage.id})
            try:
                self.dispatcher.dispatch(work, index, token)
            except Exception as e:
                coordinator.report_error(stage.id, e)
                outcome.record(outcome.failed, stage.id)
                return

            logger.info("Worker completed", extra={"stage": stage.id})
            outcome.record(outcome.completed, stage.id)
            return

    def _inventory(self) -> None:
        count = 0
        for path in iter_files(self.settings.srv_dir):
            logger.debug("%s", path)
            count += 1
        logger.info("Context dir %s holds %d files", self.settings.srv_dir, count)
