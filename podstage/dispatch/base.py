"""
Base dispatcher protocol and common implementations.

A dispatcher runs the work of one ready stage. It first constructs a
pod-equivalent handle (a cluster pod manifest, a local process plan) and then
runs it synchronously to completion. Dispatchers are injected into the
orchestrator, so the same loop can target different execution backends:
- local: stage commands as local processes
- pod: worker pods created through a cluster client
- noop: records dispatches without running anything
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from podstage.errors import DispatchError
from podstage.schemas.work_spec import WorkSpec
from podstage.termination import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class PodHandle:
    """
    A constructed, not yet running, worker.

    Attributes:
        name: Worker name (unique per run)
        work: The work specification the worker executes
        index: Index of the worker within the run
        spec: Backend-specific definition (pod manifest, process plan)
    """
    name: str
    work: WorkSpec
    index: int = 0
    spec: dict[str, Any] = field(default_factory=dict)

    @property
    def stage_id(self) -> str:
        return ",".join(self.work.execute_stages)


class Dispatcher(ABC):
    """
    Abstract base class for worker dispatchers.

    Implementations provide construct_pod and run_pod; dispatch() combines
    them and normalizes failures into DispatchError.
    """

    @abstractmethod
    def construct_pod(self, work: WorkSpec, index: int) -> PodHandle:
        """
        Build the runnable handle for a work specification.

        Args:
            work: Work specification for exactly one stage
            index: Index of the worker within the run

        Returns:
            PodHandle ready to run

        Raises:
            Exception: If the worker cannot be defined
        """
        pass

    @abstractmethod
    def run_pod(self, pod: PodHandle, token: CancellationToken, env: dict[str, str]) -> None:
        """
        Run a worker to completion.

        Args:
            pod: Handle from construct_pod
            token: Governing cancellation token; backends that can stop a
                   running worker should do so when it is cancelled
            env: Environment variables carrying the work specification

        Raises:
            Exception: If the worker fails
        """
        pass

    def dispatch(self, work: WorkSpec, index: int, token: CancellationToken) -> None:
        """
        Construct and run the worker for work.

        Raises:
            DispatchError: If the worker could not be constructed or failed
        """
        stage_id = ",".join(work.execute_stages)
        try:
            pod = self.construct_pod(work, index)
        except DispatchError:
            raise
        except Exception as e:
            raise DispatchError(stage_id, f"could not define worker: {e}", cause=e) from e

        try:
            env = work.to_env_vars()
            self.run_pod(pod, token, env)
        except DispatchError:
            raise
        except Exception as e:
            raise DispatchError(stage_id, str(e), cause=e) from e


class NoOpDispatcher(Dispatcher):
    """
    No-op dispatcher for testing and dry-run mode.

    Records every dispatched handle without executing anything.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.dispatched: list[PodHandle] = []

    def construct_pod(self, work: WorkSpec, index: int) -> PodHandle:
        return PodHandle(name=f"noop-worker-{index}", work=work, index=index)

    def run_pod(self, pod: PodHandle, token: CancellationToken, env: dict[str, str]) -> None:
        """Record the handle without running it."""
        logger.info("Dry run, not executing %s", pod.name, extra={"stage": pod.stage_id})
        with self._lock:
            self.dispatched.append(pod)

    @property
    def dispatched_stages(self) -> list[str]:
        with self._lock:
            return [pod.stage_id for pod in self.dispatched]
