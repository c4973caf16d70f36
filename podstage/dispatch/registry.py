"""
Dispatcher Registry for selecting an execution backend by name.

The registry maps backend names to their Dispatcher implementations:
- local: stage commands as local processes
- pod: worker pods through a cluster client (only when a client is given)
- noop: dry runs
"""

from pathlib import Path
from typing import TYPE_CHECKING

from podstage.dispatch.base import Dispatcher, NoOpDispatcher

if TYPE_CHECKING:
    from podstage.dispatch.pod import PodClient


class DispatcherRegistry:
    """
    Backend name -> Dispatcher lookup used by the CLI.

    Usage:
        registry = DispatcherRegistry.create_default(work_dir=Path("/srv"))
        orchestrator = Orchestrator(settings, dispatcher=registry.get("local"))
    """

    def __init__(self) -> None:
        self._dispatchers: dict[str, Dispatcher] = {}

    def register(self, backend: str, dispatcher: Dispatcher) -> None:
        """Register (or replace) the dispatcher for a backend name."""
        self._dispatchers[backend] = dispatcher

    def get(self, backend: str) -> Dispatcher:
        """
        Get the dispatcher for a backend name.

        Raises:
            KeyError: If no dispatcher is registered for this backend
        """
        try:
            return self._dispatchers[backend]
        except KeyError:
            raise KeyError(
                f"Unknown backend '{backend}', available: {', '.join(sorted(self._dispatchers))}"
            ) from None

    @classmethod
    def create_default(
        cls,
        work_dir: Path | str,
        pod_client: "PodClient | None" = None,
        image: str = "",
    ) -> "DispatcherRegistry":
        """
        Create a registry with the local and noop dispatchers.

        The pod backend is added only when a cluster client is given.
        """
        from podstage.dispatch.local import LocalDispatcher

        registry = cls()
        registry.register("local", LocalDispatcher(work_dir))
        registry.register("noop", NoOpDispatcher())

        if pod_client is not None:
            from podstage.dispatch.pod import PodDispatcher
            registry.register("pod", PodDispatcher(pod_client, image=image))

        return registry
