"""
Cluster pod dispatcher.

Builds a worker pod manifest for a work specification and hands it to an
injected cluster client. The client owns everything cluster specific
(authentication, creating the pod, streaming logs, waiting for it to exit).
"""

import logging
from typing import Any, Optional, Protocol, runtime_checkable

from podstage.dispatch.base import Dispatcher, PodHandle
from podstage.errors import DispatchError
from podstage.schemas.work_spec import WorkSpec
from podstage.termination import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = ("/usr/bin/dumb-init", "/usr/bin/gangplank", "builder")


@runtime_checkable
class PodClient(Protocol):
    """
    Protocol for cluster clients that run worker pods.

    Implementations must create the pod described by manifest, block until
    it terminates and return its exit code. They should delete the pod when
    the token is cancelled.
    """

    def run_pod(self, manifest: dict[str, Any], token: CancellationToken) -> int:
        """Create the pod, wait for it and return its exit code."""
        ...


class PodDispatcher(Dispatcher):
    """
    Dispatcher that runs each stage in its own worker pod.

    Args:
        client: Cluster client implementing PodClient
        image: Worker container image
        command: Worker entrypoint
        namespace: Namespace for the worker pods
        service_account: Service account the workers run as
    """

    def __init__(
        self,
        client: PodClient,
        image: str,
        command: tuple[str, ...] = DEFAULT_WORKER_COMMAND,
        namespace: str = "",
        service_account: Optional[str] = None,
    ):
        if not isinstance(client, PodClient):
            raise TypeError(f"{type(client).__name__} does not implement PodClient")
        self.client = client
        self.image = image
        self.command = command
        self.namespace = namespace
        self.service_account = service_account

    def construct_pod(self, work: WorkSpec, index: int) -> PodHandle:
        build_name = work.build_context.name if work.build_context and work.build_context.name else "podstage"
        name = f"{build_name}-worker-{index}"
        manifest: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "labels": {"podstage.stage-index": str(index)},
            },
            "spec": {
                "restartPolicy": "Never",
                "containers": [{
                    "name": "worker",
                    "image": self.image,
                    "command": list(self.command),
                    # The work spec is added at run time
                    "env": [],
                }],
            },
        }
        if self.namespace:
            manifest["metadata"]["namespace"] = self.namespace
        if self.service_account:
            manifest["spec"]["serviceAccountName"] = self.service_account
        return PodHandle(name=name, work=work, index=index, spec=manifest)

    def run_pod(self, pod: PodHandle, token: CancellationToken, env: dict[str, str]) -> None:
        """
        Run the worker pod through the cluster client.

        Raises:
            DispatchError: If the pod exits non-zero
        """
        container = pod.spec["spec"]["containers"][0]
        container["env"] = [{"name": k, "value": v} for k, v in sorted(env.items())]

        logger.info("Creating worker pod %s", pod.name, extra={"stage": pod.stage_id})
        exit_code = self.client.run_pod(pod.spec, token)
        if exit_code != 0:
            raise DispatchError(pod.stage_id, f"worker pod {pod.name} exited with code {exit_code}")
