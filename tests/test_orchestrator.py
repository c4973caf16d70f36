"""Tests for the orchestration loop.

Tests cover:
- Grouped concurrent dispatch with a barrier between groups
- Readiness gating on artifacts written by earlier groups
- First error wins and terminates the run
- Cancellation and stop requests
- execute(): setup, server lifecycle, store switch
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from podstage.dispatch.base import Dispatcher, NoOpDispatcher, PodHandle
from podstage.errors import DispatchError, TerminatedError
from podstage.minio_server import MinioServer
from podstage.orchestrator import OrchestrationResult, Orchestrator
from podstage.artifact_store import MinioArtifactStore
from podstage.schemas.job_spec import JobSpec
from podstage.termination import CancellationToken


class RecordingDispatcher(Dispatcher):
    """
    Records start/end events per stage and runs a per-stage action.

    actions maps a stage id to a callable(work) run while the stage is
    "dispatched"; raising from it fails the stage.
    """

    def __init__(self, actions=None):
        self.actions = actions or {}
        self.events = []
        self.works = {}
        self._lock = threading.Lock()

    def construct_pod(self, work, index):
        return PodHandle(name=f"test-worker-{index}", work=work, index=index)

    def run_pod(self, pod, token, env):
        stage_id = pod.stage_id
        with self._lock:
            self.events.append(("start", stage_id))
            self.works[stage_id] = pod.work
        try:
            action = self.actions.get(stage_id)
            if action is not None:
                action(pod.work)
        finally:
            with self._lock:
                self.events.append(("end", stage_id))

    def started(self):
        with self._lock:
            return [s for e, s in self.events if e == "start"]


def _orchestrator(settings, job_spec, dispatcher, **kwargs):
    return Orchestrator(settings, dispatcher=dispatcher, job_spec=job_spec, **kwargs)


# =============================================================================
# Grouping
# =============================================================================


class TestGrouping:

    def test_same_order_runs_concurrently(self, settings, make_job_spec):
        """Both stages must be inside run_pod at the same time to pass the barrier."""
        barrier = threading.Barrier(2, timeout=5)
        dispatcher = RecordingDispatcher({"a": lambda w: barrier.wait(), "b": lambda w: barrier.wait()})
        spec = make_job_spec(("a", 1), ("b", 1))

        result = _orchestrator(settings, spec, dispatcher).run()

        assert result.success is True
        assert result.error is None
        assert sorted(result.completed) == ["a", "b"]
        assert result.failed == [] and result.skipped == []

    def test_groups_run_in_ascending_order(self, settings, make_job_spec):
        def slow(work):
            time.sleep(0.1)

        dispatcher = RecordingDispatcher({"first-a": slow, "first-b": slow, "second": slow})
        spec = make_job_spec(("last", 99), ("second", 2), ("first-a", 1), ("first-b", 1), ("zero", 0))

        result = _orchestrator(settings, spec, dispatcher).run()

        assert result.success
        events = dispatcher.events
        assert events[0] == ("start", "zero")

        def index(event):
            return events.index(event)

        assert index(("start", "second")) > max(index(("end", "first-a")), index(("end", "first-b")))
        assert index(("start", "last")) > index(("end", "second"))

    def test_each_task_gets_its_own_job_spec(self, settings, make_job_spec):
        def mutate(work):
            work.job_spec.stages[0].commands.append("rm -rf /")

        spec = make_job_spec(("a", 1), ("b", 1))
        dispatcher = RecordingDispatcher({"a": mutate})

        _orchestrator(settings, spec, dispatcher).run()

        assert spec.get_stage("a").commands == ["echo a"]
        assert "rm -rf /" not in dispatcher.works["b"].job_spec.stages[0].commands

    def test_stage_indexes(self, settings, make_job_spec):
        dispatcher = NoOpDispatcher()
        _orchestrator(settings, make_job_spec(("a", 2), ("b", 1)), dispatcher).run()
        assert {p.stage_id: p.index for p in dispatcher.dispatched} == {"a": 0, "b": 1}

    def test_no_stages(self, settings):
        dispatcher = NoOpDispatcher()
        result = _orchestrator(settings, JobSpec(), dispatcher).run()
        assert result.success is True
        assert dispatcher.dispatched == []


# =============================================================================
# Readiness
# =============================================================================


class TestReadiness:

    def test_waits_for_artifacts_from_earlier_group(self, settings, make_job_spec, write_build):
        def build_ostree(work):
            write_build("36.1", {"ostree": "fedora-coreos-36.1-ostree.x86_64.tar"})

        dispatcher = RecordingDispatcher({"ostree": build_ostree})
        spec = make_job_spec(("ostree", 1), ("metal", 2, ["ostree"]))

        result = _orchestrator(settings, spec, dispatcher).run()

        assert result.success
        assert dispatcher.started() == ["ostree", "metal"]
        work = dispatcher.works["metal"]
        assert work.build_id == "36.1"
        keys = {(rf.bucket, rf.object) for rf in work.remote_files}
        assert ("builds", "36.1/x86_64/fedora-coreos-36.1-ostree.x86_64.tar") in keys
        assert ("builds", "36.1/x86_64/meta.json") in keys

    def test_artifact_appears_while_waiting(self, settings, make_job_spec, write_build):
        spec = make_job_spec(("qemu-user", 1, ["qemu"]))
        dispatcher = RecordingDispatcher()
        timer = threading.Timer(0.2, lambda: write_build("1", {"qemu": "disk.qcow2"}))
        timer.start()

        result = _orchestrator(settings, spec, dispatcher).run()

        timer.join()
        assert result.success
        assert dispatcher.started() == ["qemu-user"]

    def test_malformed_index_does_not_fail_the_run(self, settings, srv_dir, make_job_spec):
        (srv_dir / "builds").mkdir()
        (srv_dir / "builds" / "builds.json").write_text('{"builds": ["36.1"]}')
        dispatcher = RecordingDispatcher()

        result = _orchestrator(settings, make_job_spec(("a", 1)), dispatcher).run()

        assert result.success is True
        assert result.completed == ["a"]

    def test_setup_remote_files_are_passed(self, settings, make_job_spec):
        from podstage.schemas.remote_file import RemoteFile

        dispatcher = RecordingDispatcher()
        orchestrator = _orchestrator(settings, make_job_spec(("a", 1)), dispatcher)
        orchestrator.remote_files = [RemoteFile("source", "source.bin", compressed=True)]
        orchestrator.run()
        assert dispatcher.works["a"].remote_files[0].object == "source.bin"
        assert dispatcher.works["a"].return_to.bucket == "builds"


# =============================================================================
# Termination
# =============================================================================


class TestTermination:

    def test_first_error_skips_later_groups(self, settings, make_job_spec):
        def fail(work):
            raise RuntimeError("cosa build failed")

        dispatcher = RecordingDispatcher({"base": fail})
        spec = make_job_spec(("base", 1), ("metal", 2), ("finalize", 99))

        result = _orchestrator(settings, spec, dispatcher).run()

        assert result.success is False
        assert isinstance(result.error, DispatchError)
        assert result.error.stage_id == "base"
        assert result.failed == ["base"]
        assert result.skipped == ["metal", "finalize"]
        assert dispatcher.started() == ["base"]
        assert result.termination_reason == "stage base failed"

    def test_error_stops_waiting_stages(self, settings, make_job_spec, write_build):
        def fail(work):
            time.sleep(0.1)
            raise RuntimeError("boom")

        dispatcher = RecordingDispatcher({"bad": fail})
        spec = make_job_spec(("bad", 1), ("waiting", 1, ["ostree"]))

        result = _orchestrator(settings, spec, dispatcher).run()
        write_build("1", {"ostree": "o.tar"})

        assert "waiting" in result.skipped
        assert "waiting" not in dispatcher.started()

    def test_in_flight_stage_finishes(self, settings, make_job_spec):
        finished = threading.Event()

        def fail(work):
            raise RuntimeError("boom")

        def slow(work):
            time.sleep(0.3)
            finished.set()

        dispatcher = RecordingDispatcher({"bad": fail, "slow": slow})
        result = _orchestrator(settings, make_job_spec(("bad", 1), ("slow", 1)), dispatcher).run()

        assert finished.is_set()
        assert "slow" in result.completed
        assert result.failed == ["bad"]

    def test_only_first_error_is_reported(self, settings, make_job_spec):
        barrier = threading.Barrier(2, timeout=5)

        def fail_a(work):
            barrier.wait()
            raise RuntimeError("a")

        def fail_b(work):
            barrier.wait()
            time.sleep(0.1)
            raise RuntimeError("b")

        dispatcher = RecordingDispatcher({"a": fail_a, "b": fail_b})
        result = _orchestrator(settings, make_job_spec(("a", 1), ("b", 1)), dispatcher).run()

        assert sorted(result.failed) == ["a", "b"]
        assert result.error.stage_id == "a"

    def test_cancellation_while_waiting(self, settings, make_job_spec):
        token = CancellationToken()
        threading.Timer(0.2, token.cancel).start()
        dispatcher = RecordingDispatcher()
        spec = make_job_spec(("never-ready", 1, ["ostree"]), ("later", 2))

        start = time.monotonic()
        result = _orchestrator(settings, spec, dispatcher).run(token)

        assert time.monotonic() - start < 5
        assert result.success is False
        assert isinstance(result.error, TerminatedError)
        assert result.termination_reason == "context cancelled"
        assert dispatcher.started() == []
        assert result.skipped == ["never-ready", "later"]

    def test_cancelled_before_run(self, settings, make_job_spec):
        token = CancellationToken()
        token.cancel()
        dispatcher = RecordingDispatcher()
        result = _orchestrator(settings, make_job_spec(("a", 1), ("b", 2)), dispatcher).run(token)
        assert dispatcher.started() == []
        assert sorted(result.skipped) == ["a", "b"]
        assert isinstance(result.error, TerminatedError)

    def test_token_reaches_dispatcher(self, settings, make_job_spec):
        seen = []

        class TokenDispatcher(NoOpDispatcher):
            def run_pod(self, pod, token, env):
                seen.append(token)

        token = CancellationToken()
        _orchestrator(settings, make_job_spec(("a", 1)), TokenDispatcher()).run(token)
        assert seen == [token]

    def test_store_errors_fail_the_stage(self, settings, make_job_spec):
        dispatcher = RecordingDispatcher()
        orchestrator = _orchestrator(settings, make_job_spec(("a", 1, ["ostree"])), dispatcher)
        broken = MagicMock()
        broken.open.side_effect = PermissionError("denied")
        orchestrator.context.store._active = broken

        result = orchestrator.run()

        assert result.failed == ["a"]
        assert isinstance(result.error, PermissionError)


# =============================================================================
# execute()
# =============================================================================


class TestExecute:

    def test_no_work(self, settings):
        server = MagicMock(spec=MinioServer)
        result = Orchestrator(settings, dispatcher=NoOpDispatcher(), job_spec=JobSpec(), server=server).execute()
        assert result.success
        server.start.assert_not_called()

    def test_server_lifecycle(self, settings, srv_dir, make_job_spec, fake_minio):
        server = MagicMock(spec=MinioServer)
        server.client.return_value = fake_minio(srv_dir)
        server.to_dict.return_value = {"host": "127.0.0.1", "port": 9000, "access_key": "k", "secret_key": "s"}
        dispatcher = NoOpDispatcher()
        (srv_dir / "x.cosa.sh").write_text("true\n")
        orchestrator = Orchestrator(settings, dispatcher=dispatcher, job_spec=make_job_spec(("a", 1)), server=server)

        result = orchestrator.execute()

        assert result.success
        assert dispatcher.dispatched_stages == ["cosa.sh", "a"]
        server.start.assert_called_once()
        server.ensure_bucket_exists.assert_called_once_with("builds")
        server.kill.assert_called_once()
        assert isinstance(orchestrator.context.store.active, MinioArtifactStore)
        assert not (srv_dir / "source").exists()

    def test_server_killed_on_setup_failure(self, settings, srv_dir):
        server = MagicMock(spec=MinioServer)
        (srv_dir / "jobspec.yaml").write_text("stages: [{commands: [x]}]")
        orchestrator = Orchestrator(settings, dispatcher=NoOpDispatcher(), server=server)
        with pytest.raises(Exception):
            orchestrator.execute()
        server.kill.assert_called_once()

    def test_without_server_stays_file_backed(self, settings, make_job_spec):
        from podstage.artifact_store import FileArtifactStore

        orchestrator = Orchestrator(settings, dispatcher=NoOpDispatcher(), job_spec=make_job_spec(("a", 1)))
        assert orchestrator.execute().success
        assert isinstance(orchestrator.context.store.active, FileArtifactStore)

    def test_result_to_dict(self):
        result = OrchestrationResult(
            success=False, completed=["a"], failed=["b"], skipped=["c"],
            error=DispatchError("b", "boom"), termination_reason="stage b failed", duration_ms=12,
        )
        assert result.to_dict() == {
            "success": False,
            "completed": ["a"],
            "failed": ["b"],
            "skipped": ["c"],
            "duration_ms": 12,
            "error": "Stage 'b' failed: boom",
            "termination_reason": "stage b failed",
        }
