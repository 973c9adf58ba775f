"""Tests for the run controller: lifecycle, environment, publishing, cancellation."""

import threading
import time
from pathlib import Path

import pytest

from flowci.controller import RunController, WorkspaceManager, resolve_environment
from flowci.dsl import job, sh, wf
from flowci.events import EventKind
from flowci.model import PublishSpec, RunStatus, StepStatus
from flowci.publish import ArtifactPublisher, PublishResult
from flowci.scheduler import SchedulerConfig
from flowci.settings import Settings
from flowci.store import InMemoryEventLog


class FakePublisher(ArtifactPublisher):
    def __init__(self, calls, ok=True):
        self.calls = calls
        self.ok = ok

    def publish(self, directory, destination, token):
        files = sorted(p.name for p in Path(directory).iterdir()) if Path(directory).is_dir() else []
        self.calls.append({"destination": destination, "token": token, "files": files})
        message = "pushed" if self.ok else f"remote rejected token {token}"
        return PublishResult(self.ok, message, destination)


class BlockingPublisher(FakePublisher):
    """Holds the publish call until ``release`` is set."""

    def __init__(self, calls, entered, release, ok=False):
        super().__init__(calls, ok=ok)
        self.entered = entered
        self.release = release

    def publish(self, directory, destination, token):
        self.entered.set()
        self.release.wait(30)
        return super().publish(directory, destination, token)


@pytest.fixture
def work_root(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def controller(work_root, host_env, registry):
    return RunController(
        workspace_root=work_root,
        host_env=host_env,
        actions=registry,
        scheduler_config=SchedulerConfig(max_workers=2),
    )


# =============================================================================
# LIFECYCLE
# =============================================================================


def test_successful_run(controller, trigger):
    run = controller.run(wf(job("build", sh("Hello", "echo hello", id="hello"))), trigger, timeout=30)

    assert run.status == RunStatus.SUCCEEDED
    assert run.results["build.hello"].status == StepStatus.SUCCEEDED
    assert run.results["build.hello"].stdout == b"hello\n"
    assert run.started_at <= run.finished_at
    assert not run.aborted


def test_failed_step_fails_run(controller, trigger):
    definition = wf(job("build", sh("Fail", "exit 2", id="fail"), sh("After", "true", id="after")))
    run = controller.run(definition, trigger, timeout=30)

    assert run.status == RunStatus.FAILED
    assert run.results["build.fail"].exit_code == 2
    assert run.results["build.after"].status == StepStatus.SKIPPED


def test_start_returns_before_run_finishes(controller, trigger):
    handle = controller.start(wf(job("slow", sh("Sleep", "sleep 0.5", id="sleep"))), trigger)

    assert controller.status(handle).status in (RunStatus.PENDING, RunStatus.RUNNING)
    assert controller.wait(handle, timeout=30).status == RunStatus.SUCCEEDED


def test_wait_timeout(controller, trigger):
    handle = controller.start(wf(job("slow", sh("Sleep", "sleep 2", id="sleep"))), trigger)

    with pytest.raises(TimeoutError):
        controller.wait(handle, timeout=0.1)
    controller.cancel(handle)
    controller.wait(handle, timeout=30)


def test_status_is_a_snapshot(controller, trigger):
    handle = controller.start(wf(job("j", sh("A", "true", id="a"))), trigger)
    run = controller.wait(handle, timeout=30)
    run.results.clear()

    assert "j.a" in controller.status(handle.run_id).results


def test_unknown_run_id(controller):
    with pytest.raises(KeyError):
        controller.get("nope")


def test_duplicate_run_id_rejected(controller, trigger):
    definition = wf(job("j", sh("A", "true", id="a")))
    handle = controller.start(definition, trigger, run_id="fixed")
    controller.wait(handle, timeout=30)

    with pytest.raises(ValueError, match="already exists"):
        controller.start(definition, trigger, run_id="fixed")


def test_invalid_graph_aborts_run_without_results(controller, trigger):
    definition = wf(job("loop", sh("A", "true", id="a", needs=["b"]), sh("B", "true", id="b", needs=["a"])))
    run = controller.run(definition, trigger, timeout=30)

    assert run.status == RunStatus.FAILED
    assert run.aborted
    assert run.results == {}
    assert "cycle" in run.error.lower()


def test_cancel_running_run(controller, trigger):
    handle = controller.start(wf(job("j", sh("Long", "sleep 30", id="long"), sh("Next", "true", id="next"))), trigger)
    time.sleep(0.3)
    controller.cancel(handle.run_id)
    run = controller.wait(handle, timeout=30)

    assert run.status == RunStatus.CANCELLED
    assert run.results["j.long"].status == StepStatus.CANCELLED
    assert all(r.terminal for r in run.results.values())


def test_step_status_is_visible_while_it_runs(controller, trigger):
    handle = controller.start(wf(job("build", sh("Slow", "sleep 1", id="slow"))), trigger)

    def current():
        return controller.status(handle).results.get("build.slow")

    deadline = time.monotonic() + 10
    while current() is None or current().status != StepStatus.RUNNING:
        assert time.monotonic() < deadline
        time.sleep(0.02)

    assert current().started_at is not None
    assert controller.wait(handle, timeout=30).results["build.slow"].status == StepStatus.SUCCEEDED


def test_finished_runs_beyond_retention_are_forgotten(work_root, host_env, trigger):
    controller = RunController(workspace_root=work_root, host_env=host_env, settings=Settings(retained_runs=2))
    definition = wf(job("j", sh("A", "true", id="a")))
    handles = []
    for _ in range(3):
        handles.append(controller.start(definition, trigger))
        controller.wait(handles[-1], timeout=30)

    with pytest.raises(KeyError):
        controller.get(handles[0].run_id)
    assert controller.get(handles[2].run_id) is handles[2]
    assert controller.event_log.read(handles[0].run_id) == []
    assert controller.event_log.read(handles[2].run_id)


# =============================================================================
# ENVIRONMENT
# =============================================================================


def test_env_is_resolved_in_declaration_order(controller, trigger):
    definition = wf(
        job("j", sh("Show", 'echo "$BASE $URL"', id="show")),
        env={"BASE": "/${{ github.event.repository.name }}", "URL": "${{ env.BASE }}/index.html"},
    )
    run = controller.run(definition, trigger, timeout=30)

    assert run.results["j.show"].stdout == b"/site /site/index.html\n"


def test_run_environment_is_frozen(trigger, host_env):
    env = resolve_environment("r", wf(job("j", sh("A", "true", id="a")), env={"X": "1"}), trigger, host_env=host_env)

    assert env.vars["X"] == "1"
    assert env.secrets["GITHUB_TOKEN"] == trigger.token
    with pytest.raises(TypeError):
        env.vars["X"] = "2"


def test_host_env_changes_after_start_are_invisible(work_root, trigger, registry):
    host = {"PATH": "/usr/bin:/bin", "GREETING": "before"}
    controller = RunController(workspace_root=work_root, host_env=host, actions=registry)
    host["GREETING"] = "after"
    run = controller.run(wf(job("j", sh("Greet", 'echo "$GREETING"', id="greet"))), trigger, timeout=30)

    assert run.results["j.greet"].stdout == b"before\n"


def test_secrets_are_masked_in_results_and_events(controller, trigger, secret_token):
    handle = controller.start(wf(job("j", sh("Leak", 'echo "$T"', id="leak", env={"T": secret_token}))), trigger)
    run = controller.wait(handle, timeout=30)

    assert secret_token.encode() not in run.results["j.leak"].stdout
    assert all(secret_token not in str(e.data) for e in controller.events(handle))


# =============================================================================
# WORKSPACES
# =============================================================================


def test_workspace_is_removed_after_run(controller, trigger, work_root):
    handle = controller.start(wf(job("j", sh("Touch", "touch built.txt && pwd", id="touch"))), trigger)
    run = controller.wait(handle, timeout=30)

    workspace = run.results["j.touch"].stdout.decode().strip()
    assert workspace.startswith(str(work_root.resolve() / handle.run_id))
    assert not (work_root / handle.run_id).exists()


def test_keep_workspace(work_root, host_env, trigger):
    controller = RunController(workspace_root=work_root, host_env=host_env, keep_workspace=True)
    handle = controller.start(wf(job("j", sh("Touch", "touch built.txt", id="touch"))), trigger)
    controller.wait(handle, timeout=30)

    assert (work_root / handle.run_id / "workspace" / "built.txt").exists()


def test_workspace_manager_layout(tmp_path):
    manager = WorkspaceManager(tmp_path)
    workspace = manager.create("abc")

    assert workspace == tmp_path.resolve() / "abc" / "workspace"
    assert manager.temp_dir("abc").is_dir()
    manager.teardown("abc")
    assert not (tmp_path / "abc").exists()


# =============================================================================
# PUBLISHING
# =============================================================================


def site_definition(build="mkdir -p dist && echo hi > dist/index.html"):
    return wf(
        job("site", sh("Build", build, id="build")),
        publish=PublishSpec(directory="dist", destination="gh-pages"),
    )


def test_publishes_after_success(work_root, host_env, trigger):
    calls = []
    controller = RunController(
        workspace_root=work_root,
        host_env=host_env,
        publisher_factory=lambda repository: FakePublisher(calls),
    )
    run = controller.run(site_definition(), trigger, timeout=30)

    assert run.status == RunStatus.SUCCEEDED
    assert calls == [{"destination": "gh-pages", "token": trigger.token, "files": ["index.html"]}]
    assert run.publish_result.ok


def test_no_publish_when_a_step_fails(work_root, host_env, trigger):
    calls = []
    controller = RunController(
        workspace_root=work_root,
        host_env=host_env,
        publisher_factory=lambda repository: FakePublisher(calls),
    )
    run = controller.run(site_definition(build="exit 1"), trigger, timeout=30)

    assert run.status == RunStatus.FAILED
    assert calls == []
    assert run.publish_result is None


def test_failed_publish_fails_run(work_root, host_env, trigger, secret_token):
    calls = []
    controller = RunController(
        workspace_root=work_root,
        host_env=host_env,
        publisher_factory=lambda repository: FakePublisher(calls, ok=False),
    )
    run = controller.run(site_definition(), trigger, timeout=30)

    assert run.status == RunStatus.FAILED
    assert run.error.startswith("publish failed")
    assert secret_token not in run.error


def test_run_stays_running_while_publishing(work_root, host_env, trigger):
    entered, release = threading.Event(), threading.Event()
    controller = RunController(
        workspace_root=work_root,
        host_env=host_env,
        publisher_factory=lambda repository: BlockingPublisher([], entered, release),
    )
    handle = controller.start(site_definition(), trigger)
    assert entered.wait(30)

    during = controller.status(handle)
    release.set()
    run = controller.wait(handle, timeout=30)

    assert during.status == RunStatus.RUNNING
    assert during.results["site.build"].status == StepStatus.SUCCEEDED
    assert run.status == RunStatus.FAILED
    assert not run.publish_result.ok


# =============================================================================
# EVENTS
# =============================================================================


def test_events_bracket_the_run(controller, trigger):
    handle = controller.start(wf(job("j", sh("A", "echo a", id="a"), sh("B", "echo b", id="b"))), trigger)
    controller.wait(handle, timeout=30)
    events = list(controller.events(handle))

    assert events[0].kind == EventKind.RUN_STARTED
    assert events[-1].kind == EventKind.RUN_COMPLETED
    assert events[-1].data["status"] == RunStatus.SUCCEEDED.value
    assert [e.seq for e in events] == list(range(len(events)))
    completed = [e.step_id for e in events if e.kind == EventKind.STEP_COMPLETED]
    assert completed == ["j.a", "j.b"]


def test_events_are_persisted(work_root, host_env, trigger):
    log = InMemoryEventLog()
    controller = RunController(workspace_root=work_root, host_env=host_env, event_log=log)
    handle = controller.start(wf(job("j", sh("A", "true", id="a"))), trigger)
    controller.wait(handle, timeout=30)

    stored = log.read(handle.run_id)
    assert [e.seq for e in stored] == [e.seq for e in controller.events(handle)]
    assert next(iter(controller.events(handle, from_offset=1))).seq == 1
