# controller.py
from __future__ import annotations

import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Union

from .actions import ActionRegistry
from .cancel import CancelToken
from .errors import DefinitionError, GraphError
from .events import Event, EventBus, EventKind
from .executor import ExecutorConfig, StepExecutor
from .expressions import interpolate
from .graph import build_graph
from .model import (
    PipelineDefinition,
    Run,
    RunEnvironment,
    RunStatus,
    StepResult,
    StepStatus,
    Trigger,
    utcnow,
)
from .publish import ArtifactPublisher, GitBranchPublisher, PublishResult
from .scheduler import RunOutcome, Scheduler, SchedulerConfig
from .settings import Settings
from .store import EventLog, InMemoryEventLog

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def resolve_environment(
    run_id: str,
    definition: PipelineDefinition,
    trigger: Trigger,
    *,
    host_env: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
) -> RunEnvironment:
    """
    Freeze the run-scoped environment.

    Declared ``env`` values are expanded in declaration order, so later
    entries can refer to earlier ones through ``${{ env.X }}``. The trigger
    token becomes the ``GITHUB_TOKEN`` secret.
    """
    all_secrets = dict(secrets or {})
    if trigger.token:
        all_secrets.setdefault("GITHUB_TOKEN", trigger.token)

    variables = dict(host_env or {})
    context = RunEnvironment(run_id=run_id, trigger=trigger, vars=variables, secrets=all_secrets).context()
    for key, value in definition.env.items():
        expanded = interpolate(value, context)
        variables[key] = expanded
        context["env"][key] = expanded
    return RunEnvironment(run_id=run_id, trigger=trigger, vars=variables, secrets=all_secrets)


class WorkspaceManager:
    """Per-run directories: ``<root>/<run_id>/workspace`` and ``<root>/<run_id>/tmp``."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()

    def run_dir(self, run_id: str) -> Path:
        return self.root / run_id

    def create(self, run_id: str) -> Path:
        workspace = self.run_dir(run_id) / "workspace"
        workspace.mkdir(parents=True, exist_ok=False)
        (self.run_dir(run_id) / "tmp").mkdir()
        return workspace

    def temp_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "tmp"

    def teardown(self, run_id: str) -> None:
        path = self.run_dir(run_id)
        if path.exists():
            shutil.rmtree(path)
            logger.debug("removed workspace %s", path)


@dataclass
class RunHandle:
    run_id: str
    run: Run
    bus: EventBus
    cancel_token: CancelToken = field(default_factory=CancelToken)
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = field(default=None, repr=False)
    workspace: Optional[Path] = None


RunRef = Union[RunHandle, str]


class RunController:
    """
    Owns the lifecycle of runs.

    ``start`` returns immediately; the graph is built and executed on a
    background thread. The Run object is only mutated here (scheduler results
    arrive through a callback) and readers get snapshots from ``status``.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        scheduler_config: SchedulerConfig | None = None,
        event_log: EventLog | None = None,
        workspace_root: Union[str, Path, None] = None,
        host_env: Optional[Mapping[str, str]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        actions: ActionRegistry | None = None,
        publisher_factory: Optional[Callable[[str], ArtifactPublisher]] = None,
        keep_workspace: bool = False,
    ):
        self.settings = settings or Settings()
        self.scheduler_config = scheduler_config or SchedulerConfig(
            max_workers=self.settings.max_workers or SchedulerConfig().max_workers
        )
        self.event_log = event_log if event_log is not None else InMemoryEventLog(self.settings.retained_runs)
        self.workspaces = WorkspaceManager(workspace_root or self.settings.work_dir)
        self.host_env = dict(host_env or {})
        self.secrets = dict(secrets or {})
        self.actions = actions
        self.publisher_factory = publisher_factory or GitBranchPublisher
        self.keep_workspace = keep_workspace
        self._handles: Dict[str, RunHandle] = {}
        self._finished: List[str] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def start(self, definition: PipelineDefinition, trigger: Trigger, *, run_id: str | None = None) -> RunHandle:
        run_id = run_id or new_run_id()
        run = Run(run_id=run_id, definition=definition.name, trigger=trigger)
        handle = RunHandle(run_id=run_id, run=run, bus=EventBus(run_id, self.event_log))
        with self._lock:
            if run_id in self._handles:
                raise ValueError(f"run {run_id} already exists")
            self._handles[run_id] = handle
        handle.thread = threading.Thread(
            target=self._drive, args=(handle, definition), name=f"flowci-run-{run_id}", daemon=True
        )
        handle.thread.start()
        return handle

    def run(self, definition: PipelineDefinition, trigger: Trigger, *, timeout: float | None = None) -> Run:
        """Start a run and block until it finishes."""
        return self.wait(self.start(definition, trigger), timeout)

    def get(self, run_id: str) -> RunHandle:
        with self._lock:
            return self._handles[run_id]

    def cancel(self, ref: RunRef, reason: str = "cancelled by user") -> None:
        handle = self._handle(ref)
        logger.info("cancelling run %s", handle.run_id)
        handle.cancel_token.cancel(reason)

    def status(self, ref: RunRef) -> Run:
        handle = self._handle(ref)
        with self._lock:
            return handle.run.snapshot()

    def wait(self, ref: RunRef, timeout: float | None = None) -> Run:
        handle = self._handle(ref)
        if not handle.done.wait(timeout):
            raise TimeoutError(f"run {handle.run_id} still {handle.run.status.value} after {timeout}s")
        return self.status(handle)

    def events(self, ref: RunRef, from_offset: int | None = 0) -> Iterator[Event]:
        """Events of a run, replayed from ``from_offset`` and followed until it completes."""
        return self._handle(ref).bus.subscribe(from_offset)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _handle(self, ref: RunRef) -> RunHandle:
        return ref if isinstance(ref, RunHandle) else self.get(ref)

    def _record(self, handle: RunHandle, result: StepResult) -> None:
        with self._lock:
            handle.run.record(result)

    def _drive(self, handle: RunHandle, definition: PipelineDefinition) -> None:
        run = handle.run
        with self._lock:
            run.status = RunStatus.RUNNING
            run.started_at = utcnow()
        handle.bus.emit(
            EventKind.RUN_STARTED,
            definition=definition.name,
            event=run.trigger.event.value,
            repository=run.trigger.repository,
            ref=run.trigger.ref,
        )

        try:
            self._execute(handle, definition)
        except Exception as e:
            logger.exception("run %s crashed", run.run_id)
            with self._lock:
                run.status = RunStatus.FAILED
                run.error = f"{type(e).__name__}: {e}"
        finally:
            with self._lock:
                run.finished_at = utcnow()
            handle.bus.emit(EventKind.RUN_COMPLETED, status=run.status.value, error=run.error)
            handle.bus.close()
            if handle.workspace is not None and not self.keep_workspace:
                self.workspaces.teardown(run.run_id)
            self._retire(handle)
            handle.done.set()

    def _retire(self, handle: RunHandle) -> None:
        """Forget the oldest finished runs beyond ``settings.retained_runs``."""
        with self._lock:
            self._finished.append(handle.run_id)
            while len(self._finished) > self.settings.retained_runs:
                evicted = self._finished.pop(0)
                self._handles.pop(evicted, None)
                logger.debug("evicted finished run %s", evicted)

    def _execute(self, handle: RunHandle, definition: PipelineDefinition) -> None:
        run = handle.run
        try:
            env = resolve_environment(
                run.run_id, definition, run.trigger, host_env=self.host_env, secrets=self.secrets
            )
            dag = build_graph(definition, env)
        except (DefinitionError, GraphError) as e:
            logger.warning("run %s aborted: %s", run.run_id, e)
            with self._lock:
                run.status = RunStatus.FAILED
                run.error = str(e)
                run.aborted = True
            return

        with self._lock:
            run.environment = env
            for node in dag:
                run.record(StepResult(step_id=node.id))

        handle.workspace = self.workspaces.create(run.run_id)
        executor = StepExecutor(
            ExecutorConfig(
                workspace=handle.workspace,
                temp_dir=self.workspaces.temp_dir(run.run_id),
                output_cap=self.settings.output_cap,
                kill_grace=self.settings.kill_grace,
                infra_retries=self.settings.infra_retries,
                default_timeout=self.settings.step_timeout,
            ),
            bus=handle.bus,
            actions=self.actions,
        )
        scheduler = Scheduler(
            executor,
            bus=handle.bus,
            config=self.scheduler_config,
            on_result=lambda result: self._record(handle, result),
        )
        outcome = scheduler.run(dag, env, handle.cancel_token)

        # the run stays Running while publishing; its final status is set once
        status, error, published = outcome.status, None, None
        if definition.publish is not None and self._publishable(outcome):
            published = self._publish(handle, definition)
            if not published.ok:
                status = RunStatus.FAILED
                error = f"publish failed: {env.mask(published.message)}"
        with self._lock:
            run.publish_result = published
            if error is not None:
                run.error = error
            run.status = status

    @staticmethod
    def _publishable(outcome: RunOutcome) -> bool:
        return outcome.status == RunStatus.SUCCEEDED and all(
            r.status == StepStatus.SUCCEEDED for r in outcome.results.values()
        )

    def _publish(self, handle: RunHandle, definition: PipelineDefinition) -> PublishResult:
        run = handle.run
        spec = definition.publish
        publisher = self.publisher_factory(spec.repository or run.trigger.repository)
        result = publisher.publish(handle.workspace / spec.directory, spec.destination, run.trigger.token)
        logger.info("publish for run %s: %s", run.run_id, result.message)
        return result
