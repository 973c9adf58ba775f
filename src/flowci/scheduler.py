# scheduler.py
from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .cancel import CancelToken
from .errors import ExpressionError
from .events import EventBus, EventKind
from .executor import StepExecutor
from .expressions import StatusContext, truthy
from .graph import Dag, DAGNode
from .model import RunEnvironment, RunStatus, StatusReason, StepResult, StepStatus, utcnow
from .settings import default_parallelism

logger = logging.getLogger(__name__)

# skips that do not make the run fail
_BENIGN_SKIPS = (StatusReason.CONDITION, StatusReason.UPSTREAM_SKIPPED)


@dataclass(frozen=True)
class SchedulerConfig:
    max_workers: int = field(default_factory=default_parallelism)
    fail_fast: bool = True
    # None: the step's own timeout, else the executor default
    step_timeout: float | None = None
    skipped_counts_as_success: bool = True

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")


@dataclass(frozen=True)
class Transition:
    node: str
    before: StepStatus
    after: StepStatus
    seq: int


@dataclass
class RunOutcome:
    status: RunStatus
    results: Dict[str, StepResult]
    transitions: List[Transition] = field(default_factory=list)
    completion_order: List[str] = field(default_factory=list)
    max_running: int = 0

    def dispatched_after(self, seq: int) -> List[str]:
        """Nodes that moved Ready -> Dispatched after transition ``seq``."""
        return [
            t.node for t in self.transitions
            if t.seq > seq and t.after == StepStatus.DISPATCHED
        ]


class Scheduler:
    """
    Walks a DAG and dispatches ready nodes to a StepExecutor.

    All state transitions happen under one lock. The scheduling thread sleeps
    on a condition variable and is woken by executor completions or by
    cancellation; worker threads only append to the completion queue.
    """

    def __init__(
        self,
        executor: StepExecutor,
        bus: EventBus | None = None,
        config: SchedulerConfig | None = None,
        on_result: Optional[Callable[[StepResult], None]] = None,
    ):
        self.executor = executor
        self.bus = bus
        self.config = config or SchedulerConfig()
        self.on_result = on_result

    def run(self, dag: Dag, env: RunEnvironment, cancel: CancelToken | None = None) -> RunOutcome:
        return _RunState(self, dag, env, cancel or CancelToken()).drive()


class _RunState:
    def __init__(self, scheduler: Scheduler, dag: Dag, env: RunEnvironment, cancel: CancelToken):
        self.s = scheduler
        self.dag = dag
        self.env = env
        self.cancel = cancel
        self.cond = threading.Condition(threading.RLock())

        self.status: Dict[str, StepStatus] = {n.id: StepStatus.PENDING for n in dag}
        self.results: Dict[str, StepResult] = {}
        self.waiting_on: Dict[str, int] = {n.id: len(n.predecessors) for n in dag}
        self.ready: List[Tuple[int, int, str]] = []
        self.arrival = itertools.count()
        self.in_flight: Dict[str, CancelToken] = {}
        self.completed: Deque[Tuple[str, Future]] = deque()

        self.transitions: List[Transition] = []
        self.completion_order: List[str] = []
        self.running = 0
        self.max_running = 0
        self.stopping = False

    # ------------------------------------------------------------------
    # state transitions (caller holds self.cond)
    # ------------------------------------------------------------------

    def _move(self, nid: str, after: StepStatus) -> None:
        before = self.status[nid]
        self.status[nid] = after
        self.transitions.append(Transition(nid, before, after, len(self.transitions)))
        logger.debug("%s: %s -> %s", nid, before.value, after.value)
        if not after.terminal and self.s.on_result is not None:
            started = utcnow() if after == StepStatus.RUNNING else None
            self.s.on_result(StepResult(step_id=nid, status=after, started_at=started))

    def _finish(self, result: StepResult) -> None:
        nid = result.step_id
        if self.status[nid].terminal:
            return
        self._move(nid, result.status)
        self.results[nid] = result
        self.completion_order.append(nid)
        if self.s.bus is not None:
            self.s.bus.emit(
                EventKind.STEP_COMPLETED,
                nid,
                status=result.status.value,
                reason=result.reason.value if result.reason else None,
                message=result.message,
                exit_code=result.exit_code,
                outputs=dict(result.outputs),
                duration=result.duration,
            )
        if self.s.on_result is not None:
            self.s.on_result(result)

        if result.status == StepStatus.FAILED and self.s.config.fail_fast and not self.stopping:
            self._stop(nid)

        for child in self.dag[nid].successors:
            self.waiting_on[child] -= 1
            if self.waiting_on[child] == 0 and self.status[child] == StepStatus.PENDING:
                self._resolve(self.dag[child])

    def _end(self, nid: str, status: StepStatus, reason: StatusReason, message: str | None = None) -> None:
        now = utcnow()
        self._finish(
            StepResult(step_id=nid, status=status, reason=reason, message=message,
                       started_at=now, finished_at=now)
        )

    def _resolve(self, node: DAGNode) -> None:
        """All predecessors are terminal: decide between Ready and Skipped."""
        if node.static_condition is False:
            self._end(node.id, StepStatus.SKIPPED, StatusReason.CONDITION, node.skip_message)
            return

        blocked = [p for p in node.predecessors if self.status[p] != StepStatus.SUCCEEDED]
        if blocked and not node.run_always:
            reasons = [self.results[p].reason for p in blocked]
            benign = all(
                self.status[p] == StepStatus.SKIPPED and r in _BENIGN_SKIPS
                for p, r in zip(blocked, reasons)
            )
            reason = StatusReason.UPSTREAM_SKIPPED if benign else StatusReason.UPSTREAM_FAILED
            self._end(node.id, StepStatus.SKIPPED, reason, f"upstream {', '.join(blocked)} did not succeed")
            return
        if self.stopping:
            self._end(node.id, StepStatus.CANCELLED, StatusReason.CANCELLED, "run is stopping")
            return

        self._move(node.id, StepStatus.READY)
        heapq.heappush(self.ready, (node.index, next(self.arrival), node.id))

    def _stop(self, failed: str | None) -> None:
        """
        Stop dispatching: descendants of ``failed`` become Skipped, every
        other node that has not been dispatched becomes Cancelled, and
        in-flight nodes get their cancellation signal.
        """
        self.stopping = True
        doomed: Set[str] = self.dag.descendants(failed) if failed else set()
        self.ready.clear()
        for node in self.dag:
            if self.status[node.id] not in (StepStatus.PENDING, StepStatus.READY):
                continue
            if node.id in doomed:
                self._end(node.id, StepStatus.SKIPPED, StatusReason.UPSTREAM_FAILED,
                          f"upstream {failed} failed")
            else:
                reason = "cancelled after failure of " + failed if failed else "run cancelled"
                self._end(node.id, StepStatus.CANCELLED, StatusReason.CANCELLED, reason)
        for token in self.in_flight.values():
            token.cancel("fail-fast" if failed else "run cancelled")

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    def _context(self, node: DAGNode) -> Dict[str, Any]:
        ctx = self.env.context()
        jobs: Dict[str, Dict[str, Any]] = {}
        for other in self.dag:
            result = self.results.get(other.id)
            if result is None:
                continue
            entry = {
                "outputs": dict(result.outputs),
                "outcome": result.status.value,
                "conclusion": result.status.value,
            }
            jobs.setdefault(other.job, {"steps": {}})["steps"][other.spec.id] = entry
        ctx["jobs"] = jobs
        ctx["steps"] = jobs.get(node.job, {"steps": {}})["steps"]
        ctx["env"] = {**ctx["env"], **node.env}
        return ctx

    def _upstream_failed(self, nid: str) -> bool:
        """``failure()`` for a node: some ancestor Failed or was Cancelled."""
        return any(
            self.status[a] in (StepStatus.FAILED, StepStatus.CANCELLED)
            for a in self.dag.ancestors(nid)
        )

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        while self.ready and len(self.in_flight) < self.s.config.max_workers and not self.stopping:
            _, _, nid = heapq.heappop(self.ready)
            node = self.dag[nid]
            context = self._context(node)

            if node.deferred:
                status = StatusContext(failure=self._upstream_failed(nid), cancelled=self.cancel.cancelled)
                try:
                    go = truthy(node.condition.evaluate(context, status))
                except ExpressionError as e:
                    self._end(nid, StepStatus.FAILED, StatusReason.EXPRESSION_ERROR, str(e))
                    continue
                if not go:
                    self._end(nid, StepStatus.SKIPPED, StatusReason.CONDITION,
                              f"condition is false: {node.condition.source}")
                    continue

            token = self.cancel.child()
            self.in_flight[nid] = token
            self._move(nid, StepStatus.DISPATCHED)
            if self.s.bus is not None:
                self.s.bus.emit(EventKind.STEP_DISPATCHED, nid, job=node.job, name=node.spec.display_name)
            future = pool.submit(self._execute, node, context, token)
            future.add_done_callback(lambda f, nid=nid: self._on_done(nid, f))

    def _execute(self, node: DAGNode, context: Dict[str, Any], token: CancelToken) -> StepResult:
        with self.cond:
            if self.status[node.id] == StepStatus.DISPATCHED:
                self._move(node.id, StepStatus.RUNNING)
                self.running += 1
                self.max_running = max(self.max_running, self.running)
        timeout = None if node.spec.timeout is not None else self.s.config.step_timeout
        return self.s.executor.execute(node, self.env, context=context, timeout=timeout, cancel=token)

    def _on_done(self, nid: str, future: Future) -> None:
        with self.cond:
            self.completed.append((nid, future))
            self.cond.notify_all()

    def _collect(self) -> None:
        while self.completed:
            nid, future = self.completed.popleft()
            self.in_flight.pop(nid, None)
            if self.status[nid] == StepStatus.RUNNING:
                self.running -= 1
            exc = future.exception()
            if exc is not None:
                logger.error("executor crashed on %s", nid, exc_info=exc)
                now = utcnow()
                result = StepResult(step_id=nid, status=StepStatus.FAILED, reason=StatusReason.INFRASTRUCTURE,
                                    message=f"{type(exc).__name__}: {exc}", started_at=now, finished_at=now)
            else:
                result = future.result()
            self._finish(result)

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------

    def _wake(self) -> None:
        with self.cond:
            self.cond.notify_all()

    def _done(self) -> bool:
        return not self.in_flight and all(s.terminal for s in self.status.values())

    def drive(self) -> RunOutcome:
        self.cancel.add_callback(self._wake)
        externally_cancelled = False
        with ThreadPoolExecutor(max_workers=self.s.config.max_workers, thread_name_prefix="flowci-step") as pool:
            with self.cond:
                for node in self.dag:
                    if not node.predecessors:
                        self._resolve(node)
                while True:
                    self._collect()
                    if self.cancel.cancelled and not externally_cancelled:
                        externally_cancelled = True
                        logger.info("run %s cancelled: %s", self.env.run_id, self.cancel.reason)
                        self._stop(None)
                    self._dispatch(pool)
                    if self._done():
                        break
                    self.cond.wait()

        return RunOutcome(
            status=self._final_status(externally_cancelled),
            results=dict(self.results),
            transitions=list(self.transitions),
            completion_order=list(self.completion_order),
            max_running=self.max_running,
        )

    def _final_status(self, externally_cancelled: bool) -> RunStatus:
        if externally_cancelled:
            return RunStatus.CANCELLED
        statuses = [r.status for r in self.results.values()]
        if StepStatus.FAILED in statuses or StepStatus.CANCELLED in statuses:
            return RunStatus.FAILED
        for r in self.results.values():
            if r.status != StepStatus.SKIPPED:
                continue
            if r.reason not in _BENIGN_SKIPS or not self.s.config.skipped_counts_as_success:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED
