# executor.py
from __future__ import annotations

import codecs
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .actions import ActionContext, ActionRegistry, ActionResult, default_registry
from .cancel import CancelToken
from .errors import ExpressionError, InfrastructureError, OutputParseError
from .events import EventBus, EventKind
from .expressions import interpolate
from .graph import DAGNode
from .model import ActionRef, Command, RunEnvironment, StatusReason, StepResult, StepStatus, utcnow
from .outputs import MarkerScanner, read_output_file
from .settings import DEFAULT_INFRA_RETRIES, DEFAULT_KILL_GRACE, DEFAULT_OUTPUT_CAP, DEFAULT_STEP_TIMEOUT

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# outcomes of waiting on a step
DONE, TIMEOUT, CANCELLED = "done", "timeout", "cancelled"


@dataclass(frozen=True)
class ExecutorConfig:
    workspace: Path
    temp_dir: Path | None = None
    output_cap: int = DEFAULT_OUTPUT_CAP
    kill_grace: float = DEFAULT_KILL_GRACE
    infra_retries: int = DEFAULT_INFRA_RETRIES
    default_timeout: float = DEFAULT_STEP_TIMEOUT
    shell: str | None = None

    @property
    def step_temp_root(self) -> Path:
        return self.temp_dir or self.workspace.parent / f"{self.workspace.name}-tmp"


class BoundedBuffer:
    """Keeps at most ``cap`` bytes; anything beyond is dropped and flagged."""

    def __init__(self, cap: int):
        self.cap = cap
        self._chunks: List[bytes] = []
        self._size = 0
        self.truncated = False

    def write(self, data: bytes) -> None:
        room = self.cap - self._size
        if len(data) > room:
            self.truncated = True
            data = data[: max(room, 0)]
        if data:
            self._chunks.append(data)
            self._size += len(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


class StepStream:
    """
    One output stream of a running step.

    Output is masked line by line: bytes after the last newline are held
    back until the line completes (or the stream closes), so a secret split
    across two pipe reads is still caught. Masked bytes are published on the
    bus as StepOutputChunk text and accumulated, undecoded, into a bounded
    buffer. Truncation of the buffer never stops the streaming.
    """

    def __init__(
        self,
        name: str,
        step_id: str,
        cap: int,
        env: RunEnvironment,
        bus: EventBus | None = None,
        scanner: MarkerScanner | None = None,
    ):
        self.name = name
        self.step_id = step_id
        self.buffer = BoundedBuffer(cap)
        self._env = env
        self._bus = bus
        self._scanner = scanner
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = b""
        # tail kept when a line grows past CHUNK_SIZE without a newline
        self._keep = max((len(v.encode("utf-8")) for v in env.secret_values), default=1) - 1
        self._lock = threading.Lock()

    def write(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            if self._scanner is not None:
                self._scanner.feed(data)
            pending = self._env.mask_bytes(self._pending + data)
            cut = pending.rfind(b"\n") + 1
            if not cut and len(pending) > CHUNK_SIZE:
                cut = len(pending) - self._keep
            self._pending = pending[cut:]
            self._emit(pending[:cut])

    def close(self) -> None:
        with self._lock:
            if self._scanner is not None:
                self._scanner.close()
            pending, self._pending = self._env.mask_bytes(self._pending), b""
            self._emit(pending, final=True)

    def _emit(self, data: bytes, final: bool = False) -> None:
        self.buffer.write(data)
        text = self._decoder.decode(data, final=final)
        if text and self._bus is not None:
            self._bus.emit(EventKind.STEP_OUTPUT_CHUNK, self.step_id, stream=self.name, text=text)


@dataclass
class ResolvedStep:
    """A node with every ``${{ }}`` expanded, ready to run."""
    node: DAGNode
    params: Dict[str, str]
    env: Dict[str, str]
    script: str | None
    cwd: Path
    temp_dir: Path
    output_file: Path
    timeout: float


@dataclass
class _Attempt:
    outcome: str
    exit_code: int | None
    outputs: Dict[str, str] = field(default_factory=dict)
    parse_error: OutputParseError | None = None
    message: str | None = None


def _default_shell() -> str:
    return shutil.which("bash") or "/bin/sh"


def _shell_argv(shell: str, script_path: Path) -> List[str]:
    if "{0}" in shell:
        return [part.replace("{0}", str(script_path)) for part in shell.split()]
    name = os.path.basename(shell)
    if name == "bash":
        return [shell, "--noprofile", "--norc", "-eo", "pipefail", str(script_path)]
    if name == "sh":
        return [shell, "-e", str(script_path)]
    return [shell, str(script_path)]


def _pump(stream, sink: StepStream) -> None:
    try:
        while True:
            chunk = stream.read1(CHUNK_SIZE)
            if not chunk:
                break
            sink.write(chunk)
    finally:
        stream.close()


def _kill_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


class StepExecutor:
    """
    Runs one DAG node: either a shell command in its own process group or a
    registered external action on a helper thread.

    ``execute`` never raises for step-local problems; every failure becomes a
    terminal StepResult.
    """

    def __init__(
        self,
        config: ExecutorConfig,
        bus: EventBus | None = None,
        actions: ActionRegistry | None = None,
    ):
        self.config = config
        self.bus = bus
        self.actions = actions if actions is not None else default_registry()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def execute(
        self,
        node: DAGNode,
        env: RunEnvironment,
        *,
        context: Optional[Mapping[str, Any]] = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> StepResult:
        cancel = cancel or CancelToken()
        started = utcnow()
        base = StepResult(step_id=node.id, status=StepStatus.RUNNING, started_at=started)

        if cancel.cancelled:
            return replace(base, status=StepStatus.CANCELLED, reason=StatusReason.CANCELLED,
                           finished_at=utcnow(), message="cancelled before start")

        try:
            resolved = self.resolve(node, env, context if context is not None else env.context(), timeout)
        except ExpressionError as e:
            return replace(base, status=StepStatus.FAILED, reason=StatusReason.EXPRESSION_ERROR,
                           message=str(e), finished_at=utcnow(), attempts=1)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._run_attempt(resolved, env, cancel, attempt)
                return replace(result, started_at=started, attempts=attempt)
            except InfrastructureError as e:
                if attempt > self.config.infra_retries or cancel.cancelled:
                    logger.warning("step %s could not be started: %s", node.id, e.message)
                    return replace(
                        base,
                        status=StepStatus.FAILED,
                        reason=StatusReason.INFRASTRUCTURE,
                        message=e.message,
                        finished_at=utcnow(),
                        attempts=attempt,
                    )
                logger.info(
                    "retrying %s after infrastructure error (%d/%d): %s",
                    node.id, attempt, self.config.infra_retries, e.message,
                )

    def resolve(
        self,
        node: DAGNode,
        env: RunEnvironment,
        context: Mapping[str, Any],
        timeout: float | None = None,
    ) -> ResolvedStep:
        spec = node.spec
        params = {k: interpolate(v, context) for k, v in spec.params.items()}
        step_env = {k: interpolate(v, context) for k, v in node.env.items()}
        script = interpolate(spec.executable.run, context) if isinstance(spec.executable, Command) else None

        cwd = self.config.workspace
        if spec.working_directory:
            cwd = (cwd / interpolate(spec.working_directory, context)).resolve()

        temp_dir = self.config.step_temp_root / node.id
        if timeout is None:
            timeout = spec.timeout if spec.timeout is not None else self.config.default_timeout
        return ResolvedStep(
            node=node,
            params=params,
            env=step_env,
            script=script,
            cwd=cwd,
            temp_dir=temp_dir,
            output_file=temp_dir / "output",
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _process_env(self, step: ResolvedStep, env: RunEnvironment) -> Dict[str, str]:
        t = env.trigger
        proc_env = dict(env.vars)
        proc_env.update(
            {
                "CI": "true",
                "FLOWCI": "true",
                "FLOWCI_RUN_ID": env.run_id,
                "FLOWCI_STEP_ID": step.node.id,
                "FLOWCI_WORKSPACE": str(self.config.workspace),
                "GITHUB_WORKSPACE": str(self.config.workspace),
                "GITHUB_REPOSITORY": t.repository,
                "GITHUB_REF": t.ref,
                "GITHUB_REF_NAME": t.branch,
                "GITHUB_EVENT_NAME": t.event.value,
                "GITHUB_SHA": t.sha or "",
                "GITHUB_RUN_ID": env.run_id,
                "RUNNER_TEMP": str(step.temp_dir),
            }
        )
        proc_env.update(step.env)
        for key, value in step.params.items():
            proc_env[f"INPUT_{key.upper().replace(' ', '_')}"] = value
        proc_env["FLOWCI_OUTPUT"] = proc_env["GITHUB_OUTPUT"] = str(step.output_file)
        return proc_env

    def _prepare_dirs(self, step: ResolvedStep) -> None:
        if not step.cwd.is_dir():
            raise InfrastructureError(f"working directory not found: {step.cwd}")
        try:
            step.temp_dir.mkdir(parents=True, exist_ok=True)
            # fresh output channel for every attempt
            step.output_file.write_text("", encoding="utf-8")
        except OSError as e:
            raise InfrastructureError(f"could not prepare step directory {step.temp_dir}: {e}") from e

    def _wait(self, done, timeout: float, cancel: CancelToken, wake: threading.Event) -> str:
        """Block until ``done()``, the deadline, or cancellation, whichever is first."""
        cancel.add_callback(wake.set)
        deadline = time.monotonic() + timeout
        while not done():
            if cancel.cancelled:
                return CANCELLED
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return TIMEOUT
            wake.wait(remaining)
            wake.clear()
        return DONE

    def _run_attempt(self, step: ResolvedStep, env: RunEnvironment, cancel: CancelToken, attempt: int) -> StepResult:
        self._prepare_dirs(step)
        node = step.node
        scanner = MarkerScanner()
        out = StepStream("stdout", node.id, self.config.output_cap, env, self.bus, scanner)
        err = StepStream("stderr", node.id, self.config.output_cap, env, self.bus)
        proc_env = self._process_env(step, env)

        if isinstance(node.spec.executable, ActionRef):
            result = self._run_action(step, node.spec.executable, env, proc_env, out, err, cancel)
        else:
            result = self._run_command(step, node.spec.executable, proc_env, out, err, cancel)
        out.close()
        err.close()

        if result.outcome == DONE:
            try:
                if scanner.error is not None:
                    raise scanner.error
                outputs = dict(scanner.outputs)
                outputs.update(read_output_file(step.output_file))
                outputs.update(result.outputs)
                result.outputs = outputs
            except OutputParseError as e:
                result.parse_error = e

        return self._to_result(node, result, out, err, step.timeout)

    def _run_command(
        self,
        step: ResolvedStep,
        command: Command,
        proc_env: Dict[str, str],
        out: StepStream,
        err: StepStream,
        cancel: CancelToken,
    ) -> _Attempt:
        script_path = step.temp_dir / "script.sh"
        script_path.write_text(step.script or "", encoding="utf-8")
        shell = command.shell or self.config.shell or _default_shell()
        argv = _shell_argv(shell, script_path)

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(step.cwd),
                env=proc_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise InfrastructureError(f"could not start {argv[0]}: {e}") from e

        logger.debug("started %s (pid=%d)", step.node.id, proc.pid)
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, out), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err), daemon=True),
        ]
        for t in pumps:
            t.start()

        wake = threading.Event()

        def _reap() -> None:
            proc.wait()
            wake.set()

        threading.Thread(target=_reap, daemon=True).start()

        outcome = self._wait(lambda: proc.poll() is not None, step.timeout, cancel, wake)
        if outcome != DONE:
            self._terminate(proc)

        for t in pumps:
            t.join(self.config.kill_grace)
        if any(t.is_alive() for t in pumps):
            # background children still hold the pipes open
            _kill_group(proc.pid, signal.SIGKILL)
            for t in pumps:
                t.join()

        return _Attempt(outcome=outcome, exit_code=proc.returncode)

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the whole process group, then SIGKILL after the grace period."""
        _kill_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.config.kill_grace)
        except subprocess.TimeoutExpired:
            logger.info("process group %d ignored SIGTERM, killing", proc.pid)
            _kill_group(proc.pid, signal.SIGKILL)
            proc.wait()

    def _run_action(
        self,
        step: ResolvedStep,
        ref: ActionRef,
        env: RunEnvironment,
        proc_env: Dict[str, str],
        out: StepStream,
        err: StepStream,
        cancel: CancelToken,
    ) -> _Attempt:
        fn = self.actions.get(ref.name)
        if fn is None:
            raise InfrastructureError(f"unknown action '{ref.uses}'")

        action_cancel = cancel.child()
        ctx = ActionContext(
            workspace=step.cwd,
            temp_dir=step.temp_dir,
            env=proc_env,
            trigger=env.trigger,
            stdout=out,
            stderr=err,
            cancel=action_cancel,
        )
        wake = threading.Event()
        holder: Dict[str, Any] = {}

        def _target() -> None:
            try:
                holder["result"] = fn(dict(step.params), ctx)
            except Exception as e:  # reported as the step's failure
                holder["error"] = e
            finally:
                wake.set()

        worker = threading.Thread(target=_target, name=f"action-{step.node.id}", daemon=True)
        worker.start()
        outcome = self._wait(lambda: not worker.is_alive(), step.timeout, cancel, wake)
        if outcome != DONE:
            action_cancel.cancel(outcome)
            worker.join(self.config.kill_grace)
            if worker.is_alive():
                logger.warning("action %s did not stop within %.1fs", ref.uses, self.config.kill_grace)
            return _Attempt(outcome=outcome, exit_code=None)

        error = holder.get("error")
        if isinstance(error, InfrastructureError):
            raise error
        if error is not None:
            err.write(f"{type(error).__name__}: {error}\n")
            return _Attempt(outcome=DONE, exit_code=1, message=str(error))

        result: ActionResult = holder.get("result") or ActionResult()
        return _Attempt(outcome=DONE, exit_code=int(result.exit_code), outputs=dict(result.outputs))

    def _to_result(
        self,
        node: DAGNode,
        attempt: _Attempt,
        out: StepStream,
        err: StepStream,
        timeout: float,
    ) -> StepResult:
        status, reason, message = StepStatus.SUCCEEDED, None, attempt.message
        if attempt.outcome == CANCELLED:
            status, reason, message = StepStatus.CANCELLED, StatusReason.CANCELLED, "cancelled"
        elif attempt.outcome == TIMEOUT:
            status, reason = StepStatus.FAILED, StatusReason.TIMED_OUT
            message = f"timed out after {timeout:g}s"
        elif attempt.exit_code != 0:
            status, reason = StepStatus.FAILED, StatusReason.EXIT_CODE
            message = message or f"exit code {attempt.exit_code}"
        elif attempt.parse_error is not None:
            status, reason, message = StepStatus.FAILED, StatusReason.OUTPUT_PARSE, str(attempt.parse_error)

        return StepResult(
            step_id=node.id,
            status=status,
            reason=reason,
            message=message,
            exit_code=attempt.exit_code,
            stdout=out.buffer.getvalue(),
            stderr=err.buffer.getvalue(),
            stdout_truncated=out.buffer.truncated,
            stderr_truncated=err.buffer.truncated,
            outputs=attempt.outputs if status == StepStatus.SUCCEEDED else {},
            finished_at=utcnow(),
        )
