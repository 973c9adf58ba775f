"""Terminal rendering for flowci runs: headers, live step output, summaries."""

from __future__ import annotations

import sys
from typing import Iterable, Mapping, Optional

from ..events import Event, EventKind
from ..graph import Dag
from ..model import ActionRef, Run, StepResult, StepStatus


class Console:
    """Everything flowci prints to the terminal goes through here."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Args:
            debug: print full error text and [DEBUG] lines
            quiet: suppress the live step output echo
        """
        self.debug = debug
        self.quiet = quiet
        # unterminated line fragments per (step, stream)
        self._partial: dict[tuple[str, str], str] = {}

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        run_id: str,
        repository: str,
        workflow: str,
        trigger: str,
        step_count: int,
    ) -> None:
        print("\nRUN STARTED")
        for label, value in (
            ("Run ID", run_id),
            ("Repository", repository),
            ("Workflow", workflow),
            ("Trigger", trigger),
            ("Steps", step_count),
        ):
            print(f"{label}: {value}")
        print()

    def print_step(self, step_id: str, name: str | None = None) -> None:
        label = f"{step_id} ({name})" if name and name != step_id else step_id
        print(f"STEP: {label}")

    def print_output(self, step_id: str, stream: str, text: str) -> None:
        """Echo step output line by line, prefixed with the step id."""
        if self.quiet:
            return
        key = (step_id, stream)
        buf = self._partial.pop(key, "") + text
        *lines, rest = buf.split("\n")
        target = sys.stderr if stream == "stderr" else sys.stdout
        for line in lines:
            print(f"  [{step_id}] {line}", file=target)
        if rest:
            self._partial[key] = rest

    def flush_output(self, step_id: str) -> None:
        for stream in ("stdout", "stderr"):
            rest = self._partial.pop((step_id, stream), "")
            if rest and not self.quiet:
                print(f"  [{step_id}] {rest}", file=sys.stderr if stream == "stderr" else sys.stdout)

    def print_step_finished(self, step_id: str, data: Mapping[str, object]) -> None:
        self.flush_output(step_id)
        status = str(data.get("status"))
        if status == StepStatus.FAILED.value:
            exit_code = data.get("exit_code")
            self.print_failure(
                step_id,
                str(data.get("message") or "failed"),
                exit_code=exit_code if isinstance(exit_code, int) else None,
            )
            return
        if status == StepStatus.SUCCEEDED.value:
            duration = data.get("duration")
            took = f" in {duration:.1f}s" if isinstance(duration, (int, float)) else ""
            print(f"STATUS: {step_id} success{took}")
        else:
            print(f"STATUS: {step_id} {status} ({data.get('reason')})")

    def print_failure(self, step_id: str, reason: str, exit_code: Optional[int] = None) -> None:
        """Failed step block; only the first line of ``reason`` unless debugging."""
        print(f"STEP FAILED: {step_id}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if not reason:
            reason = "Unknown error"
        print(f"Error details: {reason}" if self.debug else f"Error: {reason.splitlines()[0]}")

    def render_event(self, event: Event) -> None:
        """Print one bus event as it happens."""
        step = event.step_id or ""
        if event.kind == EventKind.STEP_DISPATCHED:
            self.print_step(step, event.data.get("name"))
        elif event.kind == EventKind.STEP_OUTPUT_CHUNK:
            self.print_output(step, event.data.get("stream", "stdout"), event.data.get("text", ""))
        elif event.kind == EventKind.STEP_COMPLETED:
            self.print_step_finished(step, event.data)
        elif event.kind == EventKind.RUN_COMPLETED:
            self.print_debug(f"run completed: {event.data.get('status')}")

    def print_event_line(self, event: Event) -> None:
        """One-line rendering of a persisted event."""
        ts = event.timestamp.isoformat() if event.timestamp else "-"
        step = f" {event.step_id}" if event.step_id else ""
        if event.kind == EventKind.STEP_OUTPUT_CHUNK:
            detail = event.data.get("text", "").rstrip("\n")
        else:
            detail = " ".join(f"{k}={v}" for k, v in event.data.items() if v is not None)
        print(f"{event.seq:>6} {ts} {event.kind.value}{step} {detail}".rstrip())

    def print_plan(self, dag: Dag) -> None:
        """The DAG as stages of steps that may run in parallel."""
        self.print_header("PLAN")
        for n, level in enumerate(dag.levels(), start=1):
            print(f"Stage {n}:")
            for nid in level:
                node = dag[nid]
                kind = "uses " + node.spec.executable.uses if isinstance(node.spec.executable, ActionRef) else "run"
                extra = ""
                if node.static_condition is False:
                    extra = f" (skipped: {node.skip_message})"
                elif node.deferred:
                    extra = f" (if: {node.condition.source})"
                after = f" after {', '.join(node.predecessors)}" if node.predecessors else ""
                print(f"  {nid} [{kind}]{after}{extra}")

    def print_results(self, run: Run) -> None:
        rule = "=" * 40
        print(f"\n{rule}\nRESULTS\n{rule}")
        for step_id, result in run.results.items():
            print(f"  {step_id}: {self._status_display(result)}")
        print(f"\nRun {run.run_id}: {run.status.value.upper()}")
        if run.publish_result is not None:
            state = "ok" if run.publish_result.ok else "failed"
            print(f"Publish: {state} ({run.publish_result.message})")

    @staticmethod
    def _status_display(result: StepResult) -> str:
        if result.status == StepStatus.SUCCEEDED:
            return "SUCCESS"
        if result.reason is not None:
            return f"{result.status.value.upper()} ({result.reason.value})"
        return result.status.value.upper()

    def print_error(self, title: str, message: str, details: Optional[Iterable[str]] = None) -> None:
        """Error block on stderr: title, message, then indented detail lines."""
        print(f"\nERROR: {title}", file=sys.stderr)
        print(message, file=sys.stderr)
        for line in details or ():
            print(f"  {line}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# set by the CLI group callback
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
