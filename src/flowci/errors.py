"""
Error taxonomy for flowci.

- DefinitionError: the pipeline document itself is malformed. Fatal, no run starts.
- GraphError (CycleError, UnknownReferenceError): the definition parses but
  cannot be turned into a DAG. Fatal, no step is dispatched.
- StepError (TimedOut, OutputParseError, InfrastructureError): local to one
  step. The executor converts these into a Failed StepResult; they never
  escape the scheduler.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .model import StatusReason


class FlowError(Exception):
    """
    Base exception for flowci.

    Carries enough context for clean CLI output without a traceback:
    a message plus optional key/value details.
    """

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [self.message]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(FlowError):
    """Malformed pipeline definition."""

    def __init__(self, message: str, *, source: str | None = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if source:
            details.setdefault("source", source)
        super().__init__(message, details=details)
        self.source = source


class ExpressionError(DefinitionError):
    """A ``${{ }}`` expression could not be parsed or evaluated."""

    def __init__(self, message: str, *, expression: str | None = None):
        super().__init__(message, details={"expression": expression} if expression else None)
        self.expression = expression


class GraphError(FlowError):
    """The definition cannot be turned into an executable DAG."""


class CycleError(GraphError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


class UnknownReferenceError(GraphError):
    def __init__(self, node: str, reference: str, *, known: Optional[List[str]] = None):
        self.node = node
        self.reference = reference
        details = {"known": sorted(known)} if known is not None else None
        super().__init__(f"step '{node}' references unknown '{reference}'", details=details)


class StepError(FlowError):
    """A failure local to one step."""
    reason = StatusReason.EXIT_CODE


class TimedOut(StepError):
    reason = StatusReason.TIMED_OUT


class OutputParseError(StepError):
    reason = StatusReason.OUTPUT_PARSE

    def __init__(self, message: str, *, line_no: int | None = None, line: str | None = None):
        details: Dict[str, Any] = {}
        if line_no is not None:
            details["line"] = line_no
        if line is not None:
            details["record"] = line
        super().__init__(message, details=details)
        self.line_no = line_no


class InfrastructureError(StepError):
    """The executor could not even start the step (spawn failure, unknown action, bad cwd)."""
    reason = StatusReason.INFRASTRUCTURE
