# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

MASK = "***"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    """Turn a display name into a step/job identifier ("Install trunk" -> "install-trunk")."""
    slug = re.sub(r"[^A-Za-z0-9_]+", "-", name.strip().lower()).strip("-")
    if not slug or not slug[0].isalpha():
        slug = f"s-{slug}" if slug else ""
    return slug


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# ---------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STEP


_TERMINAL_STEP = frozenset(
    {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StatusReason(str, Enum):
    """Why a step ended up Failed, Skipped or Cancelled."""
    EXIT_CODE = "exit_code"
    TIMED_OUT = "timed_out"
    OUTPUT_PARSE = "output_parse"
    INFRASTRUCTURE = "infrastructure"
    EXPRESSION_ERROR = "expression_error"
    CANCELLED = "cancelled"
    CONDITION = "condition"
    UPSTREAM_FAILED = "upstream_failed"
    UPSTREAM_SKIPPED = "upstream_skipped"


class TriggerEvent(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"


# ---------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """Shell script executed by the step executor."""
    run: str
    shell: str | None = None


@dataclass(frozen=True)
class ActionRef:
    """Reference to an external action, e.g. ``actions/checkout@v2``."""
    uses: str

    @property
    def name(self) -> str:
        return self.uses.split("@", 1)[0]

    @property
    def version(self) -> str | None:
        _, sep, version = self.uses.partition("@")
        return version if sep else None


Executable = Union[Command, ActionRef]


@dataclass(frozen=True)
class StepSpec:
    """A single step inside a job: a command or an external action."""
    id: str
    executable: Executable
    name: str | None = None
    params: Mapping[str, str] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    condition: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    # None means "the previous step in the job"
    needs: Tuple[str, ...] | None = None
    timeout: float | None = None
    working_directory: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", _frozen({k: str(v) for k, v in self.params.items()}))
        object.__setattr__(self, "env", _frozen({k: str(v) for k, v in self.env.items()}))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        if self.needs is not None:
            object.__setattr__(self, "needs", tuple(self.needs))

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if isinstance(self.executable, ActionRef):
            return self.executable.uses
        return self.executable.run.strip().splitlines()[0] if self.executable.run.strip() else self.id

    @property
    def is_action(self) -> bool:
        return isinstance(self.executable, ActionRef)


@dataclass(frozen=True)
class TriggerFilter:
    """
    Which trigger events start a run.

    Maps event kind -> branch glob patterns (``None`` = any branch).
    """
    events: Mapping[str, Optional[Tuple[str, ...]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "events",
            _frozen({k: (tuple(v) if v is not None else None) for k, v in self.events.items()}),
        )

    def matches(self, trigger: "Trigger") -> bool:
        if not self.events:
            return True
        if trigger.event.value not in self.events:
            return False
        branches = self.events[trigger.event.value]
        if not branches:
            return True
        return any(fnmatch(trigger.branch, pattern) for pattern in branches)


@dataclass(frozen=True)
class Job:
    """A named, ordered sequence of steps plus its dependencies on other jobs."""
    name: str
    steps: Tuple[StepSpec, ...]
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    on: TriggerFilter | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "env", _frozen({k: str(v) for k, v in self.env.items()}))


@dataclass(frozen=True)
class PublishSpec:
    """Directory (workspace relative) to publish after a successful run."""
    directory: str
    destination: str = "gh-pages"
    repository: str | None = None


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    on: TriggerFilter | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    publish: PublishSpec | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen({k: str(v) for k, v in self.env.items()}))

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def step_count(self) -> int:
        return sum(len(j.steps) for j in self.jobs)


# ---------------------------------------------------------------------
# Trigger + run environment
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """The external event that instantiates a run."""
    event: TriggerEvent
    repository: str
    ref: str = "refs/heads/main"
    token: str = ""
    sha: str | None = None
    actor: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event", TriggerEvent(self.event))
        object.__setattr__(self, "inputs", _frozen(self.inputs))

    @property
    def branch(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def repository_name(self) -> str:
        return self.repository.rstrip("/").split("/")[-1].replace(".git", "")

    @property
    def repository_owner(self) -> str:
        parts = self.repository.rstrip("/").split("/")
        return parts[-2] if len(parts) > 1 else ""


@dataclass(frozen=True)
class RunEnvironment:
    """
    Run-scoped environment, resolved once when the run starts.

    Every component receives this object explicitly; nothing below the
    controller reads ``os.environ``.
    """
    run_id: str
    trigger: Trigger
    vars: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vars", _frozen(self.vars))
        object.__setattr__(self, "secrets", _frozen(self.secrets))

    @property
    def github(self) -> Dict[str, Any]:
        t = self.trigger
        return {
            "event_name": t.event.value,
            "repository": t.repository,
            "repository_owner": t.repository_owner,
            "ref": t.ref,
            "ref_name": t.branch,
            "sha": t.sha or "",
            "actor": t.actor or "",
            "token": t.token,
            "run_id": self.run_id,
            "event": {
                "repository": {"name": t.repository_name, "full_name": t.repository},
                "inputs": dict(t.inputs),
            },
        }

    def context(self) -> Dict[str, Any]:
        """Expression context available before any step has run."""
        return {
            "env": dict(self.vars),
            "vars": dict(self.vars),
            "github": self.github,
            "secrets": dict(self.secrets),
            "inputs": dict(self.trigger.inputs),
        }

    @property
    def secret_values(self) -> Tuple[str, ...]:
        values = set(self.secrets.values())
        if self.trigger.token:
            values.add(self.trigger.token)
        # longest first so overlapping secrets mask fully
        return tuple(sorted((v for v in values if v), key=len, reverse=True))

    def mask(self, text: str) -> str:
        for value in self.secret_values:
            text = text.replace(value, MASK)
        return text

    def mask_bytes(self, data: bytes) -> bytes:
        for value in self.secret_values:
            data = data.replace(value.encode("utf-8"), MASK.encode("utf-8"))
        return data


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    """Outcome of one DAG node. Immutable once its status is terminal."""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    reason: StatusReason | None = None
    message: str | None = None
    exit_code: int | None = None
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    outputs: Mapping[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", _frozen(self.outputs))

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class Run:
    """One execution of a PipelineDefinition. Owned by the RunController."""
    run_id: str
    definition: str
    trigger: Trigger
    status: RunStatus = RunStatus.PENDING
    environment: RunEnvironment | None = None
    results: Dict[str, StepResult] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    # True when the run was aborted before scheduling (invalid definition/graph)
    aborted: bool = False
    publish_result: Any = None

    def record(self, result: StepResult) -> None:
        current = self.results.get(result.step_id)
        if current is not None and current.terminal:
            raise ValueError(
                f"step {result.step_id!r} already {current.status.value}; refusing to overwrite"
            )
        self.results[result.step_id] = result

    def snapshot(self) -> "Run":
        return replace(self, results=dict(self.results))
