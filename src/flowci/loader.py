# loader.py
"""
Loading pipeline definitions.

Two sources are supported:

  - YAML documents shaped like GitHub Actions workflows (``on``, ``env``,
    ``jobs.<name>.steps`` with ``uses``/``with``/``run``/``if``), validated
    with pydantic before they become frozen model objects.
  - Python workflow files using the DSL: the file defines ``workflow()``
    returning a PipelineDefinition (or a list of Jobs), or ``JOBS = [...]``.
"""
from __future__ import annotations

import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DefinitionError
from .expressions import unwrap
from .model import (
    ID_PATTERN,
    ActionRef,
    Command,
    Job,
    PipelineDefinition,
    PublishSpec,
    StepSpec,
    TriggerFilter,
    slugify,
)

# -------------------- Document schemas --------------------

Scalar = Union[str, int, float, bool]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    shell: Optional[str] = None
    with_: Dict[str, Optional[Scalar]] = Field(default_factory=dict, alias="with")
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    outputs: List[str] = Field(default_factory=list)
    needs: Optional[List[str]] = None
    timeout: Optional[float] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    continue_on_error: Optional[bool] = Field(default=None, alias="continue-on-error")

    @field_validator("needs", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v

    @model_validator(mode="after")
    def _exactly_one_executable(self) -> "StepDoc":
        if (self.uses is None) == (self.run is None):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        if self.continue_on_error:
            raise ValueError("'continue-on-error' is not supported")
        return self

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout is not None:
            return self.timeout
        if self.timeout_minutes is not None:
            return self.timeout_minutes * 60
        return None


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    runs_on: Optional[Union[str, List[str]]] = Field(default=None, alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    on: Optional[Any] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        if v is None:
            return []
        return [v] if isinstance(v, str) else v


class PublishDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    directory: str
    destination: str = "gh-pages"
    repository: Optional[str] = None


class WorkflowDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    on: Optional[Any] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)
    publish: Optional[PublishDoc] = None


# -------------------- Conversion --------------------

def trigger_filter(on: Any) -> Optional[TriggerFilter]:
    """
    ``on:`` in any of its shapes -> TriggerFilter.

    ``push`` / ``[push, pull_request]`` / ``{push: {branches: [main]}}``.
    """
    if on is None:
        return None
    if isinstance(on, str):
        return TriggerFilter({on: None})
    if isinstance(on, list):
        return TriggerFilter({str(e): None for e in on})
    if isinstance(on, dict):
        events: Dict[str, Optional[List[str]]] = {}
        for event, cfg in on.items():
            branches = None
            if isinstance(cfg, dict) and cfg.get("branches"):
                raw = cfg["branches"]
                branches = [raw] if isinstance(raw, str) else [str(b) for b in raw]
            events[str(event)] = branches
        return TriggerFilter(events)
    raise DefinitionError(f"Unsupported 'on' value: {on!r}")


def _condition(value: Optional[Union[str, bool]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _combine(job_if: Optional[str], step_if: Optional[str]) -> Optional[str]:
    if job_if is None:
        return step_if
    if step_if is None:
        return job_if
    return f"({unwrap(job_if)}) && ({unwrap(step_if)})"


def _step_ids(steps: List[StepDoc]) -> List[str]:
    explicit = {s.id for s in steps if s.id}
    used: set[str] = set()
    ids: List[str] = []
    for n, step in enumerate(steps, start=1):
        if step.id:
            ids.append(step.id)
            continue
        base = (slugify(step.name) if step.name else "") or f"step-{n}"
        candidate, k = base, 2
        while candidate in used or candidate in explicit:
            candidate, k = f"{base}-{k}", k + 1
        used.add(candidate)
        ids.append(candidate)
    return ids


def _to_job(name: str, doc: JobDoc) -> Job:
    job_if = _condition(doc.if_)
    job_timeout = doc.timeout_minutes * 60 if doc.timeout_minutes is not None else None
    steps: List[StepSpec] = []
    for sid, s in zip(_step_ids(doc.steps), doc.steps):
        if s.uses is not None:
            executable: Union[Command, ActionRef] = ActionRef(s.uses)
        else:
            executable = Command(run=s.run or "", shell=s.shell)
        steps.append(
            StepSpec(
                id=sid,
                executable=executable,
                name=s.name,
                params={k: _stringify(v) for k, v in s.with_.items()},
                outputs=tuple(s.outputs),
                condition=_combine(job_if, _condition(s.if_)),
                env={k: _stringify(v) for k, v in s.env.items()},
                needs=tuple(s.needs) if s.needs is not None else None,
                timeout=s.timeout_seconds if s.timeout_seconds is not None else job_timeout,
                working_directory=s.working_directory,
            )
        )
    return Job(
        name=name,
        steps=tuple(steps),
        needs=tuple(doc.needs),
        env={k: _stringify(v) for k, v in doc.env.items()},
        on=trigger_filter(doc.on),
    )


def _validation_message(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        lines.append(f"{loc}: {err['msg']}")
    return "; ".join(lines)


def definition_from_dict(data: Any, *, source: str | None = None, name: str | None = None) -> PipelineDefinition:
    if not isinstance(data, dict):
        raise DefinitionError("Workflow document must be a mapping", source=source)
    # YAML 1.1 reads a bare ``on:`` key as boolean True
    if True in data:
        data = {("on" if k is True else k): v for k, v in data.items()}

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid workflow: {_validation_message(e)}", source=source) from e

    for job_name in doc.jobs:
        if not ID_PATTERN.match(job_name):
            raise DefinitionError(f"Invalid job name {job_name!r}", source=source)

    publish = None
    if doc.publish is not None:
        publish = PublishSpec(
            directory=doc.publish.directory,
            destination=doc.publish.destination,
            repository=doc.publish.repository,
        )

    return PipelineDefinition(
        name=doc.name or name or "workflow",
        jobs=tuple(_to_job(n, j) for n, j in doc.jobs.items()),
        on=trigger_filter(doc.on),
        env={k: _stringify(v) for k, v in doc.env.items()},
        publish=publish,
        source=source,
    )


def load_definition_text(text: str, *, source: str | None = None, name: str | None = None) -> PipelineDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", source=source) from e
    return definition_from_dict(data, source=source, name=name)


def _load_python(path: Path) -> PipelineDefinition:
    module_name = f"flowci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional arguments but" in str(e) and "was given" in str(e):
                raise DefinitionError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from flowci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`",
                    source=str(path),
                ) from e
            raise
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, PipelineDefinition):
        return result if result.source else _with_source(result, path)
    if isinstance(result, list) and result and all(isinstance(j, Job) for j in result):
        return PipelineDefinition(name=path.stem, jobs=tuple(result), source=str(path))
    raise DefinitionError(
        "Workflow must return/define a PipelineDefinition or a List[Job]. "
        "Define workflow() -> wf(...) or JOBS = [Job, ...].",
        source=str(path),
    )


def _with_source(definition: PipelineDefinition, path: Path) -> PipelineDefinition:
    return replace(definition, source=str(path))


def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load a definition from a ``.yml``/``.yaml`` document or a ``.py``
    workflow file.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DefinitionError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    if wf_path.suffix in (".yml", ".yaml"):
        return load_definition_text(wf_path.read_text(encoding="utf-8"), source=str(wf_path), name=wf_path.stem)
    raise DefinitionError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")
