# src/flowci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import (
    ActionRef,
    Command,
    Job,
    PipelineDefinition,
    PublishSpec,
    StepSpec,
    TriggerFilter,
    slugify,
)


# ---------------------------------------------------------------------
# Steps: shell commands and actions
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Sequence[str] = (),
    when: str | None = None,
    needs: Optional[Sequence[str]] = None,
    timeout: float | None = None,
    shell: str | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        id=id or slugify(name),
        executable=Command(run=cmd, shell=shell),
        name=name,
        outputs=tuple(outputs),
        condition=when,
        env=env or {},
        needs=tuple(needs) if needs is not None else None,
        timeout=timeout,
        working_directory=cwd,
    )


def uses(
    action: str,
    *,
    name: str | None = None,
    id: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Sequence[str] = (),
    when: str | None = None,
    needs: Optional[Sequence[str]] = None,
    timeout: float | None = None,
    **params: Any,
) -> StepSpec:
    """
    Create an action step.

    Parameters can be passed as keyword arguments or, for names that are
    not valid identifiers (``fetch-depth``), through ``with_``.
    """
    ref = ActionRef(action)
    merged = {**dict(with_ or {}), **params}
    return StepSpec(
        id=id or slugify(name or ref.name.split("/")[-1]),
        executable=ref,
        name=name,
        params={k: str(v) for k, v in merged.items()},
        outputs=tuple(outputs),
        condition=when,
        env=env or {},
        needs=tuple(needs) if needs is not None else None,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _unique_ids(steps: List[StepSpec]) -> List[StepSpec]:
    seen: Dict[str, int] = {}
    out: List[StepSpec] = []
    for step in steps:
        n = seen.get(step.id, 0)
        seen[step.id] = n + 1
        out.append(step if n == 0 else replace(step, id=f"{step.id}-{n + 1}"))
    return out


def job(
    name: str,
    *steps: StepSpec,
    steps_list: Optional[List[StepSpec]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    on: Union[TriggerFilter, Mapping[str, Any], None] = None,
    cwd: str | None = None,  # inherited by shell steps without their own
) -> Job:
    collected: List[StepSpec] = [*(steps_list or ()), *steps]
    if not collected:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        collected = [
            s if s.working_directory is not None or s.is_action else replace(s, working_directory=cwd)
            for s in collected
        ]

    return Job(
        name=name,
        steps=tuple(_unique_ids(collected)),
        needs=tuple(needs or ()),
        env=env or {},
        on=_trigger_filter(on),
    )


def _trigger_filter(on: Union[TriggerFilter, Mapping[str, Any], Sequence[str], str, None]) -> TriggerFilter | None:
    if on is None or isinstance(on, TriggerFilter):
        return on
    if isinstance(on, str):
        return TriggerFilter({on: None})
    if isinstance(on, Mapping):
        return TriggerFilter({k: (list(v) if v else None) for k, v in on.items()})
    return TriggerFilter({event: None for event in on})


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Builds one job per value of a single matrix key.

    Example:
        matrix("target", ["wasm32-unknown-unknown", "x86_64-unknown-linux-gnu"]).jobs(
            lambda v: job(f"build-{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[Job, List[Job]],
    name: str = "workflow",
    on: Union[TriggerFilter, Mapping[str, Any], Sequence[str], str, None] = None,
    env: Optional[Dict[str, str]] = None,
    publish: PublishSpec | None = None,
) -> PipelineDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from flowci import wf, job, sh, uses

        def workflow():
            return wf(
                job("build", uses("actions/checkout@v2"), sh("Build", "make")),
                on={"push": ["main"]},
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]

    Matrix expansions (lists of jobs) are flattened.
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return PipelineDefinition(
        name=name,
        jobs=tuple(flat),
        on=_trigger_filter(on),
        env=env or {},
        publish=publish,
    )


workflow = wf
