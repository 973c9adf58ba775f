# graph.py
from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import CycleError, DefinitionError, UnknownReferenceError
from .expressions import Expression, find_expressions, parse_condition, truthy
from .model import ID_PATTERN, Command, Job, PipelineDefinition, RunEnvironment, StepSpec

logger = logging.getLogger(__name__)


def node_id(job: str, step: str) -> str:
    return f"{job}.{step}"


@dataclass(frozen=True)
class DAGNode:
    """
    A step with its resolved edges.

    ``static_condition`` is True/False when the condition could be decided at
    build time, None when it has to be evaluated while the run executes
    (``condition`` then holds the parsed expression).
    """
    id: str
    job: str
    spec: StepSpec
    index: int
    predecessors: Tuple[str, ...] = ()
    successors: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    static_condition: Optional[bool] = True
    condition: Optional[Expression] = None
    run_always: bool = False
    skip_message: str | None = None

    @property
    def deferred(self) -> bool:
        return self.static_condition is None


@dataclass(frozen=True)
class Dag:
    nodes: Tuple[DAGNode, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {n.id: n for n in self.nodes})

    def __getitem__(self, node_id: str) -> DAGNode:
        return self._by_id[node_id]  # type: ignore[attr-defined]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id  # type: ignore[attr-defined]

    def __iter__(self) -> Iterator[DAGNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def roots(self) -> List[DAGNode]:
        return [n for n in self.nodes if not n.predecessors]

    def descendants(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self[node_id].successors)
        while q:
            nid = q.popleft()
            if nid in seen:
                continue
            seen.add(nid)
            q.extend(self[nid].successors)
        return seen

    def ancestors(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self[node_id].predecessors)
        while q:
            nid = q.popleft()
            if nid in seen:
                continue
            seen.add(nid)
            q.extend(self[nid].predecessors)
        return seen

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        indeg = {n.id: len(n.predecessors) for n in self.nodes}
        heap = [(n.index, n.id) for n in self.nodes if indeg[n.id] == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            _, nid = heapq.heappop(heap)
            order.append(nid)
            for child in self[nid].successors:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, (self[child].index, child))
        return order

    def levels(self) -> List[List[str]]:
        """
        Convert DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {n.id: len(n.predecessors) for n in self.nodes}
        current = sorted((nid for nid, d in indeg.items() if d == 0), key=lambda nid: self[nid].index)
        levels: List[List[str]] = []
        while current:
            levels.append(current)
            nxt: List[str] = []
            for nid in current:
                for child in self[nid].successors:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt, key=lambda nid: self[nid].index)
        return levels


# ---------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------

def _step_texts(step: StepSpec, job: Job) -> List[str]:
    texts: List[str] = []
    if isinstance(step.executable, Command):
        texts.append(step.executable.run)
    texts.extend(step.params.values())
    texts.extend(step.env.values())
    texts.extend(job.env.values())
    if step.working_directory:
        texts.append(step.working_directory)
    return texts


def _output_references(step: StepSpec, job: Job) -> List[str]:
    refs: List[str] = []
    for text in _step_texts(step, job):
        for expr in find_expressions(text):
            refs.extend(expr.references)
    if step.condition:
        refs.extend(parse_condition(step.condition).references)
    return [r for r in refs if r.split(".", 1)[0] in ("steps", "jobs")]


def _resolve_reference(
    ref: str,
    job: Job,
    nid: str,
    steps_by_job: Dict[str, Dict[str, StepSpec]],
) -> str:
    """Return the node id a ``steps.*`` / ``jobs.*`` reference points at."""
    parts = ref.split(".")
    if parts[0] == "steps":
        target_job, rest = job.name, parts[1:]
    else:
        # jobs.<job>.steps.<id>...
        if len(parts) < 4 or parts[2] != "steps" or parts[1] not in steps_by_job:
            raise UnknownReferenceError(nid, ref, known=list(steps_by_job))
        target_job, rest = parts[1], parts[3:]

    if not rest or rest[0] not in steps_by_job[target_job]:
        raise UnknownReferenceError(nid, ref, known=list(steps_by_job[target_job]))
    target = steps_by_job[target_job][rest[0]]

    if parts[0] == "steps":
        # only steps declared earlier in the same job are visible
        declared = [s.id for s in job.steps]
        here = declared.index(nid.rsplit(".", 1)[1])
        if declared.index(target.id) >= here:
            raise UnknownReferenceError(nid, ref, known=declared[:here])

    if len(rest) >= 2 and rest[1] == "outputs":
        if len(rest) < 3 or rest[2] not in target.outputs:
            raise UnknownReferenceError(nid, ref, known=list(target.outputs))
    return node_id(target_job, target.id)


def _find_cycle(order: List[str], succ: Dict[str, Set[str]]) -> Optional[List[str]]:
    WHITE, GREY, BLACK = 0, 1, 2
    color = {nid: WHITE for nid in order}
    rank = {nid: i for i, nid in enumerate(order)}

    for start in order:
        if color[start] != WHITE:
            continue
        stack: List[Tuple[str, Iterator[str]]] = [(start, iter(sorted(succ[start], key=rank.get)))]
        path = [start]
        color[start] = GREY
        while stack:
            nid, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[nid] = BLACK
                stack.pop()
                path.pop()
                continue
            if color[child] == GREY:
                return path[path.index(child):] + [child]
            if color[child] == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append((child, iter(sorted(succ[child], key=rank.get))))
    return None


def build_graph(definition: PipelineDefinition, env: RunEnvironment) -> Dag:
    """
    Build a DAG of steps from a pipeline definition.

    Edges:
      - declared order: each step runs after the previous step of its job
        (or after the steps named in ``needs`` when given)
      - job ``needs``: the first steps of a job run after the last steps of
        every job it needs
      - output references: ``steps.<id>.outputs.<key>`` and
        ``jobs.<job>.steps.<id>.outputs.<key>`` inside parameters, scripts,
        env values or conditions

    Pure function of (definition, env): building twice gives equal DAGs.
    """
    names = [j.name for j in definition.jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(f"Duplicate job names found: {dupes}", source=definition.source)

    steps_by_job: Dict[str, Dict[str, StepSpec]] = {}
    for job in definition.jobs:
        if not ID_PATTERN.match(job.name):
            raise DefinitionError(f"Invalid job name {job.name!r}", source=definition.source)
        if not job.steps:
            raise DefinitionError(f"Job '{job.name}' has no steps", source=definition.source)
        ids = [s.id for s in job.steps]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise DefinitionError(
                f"Duplicate step ids in job '{job.name}': {dupes}", source=definition.source
            )
        for sid in ids:
            if not ID_PATTERN.match(sid):
                raise DefinitionError(f"Invalid step id {sid!r} in job '{job.name}'", source=definition.source)
        steps_by_job[job.name] = {s.id: s for s in job.steps}

    # ---- explicit edges ----
    order: List[str] = []
    preds: Dict[str, Set[str]] = {}
    intra_succ: Dict[str, Set[str]] = {}
    for job in definition.jobs:
        prev: Optional[str] = None
        for step in job.steps:
            nid = node_id(job.name, step.id)
            order.append(nid)
            preds[nid] = set()
            intra_succ.setdefault(nid, set())
            if step.needs is None:
                if prev is not None:
                    preds[nid].add(prev)
            else:
                for dep in step.needs:
                    if dep not in steps_by_job[job.name]:
                        raise UnknownReferenceError(nid, dep, known=list(steps_by_job[job.name]))
                    preds[nid].add(node_id(job.name, dep))
            for p in preds[nid]:
                intra_succ.setdefault(p, set()).add(nid)
            prev = nid

    for job in definition.jobs:
        if not job.needs:
            continue
        for needed in job.needs:
            if needed not in steps_by_job:
                raise UnknownReferenceError(job.name, needed, known=names)
        sinks_of = {
            needed: [
                node_id(needed, s.id)
                for s in definition.job(needed).steps
                if not intra_succ.get(node_id(needed, s.id))
            ]
            for needed in job.needs
        }
        for step in job.steps:
            nid = node_id(job.name, step.id)
            if preds[nid]:
                continue
            for needed in job.needs:
                preds[nid].update(sinks_of[needed])

    # ---- implicit edges (output references) ----
    for job in definition.jobs:
        for step in job.steps:
            nid = node_id(job.name, step.id)
            for ref in _output_references(step, job):
                preds[nid].add(_resolve_reference(ref, job, nid, steps_by_job))

    succ: Dict[str, Set[str]] = {nid: set() for nid in order}
    for nid, ps in preds.items():
        for p in ps:
            succ[p].add(nid)

    cycle = _find_cycle(order, succ)
    if cycle:
        raise CycleError(cycle)

    # ---- conditions ----
    index = {nid: i for i, nid in enumerate(order)}
    context = env.context()
    nodes: List[DAGNode] = []
    for job in definition.jobs:
        job_triggered = all(
            f is None or f.matches(env.trigger) for f in (definition.on, job.on)
        )
        for step in job.steps:
            nid = node_id(job.name, step.id)
            static: Optional[bool] = True
            expr: Optional[Expression] = None
            run_always = False
            skip_message = None
            if not job_triggered:
                static = False
                skip_message = f"job '{job.name}' is not triggered by {env.trigger.event.value}"
            elif step.condition is not None:
                expr = parse_condition(step.condition)
                run_always = expr.runs_always
                if expr.is_static:
                    static = truthy(expr.evaluate(context))
                    if not static:
                        skip_message = f"condition is false: {expr.source}"
                else:
                    static = None

            nodes.append(
                DAGNode(
                    id=nid,
                    job=job.name,
                    spec=step,
                    index=index[nid],
                    predecessors=tuple(sorted(preds[nid], key=index.get)),
                    successors=tuple(sorted(succ[nid], key=index.get)),
                    env={**job.env, **step.env},
                    static_condition=static,
                    condition=expr if static is None else None,
                    run_always=run_always,
                    skip_message=skip_message,
                )
            )

    logger.debug("built DAG with %d nodes for %s", len(nodes), definition.name)
    return Dag(nodes=tuple(nodes))
