"""Tests for DAG construction: edges, cycles, references and conditions."""

import pytest

from flowci.dsl import job, sh, uses, wf
from flowci.errors import CycleError, DefinitionError, UnknownReferenceError
from flowci.graph import build_graph
from flowci.model import Command, Job, PipelineDefinition, StepSpec, TriggerFilter


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def linear():
    return wf(
        job(
            "build",
            sh("A", "echo a", id="a"),
            sh("B", "echo b", id="b"),
            sh("C", "echo c", id="c"),
        )
    )


@pytest.fixture
def two_jobs():
    return wf(
        job("build", sh("Compile", "make", id="compile"), sh("Package", "make dist", id="package")),
        job("deploy", sh("Upload", "upload dist", id="upload"), needs=["build"]),
        job("lint", sh("Lint", "ruff check .", id="ruff")),
    )


# =============================================================================
# EDGES
# =============================================================================


def test_steps_of_a_job_run_in_declared_order(linear, run_env):
    dag = build_graph(linear, run_env)

    assert dag["build.a"].predecessors == ()
    assert dag["build.b"].predecessors == ("build.a",)
    assert dag["build.c"].predecessors == ("build.b",)
    assert dag.topological_order() == ["build.a", "build.b", "build.c"]


def test_job_needs_link_to_last_step_of_needed_job(two_jobs, run_env):
    dag = build_graph(two_jobs, run_env)

    assert dag["deploy.upload"].predecessors == ("build.package",)
    assert dag["lint.ruff"].predecessors == ()
    assert [n.id for n in dag.roots()] == ["build.compile", "lint.ruff"]


def test_levels_group_independent_steps(two_jobs, run_env):
    dag = build_graph(two_jobs, run_env)

    assert dag.levels() == [
        ["build.compile", "lint.ruff"],
        ["build.package"],
        ["deploy.upload"],
    ]


def test_step_needs_overrides_previous_step_edge(run_env):
    definition = wf(
        job(
            "ci",
            sh("Fetch", "true", id="fetch"),
            sh("Unit", "true", id="unit", needs=["fetch"]),
            sh("Docs", "true", id="docs", needs=["fetch"]),
            sh("Report", "true", id="report", needs=["unit", "docs"]),
        )
    )
    dag = build_graph(definition, run_env)

    assert dag["ci.docs"].predecessors == ("ci.fetch",)
    assert dag["ci.report"].predecessors == ("ci.unit", "ci.docs")
    assert dag.descendants("ci.fetch") == {"ci.unit", "ci.docs", "ci.report"}


def test_output_reference_adds_implicit_edge(run_env):
    definition = wf(
        job(
            "site",
            sh("Resolve", "echo url=https://x >> $FLOWCI_OUTPUT", id="resolve", outputs=["url"]),
            uses("test/record", id="notify", needs=[], value="${{ steps.resolve.outputs.url }}"),
        )
    )
    dag = build_graph(definition, run_env)

    assert dag["site.notify"].predecessors == ("site.resolve",)


def test_cross_job_output_reference(run_env):
    definition = wf(
        job("build", sh("Version", "echo v=1 >> $FLOWCI_OUTPUT", id="version", outputs=["v"])),
        job("release", sh("Tag", "git tag ${{ jobs.build.steps.version.outputs.v }}", id="tag")),
    )
    dag = build_graph(definition, run_env)

    assert dag["release.tag"].predecessors == ("build.version",)


def test_building_twice_gives_identical_dags(two_jobs, run_env):
    assert build_graph(two_jobs, run_env) == build_graph(two_jobs, run_env)


# =============================================================================
# ERRORS
# =============================================================================


def test_cycle_between_steps_is_reported_with_path(run_env):
    definition = wf(
        job(
            "loop",
            sh("A", "true", id="a", needs=["b"]),
            sh("B", "true", id="b", needs=["a"]),
        )
    )
    with pytest.raises(CycleError) as exc:
        build_graph(definition, run_env)

    assert exc.value.cycle[0] == exc.value.cycle[-1]
    assert "loop.a" in exc.value.cycle
    assert "->" in str(exc.value)


def test_cycle_between_jobs(run_env):
    definition = wf(
        job("x", sh("X", "true", id="x1"), needs=["y"]),
        job("y", sh("Y", "true", id="y1"), needs=["x"]),
    )
    with pytest.raises(CycleError) as exc:
        build_graph(definition, run_env)

    assert set(exc.value.cycle) == {"x.x1", "y.y1"}


def test_unknown_step_reference(run_env):
    definition = wf(job("j", sh("Use", "echo ${{ steps.nope.outputs.url }}", id="use")))
    with pytest.raises(UnknownReferenceError) as exc:
        build_graph(definition, run_env)

    assert exc.value.node == "j.use"
    assert exc.value.reference == "steps.nope.outputs.url"


def test_undeclared_output_key_is_unknown(run_env):
    definition = wf(
        job(
            "j",
            sh("Make", "true", id="make", outputs=["url"]),
            sh("Use", "echo ${{ steps.make.outputs.other }}", id="use"),
        )
    )
    with pytest.raises(UnknownReferenceError, match="steps.make.outputs.other"):
        build_graph(definition, run_env)


def test_reference_to_later_step_is_unknown(run_env):
    definition = wf(
        job(
            "j",
            sh("Use", "echo ${{ steps.make.outputs.url }}", id="use"),
            sh("Make", "true", id="make", outputs=["url"]),
        )
    )
    with pytest.raises(UnknownReferenceError) as exc:
        build_graph(definition, run_env)

    assert exc.value.node == "j.use"
    assert exc.value.details == {"known": []}


def test_unknown_needed_job(run_env):
    definition = wf(job("deploy", sh("Up", "true", id="up"), needs=["build"]))
    with pytest.raises(UnknownReferenceError, match="build"):
        build_graph(definition, run_env)


def test_duplicate_step_ids_rejected(run_env):
    step = StepSpec(id="same", executable=Command("true"))
    definition = PipelineDefinition(name="dup", jobs=(Job(name="j", steps=(step, step)),))
    with pytest.raises(DefinitionError, match="Duplicate step ids"):
        build_graph(definition, run_env)


def test_duplicate_job_names_rejected(run_env):
    j = Job(name="j", steps=(StepSpec(id="s", executable=Command("true")),))
    with pytest.raises(DefinitionError, match="Duplicate job names"):
        build_graph(PipelineDefinition(name="dup", jobs=(j, j)), run_env)


def test_job_without_steps_rejected(run_env):
    with pytest.raises(DefinitionError, match="has no steps"):
        build_graph(PipelineDefinition(name="empty", jobs=(Job(name="j", steps=()),)), run_env)


# =============================================================================
# CONDITIONS
# =============================================================================


def test_static_condition_is_decided_at_build_time(run_env):
    definition = wf(
        job(
            "j",
            sh("Push only", "true", id="push", when="github.event_name == 'push'"),
            sh("PR only", "true", id="pr", when="${{ github.event_name == 'pull_request' }}"),
        )
    )
    dag = build_graph(definition, run_env)

    assert dag["j.push"].static_condition is True
    assert dag["j.pr"].static_condition is False
    assert "condition is false" in dag["j.pr"].skip_message


def test_condition_on_step_outputs_is_deferred(run_env):
    definition = wf(
        job(
            "j",
            sh("Check", "true", id="check", outputs=["changed"]),
            sh("Build", "true", id="build", when="steps.check.outputs.changed == 'yes'"),
        )
    )
    node = build_graph(definition, run_env)["j.build"]

    assert node.deferred
    assert node.condition.references == ("steps.check.outputs.changed",)
    assert node.predecessors == ("j.check",)


def test_always_marks_node_run_always(run_env):
    definition = wf(job("j", sh("Work", "true", id="work"), sh("Cleanup", "true", id="cleanup", when="always()")))
    node = build_graph(definition, run_env)["j.cleanup"]

    assert node.run_always
    assert node.deferred


def test_job_not_matching_trigger_is_skipped(run_env):
    definition = wf(
        job("pr-checks", sh("Check", "true", id="check"), on={"pull_request": None}),
        job("branch", sh("Check", "true", id="check"), on=TriggerFilter({"push": ("release/*",)})),
        job("always", sh("Check", "true", id="check")),
    )
    dag = build_graph(definition, run_env)

    assert dag["pr-checks.check"].static_condition is False
    assert dag["branch.check"].static_condition is False
    assert dag["always.check"].static_condition is True
