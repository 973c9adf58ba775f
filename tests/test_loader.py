"""Tests for loading YAML and Python workflow definitions."""

import textwrap

import pytest

from flowci.controller import resolve_environment
from flowci.errors import DefinitionError
from flowci.graph import build_graph
from flowci.loader import definition_from_dict, load_definition, load_definition_text, trigger_filter
from flowci.model import ActionRef, Command, Trigger, TriggerEvent

SITE_WORKFLOW = """
name: build and deploy

on:
  workflow_dispatch:
  push:
  pull_request:
    branches: [master]

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v2

      - name: Install toolchain
        uses: actions-rs/toolchain@v1
        with:
          toolchain: stable
          target: wasm32-unknown-unknown
          override: true
          profile: minimal

      - name: Install trunk
        uses: jetli/trunk-action@v0.1.0
        with:
          version: "latest"

      - name: Build
        run: trunk build --public-url /${{ github.event.repository.name }}/

      - name: Deploy
        uses: peaceiris/actions-gh-pages@v3
        with:
          github_token: ${{ github.token }}
          publish_dir: dist
"""


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


# =============================================================================
# YAML
# =============================================================================


def test_site_workflow_loads():
    definition = load_definition_text(SITE_WORKFLOW)
    build = definition.job("build")

    assert definition.name == "build and deploy"
    assert [s.id for s in build.steps] == ["step-1", "install-toolchain", "install-trunk", "build", "deploy"]
    assert build.steps[0].executable == ActionRef("actions/checkout@v2")
    assert build.steps[1].params["override"] == "true"
    assert build.steps[3].executable == Command("trunk build --public-url /${{ github.event.repository.name }}/")
    assert build.steps[4].params["publish_dir"] == "dist"


def test_bare_on_key_becomes_trigger_filter():
    definition = load_definition_text(SITE_WORKFLOW)

    assert dict(definition.on.events) == {
        "workflow_dispatch": None,
        "push": None,
        "pull_request": ("master",),
    }


def test_site_workflow_graph_is_linear(run_env):
    dag = build_graph(load_definition_text(SITE_WORKFLOW), run_env)

    assert dag.topological_order() == [
        "build.step-1",
        "build.install-toolchain",
        "build.install-trunk",
        "build.build",
        "build.deploy",
    ]


def test_pull_request_to_other_branch_skips_everything(host_env):
    definition = load_definition_text(SITE_WORKFLOW)
    trigger = Trigger(event=TriggerEvent.PULL_REQUEST, repository="octo/site", ref="refs/heads/feature")
    dag = build_graph(definition, resolve_environment("r", definition, trigger, host_env=host_env))

    assert all(node.static_condition is False for node in dag)


@pytest.mark.parametrize(
    "on, expected",
    [
        ("push", {"push": None}),
        (["push", "pull_request"], {"push": None, "pull_request": None}),
        ({"push": {"branches": "main"}}, {"push": ("main",)}),
    ],
)
def test_trigger_filter_shapes(on, expected):
    assert dict(trigger_filter(on).events) == expected


def test_job_and_step_conditions_are_combined():
    definition = definition_from_dict(
        {
            "jobs": {
                "deploy": {
                    "if": "github.ref == 'refs/heads/main'",
                    "steps": [{"run": "true", "if": "${{ success() }}"}],
                }
            }
        }
    )

    assert definition.job("deploy").steps[0].condition == "(github.ref == 'refs/heads/main') && (success())"


def test_timeouts_and_step_options():
    definition = definition_from_dict(
        {
            "env": {"RETRIES": 3},
            "jobs": {
                "build": {
                    "timeout-minutes": 2,
                    "steps": [
                        {"id": "fast", "run": "true", "timeout": 5, "working-directory": "app"},
                        {"name": "Slow", "run": "true", "outputs": ["url"], "needs": "fast"},
                    ],
                }
            },
        },
        name="fallback",
    )
    fast, slow = definition.job("build").steps

    assert definition.name == "fallback"
    assert definition.env["RETRIES"] == "3"
    assert fast.timeout == 5
    assert fast.working_directory == "app"
    assert slow.timeout == 120
    assert slow.outputs == ("url",)
    assert slow.needs == ("fast",)


def test_duplicate_step_names_get_unique_ids():
    definition = definition_from_dict(
        {"jobs": {"j": {"steps": [{"name": "Build", "run": "a"}, {"name": "Build", "run": "b"}, {"run": "c"}]}}}
    )

    assert [s.id for s in definition.job("j").steps] == ["build", "build-2", "step-3"]


def test_publish_section():
    definition = definition_from_dict(
        {"jobs": {"j": {"steps": [{"run": "true"}]}}, "publish": {"directory": "dist"}}
    )

    assert definition.publish.directory == "dist"
    assert definition.publish.destination == "gh-pages"


@pytest.mark.parametrize(
    "doc, message",
    [
        ({"jobs": {"j": {"steps": [{"name": "nothing"}]}}}, "exactly one of 'uses' or 'run'"),
        ({"jobs": {"j": {"steps": [{"run": "a", "uses": "b"}]}}}, "exactly one of 'uses' or 'run'"),
        ({"jobs": {"j": {"steps": []}}}, "steps"),
        ({"jobs": {}}, "jobs"),
        ({"jobs": {"j": {"steps": [{"run": "a", "continue-on-error": True}]}}}, "continue-on-error"),
        ({"jobs": {"j": {"steps": [{"run": "a", "retries": 3}]}}}, "retries"),
        ({"jobs": {"bad name": {"steps": [{"run": "a"}]}}}, "Invalid job name"),
        (["not", "a", "mapping"], "must be a mapping"),
    ],
)
def test_invalid_documents(doc, message):
    with pytest.raises(DefinitionError, match=message):
        definition_from_dict(doc)


def test_invalid_yaml():
    with pytest.raises(DefinitionError, match="Invalid YAML"):
        load_definition_text("jobs: [unclosed")


# =============================================================================
# FILES
# =============================================================================


def test_load_yaml_file(tmp_path):
    path = write(tmp_path, "deploy.yaml", "jobs:\n  j:\n    steps:\n      - run: echo hi\n")
    definition = load_definition(path)

    assert definition.name == "deploy"
    assert definition.source == str(path.resolve())


def test_load_python_workflow(tmp_path):
    path = write(
        tmp_path,
        "pipeline.py",
        """
        from flowci import job, sh, wf

        def workflow():
            return wf(job("build", sh("Compile", "make", id="compile")), name="native")
        """,
    )
    definition = load_definition(path)

    assert definition.name == "native"
    assert definition.source == str(path.resolve())
    assert definition.job("build").steps[0].id == "compile"


def test_load_python_jobs_list(tmp_path):
    path = write(
        tmp_path,
        "jobs_only.py",
        """
        from flowci import job, sh

        JOBS = [job("a", sh("A", "true")), job("b", sh("B", "true"), needs=["a"])]
        """,
    )
    definition = load_definition(path)

    assert definition.name == "jobs_only"
    assert [j.name for j in definition.jobs] == ["a", "b"]


def test_python_file_without_workflow(tmp_path):
    path = write(tmp_path, "empty.py", "X = 1\n")
    with pytest.raises(DefinitionError, match="PipelineDefinition"):
        load_definition(path)


def test_unsupported_suffix(tmp_path):
    path = write(tmp_path, "pipeline.toml", "")
    with pytest.raises(DefinitionError, match=".yml, .yaml or .py"):
        load_definition(path)


def test_missing_file(tmp_path):
    with pytest.raises(DefinitionError, match="not found"):
        load_definition(tmp_path / "nope.yml")
