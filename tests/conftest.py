import os

import pytest

from flowci.actions import ActionResult, default_registry
from flowci.events import EventBus
from flowci.executor import ExecutorConfig, StepExecutor
from flowci.model import RunEnvironment, Trigger, TriggerEvent

SECRET_TOKEN = "ghs_supersecret123"


@pytest.fixture
def secret_token():
    return SECRET_TOKEN


@pytest.fixture
def host_env():
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


@pytest.fixture
def trigger():
    return Trigger(
        event=TriggerEvent.PUSH,
        repository="octo/site",
        ref="refs/heads/main",
        token=SECRET_TOKEN,
        sha="0123abcd",
    )


@pytest.fixture
def run_env(trigger, host_env):
    return RunEnvironment(run_id="run-1", trigger=trigger, vars=host_env, secrets={"GITHUB_TOKEN": SECRET_TOKEN})


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def executor_config(tmp_path, workspace):
    return ExecutorConfig(
        workspace=workspace,
        temp_dir=tmp_path / "tmp",
        kill_grace=1.0,
        default_timeout=30.0,
    )


@pytest.fixture
def recorded_params():
    """Parameters received by the ``record`` test action, per call."""
    return []


@pytest.fixture
def registry(recorded_params):
    reg = default_registry()

    @reg.register("test/record")
    def _record(params, ctx):
        recorded_params.append(dict(params))
        ctx.stdout.write("recorded\n")
        return ActionResult(exit_code=0, outputs={"seen": params.get("value", "")})

    @reg.register("test/boom")
    def _boom(params, ctx):
        raise RuntimeError("action exploded")

    return reg


@pytest.fixture
def bus():
    return EventBus("run-1")


@pytest.fixture
def executor(executor_config, bus, registry):
    return StepExecutor(executor_config, bus=bus, actions=registry)
