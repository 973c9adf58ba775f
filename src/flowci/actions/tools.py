# actions/tools.py
from __future__ import annotations

import shutil
from typing import Mapping

from .base import ActionContext, ActionResult

# Install hints for tools commonly requested by pipelines
TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "trunk": "Install trunk (e.g., cargo install trunk).",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def _check_tool_available(tool: str, ctx: ActionContext) -> bool:
    path = ctx.env.get("PATH")
    if shutil.which(tool, path=path) is not None:
        return True
    hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
    ctx.stderr.write(f"{tool}: command not found\nHint: {hint}\n")
    return False


def _version(tool: str, ctx: ActionContext) -> tuple[int, str]:
    lines: list[str] = []

    class _Tee:
        def write(self, data) -> None:
            text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
            lines.extend(text.splitlines())
            ctx.stdout.write(data)

    version_ctx = ActionContext(
        workspace=ctx.workspace,
        temp_dir=ctx.temp_dir,
        env=ctx.env,
        trigger=ctx.trigger,
        stdout=_Tee(),
        stderr=ctx.stderr,
        cancel=ctx.cancel,
    )
    code = version_ctx.run([tool, "--version"])
    reported = [line for line in lines if not line.startswith("$ ")]
    return code, (reported[0].strip() if reported else "")


def setup_tool(params: Mapping[str, str], ctx: ActionContext) -> ActionResult:
    """
    Verify that a build tool is installed and report its version.

    ``tool`` names the executable to look for (``version`` is informational).
    Nothing is downloaded; a missing tool fails the step with exit 127.
    """
    tool = params.get("tool", "")
    if not tool:
        ctx.stderr.write("setup-tool requires a 'tool' parameter\n")
        return ActionResult(exit_code=2)
    if not _check_tool_available(tool, ctx):
        return ActionResult(exit_code=127)
    code, version = _version(tool, ctx)
    if code != 0:
        return ActionResult(exit_code=code)
    return ActionResult(exit_code=0, outputs={"tool": tool, "version": version})


def rust_toolchain(params: Mapping[str, str], ctx: ActionContext) -> ActionResult:
    """Rust toolchain check; adds ``target`` through rustup when one is requested."""
    result = setup_tool({"tool": "cargo"}, ctx)
    if result.exit_code != 0:
        return result
    target = params.get("target")
    if target:
        if not _check_tool_available("rustup", ctx):
            return ActionResult(exit_code=127)
        code = ctx.run(["rustup", "target", "add", target])
        if code != 0:
            return ActionResult(exit_code=code)
    outputs = dict(result.outputs)
    if target:
        outputs["target"] = target
    return ActionResult(exit_code=0, outputs=outputs)


def trunk(params: Mapping[str, str], ctx: ActionContext) -> ActionResult:
    return setup_tool({"tool": "trunk", **params}, ctx)
