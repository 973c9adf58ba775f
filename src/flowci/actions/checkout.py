# actions/checkout.py
from __future__ import annotations

from pathlib import Path
from typing import Mapping

from ..errors import InfrastructureError
from ..git import repository_url
from .base import ActionContext, ActionResult


def checkout(params: Mapping[str, str], ctx: ActionContext) -> ActionResult:
    """
    Clone or update the trigger repository inside the workspace.

    Parameters (all optional): ``repository`` (defaults to the trigger's),
    ``ref`` (defaults to the trigger ref), ``path`` (workspace relative
    target, default ``.``), ``token``, ``fetch-depth`` (``0`` = full history),
    ``server-url``.
    """
    repository = params.get("repository") or ctx.trigger.repository
    ref = params.get("ref") or ctx.trigger.sha or ctx.trigger.ref
    token = params.get("token") or ctx.trigger.token
    depth = params.get("fetch-depth", "1")
    server = params.get("server-url", "https://github.com")

    target = (ctx.workspace / params.get("path", ".")).resolve()
    if not str(target).startswith(str(ctx.workspace.resolve())):
        raise InfrastructureError(f"checkout path escapes the workspace: {params.get('path')}")
    target.mkdir(parents=True, exist_ok=True)

    url = repository_url(repository, token, server)
    fetch = ["git", "fetch", "--quiet", "--no-tags"]
    if depth and depth != "0":
        fetch.append(f"--depth={depth}")
    fetch += ["origin", ref]

    if (target / ".git").exists():
        steps = [["git", "remote", "set-url", "origin", url]]
    else:
        steps = [["git", "init", "--quiet", "."], ["git", "remote", "add", "origin", url]]
    steps += [fetch, ["git", "checkout", "--quiet", "--force", "FETCH_HEAD"]]

    for args in steps:
        code = ctx.run(args, cwd=target)
        if code == 127:
            raise InfrastructureError("git command not found. Please install Git.")
        if code != 0:
            ctx.stderr.write(f"checkout of {repository}@{ref} failed\n")
            return ActionResult(exit_code=code)
        if ctx.cancel.cancelled:
            return ActionResult(exit_code=130)

    commit = _rev_parse(ctx, target)
    return ActionResult(exit_code=0, outputs={"ref": ref, "commit": commit, "path": str(target)})


def _rev_parse(ctx: ActionContext, cwd: Path) -> str:
    sink = _Capture()
    quiet = ActionContext(
        workspace=ctx.workspace,
        temp_dir=ctx.temp_dir,
        env=ctx.env,
        trigger=ctx.trigger,
        stdout=sink,
        stderr=ctx.stderr,
        cancel=ctx.cancel,
    )
    quiet.run(["git", "rev-parse", "HEAD"], cwd=cwd)
    lines = [line for line in sink.text.splitlines() if not line.startswith("$ ")]
    return lines[-1].strip() if lines else ""


class _Capture:
    def __init__(self) -> None:
        self.text = ""

    def write(self, data) -> None:
        self.text += data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
