# actions/pages.py
from __future__ import annotations

from typing import Mapping

from ..publish import GitBranchPublisher
from .base import ActionContext, ActionResult


def publish_pages(params: Mapping[str, str], ctx: ActionContext) -> ActionResult:
    """
    Push a directory to a branch of the repository as one commit.

    Parameters: ``publish_dir`` (required, workspace relative),
    ``publish_branch`` (default ``gh-pages``), ``github_token`` and
    ``repository`` (both default to the trigger's).
    """
    publish_dir = params.get("publish_dir")
    if not publish_dir:
        ctx.stderr.write("publish-pages requires a 'publish_dir' parameter\n")
        return ActionResult(exit_code=2)

    branch = params.get("publish_branch", "gh-pages")
    token = params.get("github_token") or ctx.trigger.token
    repository = params.get("repository") or ctx.trigger.repository

    publisher = GitBranchPublisher(repository)
    result = publisher.publish(ctx.workspace / publish_dir, branch, token)
    if not result.ok:
        ctx.stderr.write(result.message + "\n")
        return ActionResult(exit_code=1)
    ctx.stdout.write(result.message + "\n")
    return ActionResult(exit_code=0, outputs={"branch": branch})
