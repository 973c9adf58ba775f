# git.py
# Small, focused wrapper around the Git CLI.
# Every git invocation in flowci (checkout action, branch publisher, CLI
# defaults) goes through this module.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing ``cwd``."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Full ref of the current branch (``refs/heads/main``), or the commit SHA
    when HEAD is detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return f"refs/heads/{branch}"


def repository_slug(url: str) -> str:
    """``git@github.com:owner/name.git`` / ``https://github.com/owner/name`` -> ``owner/name``."""
    tail = url.rstrip("/")
    if tail.endswith(".git"):
        tail = tail[:-4]
    tail = tail.replace(":", "/")
    parts: List[str] = [p for p in tail.split("/") if p]
    return "/".join(parts[-2:]) if len(parts) >= 2 else tail


def repository_url(repository: str, token: str = "", server: str = "https://github.com") -> str:
    """
    Clone URL for a repository identity.

    ``owner/name`` becomes an https URL on ``server`` (with the token as
    credentials when given); URLs and local paths are returned unchanged.
    """
    if "://" in repository or repository.startswith(("git@", "/", ".", "file:")) or Path(repository).exists():
        return repository
    base = server.rstrip("/")
    if token and base.startswith("https://"):
        base = f"https://x-access-token:{token}@{base[len('https://'):]}"
    return f"{base}/{repository}.git"
