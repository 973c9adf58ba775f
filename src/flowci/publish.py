"""
Artifact publishing.

The RunController hands the build output directory to an ArtifactPublisher
once every step of the run has succeeded. The default publisher commits the
directory's contents as a single orphan commit and force-pushes it to a
branch (the classic ``gh-pages`` deployment).
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .git import repository_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    ok: bool
    message: str = ""
    destination: str | None = None


class ArtifactPublisher(ABC):
    @abstractmethod
    def publish(self, directory: Path, destination: str, token: str) -> PublishResult:
        """
        Publish ``directory`` to ``destination`` (a branch name).

        Returns a PublishResult instead of raising for publishing failures.
        """


class GitBranchPublisher(ArtifactPublisher):
    """Force-pushes the directory contents to ``destination`` on ``repository``."""

    def __init__(
        self,
        repository: str,
        *,
        server: str = "https://github.com",
        author_name: str = "flowci",
        author_email: str = "flowci@users.noreply.github.com",
        message: str = "Publish build output",
    ):
        self.repository = repository
        self.server = server
        self.author_name = author_name
        self.author_email = author_email
        self.message = message

    def publish(self, directory: Path, destination: str, token: str) -> PublishResult:
        directory = Path(directory)
        if not directory.is_dir():
            return PublishResult(False, f"publish directory not found: {directory}", destination)

        remote = repository_url(self.repository, token, self.server)
        scratch = Path(tempfile.mkdtemp(prefix="flowci-publish-"))
        git_dir = scratch / ".git"
        base = ["git", f"--git-dir={git_dir}", f"--work-tree={directory}"]
        identity = ["-c", f"user.name={self.author_name}", "-c", f"user.email={self.author_email}"]
        commands = [
            ["git", "init", "--quiet", str(scratch)],
            [*base, "symbolic-ref", "HEAD", f"refs/heads/{destination}"],
            [*base, "add", "--all", "."],
            [*base[:1], *identity, *base[1:], "commit", "--quiet", "--allow-empty", "-m", self.message],
            [*base, "push", "--quiet", "--force", remote, f"HEAD:refs/heads/{destination}"],
        ]
        try:
            for cmd in commands:
                subprocess.run(cmd, check=True, capture_output=True, text=True, cwd=str(directory))
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").replace(token, "***") if token else (e.stderr or "")
            logger.warning("publishing %s to %s failed: %s", directory, destination, stderr.strip())
            return PublishResult(False, stderr.strip() or str(e), destination)
        except FileNotFoundError:
            return PublishResult(False, "git command not found", destination)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        return PublishResult(True, f"published {directory} to {destination}", destination)
