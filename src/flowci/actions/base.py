from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol, Sequence, Union

from ..cancel import CancelToken
from ..model import Trigger


class OutputStream(Protocol):
    def write(self, data: Union[bytes, str]) -> None: ...


@dataclass(frozen=True)
class ActionResult:
    """What an external action reports back to the executor."""
    exit_code: int = 0
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass
class ActionContext:
    """Everything an action may touch: its workspace, env, streams and cancellation."""
    workspace: Path
    temp_dir: Path
    env: Mapping[str, str]
    trigger: Trigger
    stdout: OutputStream
    stderr: OutputStream
    cancel: CancelToken

    def run(self, args: Sequence[str], *, cwd: Optional[Path] = None, poll: float = 0.2) -> int:
        """
        Run a helper command, copying its output into the step streams.

        Kills the helper if the step is cancelled. Returns the exit code
        (127 when the program does not exist).
        """
        self.stdout.write("$ " + " ".join(args) + "\n")
        try:
            proc = subprocess.Popen(
                list(args),
                cwd=str(cwd or self.workspace),
                env=dict(self.env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            self.stderr.write(f"{args[0]}: command not found\n")
            return 127

        while True:
            try:
                out, err = proc.communicate(timeout=poll)
                break
            except subprocess.TimeoutExpired:
                if self.cancel.cancelled:
                    proc.kill()
                    out, err = proc.communicate()
                    break
        if out:
            self.stdout.write(out)
        if err:
            self.stderr.write(err)
        return proc.returncode


Action = Callable[[Mapping[str, str], ActionContext], ActionResult]


class ActionRegistry:
    """Maps action names (``actions/checkout``, without ``@version``) to callables."""

    def __init__(self) -> None:
        self._actions: dict[str, Action] = {}

    def register(self, name: str, fn: Optional[Action] = None, *, aliases: Sequence[str] = ()):
        def deco(f: Action) -> Action:
            for key in (name, *aliases):
                self._actions[key.lower()] = f
            return f

        if fn is not None:
            return deco(fn)
        return deco

    def get(self, name: str) -> Optional[Action]:
        return self._actions.get(name.split("@", 1)[0].lower())

    def names(self) -> List[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None
