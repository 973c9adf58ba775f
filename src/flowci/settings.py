from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_HOME = ".flowci"
DEFAULT_STEP_TIMEOUT = 3600.0
DEFAULT_KILL_GRACE = 5.0
DEFAULT_OUTPUT_CAP = 10 * 1024 * 1024  # per stream
DEFAULT_INFRA_RETRIES = 0
DEFAULT_RETAINED_RUNS = 100  # finished runs kept in memory by a controller

# host variables a step process inherits; everything else must be declared
INHERITED_HOST_VARS = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER", "SHELL", "TERM")


def default_parallelism() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass(frozen=True)
class Settings:
    home: str = DEFAULT_HOME
    max_workers: int | None = None
    step_timeout: float = DEFAULT_STEP_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    output_cap: int = DEFAULT_OUTPUT_CAP
    infra_retries: int = DEFAULT_INFRA_RETRIES
    events_db: str | None = None
    retained_runs: int = DEFAULT_RETAINED_RUNS

    @property
    def events_dir(self) -> str:
        return os.path.join(self.home, "runs")

    @property
    def work_dir(self) -> str:
        return os.path.join(self.home, "work")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read FLOWCI_* variables. Only the CLI and the HTTP server call this."""
    env = os.environ if environ is None else environ
    workers = env.get("FLOWCI_MAX_WORKERS")
    return Settings(
        home=env.get("FLOWCI_HOME", DEFAULT_HOME),
        max_workers=int(workers) if workers else None,
        step_timeout=float(env.get("FLOWCI_STEP_TIMEOUT", DEFAULT_STEP_TIMEOUT)),
        kill_grace=float(env.get("FLOWCI_KILL_GRACE", DEFAULT_KILL_GRACE)),
        output_cap=int(env.get("FLOWCI_OUTPUT_CAP", DEFAULT_OUTPUT_CAP)),
        infra_retries=int(env.get("FLOWCI_INFRA_RETRIES", DEFAULT_INFRA_RETRIES)),
        events_db=env.get("FLOWCI_EVENTS_DB") or None,
        retained_runs=int(env.get("FLOWCI_RETAINED_RUNS", DEFAULT_RETAINED_RUNS)),
    )


def host_environment(environ: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    env = os.environ if environ is None else environ
    return {k: env[k] for k in INHERITED_HOST_VARS if k in env}
