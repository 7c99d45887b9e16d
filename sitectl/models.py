"""
In-memory models for sitectl.

Describes managed processes, build stages and their reports, health-check
policies and deployments. Nothing here is persisted: every run builds its own
registry and throws it away on exit.
"""

import shlex
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union


class ProcessState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    RESTARTING = "restarting"
    STOPPING = "stopping"


@dataclass
class ManagedProcess:
    """A supervised long-running process."""

    name: str
    command: list[str]
    working_dir: Optional[Path] = None
    env: dict[str, str] = field(default_factory=dict)
    grace_period: float = 3.0
    state: ProcessState = ProcessState.STOPPED
    process: Optional[subprocess.Popen] = None
    started_at: Optional[datetime] = None
    restart_count: int = 0
    last_restart: Optional[datetime] = None
    exit_code: Optional[int] = None
    # Monotonic timestamps used by the monitoring loop
    grace_deadline: Optional[float] = None
    next_restart_at: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        if self.process is None:
            return None
        return self.process.pid

    def is_alive(self) -> bool:
        """Check whether the current OS process is still running."""
        return self.process is not None and self.process.poll() is None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "command": shlex.join(self.command),
            "working_dir": str(self.working_dir) if self.working_dir else None,
            "state": self.state.value,
            "pid": self.pid if self.is_alive() else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "restart_count": self.restart_count,
            "last_restart": self.last_restart.isoformat() if self.last_restart else None,
            "exit_code": self.exit_code,
        }


@dataclass
class Command:
    """One external command invocation."""

    argv: list[str]
    cwd: Optional[Path] = None
    env: dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None

    def display(self) -> str:
        text = shlex.join(self.argv)
        if self.env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in self.env.items())
            text = f"{assignments} {text}"
        return text

    def __str__(self) -> str:
        return self.description or self.display()


@dataclass
class ReuseExistingArtifact:
    """Fallback that accepts a previously produced artifact without rebuilding it.

    Freshness is not checked; a successful reuse is reported as a stale artifact.
    """

    marker: Path
    description: Optional[str] = None

    def available(self) -> bool:
        return self.marker.exists()

    def __str__(self) -> str:
        return self.description or f"reuse existing {self.marker}"


@dataclass
class PathArtifact:
    """An on-disk file or directory proving a stage completed."""

    path: Path
    directory: bool = False
    non_empty: bool = False

    def exists(self) -> bool:
        if self.directory:
            if not self.path.is_dir():
                return False
            return not self.non_empty or any(self.path.iterdir())
        return self.path.is_file()

    def __str__(self) -> str:
        return str(self.path)


@dataclass
class PredicateArtifact:
    """An artifact whose presence is decided by a callable (e.g. a docker image)."""

    description: str
    predicate: Callable[[], bool]

    def exists(self) -> bool:
        return bool(self.predicate())

    def __str__(self) -> str:
        return self.description


Artifact = Union[PathArtifact, PredicateArtifact]
Fallback = Union[Command, ReuseExistingArtifact]


@dataclass
class BuildStage:
    """One step of the build pipeline."""

    name: str
    ordinal: int
    primary: list[Command]
    # None for stages proven by their exit status alone (tests)
    artifact: Optional[Artifact]
    fallback: Optional[Fallback] = None
    required: bool = True
    clean_paths: Optional[list[Path]] = None
    # Set when a capability probe showed the primary toolchain cannot work
    primary_unavailable: Optional[str] = None
    is_test: bool = False

    def paths_to_clean(self) -> list[Path]:
        if self.clean_paths is not None:
            return list(self.clean_paths)
        if isinstance(self.artifact, PathArtifact):
            return [self.artifact.path]
        return []


@dataclass
class StageReport:
    """Outcome of a single build stage."""

    stage: str
    ordinal: int
    satisfied: bool = False
    used_fallback: bool = False
    stale_artifact: bool = False
    duration: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "ordinal": self.ordinal,
            "satisfied": self.satisfied,
            "used_fallback": self.used_fallback,
            "stale_artifact": self.stale_artifact,
            "duration_seconds": round(self.duration, 2),
            "error": self.error,
        }


@dataclass
class BuildReport:
    """Outcome of a whole pipeline run."""

    stages: list[StageReport] = field(default_factory=list)
    failed_stage: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failed_stage is None

    def get(self, stage: str) -> Optional[StageReport]:
        for report in self.stages:
            if report.stage == stage:
                return report
        return None


@dataclass
class HealthCheckPolicy:
    """Readiness contract: probe target, per-attempt timeout, spacing and attempt cap."""

    target: Union[str, list[str]]
    timeout: float = 5.0
    interval: float = 2.0
    max_attempts: int = 30

    @property
    def is_http(self) -> bool:
        return isinstance(self.target, str)

    @property
    def max_wait(self) -> float:
        """Upper bound on the total time spent in await_ready."""
        return self.interval * (self.max_attempts - 1) + self.timeout * self.max_attempts

    def describe(self) -> str:
        return self.target if self.is_http else shlex.join(self.target)


@dataclass
class HealthResult:
    ready: bool
    attempts: int
    elapsed: float = 0.0
    last_error: Optional[str] = None
    # Set when the wall-clock budget ran out before max_attempts
    deadline_reached: bool = False


class HealthState(Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Deployment:
    """Externally observable state of the compose deployment."""

    name: str
    tag: Optional[str] = None
    containers: list[str] = field(default_factory=list)
    health: HealthState = HealthState.UNKNOWN
    ps_output: str = ""
    logs: str = ""

    @property
    def running(self) -> bool:
        return bool(self.containers)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "tag": self.tag,
            "containers": list(self.containers),
            "health": self.health.value,
            "running": self.running,
        }
