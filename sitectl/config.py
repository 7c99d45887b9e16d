"""
Configuration for sitectl.

Loads settings from environment variables (and a .env file in the working
directory) with sensible defaults. Run logs are written under ~/.sitectl/
unless SITECTL_DATA_DIR points elsewhere.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


@dataclass
class Config:
    """Orchestrator configuration."""

    # Paths
    project_root: Path = Path(os.environ.get("SITECTL_PROJECT_ROOT", os.getcwd()))
    data_dir: Path = None
    logs_dir: Path = None
    sitectl_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Dependency probes
    probe_timeout: float = _env_float("PROBE_TIMEOUT", "10")

    # Process supervision
    monitor_interval: float = _env_float("MONITOR_INTERVAL", "10")
    stop_timeout: float = _env_float("STOP_TIMEOUT", "10")
    kill_timeout: float = _env_float("KILL_TIMEOUT", "5")
    default_grace_period: float = _env_float("GRACE_PERIOD", "3")

    # Restart policy: 0 backoff and 0 max restarts means restart immediately, forever
    restart_backoff: float = _env_float("RESTART_BACKOFF", "0")
    restart_backoff_max: float = _env_float("RESTART_BACKOFF_MAX", "60")
    max_restarts: int = int(os.environ.get("MAX_RESTARTS", "0"))

    # Dev servers
    jekyll_port: int = int(os.environ.get("JEKYLL_PORT", "4000"))
    jekyll_grace_period: float = _env_float("JEKYLL_GRACE_PERIOD", "3")
    vapor_grace_period: float = _env_float("VAPOR_GRACE_PERIOD", "5")

    # Passed through to the server process
    port: int = int(os.environ.get("PORT", "8080"))
    log_level: str = os.environ.get("LOG_LEVEL", "info")
    environment: str = os.environ.get("ENVIRONMENT", "development")

    # Health gate
    health_host: str = os.environ.get("HEALTH_HOST", "localhost")
    health_path: str = os.environ.get("HEALTH_PATH", "/api/v1/health")
    health_interval: float = _env_float("HEALTH_INTERVAL", "2")
    health_max_attempts: int = int(os.environ.get("HEALTH_MAX_ATTEMPTS", "30"))
    health_timeout: float = _env_float("HEALTH_TIMEOUT", "5")

    # Deployment
    default_tag: str = os.environ.get("DEFAULT_TAG", "kaleb-engineer:latest")
    compose_project: str = os.environ.get("COMPOSE_PROJECT", "kaleb-engineer")
    compose_timeout: float = _env_float("COMPOSE_TIMEOUT", "300")
    deploy_settle_delay: float = _env_float("DEPLOY_SETTLE_DELAY", "5")
    status_log_lines: int = int(os.environ.get("STATUS_LOG_LINES", "20"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.project_root = Path(self.project_root).resolve()
        if self.data_dir is None:
            data_dir = os.environ.get("SITECTL_DATA_DIR")
            self.data_dir = Path(data_dir) if data_dir else Path.home() / ".sitectl"
        self.data_dir = Path(self.data_dir)
        self.logs_dir = self.data_dir / "logs"
        self.sitectl_log = self.data_dir / "sitectl.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def jekyll_dir(self) -> Path:
        return self.project_root / "jekyll-site"

    @property
    def vapor_dir(self) -> Path:
        return self.project_root / "vapor-server"

    @property
    def docker_dir(self) -> Path:
        return self.project_root / "docker"

    @property
    def health_url(self) -> str:
        """URL of the server's readiness endpoint."""
        return f"http://{self.health_host}:{self.port}{self.health_path}"

    def server_env(self, environment: str = None) -> dict[str, str]:
        """Environment passed through to the server process."""
        return {
            "PORT": str(self.port),
            "LOG_LEVEL": self.log_level,
            "ENVIRONMENT": environment or self.environment,
        }


config = Config()
