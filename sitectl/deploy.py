"""
Container deployment via Docker Compose.

Builds the site image, replaces any running deployment, brings the new one up
and waits for the server's health endpoint. A deployment that fails its health
gate is left running for inspection; there is no automatic rollback.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from .build import BuildStageRunner
from .config import Config, config as default_config
from .errors import ComposeFailed, HealthCheckTimedOut
from .health import HealthChecker
from .models import (
    BuildStage,
    Command,
    Deployment,
    HealthCheckPolicy,
    HealthState,
    PredicateArtifact,
)

logger = logging.getLogger(__name__)


class ComposeClient:
    """Thin wrapper around `docker compose` / `docker-compose` with bounded waits."""

    def __init__(
        self,
        command: list[str],
        compose_dir: Path,
        project_name: str,
        timeout: float = 300,
    ):
        self.command = list(command)
        self.compose_dir = Path(compose_dir)
        self.project_name = project_name
        self.timeout = timeout

    def _run(self, args: list[str], env: dict[str, str] = None, capture: bool = True) -> subprocess.CompletedProcess:
        argv = self.command + ["-p", self.project_name] + args
        run_env = os.environ.copy()
        run_env.update(env or {})
        logger.debug(f"Running: {' '.join(argv)} (in {self.compose_dir})")
        try:
            return subprocess.run(
                argv,
                cwd=self.compose_dir,
                env=run_env,
                capture_output=capture,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ComposeFailed(f"'{' '.join(argv)}' timed out after {self.timeout}s") from e
        except OSError as e:
            raise ComposeFailed(f"could not run {argv[0]}: {e}") from e

    def down(self) -> bool:
        result = self._run(["down"])
        if result.returncode != 0:
            logger.debug(f"compose down exited with {result.returncode}: {result.stderr.strip()}")
        return result.returncode == 0

    def up(self, env: dict[str, str] = None) -> bool:
        result = self._run(["up", "--build", "-d"], env=env, capture=False)
        return result.returncode == 0

    def ps(self) -> str:
        return self._run(["ps"]).stdout

    def container_ids(self) -> list[str]:
        result = self._run(["ps", "-q"])
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def logs(self, tail: int) -> str:
        result = self._run(["logs", f"--tail={tail}"])
        return (result.stdout or "") + (result.stderr or "")


def image_exists(tag: str, timeout: float = 30) -> bool:
    """Check whether a docker image with this tag is present locally."""
    try:
        result = subprocess.run(
            ["docker", "image", "inspect", tag],
            capture_output=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError):
        return False
    return result.returncode == 0


class DeploymentOrchestrator:
    """Composes image build, compose lifecycle and the health gate."""

    def __init__(
        self,
        compose: Optional[ComposeClient],
        cfg: Config = None,
        builder: BuildStageRunner = None,
        health: HealthChecker = None,
        sleep: Callable[[float], None] = time.sleep,
        image_check: Callable[[str], bool] = image_exists,
    ):
        self.config = cfg or default_config
        self.compose = compose
        self.builder = builder or BuildStageRunner()
        self.health = health or HealthChecker()
        self._sleep = sleep
        self._image_check = image_check

    def health_policy(self) -> HealthCheckPolicy:
        return HealthCheckPolicy(
            target=self.config.health_url,
            timeout=self.config.health_timeout,
            interval=self.config.health_interval,
            max_attempts=self.config.health_max_attempts,
        )

    def image_stage(self, tag: str) -> BuildStage:
        """The build stage producing the deployable image."""
        dockerfile = self.config.docker_dir / "Dockerfile"
        return BuildStage(
            name="image",
            ordinal=1,
            primary=[
                Command(
                    ["docker", "build", "-f", str(dockerfile), "-t", tag, "."],
                    cwd=self.config.project_root,
                    description=f"docker build {tag}",
                )
            ],
            artifact=PredicateArtifact(f"docker image {tag}", lambda: self._image_check(tag)),
            clean_paths=[],
        )

    def deploy(self, tag: str = None) -> Deployment:
        """Build, replace and health-gate the local deployment."""
        tag = tag or self.config.default_tag
        logger.info("Deploying locally using Docker Compose...")

        logger.info(f"Building Docker image: {tag}")
        self.builder.run([self.image_stage(tag)])
        logger.info(f"Docker image built successfully: {tag}")

        # Absence of a previous deployment is not an error
        logger.info("Stopping existing containers...")
        self.compose.down()

        env = self.config.server_env(environment="production")
        env["IMAGE_TAG"] = tag
        if not self.compose.up(env=env):
            raise ComposeFailed("failed to start containers")
        logger.info("Application deployed locally")

        # Let the container finish booting before probing
        self._sleep(self.config.deploy_settle_delay)

        policy = self.health_policy()
        result = self.health.await_ready(policy)
        deployment = Deployment(name=self.compose.project_name, tag=tag)
        if not result.ready:
            deployment.health = HealthState.UNHEALTHY
            logger.error("Health check failed - deployment left running for inspection")
            raise HealthCheckTimedOut(
                result.attempts, policy.describe(), deadline_reached=result.deadline_reached
            )

        deployment.health = HealthState.HEALTHY
        deployment.containers = self.compose.container_ids()
        base = f"http://{self.config.health_host}:{self.config.port}"
        logger.info("Local deployment successful!")
        logger.info(f"Application available at: {base}")
        logger.info(f"API health check: {policy.describe()}")
        return deployment

    def deploy_production(self, tag: str = None) -> Optional[Deployment]:
        """Production deployment is not implemented yet; only describes the plan."""
        tag = tag or self.config.default_tag
        logger.warning("Production deployment is not yet implemented")
        logger.info("This would typically involve:")
        logger.info(f"  - Building and tagging {tag} for the production registry")
        logger.info("  - Pushing to container registry")
        logger.info("  - Updating production infrastructure")
        logger.info("  - Running health checks")
        logger.info("  - Notifying monitoring systems")
        return None

    def status(self) -> Deployment:
        """Report containers, a single health probe and recent logs."""
        deployment = Deployment(name=self.compose.project_name)
        deployment.ps_output = self.compose.ps()
        deployment.containers = self.compose.container_ids()

        if deployment.containers:
            ok, error = self.health.probe_once(self.health_policy())
            deployment.health = HealthState.HEALTHY if ok else HealthState.UNHEALTHY
            if error:
                logger.debug(f"Health probe: {error}")

        deployment.logs = self.compose.logs(self.config.status_log_lines)
        return deployment

    def stop(self) -> Deployment:
        """Tear the deployment down. Succeeds when nothing is running."""
        logger.info("Stopping deployment...")
        if not self.compose.down():
            remaining = self.compose.container_ids()
            if remaining:
                raise ComposeFailed(f"{len(remaining)} containers still running after compose down")
        logger.info("Deployment stopped")
        return Deployment(name=self.compose.project_name)
