"""
The concrete site: Jekyll static site plus the Vapor server.

Declares which tools each workflow needs, the build pipeline, and how the two
development servers are launched.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .build import run_command
from .config import Config
from .deps import Capability, DependencyChecker, Probe, ProbeResult, Requirement
from .models import BuildStage, Command, PathArtifact, ReuseExistingArtifact

logger = logging.getLogger(__name__)

JEKYLL = "jekyll"
VAPOR = "vapor"

BUNDLER = Requirement.executable("bundle", label="bundler (Ruby)")
SWIFT = Requirement.executable("swift")
DOCKER = Requirement.executable("docker")
COMPOSE = Requirement(
    name="docker-compose",
    candidates=[
        Probe(["docker", "compose"], ["version"]),
        Probe(["docker-compose"], ["version"]),
    ],
)

BUILD_REQUIREMENTS = [BUNDLER, SWIFT]
DEPLOY_REQUIREMENTS = [DOCKER, COMPOSE]


def dev_requirements(mode: str) -> list[Requirement]:
    if mode == JEKYLL:
        return [BUNDLER]
    if mode == VAPOR:
        return [SWIFT]
    return [BUNDLER, SWIFT]


def jekyll_requirement(cfg: Config) -> Requirement:
    """Jekyll is only usable when `bundle exec jekyll` actually runs in the site directory."""
    return Requirement(
        name="jekyll",
        candidates=[Probe(["bundle", "exec", "jekyll"], ["--version"], cwd=str(cfg.jekyll_dir))],
    )


def gems_stale(site_dir: Path) -> bool:
    """Gems need installing when Gemfile.lock is missing or older than the Gemfile."""
    gemfile = site_dir / "Gemfile"
    lockfile = site_dir / "Gemfile.lock"
    if not lockfile.exists():
        return True
    return gemfile.exists() and gemfile.stat().st_mtime > lockfile.stat().st_mtime


def bundle_install(cfg: Config) -> Command:
    return Command(["bundle", "install"], cwd=cfg.jekyll_dir, description="bundle install")


def build_stages(cfg: Config, jekyll: ProbeResult = None) -> list[BuildStage]:
    """The site's build pipeline: Jekyll site, Vapor release binary, then the Swift tests."""
    site_dir = cfg.jekyll_dir
    server_dir = cfg.vapor_dir

    jekyll_commands = []
    if gems_stale(site_dir):
        jekyll_commands.append(bundle_install(cfg))
    jekyll_commands.append(
        Command(
            ["bundle", "exec", "jekyll", "build"],
            cwd=site_dir,
            env={"JEKYLL_ENV": "production"},
        )
    )

    unavailable = None
    if jekyll is not None and jekyll.capability != Capability.AVAILABLE:
        unavailable = "Jekyll not available or not functional"

    return [
        BuildStage(
            name=JEKYLL,
            ordinal=1,
            primary=jekyll_commands,
            fallback=ReuseExistingArtifact(
                site_dir / "_site" / "index.html",
                description="existing static files in _site",
            ),
            artifact=PathArtifact(site_dir / "_site", directory=True, non_empty=True),
            primary_unavailable=unavailable,
        ),
        BuildStage(
            name=VAPOR,
            ordinal=2,
            primary=[
                Command(["swift", "package", "resolve"], cwd=server_dir),
                Command(["swift", "build", "-c", "release"], cwd=server_dir),
            ],
            artifact=PathArtifact(server_dir / ".build" / "release" / "VaporServer"),
            clean_paths=[server_dir / ".build"],
        ),
        BuildStage(
            name="tests",
            ordinal=3,
            primary=[Command(["swift", "test"], cwd=server_dir)],
            artifact=None,
            required=False,
            clean_paths=[],
            is_test=True,
        ),
    ]


@dataclass
class ProcessSpec:
    """How to launch one development server."""

    name: str
    command: list[str]
    working_dir: Path
    grace_period: float
    url: str
    env: dict[str, str] = field(default_factory=dict)


def jekyll_process(cfg: Config) -> ProcessSpec:
    return ProcessSpec(
        name=JEKYLL,
        command=[
            "bundle", "exec", "jekyll", "serve",
            "--livereload",
            "--port", str(cfg.jekyll_port),
            "--host", "0.0.0.0",
        ],
        working_dir=cfg.jekyll_dir,
        grace_period=cfg.jekyll_grace_period,
        url=f"http://localhost:{cfg.jekyll_port}",
        env={"JEKYLL_ENV": "development"},
    )


def vapor_process(cfg: Config) -> ProcessSpec:
    return ProcessSpec(
        name=VAPOR,
        command=[
            "swift", "run", "VaporServer", "serve",
            "--hostname", "0.0.0.0",
            "--port", str(cfg.port),
            "--env", cfg.environment,
        ],
        working_dir=cfg.vapor_dir,
        grace_period=cfg.vapor_grace_period,
        url=f"http://localhost:{cfg.port}",
        env=cfg.server_env(),
    )


def setup_jekyll(cfg: Config, checker: DependencyChecker) -> bool:
    """Prepare the Jekyll dev environment. Returns False when Jekyll cannot be served."""
    logger.info("Setting up Jekyll development environment...")

    if not checker.probe(jekyll_requirement(cfg)).available:
        logger.warning("Jekyll not available or not functional")
        logger.info("Use Docker development environment for full Jekyll functionality")
        return False

    if gems_stale(cfg.jekyll_dir):
        logger.info("Installing/updating Jekyll gems...")
        if run_command(bundle_install(cfg)) != 0:
            logger.warning("Bundle install failed - Jekyll development server will not be available")
            return False

    logger.info("Jekyll environment ready")
    return True
