"""
sitectl command line.

Subcommands:
    build   Build the Jekyll site and the Vapor server (--clean, --test)
    dev     Run the development servers under supervision until interrupted
    deploy  Build and run the Docker deployment (--tag, --status, --stop, --production)

Every fatal error is reported as one categorized line and exit code 1.
"""

import argparse
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import __version__
from .build import BuildStageRunner
from .config import Config, config as default_config
from .deploy import ComposeClient, DeploymentOrchestrator
from .deps import DependencyChecker
from .errors import InvalidArgument, OrchestratorError, ProcessSpawnFailed
from .process import ProcessSupervisor
from .site import (
    BUILD_REQUIREMENTS,
    COMPOSE,
    DEPLOY_REQUIREMENTS,
    JEKYLL,
    VAPOR,
    build_stages,
    dev_requirements,
    jekyll_process,
    jekyll_requirement,
    setup_jekyll,
    vapor_process,
)

logger = logging.getLogger("sitectl")

CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports bad flags as InvalidArgument instead of exiting."""

    def error(self, message):
        flag = next((token for token in message.split() if token.startswith("-")), message)
        raise InvalidArgument(flag.rstrip(":,"), message)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="sitectl", description="Build, run and deploy the Kaleb.Engineer site")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-root", type=Path, help="Repository root (default: current directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Build the Jekyll site and Vapor server")
    build.add_argument("--test", action="store_true", help="Run tests after building")
    build.add_argument("--clean", action="store_true", help="Clean build directories before building")

    dev = subparsers.add_parser("dev", help="Start development servers")
    only = dev.add_mutually_exclusive_group()
    only.add_argument("--jekyll-only", action="store_true", help="Start only the Jekyll development server")
    only.add_argument("--vapor-only", action="store_true", help="Start only the Vapor development server")

    deploy = subparsers.add_parser("deploy", help="Deploy with Docker Compose")
    action = deploy.add_mutually_exclusive_group()
    action.add_argument("--production", action="store_true", help="Deploy to production (not implemented yet)")
    action.add_argument("--status", action="store_true", help="Show deployment status")
    action.add_argument("--stop", action="store_true", help="Stop running deployment")
    deploy.add_argument("--tag", help="Docker image tag (default: kaleb-engineer:latest)")

    return parser


def configure_logging(cfg: Config, verbose: bool = False):
    """Console output with a severity prefix plus a rotating log file."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() in ("sitectl-console", "sitectl-file"):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.set_name("sitectl-console")
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        cfg.sitectl_log,
        maxBytes=cfg.log_max_bytes,
        backupCount=cfg.log_backup_count,
    )
    file_handler.set_name("sitectl-file")
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    root.addHandler(console_handler)
    root.addHandler(file_handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def install_signal_handlers(cancel: threading.Event):
    """Route SIGINT/SIGTERM to the cancellation token. Repeated signals are ignored."""

    def handle(signum, frame):
        if cancel.is_set():
            logger.warning(f"Received {signal.Signals(signum).name}, shutdown already in progress")
            return
        logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle)


def cmd_build(args, cfg: Config) -> int:
    logger.info("Starting build process for Kaleb.Engineer...")
    checker = DependencyChecker(cfg)
    checker.require(BUILD_REQUIREMENTS)
    jekyll = checker.probe(jekyll_requirement(cfg))

    BuildStageRunner().run(build_stages(cfg, jekyll), clean=args.clean, with_tests=args.test)

    logger.info("Build completed successfully!")
    logger.info(f"Jekyll site: {cfg.jekyll_dir / '_site'}")
    logger.info(f"Vapor server: {cfg.vapor_dir / '.build' / 'release' / 'VaporServer'}")
    return 0


def _start(supervisor: ProcessSupervisor, spec):
    logger.info(f"Starting {spec.name} development server on {spec.url}...")
    supervisor.start(
        spec.name,
        spec.command,
        working_dir=spec.working_dir,
        env=spec.env,
        grace_period=spec.grace_period,
    )


def cmd_dev(args, cfg: Config, cancel: threading.Event = None) -> int:
    mode = JEKYLL if args.jekyll_only else VAPOR if args.vapor_only else "both"
    logger.info("Starting Kaleb.Engineer development environment...")

    checker = DependencyChecker(cfg)
    checker.require(dev_requirements(mode))

    if cancel is None:
        cancel = threading.Event()
        install_signal_handlers(cancel)

    supervisor = ProcessSupervisor(cfg)
    try:
        if mode in (JEKYLL, "both"):
            if setup_jekyll(cfg, checker):
                _start(supervisor, jekyll_process(cfg))
            elif mode == JEKYLL:
                raise ProcessSpawnFailed(
                    JEKYLL, "Jekyll setup failed. Use Docker development environment or fix Ruby setup"
                )
            else:
                logger.warning("Jekyll unavailable - continuing with Vapor only")

        if mode in (VAPOR, "both"):
            _start(supervisor, vapor_process(cfg))
    except OrchestratorError:
        supervisor.shutdown()
        raise

    logger.info("Development environment ready!")
    for name in supervisor.get_all_running():
        spec = jekyll_process(cfg) if name == JEKYLL else vapor_process(cfg)
        logger.info(f"{name}: {spec.url}")

    supervisor.run(cancel)
    logger.info("Development servers stopped")
    return 0


def cmd_deploy(args, cfg: Config) -> int:
    if args.tag is not None and not args.tag.strip():
        raise InvalidArgument("--tag", "--tag requires a non-empty image tag")
    tag = args.tag or cfg.default_tag

    if args.production:
        DeploymentOrchestrator(compose=None, cfg=cfg).deploy_production(tag)
        return 0

    checker = DependencyChecker(cfg)
    logger.info("Checking deployment dependencies...")
    results = checker.require(DEPLOY_REQUIREMENTS)
    compose = ComposeClient(
        results[COMPOSE.name].command,
        cfg.docker_dir,
        cfg.compose_project,
        timeout=cfg.compose_timeout,
    )
    orchestrator = DeploymentOrchestrator(compose=compose, cfg=cfg)

    if args.status:
        logger.info("Deployment Status:")
        deployment = orchestrator.status()
        print(deployment.ps_output)
        logger.info("Recent logs:")
        print(deployment.logs)
        logger.info(
            f"{len(deployment.containers)} container(s) running, health: {deployment.health.value}"
        )
        return 0

    if args.stop:
        orchestrator.stop()
        return 0

    logger.info("Starting local deployment...")
    orchestrator.deploy(tag)
    return 0


def main(argv: list[str] = None, cancel: threading.Event = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        cfg = default_config
        if args.project_root is not None:
            if not args.project_root.is_dir():
                raise InvalidArgument("--project-root", f"--project-root {args.project_root} is not a directory")
            cfg = Config(project_root=args.project_root)
    except InvalidArgument as e:
        logging.basicConfig(format=CONSOLE_FORMAT)
        logger.error(e.summary())
        logger.error("Use --help for usage information")
        return 1

    configure_logging(cfg, args.verbose)

    try:
        if args.command == "build":
            return cmd_build(args, cfg)
        if args.command == "dev":
            return cmd_dev(args, cfg, cancel)
        return cmd_deploy(args, cfg)
    except OrchestratorError as e:
        logger.error(e.summary())
        return 1


if __name__ == "__main__":
    sys.exit(main())
