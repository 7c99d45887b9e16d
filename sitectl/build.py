"""
Build pipeline runner.

Runs an ordered list of build stages. Each stage has primary commands, an
optional fallback and an expected artifact; a stage only counts as done when
its artifact exists afterwards. The first unsatisfied required stage halts the
pipeline. An optional test stage runs last and gates the whole build.
"""

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable

from .errors import BuildStageFailed, TestsFailed
from .models import BuildReport, BuildStage, Command, ReuseExistingArtifact, StageReport

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Command], int]


def run_command(command: Command) -> int:
    """Run a build command to completion, streaming its output. Returns the exit code."""
    env = os.environ.copy()
    env.update(command.env)

    where = f" (in {command.cwd})" if command.cwd else ""
    logger.info(f"Running: {command.display()}{where}")

    try:
        result = subprocess.run(command.argv, cwd=command.cwd, env=env)
    except OSError as e:
        # Executable missing or cwd gone; treat like the shell would
        logger.error(f"Could not run {command.argv[0]}: {e}")
        return 127
    return result.returncode


def remove_path(path: Path):
    """Remove a file or directory tree if present."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class BuildStageRunner:
    """Executes build stages in order with fallback and artifact verification."""

    def __init__(self, runner: CommandRunner = None):
        self.runner = runner or run_command

    def clean(self, stages: list[BuildStage]):
        """Remove every stage's previous output before anything runs."""
        logger.info("Cleaning build directories...")
        for stage in stages:
            for path in stage.paths_to_clean():
                if path.exists() or path.is_symlink():
                    try:
                        remove_path(path)
                    except OSError as e:
                        logger.error(f"Could not remove {path}: {e}")
                        raise BuildStageFailed(stage.name, False, f"could not remove {path}: {e}") from e
                    logger.info(f"Removed {path}")
        logger.info("Build directories cleaned")

    def run(
        self,
        stages: list[BuildStage],
        clean: bool = False,
        with_tests: bool = False,
    ) -> BuildReport:
        """Run the pipeline. Raises BuildStageFailed or TestsFailed on the first hard failure."""
        ordered = sorted(stages, key=lambda s: s.ordinal)
        build_stages = [s for s in ordered if not s.is_test]
        test_stages = [s for s in ordered if s.is_test]

        if clean:
            self.clean(ordered)

        to_run = build_stages + (test_stages if with_tests else [])
        report = BuildReport()

        for stage in to_run:
            stage_report = self.run_stage(stage)
            report.stages.append(stage_report)

            if stage_report.satisfied:
                continue

            if stage.is_test:
                report.failed_stage = stage.name
                self.log_summary(report)
                error = TestsFailed(stage.name)
                error.report = report
                raise error

            if not stage.required:
                logger.warning(f"Optional stage {stage.name} was not satisfied, continuing")
                continue

            report.failed_stage = stage.name
            self.log_summary(report)
            error = BuildStageFailed(stage.name, stage_report.used_fallback, stage_report.error)
            error.report = report
            raise error

        self.log_summary(report)
        return report

    def run_stage(self, stage: BuildStage) -> StageReport:
        """Run one stage: primary, then fallback if the primary failed, then verify the artifact."""
        report = StageReport(stage=stage.name, ordinal=stage.ordinal)
        started = time.monotonic()
        logger.info(f"Stage {stage.ordinal} ({stage.name}) starting")

        primary_ok = False
        if stage.primary_unavailable:
            logger.warning(f"{stage.name}: {stage.primary_unavailable}, skipping primary build")
        else:
            primary_ok = self._run_primary(stage)
            if not primary_ok:
                logger.warning(f"{stage.name}: primary build failed")

        fallback_ok = False
        if not primary_ok and stage.fallback is not None:
            report.used_fallback = True
            logger.warning(f"{stage.name}: falling back to {stage.fallback}")
            fallback_ok = self._run_fallback(stage, report)

        command_ok = primary_ok or fallback_ok
        if not command_ok:
            report.error = "fallback failed" if report.used_fallback else "command failed"
        elif stage.artifact is not None and not stage.artifact.exists():
            # A zero exit status alone does not prove the build produced anything
            report.error = f"expected artifact {stage.artifact} is missing"
        else:
            report.satisfied = True

        report.duration = time.monotonic() - started
        if report.satisfied:
            how = " (via fallback)" if report.used_fallback else ""
            logger.info(f"Stage {stage.ordinal} ({stage.name}) satisfied{how} in {report.duration:.1f}s")
        else:
            logger.error(f"Stage {stage.ordinal} ({stage.name}) failed: {report.error}")
        return report

    def _run_primary(self, stage: BuildStage) -> bool:
        for command in stage.primary:
            exit_code = self.runner(command)
            if exit_code != 0:
                logger.warning(f"{stage.name}: '{command}' exited with {exit_code}")
                return False
        return True

    def _run_fallback(self, stage: BuildStage, report: StageReport) -> bool:
        fallback = stage.fallback
        if isinstance(fallback, ReuseExistingArtifact):
            if not fallback.available():
                logger.error(f"{stage.name}: no previous output at {fallback.marker} to fall back on")
                return False
            report.stale_artifact = True
            logger.warning(
                f"{stage.name}: stale artifact accepted, reusing {fallback.marker} "
                "without checking freshness"
            )
            return True

        exit_code = self.runner(fallback)
        if exit_code != 0:
            logger.error(f"{stage.name}: fallback '{fallback}' exited with {exit_code}")
            return False
        return True

    def log_summary(self, report: BuildReport):
        for stage in report.stages:
            if stage.satisfied:
                status = "ok"
            else:
                status = "FAILED"
            extras = []
            if stage.used_fallback:
                extras.append("fallback")
            if stage.stale_artifact:
                extras.append("stale artifact")
            suffix = f" [{', '.join(extras)}]" if extras else ""
            logger.info(f"  {stage.ordinal}. {stage.stage}: {status}{suffix}")
