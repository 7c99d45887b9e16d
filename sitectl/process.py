"""
Process supervisor for the development servers.

Starts named processes in their own process groups, captures stdout/stderr to
log files, polls liveness on a fixed interval and restarts anything that died
without being asked to. Shutdown is driven by a cancellation token: the signal
handler only sets it, and the monitoring loop tears everything down itself.
"""

import atexit
import logging
import os
import signal
import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import Config, config as default_config
from .errors import ProcessSpawnFailed
from .models import ManagedProcess, ProcessState
from .monitor import get_process_metrics, list_descendants

logger = logging.getLogger(__name__)


def describe_exit(returncode: Optional[int]) -> str:
    if returncode is None:
        return "unknown exit status"
    if returncode < 0:
        try:
            return f"killed by {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"
    return f"exit code {returncode}"


def _signal_group(pid: int, sig: int):
    """Signal a whole process group; the group id equals the leader pid (new session)."""
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


class ProcessSupervisor:
    """Owns the registry of managed processes for one orchestrator run."""

    def __init__(self, cfg: Config = None, clock: Callable[[], float] = time.monotonic):
        self.config = cfg or default_config
        self._clock = clock
        self._processes: dict[str, ManagedProcess] = {}
        self._stop_events: dict[str, threading.Event] = {}
        self._shutdown_started = False
        self._atexit_registered = False

    # Registry access

    def get(self, name: str) -> Optional[ManagedProcess]:
        return self._processes.get(name)

    @property
    def processes(self) -> list[ManagedProcess]:
        return list(self._processes.values())

    def get_all_running(self) -> list[str]:
        """Get list of all running process names."""
        return [
            name for name, entry in self._processes.items()
            if entry.state == ProcessState.RUNNING and entry.is_alive()
        ]

    # Lifecycle

    def start(
        self,
        name: str,
        command: list[str],
        working_dir: Path = None,
        env: dict[str, str] = None,
        grace_period: float = None,
    ) -> ManagedProcess:
        """Spawn a process and wait out its grace period.

        Raises ProcessSpawnFailed if it cannot be launched or dies before the
        grace period ends; the entry is left in the failed state.
        """
        entry = self._processes.get(name)
        if entry and entry.is_alive():
            if entry.state != ProcessState.STOPPING:
                logger.info(f"{name} is already running (PID: {entry.pid})")
                return entry
            # One live OS process per entry: finish the stop before respawning
            self.stop(name)

        if grace_period is None:
            grace_period = self.config.default_grace_period
        if entry is None:
            entry = ManagedProcess(name=name, command=list(command))
            self._processes[name] = entry
        entry.command = list(command)
        entry.working_dir = Path(working_dir) if working_dir else None
        entry.env = dict(env or {})
        entry.grace_period = grace_period

        if not self._atexit_registered:
            # Best effort for exits that bypass the monitoring loop
            atexit.register(self.shutdown)
            self._atexit_registered = True
        self._shutdown_started = False

        entry.state = ProcessState.STARTING
        logger.info(f"Starting {name}: {' '.join(entry.command)}")
        self._spawn(entry)

        try:
            entry.process.wait(timeout=entry.grace_period)
        except subprocess.TimeoutExpired:
            entry.state = ProcessState.RUNNING
            entry.grace_deadline = None
            logger.info(f"{name} started (PID: {entry.pid})")
            return entry

        entry.exit_code = entry.process.returncode
        entry.state = ProcessState.FAILED
        self._stop_capture(name)
        reason = f"{describe_exit(entry.exit_code)} within {entry.grace_period}s of starting"
        logger.error(f"Failed to start {name}: {reason}")
        raise ProcessSpawnFailed(name, reason)

    def _spawn(self, entry: ManagedProcess):
        """Launch the OS process for an entry. Raises ProcessSpawnFailed if it cannot be executed."""
        log_dir = self.config.logs_dir / entry.name
        log_dir.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(entry.env)

        try:
            process = subprocess.Popen(
                entry.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=entry.working_dir,
                env=env,
                start_new_session=True,  # Own process group, so the whole tree can be signalled
            )
        except OSError as e:
            entry.process = None
            entry.state = ProcessState.FAILED
            logger.error(f"Failed to start {entry.name}: {e}")
            raise ProcessSpawnFailed(entry.name, str(e)) from e

        entry.process = process
        entry.started_at = datetime.now()
        entry.exit_code = None
        entry.grace_deadline = self._clock() + entry.grace_period

        # Start log capture threads
        stop_event = threading.Event()
        self._stop_events[entry.name] = stop_event

        stdout_log = open(log_dir / "stdout.log", "a")
        stderr_log = open(log_dir / "stderr.log", "a")
        for stream, level, log_file in (
            (process.stdout, logging.INFO, stdout_log),
            (process.stderr, logging.WARNING, stderr_log),
        ):
            thread = threading.Thread(
                target=self._capture_output,
                args=(entry.name, stream, level, log_file, stop_event),
                daemon=True,
            )
            thread.start()

    def _capture_output(
        self,
        name: str,
        stream,
        level: int,
        log_file,
        stop_event: threading.Event,
    ):
        """Copy process output to its log file and to the console logger."""
        output_logger = logging.getLogger(f"{__name__}.{name}")
        try:
            for line in iter(stream.readline, b""):
                if stop_event.is_set():
                    break

                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue

                timestamp = datetime.now().isoformat()
                log_file.write(f"[{timestamp}] {decoded}\n")
                log_file.flush()

                # Detect level from content
                detected = level
                lower = decoded.lower()
                if "error" in lower or "exception" in lower or "traceback" in lower:
                    detected = logging.ERROR
                elif "warning" in lower or "warn" in lower:
                    detected = logging.WARNING
                output_logger.log(detected, f"{name} | {decoded}")

        except (OSError, ValueError) as e:
            # Pipe closed under us during shutdown
            logger.debug(f"Log capture for {name} ended: {e}")
        finally:
            log_file.close()

    def _stop_capture(self, name: str):
        event = self._stop_events.pop(name, None)
        if event:
            event.set()

    # Monitoring

    def check_processes(self) -> list[str]:
        """Run one monitoring tick. Returns the names of processes respawned during it."""
        now = self._clock()
        respawned = []

        for entry in list(self._processes.values()):
            if entry.state == ProcessState.RUNNING:
                if entry.is_alive():
                    continue
                logger.warning(
                    f"{entry.name} stopped unexpectedly ({describe_exit(entry.process.returncode)})"
                )
                self._handle_exit(entry, now)

            elif entry.state == ProcessState.RESTARTING and entry.is_alive():
                # Respawned instance still inside its grace period
                if entry.grace_deadline is not None and now >= entry.grace_deadline:
                    entry.state = ProcessState.RUNNING
                    entry.grace_deadline = None
                    logger.info(f"{entry.name} restarted (PID: {entry.pid})")
                continue

            elif entry.state == ProcessState.RESTARTING and entry.process is not None:
                logger.warning(
                    f"{entry.name} exited during restart ({describe_exit(entry.process.returncode)})"
                )
                self._handle_exit(entry, now)

            if entry.state != ProcessState.RESTARTING or entry.process is not None:
                continue
            if entry.next_restart_at is not None and now < entry.next_restart_at:
                continue
            if self._respawn(entry, now):
                respawned.append(entry.name)

        return respawned

    def _handle_exit(self, entry: ManagedProcess, now: float):
        """Reap a dead instance and queue its restart."""
        entry.exit_code = entry.process.returncode
        entry.state = ProcessState.FAILED
        self._stop_capture(entry.name)
        self._reap(entry)
        entry.state = ProcessState.RESTARTING
        entry.next_restart_at = now + self._restart_delay(entry.restart_count + 1)

    def _reap(self, entry: ManagedProcess):
        """Make sure nothing from the previous instance survives before respawning."""
        process = entry.process
        if process is None:
            return
        try:
            process.wait(timeout=self.config.kill_timeout)
        except subprocess.TimeoutExpired:
            _signal_group(process.pid, signal.SIGKILL)
            try:
                process.wait(timeout=self.config.kill_timeout)
            except subprocess.TimeoutExpired:
                logger.error(f"Could not reap {entry.name} (PID: {process.pid})")
        # Leftover group members, e.g. the server forked by a wrapper that crashed
        _signal_group(process.pid, signal.SIGKILL)
        entry.process = None

    def _restart_delay(self, attempt: int) -> float:
        if self.config.restart_backoff <= 0:
            return 0.0
        delay = self.config.restart_backoff * (2 ** (attempt - 1))
        return min(delay, self.config.restart_backoff_max)

    def _respawn(self, entry: ManagedProcess, now: float) -> bool:
        if self.config.max_restarts and entry.restart_count >= self.config.max_restarts:
            entry.state = ProcessState.FAILED
            logger.error(
                f"{entry.name} exceeded {self.config.max_restarts} restart attempts, giving up"
            )
            return False

        entry.restart_count += 1
        entry.last_restart = datetime.now()
        logger.info(f"Restarting {entry.name} (restart #{entry.restart_count})")
        try:
            self._spawn(entry)
        except ProcessSpawnFailed as e:
            # Not fatal: retried on the next tick
            entry.state = ProcessState.RESTARTING
            entry.next_restart_at = now + self._restart_delay(entry.restart_count + 1)
            logger.error(f"Restart of {entry.name} failed, will retry: {e.reason}")
            return False

        entry.state = ProcessState.RESTARTING
        entry.next_restart_at = None
        return True

    def _next_wait(self) -> float:
        """Seconds until the next tick: the monitor interval, or sooner for pending deadlines."""
        wait = self.config.monitor_interval
        now = self._clock()
        for entry in self._processes.values():
            if entry.state != ProcessState.RESTARTING:
                continue
            deadline = entry.grace_deadline if entry.process is not None else entry.next_restart_at
            if deadline is not None:
                wait = min(wait, max(deadline - now, 0.0))
        return wait

    def run(self, cancel: threading.Event):
        """Poll until the cancellation token is set, then stop everything."""
        logger.info("Monitoring processes... (Press Ctrl+C to stop)")
        try:
            while not cancel.is_set():
                self.check_processes()
                if logger.isEnabledFor(logging.DEBUG):
                    for status in self.snapshot():
                        logger.debug(
                            f"{status['name']}: {status['state']} pid={status['pid']} "
                            f"restarts={status['restart_count']} cpu={status['cpu_percent']}% "
                            f"mem={status['memory_mb']}MB"
                        )
                cancel.wait(self._next_wait())
        finally:
            self.shutdown()

    def snapshot(self) -> list[dict]:
        """Status of every tracked process, with resource usage for live ones."""
        statuses = []
        for entry in self._processes.values():
            status = entry.to_dict()
            status.update({"cpu_percent": 0.0, "memory_mb": 0.0, "uptime_seconds": 0})
            if entry.is_alive():
                status.update(get_process_metrics(entry.pid))
                if entry.started_at:
                    status["uptime_seconds"] = (datetime.now() - entry.started_at).total_seconds()
            statuses.append(status)
        return statuses

    # Shutdown

    def stop(self, name: str, timeout: float = None) -> bool:
        """Stop a process: SIGTERM the group, wait, then SIGKILL. Returns True once it is stopped."""
        entry = self._processes.get(name)
        if entry is None:
            logger.info(f"{name} is not tracked")
            return True
        if entry.state == ProcessState.STOPPED and not entry.is_alive():
            return True

        if timeout is None:
            timeout = self.config.stop_timeout
        entry.state = ProcessState.STOPPING
        process = entry.process

        if process is not None and process.poll() is None:
            descendants = list_descendants(process.pid)
            _signal_group(process.pid, signal.SIGTERM)
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{name} did not stop gracefully, forcing kill")
                _signal_group(process.pid, signal.SIGKILL)
                try:
                    process.wait(timeout=self.config.kill_timeout)
                except subprocess.TimeoutExpired:
                    logger.error(f"{name} (PID: {process.pid}) survived SIGKILL")

            # Children that moved to another process group
            for child in descendants:
                try:
                    if child.is_running():
                        child.kill()
                except psutil.NoSuchProcess:
                    pass
        elif process is not None:
            _signal_group(process.pid, signal.SIGKILL)

        if process is not None:
            entry.exit_code = process.returncode
        self._stop_capture(name)
        entry.state = ProcessState.STOPPED
        entry.grace_deadline = None
        entry.next_restart_at = None
        logger.info(f"{name} stopped")
        return True

    def shutdown(self):
        """Stop every tracked process regardless of state. Safe to call repeatedly."""
        if not self._shutdown_started:
            logger.info("Shutting down supervised processes...")
            self._shutdown_started = True
        for name in list(self._processes):
            try:
                self.stop(name)
            except OSError as e:
                logger.error(f"Failed to stop {name}: {e}")
