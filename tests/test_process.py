"""Tests for the process supervisor, using real short-lived Python children."""

import os
import signal
import threading
import time

import pytest

from sitectl.errors import ProcessSpawnFailed
from sitectl.models import ProcessState
from sitectl.process import ProcessSupervisor, describe_exit

from .conftest import python_command

SLEEPER = python_command("import time; print('hello from child', flush=True); time.sleep(60)")
CRASHER = python_command("import sys; sys.exit(3)")
STUBBORN = python_command(
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)"
)


def wait_for(predicate, timeout=10.0, step=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


def kill_and_reap(entry):
    os.kill(entry.pid, signal.SIGKILL)
    entry.process.wait(timeout=5)


@pytest.fixture
def supervisor(cfg):
    sup = ProcessSupervisor(cfg)
    yield sup
    sup.shutdown()


class TestStart:
    def test_start_running(self, supervisor, cfg):
        entry = supervisor.start("web", SLEEPER, working_dir=cfg.project_root)

        assert entry.state == ProcessState.RUNNING
        assert entry.is_alive()
        assert supervisor.get_all_running() == ["web"]

        stdout_log = cfg.logs_dir / "web" / "stdout.log"
        assert wait_for(lambda: stdout_log.exists() and "hello from child" in stdout_log.read_text())

    def test_start_is_noop_when_already_running(self, supervisor):
        first = supervisor.start("web", SLEEPER)
        pid = first.pid

        again = supervisor.start("web", SLEEPER)

        assert again is first
        assert again.pid == pid

    def test_exit_within_grace_period(self, supervisor):
        with pytest.raises(ProcessSpawnFailed) as exc_info:
            supervisor.start("web", CRASHER, grace_period=2)

        assert exc_info.value.name == "web"
        assert "exit code 3" in exc_info.value.reason
        entry = supervisor.get("web")
        assert entry.state == ProcessState.FAILED
        assert entry.exit_code == 3

    def test_missing_executable(self, supervisor):
        with pytest.raises(ProcessSpawnFailed):
            supervisor.start("web", ["definitely-not-a-real-server-xyz"])

        assert supervisor.get("web").state == ProcessState.FAILED

    def test_environment_is_passed(self, supervisor, tmp_path):
        marker = tmp_path / "port.txt"
        code = (
            f"import os, time; open({str(marker)!r}, 'w').write(os.environ['PORT']); "
            "time.sleep(60)"
        )
        supervisor.start("web", python_command(code), env={"PORT": "8080"})

        assert wait_for(lambda: marker.exists() and marker.read_text() == "8080")


class TestRestart:
    def test_crashed_process_is_respawned(self, supervisor, cfg):
        entry = supervisor.start("web", SLEEPER)
        old_pid = entry.pid
        kill_and_reap(entry)

        respawned = supervisor.check_processes()

        assert respawned == ["web"]
        assert entry.restart_count == 1
        assert entry.last_restart is not None
        assert entry.state == ProcessState.RESTARTING
        assert entry.is_alive()
        assert entry.pid != old_pid
        assert entry.exit_code is None

        # Confirmed once the grace period has passed
        time.sleep(cfg.default_grace_period + 0.1)
        supervisor.check_processes()
        assert entry.state == ProcessState.RUNNING

    def test_one_restart_does_not_block_others(self, supervisor):
        web = supervisor.start("web", SLEEPER, grace_period=3)
        site = supervisor.start("site", SLEEPER)
        kill_and_reap(web)

        started = time.monotonic()
        supervisor.check_processes()

        # The respawned instance is confirmed on a later tick, not waited on here
        assert time.monotonic() - started < web.grace_period
        assert web.state == ProcessState.RESTARTING
        assert site.state == ProcessState.RUNNING
        assert web.restart_count == 1
        assert site.restart_count == 0

    def test_start_during_restart_keeps_single_instance(self, supervisor):
        entry = supervisor.start("web", SLEEPER)
        kill_and_reap(entry)
        supervisor.check_processes()
        assert entry.state == ProcessState.RESTARTING
        respawned = entry.process

        again = supervisor.start("web", SLEEPER)

        assert again is entry
        assert entry.process is respawned
        assert entry.restart_count == 1

        supervisor.shutdown()
        assert respawned.poll() is not None

    def test_failed_respawn_is_retried(self, supervisor):
        entry = supervisor.start("web", SLEEPER)
        entry.command = ["definitely-not-a-real-server-xyz"]
        kill_and_reap(entry)

        supervisor.check_processes()
        assert entry.state == ProcessState.RESTARTING
        assert entry.process is None
        assert entry.restart_count == 1

        supervisor.check_processes()
        assert entry.state == ProcessState.RESTARTING
        assert entry.restart_count == 2

    def test_restart_cap(self, cfg):
        cfg.max_restarts = 1
        supervisor = ProcessSupervisor(cfg)
        try:
            entry = supervisor.start("web", SLEEPER)
            kill_and_reap(entry)
            supervisor.check_processes()
            assert entry.restart_count == 1

            kill_and_reap(entry)
            supervisor.check_processes()

            assert entry.state == ProcessState.FAILED
            assert entry.restart_count == 1
        finally:
            supervisor.shutdown()

    def test_backoff_delays(self, cfg):
        cfg.restart_backoff = 1
        cfg.restart_backoff_max = 5
        supervisor = ProcessSupervisor(cfg)

        assert [supervisor._restart_delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]

    def test_no_backoff_by_default(self, supervisor):
        assert supervisor._restart_delay(10) == 0.0

    def test_backoff_defers_respawn(self, cfg):
        now = [100.0]
        cfg.restart_backoff = 30
        supervisor = ProcessSupervisor(cfg, clock=lambda: now[0])
        try:
            entry = supervisor.start("web", SLEEPER)
            kill_and_reap(entry)

            assert supervisor.check_processes() == []
            assert entry.state == ProcessState.RESTARTING
            assert entry.process is None

            now[0] += 30
            assert supervisor.check_processes() == ["web"]
        finally:
            supervisor.shutdown()


class TestShutdown:
    def test_shutdown_is_idempotent(self, cfg):
        supervisor = ProcessSupervisor(cfg)
        web = supervisor.start("web", SLEEPER)
        site = supervisor.start("site", SLEEPER)
        processes = [web.process, site.process]

        supervisor.shutdown()
        supervisor.shutdown()

        assert all(p.poll() is not None for p in processes)
        assert {e.state for e in supervisor.processes} == {ProcessState.STOPPED}
        assert supervisor.get_all_running() == []

    def test_stop_unknown_process(self, supervisor):
        assert supervisor.stop("nope") is True

    def test_stop_escalates_to_sigkill(self, supervisor, cfg):
        entry = supervisor.start("web", STUBBORN, grace_period=0.5)
        stdout_log = cfg.logs_dir / "web" / "stdout.log"
        assert wait_for(lambda: stdout_log.exists() and "ready" in stdout_log.read_text())

        supervisor.stop("web", timeout=0.5)

        assert entry.state == ProcessState.STOPPED
        assert entry.exit_code == -signal.SIGKILL

    def test_stop_kills_whole_process_group(self, supervisor, tmp_path):
        pid_file = tmp_path / "child.pid"
        code = (
            "import subprocess, sys, time; "
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
            f"open({str(pid_file)!r}, 'w').write(str(child.pid)); "
            "time.sleep(60)"
        )
        supervisor.start("web", python_command(code))
        assert wait_for(lambda: pid_file.exists() and pid_file.read_text())
        grandchild = int(pid_file.read_text())

        supervisor.stop("web")

        def gone():
            try:
                os.kill(grandchild, 0)
            except ProcessLookupError:
                return True
            # Zombie until init reaps it
            try:
                with open(f"/proc/{grandchild}/stat") as f:
                    return f.read().split()[2] == "Z"
            except FileNotFoundError:
                return True

        assert wait_for(gone)

    def test_run_loop_restarts_then_stops_on_cancel(self, cfg):
        supervisor = ProcessSupervisor(cfg)
        entry = supervisor.start("web", SLEEPER)
        cancel = threading.Event()
        loop = threading.Thread(target=supervisor.run, args=(cancel,))
        loop.start()
        try:
            kill_and_reap(entry)
            assert wait_for(
                lambda: entry.restart_count == 1 and entry.state == ProcessState.RUNNING,
                timeout=cfg.monitor_interval + cfg.default_grace_period + 5,
            )
        finally:
            cancel.set()
            loop.join(timeout=15)

        assert not loop.is_alive()
        assert entry.state == ProcessState.STOPPED
        assert not entry.is_alive()


def test_snapshot_reports_resources(supervisor):
    supervisor.start("web", SLEEPER)

    (status,) = supervisor.snapshot()

    assert status["name"] == "web"
    assert status["state"] == "running"
    assert status["pid"] is not None
    assert status["memory_mb"] > 0


@pytest.mark.parametrize(
    "code, expected",
    [(0, "exit code 0"), (3, "exit code 3"), (-9, "killed by SIGKILL"), (None, "unknown exit status")],
)
def test_describe_exit(code, expected):
    assert describe_exit(code) == expected
