"""Tests for the compose deployment flow."""

import subprocess
from unittest.mock import patch

import httpx
import pytest

from sitectl.build import BuildStageRunner
from sitectl.deploy import ComposeClient, DeploymentOrchestrator
from sitectl.errors import BuildStageFailed, ComposeFailed, HealthCheckTimedOut
from sitectl.health import HealthChecker
from sitectl.models import HealthState


class FakeCompose:
    """Records compose calls; containers exist between a successful up and a successful down."""

    project_name = "kaleb-engineer"

    def __init__(self, up_ok=True, down_ok=True):
        self.calls = []
        self.up_ok = up_ok
        self.down_ok = down_ok
        self.up_env = None
        self.running = []

    def down(self):
        self.calls.append("down")
        if self.down_ok:
            self.running = []
        return self.down_ok

    def up(self, env=None):
        self.calls.append("up")
        self.up_env = env
        if self.up_ok:
            self.running = ["c0ffee01", "c0ffee02"]
        return self.up_ok

    def ps(self):
        self.calls.append("ps")
        return "NAME  STATUS\n" + "\n".join(f"{c}  Up" for c in self.running)

    def container_ids(self):
        return list(self.running)

    def logs(self, tail):
        self.calls.append(f"logs:{tail}")
        return "server | listening on 0.0.0.0:8080"


class Sleeps:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def health_checker(status, sleeps):
    transport = httpx.MockTransport(lambda request: httpx.Response(status))
    return HealthChecker(transport=transport, sleep=sleeps)


def orchestrator(cfg, compose, status=200, build_exit=0, image_present=True):
    sleeps = Sleeps()
    built = []

    def runner(command):
        built.append(command.argv)
        return build_exit

    orch = DeploymentOrchestrator(
        compose=compose,
        cfg=cfg,
        builder=BuildStageRunner(runner),
        health=health_checker(status, sleeps),
        sleep=sleeps,
        image_check=lambda tag: image_present,
    )
    return orch, built, sleeps


def test_successful_deploy(cfg):
    compose = FakeCompose()
    orch, built, _ = orchestrator(cfg, compose)

    deployment = orch.deploy("kaleb-engineer:v1")

    assert built == [["docker", "build", "-f", str(cfg.docker_dir / "Dockerfile"), "-t", "kaleb-engineer:v1", "."]]
    assert compose.calls == ["down", "up"]
    assert compose.up_env["IMAGE_TAG"] == "kaleb-engineer:v1"
    assert compose.up_env["ENVIRONMENT"] == "production"
    assert deployment.health == HealthState.HEALTHY
    assert deployment.running
    assert deployment.to_dict()["tag"] == "kaleb-engineer:v1"


def test_health_timeout_leaves_deployment_running(cfg):
    compose = FakeCompose()
    orch, _, sleeps = orchestrator(cfg, compose, status=503)

    with pytest.raises(HealthCheckTimedOut) as exc_info:
        orch.deploy("v1")

    assert exc_info.value.attempts == 30
    assert exc_info.value.target == cfg.health_url
    assert sleeps.calls.count(cfg.health_interval) == 29
    # No teardown after a failed health gate
    assert compose.calls == ["down", "up"]

    status = orch.status()
    assert status.running
    assert status.containers == ["c0ffee01", "c0ffee02"]
    assert status.health == HealthState.UNHEALTHY


def test_build_failure_skips_compose(cfg):
    compose = FakeCompose()
    orch, _, _ = orchestrator(cfg, compose, build_exit=1)

    with pytest.raises(BuildStageFailed) as exc_info:
        orch.deploy("v1")

    assert exc_info.value.stage == "image"
    assert compose.calls == []


def test_missing_image_after_build_fails(cfg):
    compose = FakeCompose()
    orch, _, _ = orchestrator(cfg, compose, image_present=False)

    with pytest.raises(BuildStageFailed):
        orch.deploy("v1")
    assert compose.calls == []


def test_down_failure_before_up_is_ignored(cfg):
    compose = FakeCompose(down_ok=False)
    orch, _, _ = orchestrator(cfg, compose)

    assert orch.deploy("v1").health == HealthState.HEALTHY


def test_up_failure(cfg):
    compose = FakeCompose(up_ok=False)
    orch, _, _ = orchestrator(cfg, compose)

    with pytest.raises(ComposeFailed):
        orch.deploy("v1")


def test_status_without_containers_skips_probe(cfg):
    compose = FakeCompose()
    orch, _, _ = orchestrator(cfg, compose, status=500)

    status = orch.status()

    assert not status.running
    assert status.health == HealthState.UNKNOWN
    assert f"logs:{cfg.status_log_lines}" in compose.calls


class TestStop:
    def test_stop_when_nothing_is_running(self, cfg):
        compose = FakeCompose()
        orch, _, _ = orchestrator(cfg, compose)

        assert not orch.stop().running
        assert compose.calls == ["down"]

    def test_down_failure_with_nothing_left_is_fine(self, cfg):
        compose = FakeCompose(down_ok=False)
        orch, _, _ = orchestrator(cfg, compose)

        orch.stop()

    def test_down_failure_with_containers_left(self, cfg):
        compose = FakeCompose(down_ok=False)
        compose.running = ["c0ffee01"]
        orch, _, _ = orchestrator(cfg, compose)

        with pytest.raises(ComposeFailed):
            orch.stop()


def test_production_only_describes_plan(cfg):
    orch = DeploymentOrchestrator(compose=None, cfg=cfg)
    assert orch.deploy_production("v1") is None


class TestComposeClient:
    def client(self, cfg):
        return ComposeClient(["docker", "compose"], cfg.docker_dir, "kaleb-engineer", timeout=60)

    def test_commands_are_scoped_to_project(self, cfg):
        done = subprocess.CompletedProcess([], 0, stdout="abc\n\ndef\n", stderr="")
        with patch("sitectl.deploy.subprocess.run", return_value=done) as run:
            ids = self.client(cfg).container_ids()

        assert ids == ["abc", "def"]
        argv = run.call_args.args[0]
        assert argv == ["docker", "compose", "-p", "kaleb-engineer", "ps", "-q"]
        assert run.call_args.kwargs["cwd"] == cfg.docker_dir
        assert run.call_args.kwargs["timeout"] == 60

    def test_up_passes_environment(self, cfg):
        done = subprocess.CompletedProcess([], 0)
        with patch("sitectl.deploy.subprocess.run", return_value=done) as run:
            assert self.client(cfg).up(env={"IMAGE_TAG": "v1"})

        assert run.call_args.args[0][-3:] == ["up", "--build", "-d"]
        assert run.call_args.kwargs["env"]["IMAGE_TAG"] == "v1"

    def test_timeout_raises(self, cfg):
        with patch("sitectl.deploy.subprocess.run", side_effect=subprocess.TimeoutExpired(["docker"], 60)):
            with pytest.raises(ComposeFailed) as exc_info:
                self.client(cfg).down()

        assert "timed out" in str(exc_info.value)

    def test_logs_tail(self, cfg):
        done = subprocess.CompletedProcess([], 0, stdout="line\n", stderr="")
        with patch("sitectl.deploy.subprocess.run", return_value=done) as run:
            assert self.client(cfg).logs(20) == "line\n"

        assert run.call_args.args[0][-2:] == ["logs", "--tail=20"]
