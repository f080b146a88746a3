"""Swarm管理器测试"""

import pytest

from stackpilot.exceptions import CommandExecutionError
from stackpilot.swarm import manager as swarm_module
from stackpilot.swarm import SwarmManager
from stackpilot.swarm.manager import TASK_FORMAT, parse_tasks

from .conftest import MockExecutor, fail, ok

NETWORK_LS = "docker network ls --filter name=^myapp_net$ --format '{{.Name}}'"


class TestEnvironmentChecks:

    def test_docker_installed(self):
        executor = MockExecutor({"docker --version": ok("Docker version 27.3.1, build ce12230\n")})
        manager = SwarmManager(executor, "myapp")
        assert manager.is_docker_installed()
        assert manager.get_docker_version() == "Docker version 27.3.1, build ce12230"

    def test_docker_missing(self):
        executor = MockExecutor({"docker --version": fail("docker: command not found", 127)})
        assert not SwarmManager(executor, "myapp").is_docker_installed()

    def test_compose_version_missing(self):
        executor = MockExecutor({"docker compose version": fail("unknown command")})
        assert SwarmManager(executor, "myapp").get_compose_version() is None

    @pytest.mark.parametrize("state,expected", [("active\n", True), ("inactive\n", False), ("", False)])
    def test_swarm_initialized(self, state, expected):
        executor = MockExecutor({"docker info --format '{{.Swarm.LocalNodeState}}'": ok(state)})
        assert SwarmManager(executor, "myapp").is_swarm_initialized() is expected

    def test_init_swarm_failure(self):
        executor = MockExecutor({"docker swarm init": fail("already part of a swarm")})
        with pytest.raises(CommandExecutionError):
            SwarmManager(executor, "myapp").init_swarm()


class TestCreateNetwork:

    def test_creates_missing_network(self, executor):
        assert SwarmManager(executor, "myapp").create_network("myapp_net")
        assert executor.commands[-1] == "docker network create --driver overlay --attachable myapp_net"

    def test_existing_network_is_kept(self):
        executor = MockExecutor({NETWORK_LS: ok("myapp_net\n")})
        assert not SwarmManager(executor, "myapp").create_network("myapp_net")
        assert executor.commands == [NETWORK_LS]


class TestRegistryLogin:

    def test_password_never_on_command_line(self, executor):
        assert SwarmManager(executor, "myapp").registry_login("ghcr.io", "bot", "hunter2")

        assert executor.files == {"/tmp/myapp-registry-password": b"hunter2"}
        assert executor.commands == [
            "install -m 600 /dev/null /tmp/myapp-registry-password",
            "docker login ghcr.io -u bot --password-stdin < /tmp/myapp-registry-password",
            "rm -f /tmp/myapp-registry-password",
        ]
        assert not any("hunter2" in c for c in executor.commands)

    def test_skipped_without_credentials(self, executor):
        assert not SwarmManager(executor, "myapp").registry_login("ghcr.io", "bot", "")
        assert executor.commands == []

    def test_failed_login_removes_password_file(self):
        executor = MockExecutor(handler=lambda c: fail("unauthorized") if c.startswith("docker login") else None)
        with pytest.raises(CommandExecutionError):
            SwarmManager(executor, "myapp").registry_login("ghcr.io", "bot", "wrong")
        assert executor.commands[-1] == "rm -f /tmp/myapp-registry-password"


class TestTasks:

    OUTPUT = ("t1|myapp_web.1|nginx:1.25|node1|Running|Running 5 minutes ago|\n"
              "t2|myapp_web.2|nginx:1.25|node2|Running|Preparing 3 seconds ago|\n"
              "t3|myapp_web.3|nginx:1.24|node2|Shutdown|Shutdown 1 hour ago|\n")

    def test_parse_tasks(self):
        tasks = parse_tasks(self.OUTPUT)
        assert [t.id for t in tasks] == ["t1", "t2", "t3"]
        assert tasks[0].is_running
        assert not tasks[1].is_running
        assert tasks[2].to_dict()['image'] == "nginx:1.24"

    def test_service_tasks_command(self):
        executor = MockExecutor({f"docker service ps myapp_web --format {TASK_FORMAT}": ok(self.OUTPUT)})
        assert len(SwarmManager(executor, "myapp").get_service_tasks("web")) == 3

    def test_count_pending(self):
        executor = MockExecutor({f"docker stack ps myapp --format {TASK_FORMAT}": ok(self.OUTPUT)})
        assert SwarmManager(executor, "myapp").count_pending_tasks() == 1

    def test_wait_for_convergence(self, monkeypatch):
        monkeypatch.setattr(swarm_module.time, "sleep", lambda s: None)
        converged = self.OUTPUT.replace("Preparing 3 seconds ago", "Running 1 second ago")
        executor = MockExecutor({f"docker stack ps myapp --format {TASK_FORMAT}": [
            ok(self.OUTPUT), ok(converged)
        ]})
        assert SwarmManager(executor, "myapp").wait_for_convergence(timeout=60)

    def test_wait_for_convergence_timeout(self, monkeypatch):
        monkeypatch.setattr(swarm_module.time, "sleep", lambda s: None)
        executor = MockExecutor({f"docker stack ps myapp --format {TASK_FORMAT}": ok(self.OUTPUT)})
        assert not SwarmManager(executor, "myapp").wait_for_convergence(timeout=0)
