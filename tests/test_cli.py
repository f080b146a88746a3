"""命令行测试

load_config 和 create_executor 被替换为测试替身，命令只在 MockExecutor 上执行。
"""

import json

import pytest
from click.testing import CliRunner

from stackpilot import cli as cli_module
from stackpilot.cli import cli
from stackpilot.config import DeploymentMode, NodeOverride, SSHConfig, StackConfig
from stackpilot.exceptions import ConfigurationError

from .conftest import MockExecutor, ok

RUNNING_TASK = "docker service ps myapp_web --filter 'desired-state=running' --format '{{.ID}}' | head -1"
TASK_INSPECT = "docker inspect --format '{{.Status.ContainerStatus.ContainerID}}|{{.NodeID}}' task1"
NODE_INSPECT = "docker node inspect --format '{{.Description.Hostname}}|{{.Status.Addr}}' node1"
CURRENT_NODE = "docker info --format '{{.Name}}'"


class HopExecutor(MockExecutor):
    """支持多跳交互执行的执行器替身"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hops = []

    def run_interactive_via_host(self, target_host, target_user, command):
        self.hops.append((target_host, target_user, command))
        return 0

    def is_local(self):
        return False


def normalized(text):
    return " ".join(text.split())


@pytest.fixture
def compose_file(tmp_path):
    path = tmp_path / "docker-compose.yaml"
    path.write_bytes(b"services:\n  web:\n    image: nginx:1.25\n  db:\n    image: postgres:16\n")
    return path


@pytest.fixture
def make_config(compose_file):
    def _make(mode=DeploymentMode.SWARM, **kwargs):
        return StackConfig(stack="myapp", mode=mode, compose_file=str(compose_file), **kwargs)
    return _make


@pytest.fixture
def run(monkeypatch):
    """用给定的配置和执行器运行一条命令"""
    def _run(config, executor, args, **kwargs):
        monkeypatch.setattr(cli_module, "load_config", lambda path: config)
        monkeypatch.setattr(cli_module, "create_executor", lambda cfg: executor)
        return CliRunner().invoke(cli, args, obj={}, **kwargs)
    return _run


class TestDeploy:

    def test_swarm_deploy(self, run, make_config, executor):
        result = run(make_config(), executor, ["deploy", "--skip-health"])

        assert result.exit_code == 0, result.output
        assert "Stack deployed" in result.output
        assert executor.ran("docker stack deploy -c /tmp/myapp-compose.yaml myapp")
        assert executor.closed

    def test_single_service(self, run, make_config, executor):
        result = run(make_config(), executor, ["deploy", "--skip-health", "--service", "web"])

        assert result.exit_code == 0, result.output
        deployed = executor.files["/tmp/myapp-compose.yaml"]
        assert b"nginx" in deployed
        assert b"postgres" not in deployed

    def test_single_service_in_compose_keeps_other_services(self, run, make_config, executor, compose_file):
        result = run(make_config(DeploymentMode.COMPOSE), executor,
                     ["deploy", "--skip-health", "--service", "web"])

        assert result.exit_code == 0, result.output
        assert executor.files["/tmp/myapp-compose.yaml"] == compose_file.read_bytes()
        assert executor.ran("docker compose -p myapp -f /tmp/myapp-compose.yaml up -d --no-deps web")
        assert not any("--remove-orphans" in c for c in executor.commands)
        assert not executor.ran("docker exec myapp-history")

    def test_unknown_service(self, run, make_config, executor):
        result = run(make_config(), executor, ["deploy", "--skip-health", "-s", "cache"])
        assert result.exit_code == 1
        assert not executor.ran("docker stack deploy")
        assert executor.closed


class TestScale:

    def test_swarm(self, run, make_config, executor):
        result = run(make_config(), executor, ["scale", "web=3", "db=1"])
        assert result.exit_code == 0, result.output
        assert executor.ran("docker service scale") == [
            "docker service scale myapp_web=3",
            "docker service scale myapp_db=1",
        ]

    def test_unsupported_in_compose(self, run, make_config, executor):
        result = run(make_config(DeploymentMode.COMPOSE), executor, ["scale", "web=3"])

        assert result.exit_code == 1
        assert "scale is not supported in compose mode" in normalized(result.output)
        assert not executor.ran("docker service scale")

    def test_bad_argument(self, run, make_config, executor):
        result = run(make_config(), executor, ["scale", "web3"])
        assert result.exit_code == 2
        assert executor.commands == []


class TestExec:

    def test_same_node(self, run, make_config):
        executor = MockExecutor({
            RUNNING_TASK: ok("task1\n"),
            TASK_INSPECT: ok("abcdef1234567890|node1\n"),
            NODE_INSPECT: ok("manager_1|10.0.0.1\n"),
            CURRENT_NODE: ok("manager_1\n"),
        })
        result = run(make_config(), executor, ["exec", "web", "ls", "-la"])

        assert result.exit_code == 0, result.output
        assert executor.interactive == ["docker exec -it abcdef123456 ls -la"]

    def test_other_node_hops_through_manager(self, run, make_config, monkeypatch):
        monkeypatch.setattr(cli_module, "SSHExecutor", HopExecutor)
        executor = HopExecutor({
            RUNNING_TASK: ok("task1\n"),
            TASK_INSPECT: ok("abcdef1234567890|node1\n"),
            NODE_INSPECT: ok("worker_1|10.0.0.7\n"),
            CURRENT_NODE: ok("manager_1\n"),
        })
        config = make_config(ssh=SSHConfig(host="10.0.0.1", user="deploy"),
                             nodes={"worker_1": NodeOverride(user="ubuntu")})

        result = run(config, executor, ["exec", "web"])

        assert result.exit_code == 0, result.output
        assert executor.hops == [("worker_1", "ubuntu", "docker exec -it abcdef123456 sh")]
        assert executor.interactive == []

    def test_other_node_needs_ssh(self, run, make_config):
        executor = MockExecutor({
            RUNNING_TASK: ok("task1\n"),
            TASK_INSPECT: ok("abcdef1234567890|node1\n"),
            NODE_INSPECT: ok("worker_1|10.0.0.7\n"),
            CURRENT_NODE: ok("manager_1\n"),
        })
        result = run(make_config(), executor, ["exec", "web"])
        assert result.exit_code == 1
        assert executor.interactive == []

    def test_no_running_container(self, run, make_config, executor):
        result = run(make_config(), executor, ["exec", "web"])
        assert result.exit_code == 1
        assert executor.interactive == []


class TestModeRestrictions:

    def test_history_requires_compose(self, run, make_config, executor):
        result = run(make_config(), executor, ["history"])
        assert result.exit_code == 1
        assert "history is not supported in swarm mode" in normalized(result.output)

    def test_history_formats_timestamps(self, run, make_config):
        records = json.dumps([
            {"id": 2, "stack_name": "myapp", "deployed_at": "2026-10-17T10:00:00.123456789Z",
             "images": {"web": "nginx:1.25"}},
            {"id": 1, "stack_name": "myapp", "deployed_at": "yesterday", "images": {}},
        ])
        executor = MockExecutor(handler=lambda c: ok("myapp-history") if c.startswith("docker ps")
                                else ok(records) if "/app/history list" in c else None)

        result = run(make_config(DeploymentMode.COMPOSE), executor, ["history"])

        assert result.exit_code == 0, result.output
        assert "2026-10-17 10:00:00 UTC" in result.output
        assert "123456789" not in result.output
        assert "yesterday" in result.output

    def test_secrets_require_swarm(self, run, make_config, executor):
        result = run(make_config(DeploymentMode.COMPOSE), executor, ["secrets", "list"])
        assert result.exit_code == 1
        assert executor.commands == []


class TestStatus:

    def test_missing_stack(self, run, make_config, executor):
        result = run(make_config(), executor, ["status"])
        assert result.exit_code == 0
        assert "not found" in result.output

    def test_lists_services(self, run, make_config):
        executor = MockExecutor({
            "docker stack ls --format '{{.Name}}'": ok("myapp\n"),
            "docker stack services myapp --format "
            "'{{.Name}}|{{.Mode}}|{{.Replicas}}|{{.Image}}|{{.Ports}}'": ok("myapp_web|replicated|1/1|nginx|\n"),
        })
        result = run(make_config(), executor, ["status"])
        assert result.exit_code == 0, result.output
        assert "myapp_web" in result.output


class TestRemove:

    def test_requires_confirmation(self, run, make_config, executor):
        result = run(make_config(), executor, ["remove"], input="n\n")
        assert result.exit_code != 0
        assert executor.commands == []

    def test_purge_history_in_compose(self, run, make_config, executor):
        result = run(make_config(DeploymentMode.COMPOSE), executor, ["remove", "--yes", "--purge-history"])
        assert result.exit_code == 0, result.output
        assert executor.commands == [
            "docker compose -p myapp down",
            "docker stop myapp-history",
            "docker rm myapp-history",
            "docker volume rm myapp_history_data",
        ]


def test_configuration_error_exits_with_one(monkeypatch):
    def broken(path):
        raise ConfigurationError("Configuration file not found: stackpilot.yaml",
                                 error_code="CONFIG_FILE_NOT_FOUND")

    monkeypatch.setattr(cli_module, "load_config", broken)
    result = CliRunner().invoke(cli, ["status"], obj={})
    assert result.exit_code == 1
    assert "CONFIG_FILE_NOT_FOUND" in result.output


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "stackpilot" in result.output
