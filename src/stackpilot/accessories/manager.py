"""附属服务管理器

附属服务是栈中长期运行、不随应用频繁发布的服务（数据库、缓存等），
可以单独启动、停止、重启和查询状态。

swarm 模式通过调整副本数实现启停，compose 模式直接使用 compose start/stop/restart。
"""

from dataclasses import dataclass
from typing import List, Dict, Any

from ..config import DeploymentMode
from ..deployment.backend import is_replica_running
from ..deployment.compose_backend import parse_compose_ps
from ..exceptions import StackPilotError, CommandExecutionError, DeploymentError, OutputParseError
from ..executor import Executor
from ..utils.common import setup_module_logger, split_records

NOT_DEPLOYED = "not deployed"


@dataclass
class AccessoryStatus:
    """附属服务状态"""
    name: str
    replicas: str
    running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {'name': self.name, 'replicas': self.replicas, 'running': self.running}


class AccessoryManager:
    """附属服务管理器

    Examples:
        >>> manager = AccessoryManager(executor, "myapp", DeploymentMode.SWARM)
        >>> manager.restart("redis")
        >>> for status in manager.list_all(["redis", "postgres"]):
        ...     print(status.name, status.replicas)
    """

    def __init__(self, executor: Executor, stack_name: str, mode: DeploymentMode):
        self.executor = executor
        self.stack_name = stack_name
        self.mode = mode
        self.logger = setup_module_logger("stackpilot.accessories")

    def _full_name(self, name: str) -> str:
        return f"{self.stack_name}_{name}"

    def _compose(self, args: str) -> str:
        return f"docker compose -p {self.stack_name} {args}"

    def _run_checked(self, command: str, message: str) -> str:
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr, message=message)
        return result.stdout

    def start(self, name: str) -> None:
        if self.mode == DeploymentMode.COMPOSE:
            command = self._compose(f"start {name}")
        else:
            command = f"docker service scale {self._full_name(name)}=1"
        self.logger.info(f"Starting accessory {name}")
        self._run_checked(command, f"Failed to start {name}")

    def stop(self, name: str) -> None:
        if self.mode == DeploymentMode.COMPOSE:
            command = self._compose(f"stop {name}")
        else:
            command = f"docker service scale {self._full_name(name)}=0"
        self.logger.info(f"Stopping accessory {name}")
        self._run_checked(command, f"Failed to stop {name}")

    def restart(self, name: str) -> None:
        if self.mode == DeploymentMode.COMPOSE:
            command = self._compose(f"restart {name}")
        else:
            command = f"docker service update --force {self._full_name(name)}"
        self.logger.info(f"Restarting accessory {name}")
        self._run_checked(command, f"Failed to restart {name}")

    def get_status(self, name: str) -> AccessoryStatus:
        """查询单个附属服务的状态

        Raises:
            DeploymentError: 服务不存在
            OutputParseError: 输出无法解析
        """
        if self.mode == DeploymentMode.COMPOSE:
            return self._get_compose_status(name)
        return self._get_swarm_status(name)

    def _get_swarm_status(self, name: str) -> AccessoryStatus:
        full_name = self._full_name(name)
        command = f"docker service ls --filter name={full_name} --format '{{{{.Name}}}}|{{{{.Replicas}}}}'"
        output = self._run_checked(command, f"Failed to query {name}")

        records = split_records(output)
        if not records:
            raise DeploymentError(f"accessory {name} not found", details={'accessory': name})

        # name 过滤是前缀匹配，优先取名字完全一致的那一行
        line = next((r for r in records if r.split("|", 1)[0] == full_name), records[0])
        parts = line.split("|")
        if len(parts) < 2:
            raise OutputParseError(command, output, "expected Name|Replicas")

        replicas = parts[1].strip()
        return AccessoryStatus(name=name, replicas=replicas, running=is_replica_running(replicas))

    def _get_compose_status(self, name: str) -> AccessoryStatus:
        command = self._compose(f"ps {name} --format json")
        output = self._run_checked(command, f"Failed to query {name}")
        if not output.strip():
            raise DeploymentError(f"accessory {name} not found", details={'accessory': name})

        containers = parse_compose_ps(command, output)
        count = len(containers)
        running = any(str(c.get('State', '')).lower() == 'running' for c in containers)

        if count == 0:
            replicas = "not running"
        elif running:
            replicas = f"{count}/{count}"
        else:
            replicas = f"0/{count}"
        return AccessoryStatus(name=name, replicas=replicas, running=running)

    def list_all(self, names: List[str]) -> List[AccessoryStatus]:
        """查询多个附属服务的状态

        单个服务查询失败不影响其他服务，失败的服务记为 not deployed。
        """
        statuses = []
        for name in names:
            try:
                statuses.append(self.get_status(name))
            except StackPilotError as e:
                self.logger.debug(f"Status of accessory {name} unavailable: {e}")
                statuses.append(AccessoryStatus(name=name, replicas=NOT_DEPLOYED, running=False))
        return statuses
