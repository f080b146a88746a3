"""Docker Compose部署后端

compose 没有原生的多版本回滚，每次部署前后借助 HistoryManager 记录compose内容，
回滚时把上一次的内容重新部署一遍。compose 也不区分副本所在节点，
同一服务的多个容器合并为一条服务状态。

主要功能:
    - docker compose up -d --remove-orphans 部署
    - 单服务部署使用 up -d --no-deps，不影响其他服务
    - 尽力而为的部署历史记录（失败只记日志，不影响部署）
    - 基于历史记录的整栈回滚
    - 扩缩容不支持，抛出 UnsupportedOperationError
"""

import json
from typing import Dict, List, Any, Optional

from ..config import DeploymentMode
from ..exceptions import (
    StackPilotError, ContainerNotFoundError, OutputParseError, UnsupportedOperationError
)
from ..history import HistoryManager, HISTORY_IMAGE
from ..utils.common import setup_module_logger, split_records, ContextTimer
from .backend import (
    DeploymentManager, ServiceStatus, ContainerStatus, ContainerInfo, short_id
)
from .compose_content import extract_images, require_service


def parse_compose_ps(command: str, output: str) -> List[Dict[str, Any]]:
    """解析 docker compose ps --format json 的输出

    新版本每行一个JSON对象，旧版本输出一个JSON数组，两种都接受。
    无法解析的行被跳过；输出非空却一行都解析不了时抛出 OutputParseError。
    """
    text = output.strip()
    if not text:
        return []

    if text.startswith('['):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise OutputParseError(command, output, str(e), original_exception=e)
        return [item for item in data if isinstance(item, dict)]

    containers = []
    for line in split_records(text):
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            containers.append(item)

    if not containers:
        raise OutputParseError(command, output, "no JSON records found")
    return containers


class ComposeDeploymentManager(DeploymentManager):
    """Docker Compose部署管理器

    Attributes:
        history: 部署历史管理器

    Examples:
        >>> manager = ComposeDeploymentManager(executor, "myapp")
        >>> manager.deploy(compose_bytes)
        >>> manager.rollback_all()
    """

    def __init__(self, executor, stack_name: str, history: Optional[HistoryManager] = None,
                 history_image: str = HISTORY_IMAGE):
        super().__init__(executor, stack_name)
        self.history = history or HistoryManager(executor, stack_name, image=history_image)
        self.logger = setup_module_logger("stackpilot.deployment.compose")

    @property
    def mode(self) -> DeploymentMode:
        return DeploymentMode.COMPOSE

    def _compose(self, args: str) -> str:
        return f"docker compose -p {self.stack_name} {args}"

    def deploy(self, compose_content: bytes, service_name: Optional[str] = None) -> None:
        if service_name:
            self._deploy_service(compose_content, service_name)
            return

        try:
            self.history.ensure_running()
        except StackPilotError as e:
            self.logger.warning(f"Failed to start history container: {e}")

        compose_path = self.compose_path()
        self.executor.write_file(compose_path, compose_content)
        try:
            with ContextTimer(self.logger, f"Deploy of project {self.stack_name}"):
                self._run_checked(self._compose(f"-f {compose_path} up -d --remove-orphans"),
                                  "Deploy failed")

            images = extract_images(compose_content)
            try:
                self.history.record(compose_content, images)
            except StackPilotError as e:
                self.logger.warning(f"Failed to record deploy in history: {e}")
        finally:
            self._cleanup_path(compose_path)

    def _deploy_service(self, compose_content: bytes, service_name: str) -> None:
        """只重建单个服务

        其他服务和孤儿容器保持不动；部署后的栈不对应任何一份完整的compose内容，
        所以不写历史记录。
        """
        require_service(compose_content, service_name)
        compose_path = self.compose_path()
        self.executor.write_file(compose_path, compose_content)
        try:
            with ContextTimer(self.logger, f"Deploy of service {service_name} in project {self.stack_name}"):
                self._run_checked(self._compose(f"-f {compose_path} up -d --no-deps {service_name}"),
                                  f"Deploy of service {service_name} failed")
        finally:
            self._cleanup_path(compose_path)

    def remove(self) -> None:
        self.logger.info(f"Removing project {self.stack_name}")
        self._run_checked(self._compose("down"), "Removal failed")

    def exists(self) -> bool:
        result = self.executor.run(self._compose("ps -q"))
        return bool(result.stdout.strip())

    def _ps(self, service_name: str = "") -> List[Dict[str, Any]]:
        args = f"ps {service_name} --format json" if service_name else "ps --format json"
        command = self._compose(args)
        result = self._run_checked(command, "Failed to list containers")
        return parse_compose_ps(command, result.stdout)

    def list_services(self) -> List[ServiceStatus]:
        """列出服务状态，同一服务的多个容器合并为一条，副本描述固定为单实例"""
        services: Dict[str, ServiceStatus] = {}
        for container in self._ps():
            service = container.get('Service', '')
            running = str(container.get('State', '')).lower() == 'running'
            name = f"{self.stack_name}_{service}"

            if name in services:
                if running:
                    services[name].replicas = "1/1"
                continue

            services[name] = ServiceStatus(
                name=name,
                mode="replicated",
                replicas="1/1" if running else "0/1",
                image=container.get('Image', ''),
                ports=container.get('Ports', '') or ''
            )
        return list(services.values())

    def logs_command(self, service_name: str, follow: bool = False,
                     since: str = "", tail: int = 0) -> str:
        command = self._compose(f"logs {service_name}")
        if tail > 0:
            command += f" --tail {tail}"
        if since:
            command += f" --since {since}"
        if follow:
            command += " --follow"
        return command

    def find_running_container(self, service_name: str) -> str:
        result = self.executor.run(self._compose(f"ps -q {service_name}"))
        lines = split_records(result.stdout)
        if not lines:
            raise ContainerNotFoundError(service_name, f"no running container found for service {service_name}")
        return short_id(lines[0])

    def find_running_container_with_node(self, service_name: str) -> ContainerInfo:
        """compose只有一台主机，节点就是当前执行命令的主机"""
        container_id = self.find_running_container(service_name)
        return ContainerInfo(container_id=container_id, node_name=self.get_current_node_hostname())

    def get_current_node_hostname(self) -> str:
        result = self.executor.run("hostname")
        hostname = result.stdout.strip()
        if not hostname:
            raise OutputParseError("hostname", result.stdout, "empty hostname")
        return hostname

    def get_container_status(self) -> List[ContainerStatus]:
        return [
            ContainerStatus(
                id=container.get('ID', ''),
                name=container.get('Name', ''),
                service=container.get('Service', ''),
                state=container.get('State', ''),
            )
            for container in self._ps()
        ]

    def supports_rollback(self) -> bool:
        return True

    def supports_scale(self) -> bool:
        return False

    def rollback_service(self, service_name: str) -> None:
        """compose 的回滚总是整栈回滚"""
        self.logger.warning(
            f"Per-service rollback is not available in compose mode, rolling back the whole stack instead of {service_name}"
        )
        self.rollback_all()

    def rollback_all(self) -> None:
        """取出上一次部署的compose内容重新部署

        Raises:
            HistoryError: 没有可用的历史记录
        """
        compose_content = self.history.get_content(-1)
        self.logger.info(f"Rolling back {self.stack_name} to the previous deploy")
        self.deploy(compose_content)

    def scale_service(self, service_name: str, replicas: int) -> None:
        raise UnsupportedOperationError("scale", self.get_mode())
