"""Docker Swarm部署后端

每个变更操作都直接映射到 docker stack / docker service 命令，
回滚完全交给 swarm 自带的 service update --rollback。
"""

from typing import List, Optional

from ..config import DeploymentMode
from ..exceptions import CommandExecutionError, ContainerNotFoundError, OutputParseError
from ..utils.common import (
    setup_module_logger, parse_delimited, get_or_empty, split_records, ContextTimer
)
from .backend import (
    DeploymentManager, ServiceStatus, ContainerStatus, ContainerInfo, short_id
)
from .compose_content import filter_compose_services


def service_from_task_name(task_name: str) -> str:
    """从任务名中提取服务名，例如 myapp_web.1 -> web"""
    service = task_name
    if "_" in service:
        service = service.split("_", 1)[1]
    if "." in service:
        service = service.rsplit(".", 1)[0]
    return service


class SwarmDeploymentManager(DeploymentManager):
    """Docker Swarm部署管理器

    Examples:
        >>> manager = SwarmDeploymentManager(executor, "myapp")
        >>> manager.deploy(compose_bytes)
        >>> manager.rollback_service("web")
    """

    def __init__(self, executor, stack_name: str):
        super().__init__(executor, stack_name)
        self.logger = setup_module_logger("stackpilot.deployment.swarm")

    @property
    def mode(self) -> DeploymentMode:
        return DeploymentMode.SWARM

    def full_name(self, service_name: str) -> str:
        return f"{self.stack_name}_{service_name}"

    def deploy(self, compose_content: bytes, service_name: Optional[str] = None) -> None:
        # stack deploy 不带 --prune 时不会删除文件中缺少的服务
        if service_name:
            compose_content = filter_compose_services(compose_content, service_name)

        compose_path = self.compose_path()
        self.executor.write_file(compose_path, compose_content)
        try:
            with ContextTimer(self.logger, f"Deploy of stack {self.stack_name}"):
                self._run_checked(
                    f"docker stack deploy -c {compose_path} {self.stack_name} --with-registry-auth",
                    "Stack deploy failed"
                )
        finally:
            self._cleanup_path(compose_path)

    def remove(self) -> None:
        self.logger.info(f"Removing stack {self.stack_name}")
        self._run_checked(f"docker stack rm {self.stack_name}", "Stack removal failed")

    def exists(self) -> bool:
        result = self.executor.run("docker stack ls --format '{{.Name}}'")
        return self.stack_name in split_records(result.stdout)

    def list_services(self) -> List[ServiceStatus]:
        command = (f"docker stack services {self.stack_name} "
                   f"--format '{{{{.Name}}}}|{{{{.Mode}}}}|{{{{.Replicas}}}}|{{{{.Image}}}}|{{{{.Ports}}}}'")
        result = self._run_checked(command, "Failed to list services")
        return [
            ServiceStatus(
                name=parts[0],
                mode=parts[1],
                replicas=parts[2],
                image=parts[3],
                ports=get_or_empty(parts, 4)
            )
            for parts in parse_delimited(result.stdout, 4)
        ]

    def logs_command(self, service_name: str, follow: bool = False,
                     since: str = "", tail: int = 0) -> str:
        command = f"docker service logs {self.full_name(service_name)}"
        if tail > 0:
            command += f" --tail {tail}"
        if since:
            command += f" --since {since}"
        if follow:
            command += " --follow"
        return command

    def _find_running_task(self, service_name: str) -> str:
        command = (f"docker service ps {self.full_name(service_name)} "
                   f"--filter 'desired-state=running' --format '{{{{.ID}}}}' | head -1")
        result = self.executor.run(command)
        task_id = result.stdout.strip()
        if not task_id:
            raise ContainerNotFoundError(service_name, f"no running tasks found for service {service_name}")
        return task_id

    def find_running_container(self, service_name: str) -> str:
        """列出运行中的任务，取第一个，通过 inspect 找到其容器ID并截断为短ID"""
        task_id = self._find_running_task(service_name)

        command = f"docker inspect --format '{{{{.Status.ContainerStatus.ContainerID}}}}' {task_id}"
        result = self.executor.run(command)
        container_id = result.stdout.strip()
        if not container_id:
            raise ContainerNotFoundError(service_name, f"container not found for task {task_id}")
        return short_id(container_id)

    def find_running_container_with_node(self, service_name: str) -> ContainerInfo:
        """定位运行中的容器，同时返回任务所在节点的主机名和地址"""
        task_id = self._find_running_task(service_name)

        command = (f"docker inspect --format "
                   f"'{{{{.Status.ContainerStatus.ContainerID}}}}|{{{{.NodeID}}}}' {task_id}")
        result = self.executor.run(command)
        parts = result.stdout.strip().split("|")
        container_id = parts[0].strip()
        if not container_id:
            raise ContainerNotFoundError(service_name, f"container not found for task {task_id}")
        node_id = get_or_empty(parts, 1).strip()
        if not node_id:
            raise OutputParseError(command, result.stdout, "missing node id")

        command = (f"docker node inspect --format "
                   f"'{{{{.Description.Hostname}}}}|{{{{.Status.Addr}}}}' {node_id}")
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr,
                                        message=f"Failed to inspect node {node_id}")
        node_parts = result.stdout.strip().split("|")
        node_name = node_parts[0].strip()
        if not node_name:
            raise OutputParseError(command, result.stdout, "missing node hostname")

        return ContainerInfo(
            container_id=short_id(container_id),
            node_name=node_name,
            node_ip=get_or_empty(node_parts, 1).strip()
        )

    def get_current_node_hostname(self) -> str:
        command = "docker info --format '{{.Name}}'"
        result = self.executor.run(command)
        hostname = result.stdout.strip()
        if not hostname:
            raise OutputParseError(command, result.stdout, "empty hostname")
        return hostname

    def get_container_status(self) -> List[ContainerStatus]:
        command = (f"docker stack ps {self.stack_name} "
                   f"--format '{{{{.ID}}}}|{{{{.Name}}}}|{{{{.CurrentState}}}}|{{{{.Error}}}}'")
        result = self._run_checked(command, "Failed to list tasks")
        return [
            ContainerStatus(
                id=parts[0],
                name=parts[1],
                service=service_from_task_name(parts[1]),
                state=parts[2],
                error=get_or_empty(parts, 3)
            )
            for parts in parse_delimited(result.stdout, 3)
        ]

    def supports_rollback(self) -> bool:
        return True

    def supports_scale(self) -> bool:
        return True

    def rollback_service(self, service_name: str) -> None:
        self.logger.info(f"Rolling back service {service_name}")
        self._run_checked(f"docker service update --rollback {self.full_name(service_name)}",
                          f"Rollback of {service_name} failed")

    def rollback_all(self) -> None:
        for service in self.list_services():
            self.rollback_service(self.short_service_name(service.name))

    def scale_service(self, service_name: str, replicas: int) -> None:
        self.logger.info(f"Scaling service {service_name} to {replicas}")
        self._run_checked(f"docker service scale {self.full_name(service_name)}={replicas}",
                          f"Scale of {service_name} failed")
