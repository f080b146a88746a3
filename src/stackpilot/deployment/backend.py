"""部署管理器抽象接口

定义统一的栈部署操作接口，swarm 和 compose 两种后端都需要实现这个接口，
上层代码只依赖这里的方法，不区分后端类型。

主要组件:
    - ServiceStatus: 服务状态数据类
    - ContainerStatus: 容器/任务状态数据类
    - ContainerInfo: 运行中容器及其所在节点
    - DeploymentManager: 部署管理器抽象基类
    - is_replica_running: 副本描述的运行判定

典型用法:
    >>> manager = create_deployment_manager(config, executor)
    >>> manager.deploy(compose_bytes)
    >>> for service in manager.list_services():
    ...     print(service.name, service.replicas)
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, TextIO

from ..config import DeploymentMode
from ..exceptions import CommandExecutionError, HealthCheckTimeoutError
from ..executor import CommandResult, Executor

# 截断后的容器短ID长度
SHORT_ID_LENGTH = 12


def is_replica_running(replicas: str) -> bool:
    """根据 "运行数/期望数" 形式的副本描述判断服务是否在运行

    分子非零即视为运行中，不要求完全收敛；无法解析时视为未运行。

    Examples:
        >>> is_replica_running("0/3")
        False
        >>> is_replica_running("2/3")
        True
    """
    if not replicas:
        return False
    running = replicas.strip().split("/", 1)[0].strip()
    try:
        return int(running) > 0
    except ValueError:
        return False


def short_id(container_id: str) -> str:
    """返回容器ID的12位短格式"""
    return container_id.strip()[:SHORT_ID_LENGTH]


@dataclass
class ServiceStatus:
    """服务状态

    Attributes:
        name: 带栈前缀的服务名
        mode: replicated / global
        replicas: 副本描述，如 "2/3"
        image: 镜像引用
        ports: 端口映射描述
    """
    name: str
    mode: str = ""
    replicas: str = ""
    image: str = ""
    ports: str = ""

    @property
    def running(self) -> bool:
        return is_replica_running(self.replicas)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'name': self.name,
            'mode': self.mode,
            'replicas': self.replicas,
            'image': self.image,
            'ports': self.ports,
            'running': self.running
        }


@dataclass
class ContainerStatus:
    """容器（compose）或任务（swarm）状态"""
    id: str
    name: str
    service: str
    state: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'id': self.id,
            'name': self.name,
            'service': self.service,
            'state': self.state,
            'error': self.error
        }


@dataclass
class ContainerInfo:
    """运行中的容器及其所在节点"""
    container_id: str
    node_name: str = ""
    node_ip: str = ""


class DeploymentManager(ABC):
    """部署管理器抽象基类

    Attributes:
        executor: 命令执行器
        stack_name: 栈名称（compose 模式下为项目名）

    Methods:
        deploy: 部署栈
        remove: 删除栈
        exists: 栈是否已部署
        list_services: 列出服务状态
        get_service_logs / stream_service_logs: 获取或流式输出日志
        find_running_container / find_running_container_with_node: 定位运行中的容器
        get_container_status: 列出容器/任务状态
        rollback_service / rollback_all: 回滚
        scale_service: 扩缩容
    """

    def __init__(self, executor: Executor, stack_name: str):
        self.executor = executor
        self.stack_name = stack_name

    @property
    @abstractmethod
    def mode(self) -> DeploymentMode:
        pass

    def get_stack_name(self) -> str:
        return self.stack_name

    def get_mode(self) -> str:
        return self.mode.value

    def compose_path(self) -> str:
        """部署时compose内容的临时路径"""
        return f"/tmp/{self.stack_name}-compose.yaml"

    def _run_checked(self, command: str, message: str) -> CommandResult:
        """执行命令，非零退出码转换为 CommandExecutionError"""
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr, message=message)
        return result

    def _cleanup_path(self, path: str) -> None:
        result = self.executor.run(f"rm -f {path}")
        if result.exit_code != 0:
            self.logger.warning(f"Failed to remove {path}: {result.error_output()}")

    @abstractmethod
    def deploy(self, compose_content: bytes, service_name: Optional[str] = None) -> None:
        """部署栈

        Args:
            compose_content: 完整的compose文件内容
            service_name: 只部署这一个服务，栈中其他服务保持不变

        Raises:
            ConfigurationError: service_name 在compose内容中没有定义
            CommandExecutionError: 后端部署命令失败
        """
        pass

    @abstractmethod
    def remove(self) -> None:
        pass

    @abstractmethod
    def exists(self) -> bool:
        pass

    @abstractmethod
    def list_services(self) -> List[ServiceStatus]:
        pass

    @abstractmethod
    def logs_command(self, service_name: str, follow: bool = False,
                     since: str = "", tail: int = 0) -> str:
        """构造查看服务日志的命令"""
        pass

    def get_service_logs(self, service_name: str, follow: bool = False,
                         since: str = "", tail: int = 0) -> str:
        """获取服务日志，返回stdout和stderr拼接后的文本"""
        result = self.executor.run(self.logs_command(service_name, follow, since, tail))
        return result.stdout + result.stderr

    def stream_service_logs(self, service_name: str, stdout: TextIO, stderr: TextIO,
                            follow: bool = False, since: str = "", tail: int = 0) -> int:
        """把服务日志实时写入调用方提供的流，用户中断视为正常结束"""
        command = self.logs_command(service_name, follow, since, tail)
        return self.executor.run_stream(command, stdout, stderr)

    @abstractmethod
    def find_running_container(self, service_name: str) -> str:
        """返回服务某个运行中容器的短ID

        Raises:
            ContainerNotFoundError: 没有运行中的容器
        """
        pass

    @abstractmethod
    def find_running_container_with_node(self, service_name: str) -> ContainerInfo:
        pass

    @abstractmethod
    def get_current_node_hostname(self) -> str:
        pass

    @abstractmethod
    def get_container_status(self) -> List[ContainerStatus]:
        pass

    @abstractmethod
    def supports_rollback(self) -> bool:
        pass

    @abstractmethod
    def supports_scale(self) -> bool:
        pass

    @abstractmethod
    def rollback_service(self, service_name: str) -> None:
        pass

    @abstractmethod
    def rollback_all(self) -> None:
        pass

    @abstractmethod
    def scale_service(self, service_name: str, replicas: int) -> None:
        """
        Raises:
            UnsupportedOperationError: 当前后端不支持扩缩容
        """
        pass

    def wait_for_healthy(self, timeout: float = 120, interval: float = 2) -> List[ServiceStatus]:
        """轮询服务状态直到所有服务都在运行

        Args:
            timeout: 超时时间（秒）
            interval: 轮询间隔（秒）

        Returns:
            List[ServiceStatus]: 最后一次查询到的服务状态

        Raises:
            HealthCheckTimeoutError: 超时后仍有服务未运行
        """
        deadline = time.time() + timeout
        while True:
            services = self.list_services()
            pending = [s.name for s in services if not s.running]
            if services and not pending:
                return services
            if time.time() >= deadline:
                raise HealthCheckTimeoutError(self.stack_name, timeout, pending or ["<no services>"])
            self.logger.debug(f"Waiting for services: {', '.join(pending) or 'none listed yet'}")
            time.sleep(interval)

    def short_service_name(self, name: str) -> str:
        """去掉服务名的栈前缀"""
        prefix = f"{self.stack_name}_"
        if name.startswith(prefix):
            return name[len(prefix):]
        return name
