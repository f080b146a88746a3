"""Swarm管理器

负责部署前的集群准备工作和任务级别的状态查询。

主要功能:
    - 检查Docker安装、Swarm初始化状态
    - 创建overlay网络（幂等）
    - 登录镜像仓库（密码通过 --password-stdin 传入）
    - 查询栈/服务的任务状态，等待任务收敛
"""

import time
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

from ..exceptions import CommandExecutionError
from ..executor import Executor
from ..utils.common import setup_module_logger, parse_delimited, get_or_empty

TASK_FORMAT = ("'{{.ID}}|{{.Name}}|{{.Image}}|{{.Node}}|"
               "{{.DesiredState}}|{{.CurrentState}}|{{.Error}}'")


@dataclass
class TaskStatus:
    """一个任务（服务的一个运行实例）的状态"""
    id: str
    name: str
    image: str = ""
    node: str = ""
    desired_state: str = ""
    current_state: str = ""
    error: str = ""

    @property
    def is_running(self) -> bool:
        return self.current_state.startswith("Running")

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'id': self.id,
            'name': self.name,
            'image': self.image,
            'node': self.node,
            'desired_state': self.desired_state,
            'current_state': self.current_state,
            'error': self.error
        }


def parse_tasks(output: str) -> List[TaskStatus]:
    """解析 TASK_FORMAT 格式的任务列表"""
    return [
        TaskStatus(
            id=parts[0],
            name=parts[1],
            image=parts[2],
            node=parts[3],
            desired_state=parts[4],
            current_state=parts[5],
            error=get_or_empty(parts, 6)
        )
        for parts in parse_delimited(output, 6)
    ]


class SwarmManager:
    """Docker Swarm管理器

    Attributes:
        executor: 命令执行器
        stack_name: 栈名称
    """

    def __init__(self, executor: Executor, stack_name: str):
        self.executor = executor
        self.stack_name = stack_name
        self.logger = setup_module_logger("stackpilot.swarm")

    def _run_checked(self, command: str, message: str) -> str:
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr, message=message)
        return result.stdout

    def is_docker_installed(self) -> bool:
        return self.executor.run("docker --version").exit_code == 0

    def get_docker_version(self) -> str:
        return self.executor.run("docker --version").stdout.strip()

    def get_compose_version(self) -> Optional[str]:
        """返回 docker compose 插件版本，未安装时返回None"""
        result = self.executor.run("docker compose version")
        if result.exit_code != 0:
            return None
        return result.stdout.strip()

    def is_swarm_initialized(self) -> bool:
        result = self.executor.run("docker info --format '{{.Swarm.LocalNodeState}}'")
        return result.stdout.strip() == "active"

    def init_swarm(self) -> None:
        self.logger.info("Initializing Docker Swarm")
        self._run_checked("docker swarm init", "Swarm init failed")

    def create_network(self, name: str) -> bool:
        """创建可附加的overlay网络

        Returns:
            bool: 新建返回True，已存在返回False
        """
        result = self.executor.run(f"docker network ls --filter name=^{name}$ --format '{{{{.Name}}}}'")
        if result.stdout.strip() == name:
            self.logger.debug(f"Network {name} already exists")
            return False

        self._run_checked(f"docker network create --driver overlay --attachable {name}",
                          "Network creation failed")
        self.logger.info(f"Created network {name}")
        return True

    def registry_login(self, url: str, username: str, password: str) -> bool:
        """登录镜像仓库

        缺少用户名或密码时跳过。密码先写入权限为600的临时文件，
        再通过 --password-stdin 重定向给 docker login，不出现在命令行中。

        Returns:
            bool: 是否执行了登录
        """
        if not username or not password:
            self.logger.debug("Registry credentials not configured, skipping login")
            return False

        password_path = f"/tmp/{self.stack_name}-registry-password"
        self.executor.write_private_file(password_path, password.encode('utf-8'))
        try:
            self._run_checked(
                f"docker login {url} -u {username} --password-stdin < {password_path}",
                "Registry login failed"
            )
        finally:
            result = self.executor.run(f"rm -f {password_path}")
            if result.exit_code != 0:
                self.logger.warning(f"Failed to remove {password_path}: {result.error_output()}")

        self.logger.info(f"Logged in to registry {url or 'docker.io'}")
        return True

    def get_stack_tasks(self) -> List[TaskStatus]:
        output = self._run_checked(f"docker stack ps {self.stack_name} --format {TASK_FORMAT}",
                                   "Failed to list stack tasks")
        return parse_tasks(output)

    def get_service_tasks(self, service_name: str) -> List[TaskStatus]:
        full_name = f"{self.stack_name}_{service_name}"
        output = self._run_checked(f"docker service ps {full_name} --format {TASK_FORMAT}",
                                   f"Failed to list tasks of {service_name}")
        return parse_tasks(output)

    def get_node_info(self) -> str:
        result = self.executor.run(
            "docker node ls --format 'table {{.Hostname}}\\t{{.Status}}\\t{{.Availability}}\\t{{.ManagerStatus}}'"
        )
        return result.stdout

    def count_pending_tasks(self) -> int:
        """期望运行但当前还没进入Running状态的任务数"""
        return sum(
            1 for task in self.get_stack_tasks()
            if task.desired_state == "Running" and not task.is_running
        )

    def wait_for_convergence(self, timeout: float = 120, interval: float = 2) -> bool:
        """等待所有期望运行的任务进入Running状态

        Returns:
            bool: 超时前是否收敛
        """
        deadline = time.time() + timeout
        while True:
            pending = self.count_pending_tasks()
            if pending == 0:
                return True
            if time.time() >= deadline:
                self.logger.warning(f"{pending} task(s) still not running after {timeout:.0f}s")
                return False
            time.sleep(interval)
