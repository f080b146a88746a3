"""部署历史管理

compose 模式没有原生的多版本回滚，这里用一个常驻的辅助容器保存每个栈的
部署记录（完整compose内容 + 服务镜像映射），回滚时把历史内容重新部署一次。

主要功能:
    - 按需创建/启动辅助容器（容器名和数据卷名由栈名唯一确定）
    - 记录部署：先写主机临时文件，再 docker cp 进容器，避免shell转义破坏YAML
    - 按偏移量读取记录（0 = 最新，-1 = 上一次）
    - 尽力而为的停止和清理

典型用法:
    >>> history = HistoryManager(executor, "myapp")
    >>> history.record(compose_bytes, {"web": "nginx:1.25"})
    >>> previous = history.get_content(-1)
"""

import json
import re
import shlex
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any

from ..exceptions import CommandExecutionError, OutputParseError, NoPreviousDeployError
from ..executor import Executor
from ..utils.common import setup_module_logger

HISTORY_IMAGE = "docker.io/marcelsud/swarmctl-history:latest"
DEFAULT_RETENTION = 10
READY_DELAY = 0.5

# 容器内的临时文件路径
CONTAINER_RECORD_PATH = "/tmp/compose-record.yaml"

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def container_name(stack_name: str) -> str:
    """返回栈对应的历史容器名"""
    return f"{stack_name}-history"


def volume_name(stack_name: str) -> str:
    """返回栈对应的历史数据卷名"""
    return f"{stack_name}_history_data"


def parse_timestamp(value: str) -> Optional[datetime]:
    """解析RFC3339时间戳，纳秒精度截断到微秒"""
    if not value:
        return None
    text = value.replace("Z", "+00:00")
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass
class DeployRecord:
    """一次部署的历史记录

    Attributes:
        id: 自增ID
        stack_name: 栈名称
        deployed_at: 部署时间（RFC3339字符串）
        compose_content: 部署时使用的完整compose内容
        images: 服务名到镜像的映射
        commit_hash: 可选的提交哈希
        notes: 可选备注
    """
    id: int
    stack_name: str
    deployed_at: str = ""
    compose_content: str = ""
    images: Dict[str, str] = field(default_factory=dict)
    commit_hash: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeployRecord':
        return cls(
            id=int(data['id']),
            stack_name=data.get('stack_name', ''),
            deployed_at=data.get('deployed_at', ''),
            compose_content=data.get('compose_content', ''),
            images=dict(data.get('images') or {}),
            commit_hash=data.get('commit_hash', '') or '',
            notes=data.get('notes', '') or ''
        )

    @property
    def deployed_at_time(self) -> Optional[datetime]:
        return parse_timestamp(self.deployed_at)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'id': self.id,
            'stack_name': self.stack_name,
            'deployed_at': self.deployed_at,
            'compose_content': self.compose_content,
            'images': self.images,
            'commit_hash': self.commit_hash,
            'notes': self.notes
        }


class HistoryManager:
    """通过辅助容器管理某个栈的部署历史

    Attributes:
        executor: 命令执行器
        stack_name: 栈名称
        container_name: 辅助容器名称
        image: 辅助容器镜像
    """

    def __init__(self, executor: Executor, stack_name: str, image: str = HISTORY_IMAGE):
        self.executor = executor
        self.stack_name = stack_name
        self.container_name = container_name(stack_name)
        self.image = image
        self._running = False
        self.logger = setup_module_logger("stackpilot.history")

    def _run_checked(self, command: str, message: str) -> str:
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr, message=message)
        return result.stdout

    def is_running(self) -> bool:
        """检查辅助容器是否正在运行（容器名精确匹配）"""
        command = f"docker ps --filter name=^{self.container_name}$ --format '{{{{.Names}}}}'"
        result = self.executor.run(command)
        return result.stdout.strip() == self.container_name

    def ensure_running(self) -> None:
        """确保辅助容器正在运行

        已确认运行后不再重复检查；创建失败时（通常是同名容器已存在但已停止）
        退回到 docker start。启动后稍等片刻再使用。

        Raises:
            CommandExecutionError: 创建和启动都失败
        """
        if self._running:
            return
        if self.is_running():
            self._running = True
            return

        self.logger.info(f"Starting history container {self.container_name}")
        run_command = (
            f"docker run -d --name {self.container_name} --restart unless-stopped "
            f"-v {volume_name(self.stack_name)}:/data {self.image}"
        )
        result = self.executor.run(run_command)
        if result.exit_code != 0:
            self.logger.debug(f"docker run failed, trying to start existing container: {result.stderr.strip()}")
            self._run_checked(f"docker start {self.container_name}",
                              "Failed to start history container")

        time.sleep(READY_DELAY)
        self._running = True

    def record(self, compose_content: bytes, images: Dict[str, str]) -> None:
        """记录一次部署

        Args:
            compose_content: 完整compose内容
            images: 服务名到镜像的映射
        """
        self.ensure_running()

        images_json = json.dumps(images, sort_keys=True)
        temp_path = f"/tmp/{self.stack_name}-compose-record.yaml"

        self.executor.write_file(temp_path, compose_content)
        try:
            self._run_checked(
                f"docker cp {temp_path} {self.container_name}:{CONTAINER_RECORD_PATH}",
                "Failed to copy compose file to history container"
            )
            self._run_checked(
                f"docker exec {self.container_name} /app/history record "
                f"--stack {self.stack_name} --compose-file {CONTAINER_RECORD_PATH} "
                f"--images {shlex.quote(images_json)}",
                "Failed to record deploy"
            )
        finally:
            self.executor.run(f"rm -f {temp_path}")
            self.executor.run(f"docker exec {self.container_name} rm -f {CONTAINER_RECORD_PATH}")

        self.logger.info(f"Recorded deploy of {self.stack_name} ({len(images)} images)")

    def _parse_json(self, command: str, output: str) -> Any:
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise OutputParseError(command, output, str(e), original_exception=e)

    def list(self, limit: int = DEFAULT_RETENTION) -> List[DeployRecord]:
        """返回最近的部署记录，最新的在前"""
        self.ensure_running()
        command = (f"docker exec {self.container_name} /app/history list "
                   f"--stack {self.stack_name} --limit {limit} --format json")
        output = self._run_checked(command, "Failed to list history")

        data = self._parse_json(command, output)
        if data is None:
            return []
        if not isinstance(data, list):
            raise OutputParseError(command, output, "expected a JSON array")
        try:
            return [DeployRecord.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise OutputParseError(command, output, f"invalid record: {e}", original_exception=e)

    def get(self, offset: int) -> DeployRecord:
        """按偏移量获取一条记录（0 = 最新，-1 = 上一次）"""
        self.ensure_running()
        command = (f"docker exec {self.container_name} /app/history get "
                   f"--stack {self.stack_name} --offset {offset} --format json")
        output = self._run_checked(command, "Failed to get deploy")

        data = self._parse_json(command, output)
        try:
            return DeployRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise OutputParseError(command, output, f"invalid record: {e}", original_exception=e)

    def get_content(self, offset: int) -> bytes:
        """返回某次部署的compose内容"""
        return self.get(offset).compose_content.encode('utf-8')

    def get_previous(self) -> DeployRecord:
        """返回上一次部署

        Raises:
            NoPreviousDeployError: 记录少于两条
        """
        records = self.list(2)
        if len(records) < 2:
            raise NoPreviousDeployError(self.stack_name)
        return records[1]

    def stop(self) -> None:
        """停止辅助容器，失败只记录日志"""
        result = self.executor.run(f"docker stop {self.container_name}")
        if result.exit_code != 0:
            self.logger.warning(f"Failed to stop history container: {result.error_output()}")
        self._running = False

    def remove(self) -> None:
        """删除辅助容器和数据卷，失败只记录日志"""
        for command in (f"docker stop {self.container_name}",
                        f"docker rm {self.container_name}",
                        f"docker volume rm {volume_name(self.stack_name)}"):
            result = self.executor.run(command)
            if result.exit_code != 0:
                self.logger.warning(f"'{command}' failed: {result.error_output()}")
        self._running = False
