"""SSH执行器

把 Executor 契约映射到 SSHClient 上，每条命令开一个独立的session。
"""

from typing import Optional

from ..utils.common import setup_module_logger
from ..utils.ssh_client import SSHClient
from .base import CommandResult, Executor


class SSHExecutor(Executor):
    """通过SSH在远程主机上执行命令"""

    def __init__(self, client: SSHClient):
        super().__init__()
        self.client = client
        self.logger = setup_module_logger("stackpilot.executor.ssh")

    @classmethod
    def connect(cls, host: str, user: str, port: int = 22,
                key_filename: Optional[str] = None,
                known_hosts_file: Optional[str] = None) -> "SSHExecutor":
        """创建SSH客户端并建立连接"""
        client = SSHClient(host, user, key_filename=key_filename, port=port,
                           known_hosts_file=known_hosts_file)
        client.connect()
        return cls(client)

    @property
    def host(self) -> str:
        return self.client.host

    def run(self, command: str) -> CommandResult:
        self._log_command(command, self.host)
        exit_code, stdout, stderr = self.client.execute_command(command)
        result = CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
        self._log_result(result)
        return result

    def run_interactive(self, command: str) -> int:
        self._log_command(command, self.host)
        return self.client.execute_interactive(command)

    def run_interactive_via_host(self, target_host: str, target_user: str, command: str) -> int:
        """经由当前主机跳转到其他节点交互执行"""
        self._log_command(f"{command} (via {target_user}@{target_host})", self.host)
        return self.client.execute_interactive_via_host(target_host, target_user, command)

    def run_stream(self, command: str, stdout, stderr) -> int:
        self._log_command(command, self.host)
        return self.client.execute_stream(command, stdout, stderr)

    def write_file(self, path: str, content: bytes) -> None:
        self.logger.debug(f"Writing {len(content)} bytes to {self.host}:{path}")
        self.client.write_file(path, content)

    def close(self) -> None:
        self.client.close()

    def is_local(self) -> bool:
        return False
