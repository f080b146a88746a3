"""命令执行器

根据配置选择本地执行器或SSH执行器。
"""

from .base import CommandResult, Executor
from .local import LocalExecutor
from .ssh import SSHExecutor


def create_executor(config) -> Executor:
    """根据配置创建执行器

    没有配置 ssh.host 时在本机执行，否则建立SSH连接。

    Args:
        config: StackConfig实例

    Returns:
        Executor: 已就绪的执行器
    """
    ssh = config.ssh
    if not ssh or not ssh.host:
        return LocalExecutor()
    return SSHExecutor.connect(ssh.host, ssh.user, port=ssh.port,
                               key_filename=ssh.key or None,
                               known_hosts_file=ssh.known_hosts or None)


__all__ = ['CommandResult', 'Executor', 'LocalExecutor', 'SSHExecutor', 'create_executor']
