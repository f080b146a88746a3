"""命令执行器抽象接口

定义本地进程和远程SSH会话共用的命令执行契约，上层代码不需要区分传输方式。

主要组件:
    - CommandResult: 命令执行结果数据类
    - Executor: 执行器抽象基类

典型用法:
    >>> with create_executor(config) as executor:
    ...     result = executor.run("docker stack ls")
    ...     if result.exit_code != 0:
    ...         print(result.stderr)
"""

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..exceptions import CommandExecutionError


@dataclass
class CommandResult:
    """命令执行结果

    只要没有发生传输层错误就一定会返回结果；非零退出码是数据，不是异常。

    Attributes:
        stdout: 标准输出
        stderr: 标准错误
        exit_code: 退出码
    """
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def error_output(self) -> str:
        """返回用于错误提示的输出，stderr为空时退回stdout"""
        return self.stderr.strip() or self.stdout.strip()


class Executor(ABC):
    """命令执行器抽象基类

    Methods:
        run: 执行命令并捕获输出
        run_interactive: 绑定当前进程的标准输入输出执行
        run_stream: 把输出实时写入调用方提供的流
        write_file: 把内容写入目标路径
        close: 释放资源
        is_local: 是否为本地执行器
        set_verbose: 打开后以INFO级别记录每条命令
    """

    def __init__(self):
        self.verbose = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose

    def _log_command(self, command: str, mode: Optional[str] = None) -> None:
        prefix = f"[{mode}] " if mode else ""
        if self.verbose:
            self.logger.info(f"{prefix}$ {command}")
        else:
            self.logger.debug(f"{prefix}$ {command}")

    def _log_result(self, result: CommandResult) -> None:
        """记录命令的退出码和输出，级别与命令本身一致"""
        level = logging.INFO if self.verbose else logging.DEBUG
        self.logger.log(level, f"exit code: {result.exit_code}")
        if result.stdout.strip():
            self.logger.log(level, f"stdout: {result.stdout.rstrip()}")
        if result.stderr.strip():
            self.logger.log(level, f"stderr: {result.stderr.rstrip()}")

    @abstractmethod
    def run(self, command: str) -> CommandResult:
        """执行命令直到结束

        Returns:
            CommandResult: 执行结果，非零退出码也正常返回

        Raises:
            TransportError: 连接或会话失败
        """
        pass

    @abstractmethod
    def run_interactive(self, command: str) -> int:
        """在前台交互执行命令，返回退出码"""
        pass

    @abstractmethod
    def run_stream(self, command: str, stdout, stderr) -> int:
        """流式执行命令

        输出不在内存中累积；用户中断视为正常结束并返回130。
        """
        pass

    @abstractmethod
    def write_file(self, path: str, content: bytes) -> None:
        """写入文件，返回时内容已经落盘"""
        pass

    def write_private_file(self, path: str, content: bytes) -> None:
        """写入只有属主可读写的文件，用于密码、secret等敏感内容

        先创建权限为600的空文件再写入，内容不会出现在命令行里。
        """
        command = f"install -m 600 /dev/null {shlex.quote(path)}"
        result = self.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr,
                                        message=f"Failed to create {path}")
        self.write_file(path, content)

    @abstractmethod
    def close(self) -> None:
        """释放资源，可重复调用"""
        pass

    @abstractmethod
    def is_local(self) -> bool:
        pass
