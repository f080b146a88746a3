"""secret管理

主要功能:
    - 从 .env 文件和进程环境变量加载secret的值
    - 在 swarm 中创建（替换）、列出和删除栈的secret

secret的值从不出现在命令行或日志中：创建时先写入权限为600的临时文件，
由 docker secret create 读取后立即删除。
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

from dotenv import dotenv_values

from ..exceptions import CommandExecutionError
from ..executor import Executor
from ..utils.common import setup_module_logger, split_records

logger = setup_module_logger("stackpilot.secrets")


@dataclass
class Secret:
    """secret名称和值"""
    name: str
    value: str

    def __repr__(self) -> str:
        return f"Secret(name={self.name!r}, value='***')"


def secret_name(stack_name: str, name: str) -> str:
    """返回栈内secret在swarm中的名称"""
    return f"{stack_name}_{name.lower()}"


def load_secrets(names: List[str], env_file: Union[str, Path] = ".env") -> List[Secret]:
    """加载secret

    优先从 .env 文件读取，文件中没有时退回到进程环境变量，空值被跳过。
    """
    values = dotenv_values(env_file) if os.path.isfile(env_file) else {}
    secrets = []
    for name in names:
        value = values.get(name)
        if value is None:
            value = os.environ.get(name, "")
        if value:
            secrets.append(Secret(name, value))
        else:
            logger.debug(f"Secret {name} has no value")
    return secrets


def load_secrets_from_env(names: List[str]) -> List[Secret]:
    """只从进程环境变量加载secret"""
    return [Secret(name, os.environ[name]) for name in names if os.environ.get(name)]


class SecretManager:
    """Docker Swarm secret管理器

    Attributes:
        executor: 命令执行器
        stack_name: 栈名称
    """

    def __init__(self, executor: Executor, stack_name: str):
        self.executor = executor
        self.stack_name = stack_name
        self.logger = setup_module_logger("stackpilot.secrets")

    def _run_checked(self, command: str, message: str) -> str:
        result = self.executor.run(command)
        if result.exit_code != 0:
            raise CommandExecutionError(command, result.exit_code, result.stderr, message=message)
        return result.stdout

    def exists(self, name: str) -> bool:
        full_name = secret_name(self.stack_name, name)
        result = self.executor.run(f"docker secret ls --filter name={full_name} --format '{{{{.Name}}}}'")
        return full_name in split_records(result.stdout)

    def create(self, name: str, value: str) -> None:
        """创建secret，已存在时先删除再创建"""
        full_name = secret_name(self.stack_name, name)

        if self.exists(name):
            result = self.executor.run(f"docker secret rm {full_name}")
            if result.exit_code != 0:
                self.logger.warning(f"Failed to remove existing secret {full_name}: {result.error_output()}")

        value_path = f"/tmp/{full_name}.secret"
        self.executor.write_private_file(value_path, value.encode('utf-8'))
        try:
            self._run_checked(f"docker secret create {full_name} {value_path}",
                              f"Failed to create secret {full_name}")
        finally:
            result = self.executor.run(f"rm -f {value_path}")
            if result.exit_code != 0:
                self.logger.warning(f"Failed to remove {value_path}: {result.error_output()}")

        self.logger.info(f"Created secret {full_name}")

    def list(self) -> List[str]:
        output = self._run_checked(
            f"docker secret ls --filter name={self.stack_name}_ --format '{{{{.Name}}}}'",
            "Failed to list secrets"
        )
        return split_records(output)

    def delete(self, name: str) -> None:
        full_name = secret_name(self.stack_name, name)
        self._run_checked(f"docker secret rm {full_name}", f"Failed to delete secret {full_name}")
        self.logger.info(f"Deleted secret {full_name}")
