"""
配置加载器
处理 stackpilot.yaml 的加载、环境变量替换和校验
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

import yaml

from .exceptions import ConfigurationError, ValidationError
from .utils.common import expand_path

DEFAULT_CONFIG_FILE = "stackpilot.yaml"
DEFAULT_COMPOSE_FILE = "docker-compose.yaml"
REGISTRY_PASSWORD_ENV = "STACKPILOT_REGISTRY_PASSWORD"

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')

logger = logging.getLogger("stackpilot.config")


class DeploymentMode(Enum):
    """部署模式

    启动时根据配置确定一次，进程生命周期内不再变化。
    """
    SWARM = "swarm"
    COMPOSE = "compose"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'DeploymentMode':
        """解析模式字符串，空值默认为 swarm"""
        if not value:
            return cls.SWARM
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid mode '{value}': must be 'swarm' or 'compose'",
                error_code="INVALID_MODE",
                details={'mode': value}
            )


@dataclass
class SSHConfig:
    """SSH连接配置"""
    host: str = ""
    user: str = ""
    port: int = 22
    key: str = ""
    known_hosts: str = ""


@dataclass
class RegistryConfig:
    """镜像仓库凭据"""
    url: str = ""
    username: str = ""
    password: str = ""

    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class NodeOverride:
    """单个节点的SSH覆盖配置"""
    user: str = ""
    host: str = ""


@dataclass
class StackConfig:
    """stackpilot.yaml 的内容

    Attributes:
        stack: 栈名称
        mode: 部署模式
        ssh: SSH连接配置，host为空时在本机执行
        registry: 镜像仓库凭据
        secrets: 需要推送的secret名称
        accessories: 附属服务名称
        compose_file: compose文件路径
        nodes: 节点主机名到覆盖配置的映射
        history_image: 历史容器使用的镜像，空表示默认镜像
        config_path: 配置文件路径
    """
    stack: str = ""
    mode: DeploymentMode = DeploymentMode.SWARM
    ssh: SSHConfig = field(default_factory=SSHConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    secrets: List[str] = field(default_factory=list)
    accessories: List[str] = field(default_factory=list)
    compose_file: str = DEFAULT_COMPOSE_FILE
    nodes: Dict[str, NodeOverride] = field(default_factory=dict)
    history_image: str = ""
    config_path: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return not self.ssh.host

    def node_user(self, node_name: str) -> str:
        """返回登录某个节点时使用的用户名，没有覆盖时沿用 ssh.user"""
        override = self.nodes.get(node_name)
        if override and override.user:
            return override.user
        return self.ssh.user

    def node_host(self, node_name: str) -> str:
        """返回某个节点的连接地址，没有覆盖时就是节点名本身"""
        override = self.nodes.get(node_name)
        if override and override.host:
            return override.host
        return node_name

    def validate(self) -> None:
        """校验配置，收集所有问题后一次性抛出

        Raises:
            ValidationError: 存在任何配置问题
        """
        errors = []

        if not self.stack:
            errors.append("stack is required")

        if self.ssh.host and not self.ssh.user:
            errors.append("ssh.user is required when ssh.host is set")
        if not 1 <= self.ssh.port <= 65535:
            errors.append(f"ssh.port must be between 1 and 65535, got {self.ssh.port}")
        if self.ssh.key and not os.path.isfile(self.ssh.key):
            errors.append(f"ssh.key file not found: {self.ssh.key}")

        if not os.path.isfile(self.compose_file):
            errors.append(f"compose file not found: {self.compose_file}")

        if errors:
            raise ValidationError(errors)


def replace_env_vars(content: str) -> str:
    """替换 ${VAR} 和 ${VAR:default} 形式的环境变量引用

    没有默认值且未设置的变量保持原样。
    """
    def replace_match(match):
        var_expr = match.group(1)
        if ':' in var_expr:
            var_name, default_value = var_expr.split(':', 1)
            return os.getenv(var_name.strip(), default_value.strip())
        var_name = var_expr.strip()
        value = os.getenv(var_name)
        if value is None:
            logger.warning(f"Environment variable {var_name} not found")
            return match.group(0)
        return value

    return _ENV_PATTERN.sub(replace_match, content)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"'{name}' must be a mapping",
            error_code="INVALID_SECTION",
            details={'section': name}
        )
    return value


def _string_list(data: Dict[str, Any], name: str) -> List[str]:
    value = data.get(name) or []
    if not isinstance(value, list):
        raise ConfigurationError(
            f"'{name}' must be a list",
            error_code="INVALID_SECTION",
            details={'section': name}
        )
    return [str(item) for item in value]


def parse_config(data: Dict[str, Any], base_dir: Optional[Path] = None) -> StackConfig:
    """把YAML解析出来的字典转换为 StackConfig"""
    if not isinstance(data, dict):
        raise ConfigurationError("configuration root must be a mapping", error_code="INVALID_CONFIG")

    ssh_data = _section(data, 'ssh')
    try:
        port = int(ssh_data.get('port') or 22)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"ssh.port must be an integer, got {ssh_data.get('port')!r}",
            error_code="INVALID_PORT"
        )
    ssh = SSHConfig(
        host=str(ssh_data.get('host') or ''),
        user=str(ssh_data.get('user') or ''),
        port=port,
        key=expand_path(str(ssh_data.get('key') or '')),
        known_hosts=expand_path(str(ssh_data.get('known_hosts') or ''))
    )

    registry_data = _section(data, 'registry')
    registry = RegistryConfig(
        url=str(registry_data.get('url') or ''),
        username=str(registry_data.get('username') or ''),
        password=str(registry_data.get('password') or '') or os.getenv(REGISTRY_PASSWORD_ENV, '')
    )

    nodes = {}
    for node_name, override in _section(data, 'nodes').items():
        override = override or {}
        if not isinstance(override, dict):
            raise ConfigurationError(
                f"'nodes.{node_name}' must be a mapping",
                error_code="INVALID_SECTION",
                details={'section': f"nodes.{node_name}"}
            )
        nodes[str(node_name)] = NodeOverride(
            user=str(override.get('user') or ''),
            host=str(override.get('host') or '')
        )

    compose_file = str(data.get('compose_file') or DEFAULT_COMPOSE_FILE)
    if base_dir is not None and not os.path.isabs(compose_file):
        compose_file = str(base_dir / compose_file)

    return StackConfig(
        stack=str(data.get('stack') or ''),
        mode=DeploymentMode.parse(data.get('mode')),
        ssh=ssh,
        registry=registry,
        secrets=_string_list(data, 'secrets'),
        accessories=_string_list(data, 'accessories'),
        compose_file=compose_file,
        nodes=nodes,
        history_image=str(_section(data, 'history').get('image') or '')
    )


def load_config(file_path: Union[str, Path] = DEFAULT_CONFIG_FILE, validate: bool = True) -> StackConfig:
    """加载并校验配置文件

    Args:
        file_path: 配置文件路径
        validate: 是否执行校验

    Returns:
        StackConfig: 配置对象

    Raises:
        ConfigurationError: 文件不存在、YAML无效或字段类型错误
        ValidationError: 校验未通过
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {file_path}",
            error_code="CONFIG_FILE_NOT_FOUND",
            details={'file_path': str(file_path)}
        )

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()
        data = yaml.safe_load(replace_env_vars(content)) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file: {file_path}",
            error_code="INVALID_YAML",
            details={'file_path': str(file_path)},
            original_exception=e
        )

    config = parse_config(data, base_dir=file_path.parent)
    config.config_path = str(file_path)
    if validate:
        config.validate()

    logger.info(f"Loaded configuration from {file_path}")
    return config


def load_compose_file(file_path: Union[str, Path]) -> bytes:
    """读取compose文件的原始字节"""
    try:
        with open(file_path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read compose file {file_path}: {e}",
            error_code="COMPOSE_FILE_NOT_FOUND",
            details={'file_path': str(file_path)},
            original_exception=e
        )
