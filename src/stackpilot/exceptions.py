"""stackpilot自定义异常类

定义系统中使用的各种异常类型，提供更好的错误分类和处理。

异常层次结构:
    StackPilotError (基础异常)
    ├── ConfigurationError (配置相关错误)
    │   └── ValidationError
    ├── TransportError (连接/认证错误，致命)
    │   ├── SSHConnectionError
    │   ├── NoAuthMethodsError
    │   ├── HostKeyRejectedError
    │   ├── NotConnectedError
    │   ├── SSHExecutionError
    │   ├── AgentForwardingUnavailableError
    │   └── InvalidHopParameterError
    ├── CommandExecutionError (后端命令返回非零退出码)
    ├── OutputParseError (命令执行成功但输出无法解析)
    ├── UnsupportedOperationError (当前模式不支持的操作)
    ├── HistoryError (部署历史错误)
    │   └── NoPreviousDeployError
    └── DeploymentError (部署错误)
        ├── StackNotFoundError
        ├── ContainerNotFoundError
        └── HealthCheckTimeoutError
"""

from typing import Optional, Dict, Any


class StackPilotError(Exception):
    """stackpilot基础异常类

    所有stackpilot异常的基类，提供统一的异常处理接口。

    Attributes:
        message: 错误消息
        error_code: 错误代码
        details: 错误详细信息字典
        original_exception: 原始异常对象
    """

    def __init__(self,
                 message: str,
                 error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None,
                 original_exception: Optional[Exception] = None):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.original_exception = original_exception
        super().__init__(self.message)

    def __str__(self) -> str:
        """返回格式化的错误消息"""
        result = f"[{self.error_code}] {self.message}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" ({detail_str})"
        return result

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            'error_type': self.__class__.__name__,
            'error_code': self.error_code,
            'message': self.message,
            'details': self.details,
            'original_exception': str(self.original_exception) if self.original_exception else None
        }


# 配置相关异常
class ConfigurationError(StackPilotError):
    """配置相关异常基类"""
    pass


class ValidationError(ConfigurationError):
    """配置验证异常"""

    def __init__(self, validation_errors: list):
        self.errors = list(validation_errors)
        error_summary = "validation failed:\n  - " + "\n  - ".join(self.errors)
        super().__init__(
            error_summary,
            details={'count': len(self.errors)}
        )


# 传输层异常
class TransportError(StackPilotError):
    """连接和认证异常基类，属于致命错误"""
    pass


class SSHConnectionError(TransportError):
    """SSH连接异常"""

    def __init__(self, host: str, port: int, reason: str,
                 original_exception: Optional[Exception] = None):
        super().__init__(
            f"Failed to connect to {host}:{port}: {reason}",
            details={'host': host, 'port': port},
            original_exception=original_exception
        )


class NoAuthMethodsError(TransportError):
    """没有可用的认证方式"""

    def __init__(self, host: str):
        super().__init__(
            "no authentication methods available",
            details={'host': host}
        )


class HostKeyRejectedError(TransportError):
    """主机密钥未被信任"""

    def __init__(self, host: str, reason: str):
        super().__init__(
            f"Host key for {host} rejected: {reason}",
            details={'host': host}
        )


class NotConnectedError(TransportError):
    """会话尚未建立连接"""

    def __init__(self, host: str):
        super().__init__("not connected", details={'host': host})


class SSHExecutionError(TransportError):
    """SSH会话级别的执行错误（非退出码错误）"""
    pass


class AgentForwardingUnavailableError(TransportError):
    """当前连接没有可转发的SSH agent"""

    def __init__(self, host: str):
        super().__init__(
            "SSH agent forwarding is not available on the current connection",
            details={'host': host}
        )


class InvalidHopParameterError(TransportError):
    """跳转参数未通过白名单校验"""

    def __init__(self, param: str):
        self.param = param
        super().__init__(
            f"invalid SSH parameter '{param}': must contain only alphanumeric characters and underscores"
        )


# 命令执行异常
class CommandExecutionError(StackPilotError):
    """后端命令返回非零退出码"""

    def __init__(self, command: str, exit_code: int, stderr: str, message: Optional[str] = None):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        text = message or "Command failed"
        if stderr and stderr.strip():
            text = f"{text}: {stderr.strip()}"
        super().__init__(
            text,
            details={'command': command, 'exit_code': exit_code}
        )


class OutputParseError(StackPilotError):
    """命令执行成功但输出无法解析"""

    def __init__(self, command: str, output: str, reason: str,
                 original_exception: Optional[Exception] = None):
        self.command = command
        self.output = output
        super().__init__(
            f"Failed to parse output of '{command}': {reason}",
            details={'command': command},
            original_exception=original_exception
        )


class UnsupportedOperationError(StackPilotError):
    """当前部署模式不支持的操作

    调用方应根据 operation/mode 属性做结构化判断，而不是匹配错误字符串。
    """

    def __init__(self, operation: str, mode: str):
        self.operation = operation
        self.mode = mode
        super().__init__(
            f"{operation} is not supported in {mode} mode",
            details={'operation': operation, 'mode': mode}
        )


# 部署历史异常
class HistoryError(StackPilotError):
    """部署历史异常基类"""
    pass


class NoPreviousDeployError(HistoryError):
    """没有上一次部署记录"""

    def __init__(self, stack_name: str):
        super().__init__(
            "no previous deploy found",
            details={'stack': stack_name}
        )


# 部署异常
class DeploymentError(StackPilotError):
    """部署异常基类"""
    pass


class StackNotFoundError(DeploymentError):
    """栈不存在"""

    def __init__(self, stack_name: str):
        super().__init__(f"Stack {stack_name} not found", details={'stack': stack_name})


class ContainerNotFoundError(DeploymentError):
    """找不到服务对应的运行中容器"""

    def __init__(self, service_name: str, reason: str):
        super().__init__(reason, details={'service': service_name})


class HealthCheckTimeoutError(DeploymentError):
    """等待服务就绪超时"""

    def __init__(self, stack_name: str, timeout: float, pending: list):
        super().__init__(
            f"Timed out after {timeout:.0f}s waiting for services to become healthy",
            details={'stack': stack_name, 'pending': ", ".join(pending)}
        )


def format_exception_chain(exception: Exception) -> str:
    """格式化异常链，显示完整的异常追踪

    Args:
        exception: 要格式化的异常

    Returns:
        格式化的异常链字符串
    """
    result = []
    current = exception

    while current:
        if isinstance(current, StackPilotError):
            result.append(f"[{current.error_code}] {current.message}")
            if current.details:
                detail_str = ", ".join(f"{k}={v}" for k, v in current.details.items())
                result.append(f"  Details: {detail_str}")
            current = current.original_exception or current.__cause__
        else:
            result.append(f"[{current.__class__.__name__}] {str(current)}")
            current = getattr(current, '__cause__', None)

    return "\n".join(result)
