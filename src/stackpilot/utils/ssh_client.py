"""
SSH客户端工具模块
提供SSH连接、认证、主机信任、命令执行（阻塞/交互/流式）、多跳执行和文件写入等功能

主要功能:
    - 凭据发现: SSH agent -> 显式私钥 -> 默认私钥位置
    - 主机信任: 显式不安全模式 / known_hosts校验 / 首次使用时交互确认
    - 每条命令单独开一个session，不做session复用
    - 经由已连接主机的多跳交互执行（需要agent转发）

典型用法:
    >>> with SSHClient("10.0.0.1", "deploy") as ssh:
    ...     exit_code, stdout, stderr = ssh.execute_command("docker ps")
"""

import base64
import hashlib
import logging
import os
import re
import select
import shlex
import socket
import sys
import termios
import threading
import time
import tty
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko
from paramiko.agent import AgentRequestHandler

from ..exceptions import (
    StackPilotError, TransportError, SSHConnectionError, NoAuthMethodsError,
    HostKeyRejectedError, NotConnectedError, SSHExecutionError,
    AgentForwardingUnavailableError, InvalidHopParameterError, CommandExecutionError
)
from .common import INTERRUPTED_EXIT_CODE, TextSink, expand_path

# 设置该环境变量为任意非空值时跳过主机密钥校验
INSECURE_ENV_VAR = "STACKPILOT_INSECURE_SSH"
INSECURE_WARNING = "WARNING: SSH host key verification disabled - connection vulnerable to MITM attacks"

DEFAULT_KEY_FILES = ["id_ed25519", "id_rsa"]

PTY_TERM = "xterm"
PTY_WIDTH = 80
PTY_HEIGHT = 40

BUFFER_SIZE = 32768
POLL_INTERVAL = 0.01
AGENT_CONNECT_TIMEOUT = 2

_HOP_PARAM_PATTERN = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_]{0,62}")


class SessionState(Enum):
    """连接状态机"""
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass(frozen=True)
class Credential:
    """凭据链中的一项认证方式"""
    source: str
    key: paramiko.PKey


def validate_hop_param(param: str) -> None:
    """校验多跳执行的主机名/用户名参数

    只允许字母数字和下划线，首字符必须是字母或数字，长度1-63。

    Raises:
        InvalidHopParameterError: 参数不在白名单内
    """
    if not isinstance(param, str) or not _HOP_PARAM_PATTERN.fullmatch(param):
        raise InvalidHopParameterError(str(param))


def build_hop_command(target_host: str, target_user: str, command: str) -> str:
    """构造经由当前主机跳转到目标节点的ssh命令"""
    destination = shlex.quote(f"{target_user}@{target_host}")
    return f"ssh -tt -o StrictHostKeyChecking=yes {destination} {shlex.quote(command)}"


def fingerprint_sha256(key: paramiko.PKey) -> str:
    """返回OpenSSH风格的SHA256指纹"""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def insecure_mode_enabled() -> bool:
    return bool(os.environ.get(INSECURE_ENV_VAR, "").strip())


class ConfirmHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """首次使用时交互确认主机密钥

    打印密钥类型和指纹，只有用户明确输入 yes 才继续，其他任何回答都中止连接。
    确认后的密钥只在本次连接内有效，不写回 known_hosts。
    """

    def __init__(self, port: int = 22,
                 input_func: Callable[[str], str] = input,
                 output=None):
        self.port = port
        self.input_func = input_func
        self.output = output

    def missing_host_key(self, client, hostname, key):
        out = self.output or sys.stdout
        out.write(f"The authenticity of host '{hostname}:{self.port}' can't be established.\n")
        out.write(f"{key.get_name()} key fingerprint is {fingerprint_sha256(key)}.\n")
        out.flush()

        try:
            answer = self.input_func("Are you sure you want to continue connecting (yes/no)? ")
        except EOFError:
            answer = ""

        if answer.strip().lower() != "yes":
            raise HostKeyRejectedError(hostname, "host key verification failed: user rejected")

        client.get_host_keys().add(hostname, key.get_name(), key)


class SSHClient:
    """SSH客户端类

    一个实例对应一次CLI调用中的一条认证连接，退出时通过 close() 释放。
    """

    def __init__(self, host: str, username: str, key_filename: Optional[str] = None,
                 port: int = 22, timeout: int = 30,
                 known_hosts_file: Optional[str] = None,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 input_func: Callable[[str], str] = input):
        self.host = host
        self.username = username
        self.key_filename = expand_path(key_filename) if key_filename else None
        self.port = port
        self.timeout = timeout
        self.known_hosts_file = known_hosts_file
        self.client_factory = client_factory
        self.input_func = input_func

        self.state = SessionState.DISCONNECTED
        self.credentials: Tuple[Credential, ...] = ()
        self.client: Optional[paramiko.SSHClient] = None
        self._agent: Optional[paramiko.Agent] = None
        self.logger = logging.getLogger(f"ssh.{host}")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # 连接与认证
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """建立SSH连接

        Raises:
            NoAuthMethodsError: 没有任何可用的认证方式
            HostKeyRejectedError: 主机密钥校验失败或用户拒绝
            SSHConnectionError: 网络或认证失败
        """
        if self.state == SessionState.CONNECTED:
            return
        if self.state == SessionState.CLOSED:
            raise TransportError("session already closed", details={'host': self.host})

        self.state = SessionState.AUTHENTICATING
        try:
            self.credentials = tuple(self._discover_credentials())
            if not self.credentials:
                raise NoAuthMethodsError(self.host)

            client = self.client_factory()
            trust_mode = self._configure_host_trust(client)
            self.logger.debug(f"Host trust mode: {trust_mode}")

            self._authenticate(client)
        except BaseException:
            self._release_agent()
            self.state = SessionState.DISCONNECTED
            raise

        self.client = client
        self.state = SessionState.CONNECTED
        self.logger.info(f"Successfully connected to {self.host}:{self.port}")

    def _authenticate(self, client: paramiko.SSHClient) -> None:
        """按凭据链顺序逐个尝试认证，第一个成功的生效"""
        last_error: Optional[Exception] = None
        for credential in self.credentials:
            try:
                client.connect(
                    hostname=self.host,
                    port=self.port,
                    username=self.username,
                    pkey=credential.key,
                    timeout=self.timeout,
                    allow_agent=False,
                    look_for_keys=False
                )
                self.logger.debug(f"Authenticated with {credential.source}")
                return
            except paramiko.AuthenticationException as e:
                self.logger.debug(f"Authentication with {credential.source} rejected: {e}")
                last_error = e
                client.close()
            except StackPilotError:
                client.close()
                raise
            except paramiko.BadHostKeyException as e:
                client.close()
                raise HostKeyRejectedError(self.host, f"host key mismatch: {e}")
            except (paramiko.SSHException, socket.error) as e:
                client.close()
                self.logger.error(f"Failed to connect to {self.host}:{self.port}: {e}")
                raise SSHConnectionError(self.host, self.port, str(e), original_exception=e)

        raise SSHConnectionError(
            self.host, self.port,
            f"authentication failed with all available methods: {last_error}",
            original_exception=last_error
        )

    def _discover_credentials(self) -> List[Credential]:
        """发现认证方式: agent -> 显式私钥 -> 默认私钥（第一个能解析的生效）"""
        credentials: List[Credential] = []

        agent = self._connect_agent()
        if agent is not None:
            for key in agent.get_keys():
                credentials.append(Credential("agent", key))

        if self.key_filename:
            key = self._load_key(self.key_filename)
            if key is not None:
                credentials.append(Credential(self.key_filename, key))
        else:
            ssh_dir = Path.home() / ".ssh"
            for name in DEFAULT_KEY_FILES:
                path = ssh_dir / name
                if not path.exists():
                    continue
                key = self._load_key(str(path))
                if key is not None:
                    credentials.append(Credential(str(path), key))
                    break

        return credentials

    def _connect_agent(self) -> Optional[paramiko.Agent]:
        """连接本地SSH agent，连接会被保留用于后续的agent转发"""
        sock_path = os.environ.get("SSH_AUTH_SOCK")
        if not sock_path or not os.path.exists(sock_path):
            return None
        # paramiko.Agent 连接失败时不抛异常，这里先确认socket上确实有agent在监听
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(AGENT_CONNECT_TIMEOUT)
                sock.connect(sock_path)
        except OSError as e:
            self.logger.debug(f"SSH agent socket {sock_path} is not usable: {e}")
            return None
        try:
            agent = paramiko.Agent()
        except paramiko.SSHException as e:
            self.logger.debug(f"Cannot use SSH agent at {sock_path}: {e}")
            return None
        if getattr(agent, "_conn", None) is None:
            self.logger.debug(f"SSH agent at {sock_path} did not accept the connection")
            agent.close()
            return None
        self._agent = agent
        return self._agent

    def _load_key(self, path: str) -> Optional[paramiko.PKey]:
        try:
            return paramiko.PKey.from_path(path)
        except (OSError, paramiko.SSHException, paramiko.pkey.UnknownKeyType,
                ValueError, TypeError) as e:
            self.logger.warning(f"Cannot load private key {path}: {e}")
            return None

    def _configure_host_trust(self, client: paramiko.SSHClient) -> str:
        """设置主机密钥策略，返回生效的信任模式"""
        if insecure_mode_enabled():
            sys.stderr.write(INSECURE_WARNING + "\n")
            self.logger.warning(INSECURE_WARNING)
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return "insecure"

        known_hosts = self.known_hosts_file or os.path.join(Path.home(), ".ssh", "known_hosts")
        if os.path.isfile(known_hosts):
            try:
                client.load_system_host_keys(known_hosts)
            except (OSError, paramiko.SSHException) as e:
                self.logger.warning(f"Cannot read known_hosts file {known_hosts}: {e}")
            else:
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
                return "known_hosts"

        client.set_missing_host_key_policy(
            ConfirmHostKeyPolicy(port=self.port, input_func=self.input_func)
        )
        return "confirm"

    def is_connected(self) -> bool:
        """检查是否已连接"""
        if self.state != SessionState.CONNECTED or not self.client:
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def has_agent_forwarding(self) -> bool:
        """当前连接是否有可转发的agent"""
        return self._agent is not None

    def close(self) -> None:
        """关闭连接，可重复调用"""
        if self.state == SessionState.CLOSED:
            return
        self._release_agent()
        if self.client:
            self.client.close()
            self.client = None
        self.state = SessionState.CLOSED
        self.logger.info(f"Disconnected from {self.host}")

    def _release_agent(self) -> None:
        if self._agent is not None:
            self._agent.close()
            self._agent = None

    # ------------------------------------------------------------------
    # 命令执行
    # ------------------------------------------------------------------

    def _open_session(self) -> paramiko.Channel:
        if not self.is_connected():
            raise NotConnectedError(self.host)
        try:
            return self.client.get_transport().open_session()
        except paramiko.SSHException as e:
            raise SSHExecutionError(f"failed to create session: {e}", original_exception=e)

    def _exec(self, channel: paramiko.Channel, command: str) -> None:
        try:
            channel.exec_command(command)
        except paramiko.SSHException as e:
            raise SSHExecutionError(f"failed to start command: {e}",
                                    details={'command': command}, original_exception=e)

    def _pump(self, channel: paramiko.Channel,
              on_stdout: Callable[[bytes], None],
              on_stderr: Callable[[bytes], None]) -> int:
        """把session的输出分发给回调，直到远端命令退出"""
        while True:
            received = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    on_stdout(data)
                    received = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    on_stderr(data)
                    received = True
            if received:
                continue
            if channel.exit_status_ready():
                break
            time.sleep(POLL_INTERVAL)

        exit_code = channel.recv_exit_status()
        if exit_code < 0:
            raise SSHExecutionError("remote command terminated without an exit status")
        return exit_code

    def execute_command(self, command: str) -> Tuple[int, str, str]:
        """
        执行SSH命令并捕获输出

        非零退出码作为结果返回，不视为错误。

        Returns:
            Tuple[exit_code, stdout, stderr]
        """
        channel = self._open_session()
        stdout_data, stderr_data = bytearray(), bytearray()
        try:
            self._exec(channel, command)
            exit_code = self._pump(channel, stdout_data.extend, stderr_data.extend)
        finally:
            channel.close()

        return (exit_code,
                stdout_data.decode('utf-8', errors='replace'),
                stderr_data.decode('utf-8', errors='replace'))

    def execute_stream(self, command: str, stdout, stderr) -> int:
        """执行命令并把输出实时写入调用方提供的文本流

        Ctrl+C中断视为正常结束，返回130。
        """
        channel = self._open_session()
        out_sink, err_sink = TextSink(stdout), TextSink(stderr)
        try:
            self._exec(channel, command)
            try:
                return self._pump(channel, out_sink.write, err_sink.write)
            except KeyboardInterrupt:
                self.logger.info("Streaming interrupted by user")
                return INTERRUPTED_EXIT_CODE
        finally:
            out_sink.close()
            err_sink.close()
            channel.close()

    def execute_interactive(self, command: str) -> int:
        """在伪终端中执行命令，绑定本进程的标准输入输出"""
        channel = self._open_session()
        try:
            self._request_pty(channel)
            self._exec(channel, command)
            return self._interactive_loop(channel)
        finally:
            channel.close()

    def execute_interactive_via_host(self, target_host: str, target_user: str, command: str) -> int:
        """经由当前已连接主机跳转到目标节点执行交互命令

        先校验参数，再要求agent转发可用，任何一项不满足都在发出远程命令前失败。

        Raises:
            InvalidHopParameterError: 主机名或用户名不合法
            AgentForwardingUnavailableError: 没有可转发的agent
        """
        validate_hop_param(target_host)
        validate_hop_param(target_user)
        if not self.has_agent_forwarding():
            raise AgentForwardingUnavailableError(self.host)

        channel = self._open_session()
        try:
            try:
                AgentRequestHandler(channel)
            except paramiko.SSHException as e:
                raise SSHExecutionError(f"failed to request agent forwarding: {e}",
                                        original_exception=e)
            self._request_pty(channel)
            hop_command = build_hop_command(target_host, target_user, command)
            self.logger.debug(f"Hop command: {hop_command}")
            self._exec(channel, hop_command)
            return self._interactive_loop(channel)
        finally:
            channel.close()

    def _request_pty(self, channel: paramiko.Channel) -> None:
        # paramiko 的 get_pty 不支持传入终端模式，pty-req 中的模式列表总是为空
        try:
            channel.get_pty(term=PTY_TERM, width=PTY_WIDTH, height=PTY_HEIGHT)
        except paramiko.SSHException as e:
            raise SSHExecutionError(f"failed to request pty: {e}", original_exception=e)

    def _interactive_loop(self, channel: paramiko.Channel) -> int:
        """在本地终端和远程session之间转发数据，直到远端退出"""
        stdin_fd = sys.stdin.fileno()
        is_tty = os.isatty(stdin_fd)
        old_attrs = termios.tcgetattr(stdin_fd) if is_tty else None
        stdout = sys.stdout.buffer
        readers = [channel, stdin_fd]

        try:
            if is_tty:
                tty.setraw(stdin_fd)
            while True:
                ready, _, _ = select.select(readers, [], [], 0.1)
                if channel in ready or channel.recv_ready():
                    while channel.recv_ready():
                        stdout.write(channel.recv(BUFFER_SIZE))
                    while channel.recv_stderr_ready():
                        stdout.write(channel.recv_stderr(BUFFER_SIZE))
                    stdout.flush()
                if channel.exit_status_ready() and not channel.recv_ready():
                    break
                if stdin_fd in ready:
                    data = os.read(stdin_fd, 1024)
                    if data:
                        channel.sendall(data)
                    else:
                        channel.shutdown_write()
                        readers.remove(stdin_fd)
        finally:
            if old_attrs is not None:
                termios.tcsetattr(stdin_fd, termios.TCSADRAIN, old_attrs)

        exit_code = channel.recv_exit_status()
        if exit_code < 0:
            raise SSHExecutionError("remote command terminated without an exit status")
        return exit_code

    # ------------------------------------------------------------------
    # 文件写入
    # ------------------------------------------------------------------

    def write_file(self, remote_path: str, content: bytes) -> None:
        """把内容写入远程文件

        后台线程把内容写进远端 cat 的标准输入，主线程等待 cat 退出；
        写端关闭且远端命令结束后才返回。

        Raises:
            SSHExecutionError: 写入过程中session出错
            CommandExecutionError: 远端cat返回非零退出码
        """
        command = f"cat > {shlex.quote(remote_path)}"
        channel = self._open_session()
        writer_errors: List[Exception] = []

        def _writer():
            try:
                channel.sendall(content)
            except (OSError, paramiko.SSHException) as e:
                writer_errors.append(e)
            finally:
                try:
                    channel.shutdown_write()
                except (OSError, paramiko.SSHException) as e:
                    if not writer_errors:
                        writer_errors.append(e)

        stderr_data = bytearray()
        try:
            self._exec(channel, command)
            writer = threading.Thread(target=_writer, name=f"ssh-writer-{self.host}", daemon=True)
            writer.start()
            try:
                exit_code = self._pump(channel, lambda _data: None, stderr_data.extend)
            finally:
                writer.join()
        finally:
            channel.close()

        stderr_text = stderr_data.decode('utf-8', errors='replace')
        if exit_code != 0:
            raise CommandExecutionError(command, exit_code, stderr_text,
                                        message=f"Failed to write {remote_path}")
        if writer_errors:
            raise SSHExecutionError(f"failed to write {remote_path}: {writer_errors[0]}",
                                    original_exception=writer_errors[0])
        self.logger.debug(f"Wrote {len(content)} bytes to {remote_path}")
