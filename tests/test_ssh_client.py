"""SSH客户端测试

使用假的 paramiko 客户端和 channel，不建立任何网络连接。
"""

import io
from unittest.mock import MagicMock

import paramiko
import pytest

from stackpilot.exceptions import (
    AgentForwardingUnavailableError, CommandExecutionError, HostKeyRejectedError,
    InvalidHopParameterError, NoAuthMethodsError, NotConnectedError, SSHConnectionError,
    TransportError
)
from stackpilot.utils.common import INTERRUPTED_EXIT_CODE
from stackpilot.utils.ssh_client import (
    INSECURE_ENV_VAR, ConfirmHostKeyPolicy, Credential, SessionState, SSHClient,
    build_hop_command, fingerprint_sha256, insecure_mode_enabled, validate_hop_param
)


class FakeChannel:
    """按预设输出和退出码工作的 paramiko Channel 替身"""

    def __init__(self, stdout=b"", stderr=b"", exit_status=0):
        self._stdout = bytearray(stdout)
        self._stderr = bytearray(stderr)
        self.exit_status = exit_status
        self.commands = []
        self.sent = bytearray()
        self.write_closed = False
        self.closed = False
        self.pty = None

    def exec_command(self, command):
        self.commands.append(command)

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        data = bytes(self._stdout[:size])
        del self._stdout[:size]
        return data

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        data = bytes(self._stderr[:size])
        del self._stderr[:size]
        return data

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.exit_status

    def sendall(self, data):
        self.sent.extend(data)

    def shutdown_write(self):
        self.write_closed = True

    def get_pty(self, term, width, height):
        self.pty = (term, width, height)

    def close(self):
        self.closed = True


class FakeKey:

    def get_name(self):
        return "ssh-ed25519"

    def asbytes(self):
        return b"fake-public-key"

    def get_base64(self):
        return "ZmFrZS1wdWJsaWMta2V5"


def connected_client(channel=None):
    """返回一个处于已连接状态、session由 channel 提供的 SSHClient"""
    client = SSHClient("10.0.0.1", "deploy")
    transport = MagicMock()
    transport.is_active.return_value = True
    transport.open_session.return_value = channel or FakeChannel()
    client.client = MagicMock()
    client.client.get_transport.return_value = transport
    client.state = SessionState.CONNECTED
    return client, transport


@pytest.fixture
def no_agent(monkeypatch, tmp_path):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
    monkeypatch.delenv(INSECURE_ENV_VAR, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


class TestHopParameters:

    @pytest.mark.parametrize("value", ["a", "worker_1", "Node42", "x" * 63, "9_lives"])
    def test_accepts_allow_listed(self, value):
        validate_hop_param(value)

    @pytest.mark.parametrize("value", [
        "", "_leading", "a;rm -rf /", "a&b", "a|b", "a`id`", "$(id)", "a b",
        "host.example.com", "host-1", "x" * 64,
    ])
    def test_rejects_everything_else(self, value):
        with pytest.raises(InvalidHopParameterError):
            validate_hop_param(value)

    def test_hop_command_quotes_inner_command(self):
        command = build_hop_command("worker_1", "ubuntu", "docker exec -it abc sh -c 'ls; pwd'")
        assert command.startswith("ssh -tt -o StrictHostKeyChecking=yes ubuntu@worker_1 ")
        assert "'docker exec -it abc sh -c '\"'\"'ls; pwd'\"'\"''" in command


class TestCredentialDiscovery:

    def test_no_methods_fails_distinctly(self, no_agent):
        client = SSHClient("10.0.0.1", "deploy", client_factory=MagicMock())
        with pytest.raises(NoAuthMethodsError):
            client.connect()
        assert client.state == SessionState.DISCONNECTED

    def test_unparsable_explicit_key_is_skipped(self, no_agent):
        key_file = no_agent / "broken_key"
        key_file.write_text("not a key")
        client = SSHClient("10.0.0.1", "deploy", key_filename=str(key_file))
        assert client._discover_credentials() == []

    def test_default_keys_first_parsed_wins(self, no_agent, monkeypatch):
        ssh_dir = no_agent / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "id_ed25519").write_text("broken")
        (ssh_dir / "id_rsa").write_text("valid")
        loaded = []

        def fake_load(self, path):
            loaded.append(path)
            return FakeKey() if path.endswith("id_rsa") else None

        monkeypatch.setattr(SSHClient, "_load_key", fake_load)
        credentials = SSHClient("10.0.0.1", "deploy")._discover_credentials()

        assert [c.source for c in credentials] == [str(ssh_dir / "id_rsa")]
        assert loaded == [str(ssh_dir / "id_ed25519"), str(ssh_dir / "id_rsa")]

    def test_stale_agent_socket_is_ignored(self, no_agent, monkeypatch):
        stale_socket = no_agent / "agent.sock"
        stale_socket.write_text("")
        monkeypatch.setenv("SSH_AUTH_SOCK", str(stale_socket))
        client, transport = connected_client()

        assert client._connect_agent() is None
        assert not client.has_agent_forwarding()
        with pytest.raises(AgentForwardingUnavailableError):
            client.execute_interactive_via_host("worker_1", "ubuntu", "sh")
        transport.open_session.assert_not_called()

    def test_default_keys_ignored_when_key_configured(self, no_agent, monkeypatch):
        ssh_dir = no_agent / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "id_rsa").write_text("valid")
        monkeypatch.setattr(SSHClient, "_load_key", lambda self, path: None)

        client = SSHClient("10.0.0.1", "deploy", key_filename=str(no_agent / "deploy_key"))
        assert client._discover_credentials() == []


class TestHostTrust:

    @pytest.mark.parametrize("value", ["1", "on", "enabled", "y", "false"])
    def test_any_non_empty_value_enables_insecure_mode(self, monkeypatch, value):
        monkeypatch.setenv(INSECURE_ENV_VAR, value)
        assert insecure_mode_enabled()

    @pytest.mark.parametrize("value", ["", "  "])
    def test_empty_value_keeps_verification(self, monkeypatch, value):
        monkeypatch.setenv(INSECURE_ENV_VAR, value)
        assert not insecure_mode_enabled()

    def _client(self, monkeypatch, **kwargs):
        paramiko_client = MagicMock()
        client = SSHClient("10.0.0.1", "deploy", client_factory=lambda: paramiko_client, **kwargs)
        monkeypatch.setattr(client, "_discover_credentials",
                            lambda: [Credential("test", FakeKey())])
        return client, paramiko_client

    def test_insecure_mode_warns(self, no_agent, monkeypatch, capsys):
        monkeypatch.setenv(INSECURE_ENV_VAR, "1")
        client, paramiko_client = self._client(monkeypatch)

        client.connect()

        assert client.state == SessionState.CONNECTED
        assert "WARNING" in capsys.readouterr().err
        policy = paramiko_client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.AutoAddPolicy)

    def test_known_hosts_rejects_unknown(self, no_agent, monkeypatch):
        known_hosts = no_agent / "known_hosts"
        known_hosts.write_text("")
        client, paramiko_client = self._client(monkeypatch, known_hosts_file=str(known_hosts))

        client.connect()

        paramiko_client.load_system_host_keys.assert_called_once_with(str(known_hosts))
        policy = paramiko_client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.RejectPolicy)

    def test_without_known_hosts_asks_for_confirmation(self, no_agent, monkeypatch):
        client, paramiko_client = self._client(monkeypatch,
                                               known_hosts_file=str(no_agent / "missing"))
        client.connect()
        policy = paramiko_client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, ConfirmHostKeyPolicy)

    def test_bad_host_key_aborts(self, no_agent, monkeypatch):
        client, paramiko_client = self._client(monkeypatch)
        paramiko_client.connect.side_effect = paramiko.BadHostKeyException(
            "10.0.0.1", FakeKey(), FakeKey())
        with pytest.raises(HostKeyRejectedError):
            client.connect()

    def test_authentication_rejected(self, no_agent, monkeypatch):
        client, paramiko_client = self._client(monkeypatch)
        paramiko_client.connect.side_effect = paramiko.AuthenticationException("denied")
        with pytest.raises(SSHConnectionError):
            client.connect()
        assert client.state == SessionState.DISCONNECTED


class TestConfirmHostKeyPolicy:

    def test_yes_trusts_for_this_connection(self):
        output = io.StringIO()
        policy = ConfirmHostKeyPolicy(input_func=lambda prompt: "yes", output=output)
        client = MagicMock()

        policy.missing_host_key(client, "10.0.0.1", FakeKey())

        client.get_host_keys().add.assert_called_once()
        assert fingerprint_sha256(FakeKey()) in output.getvalue()

    @pytest.mark.parametrize("answer", ["no", "y", "", "YES please"])
    def test_anything_else_aborts(self, answer):
        policy = ConfirmHostKeyPolicy(input_func=lambda prompt: answer, output=io.StringIO())
        with pytest.raises(HostKeyRejectedError):
            policy.missing_host_key(MagicMock(), "10.0.0.1", FakeKey())

    def test_eof_aborts(self):
        def closed_input(prompt):
            raise EOFError

        policy = ConfirmHostKeyPolicy(input_func=closed_input, output=io.StringIO())
        with pytest.raises(HostKeyRejectedError):
            policy.missing_host_key(MagicMock(), "10.0.0.1", FakeKey())


class TestExecution:

    def test_non_zero_exit_is_returned(self):
        channel = FakeChannel(stdout=b"partial", stderr=b"boom", exit_status=42)
        client, _ = connected_client(channel)

        exit_code, stdout, stderr = client.execute_command("false")

        assert (exit_code, stdout, stderr) == (42, "partial", "boom")
        assert channel.commands == ["false"]
        assert channel.closed

    def test_run_requires_connection(self):
        with pytest.raises(NotConnectedError):
            SSHClient("10.0.0.1", "deploy").execute_command("true")

    def test_stream_writes_to_sinks(self):
        channel = FakeChannel(stdout="héllo\n".encode("utf-8"), stderr=b"warn")
        client, _ = connected_client(channel)
        out, err = io.StringIO(), io.StringIO()

        assert client.execute_stream("docker service logs web", out, err) == 0
        assert out.getvalue() == "héllo\n"
        assert err.getvalue() == "warn"

    def test_stream_interrupt_is_benign(self):
        class InterruptingSink(io.StringIO):
            def write(self, text):
                raise KeyboardInterrupt

        client, _ = connected_client(FakeChannel(stdout=b"line\n"))
        assert client.execute_stream("logs", InterruptingSink(), io.StringIO()) == INTERRUPTED_EXIT_CODE

    def test_write_file_streams_content_and_waits(self):
        channel = FakeChannel()
        client, _ = connected_client(channel)

        client.write_file("/tmp/app compose.yaml", b"services:\n  web: {}\n")

        assert channel.commands == ["cat > '/tmp/app compose.yaml'"]
        assert bytes(channel.sent) == b"services:\n  web: {}\n"
        assert channel.write_closed
        assert channel.closed

    def test_write_file_remote_failure(self):
        client, _ = connected_client(FakeChannel(stderr=b"Permission denied", exit_status=1))
        with pytest.raises(CommandExecutionError) as exc_info:
            client.write_file("/root/x", b"data")
        assert exc_info.value.exit_code == 1


class TestMultiHop:

    def test_fails_without_agent_before_any_remote_command(self):
        client, transport = connected_client()
        assert not client.has_agent_forwarding()

        with pytest.raises(AgentForwardingUnavailableError):
            client.execute_interactive_via_host("worker_1", "ubuntu", "sh")

        transport.open_session.assert_not_called()

    def test_invalid_parameters_rejected_first(self):
        client, transport = connected_client()
        client._agent = MagicMock()

        with pytest.raises(InvalidHopParameterError):
            client.execute_interactive_via_host("worker;reboot", "ubuntu", "sh")
        with pytest.raises(InvalidHopParameterError):
            client.execute_interactive_via_host("worker_1", "$(id)", "sh")

        transport.open_session.assert_not_called()

    def test_forwards_agent_and_requests_pty(self, monkeypatch):
        channel = FakeChannel()
        client, _ = connected_client(channel)
        client._agent = MagicMock()
        handler = MagicMock()
        monkeypatch.setattr("stackpilot.utils.ssh_client.AgentRequestHandler", handler)
        monkeypatch.setattr(client, "_interactive_loop", lambda ch: 0)

        assert client.execute_interactive_via_host("worker_1", "ubuntu", "docker exec -it abc sh") == 0

        handler.assert_called_once_with(channel)
        assert channel.pty == ("xterm", 80, 40)
        assert channel.commands == [build_hop_command("worker_1", "ubuntu", "docker exec -it abc sh")]


class TestClose:

    def test_close_is_idempotent(self):
        client, _ = connected_client()
        paramiko_client = client.client
        agent = MagicMock()
        client._agent = agent

        client.close()
        client.close()

        assert client.state == SessionState.CLOSED
        paramiko_client.close.assert_called_once()
        agent.close.assert_called_once()

    def test_cannot_reconnect_after_close(self):
        client = SSHClient("10.0.0.1", "deploy")
        client.close()
        with pytest.raises(TransportError):
            client.connect()
