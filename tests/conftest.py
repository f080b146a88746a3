"""测试公共fixture"""

from typing import Callable, Dict, List, Optional, Union

import pytest

from stackpilot.executor import CommandResult, Executor

Response = Union[CommandResult, List[CommandResult]]


class MockExecutor(Executor):
    """记录命令并返回预设结果的执行器

    responses 以完整命令为键；值为列表时按调用顺序依次返回，用完后重复最后一个。
    handler 可以按命令动态生成结果，返回None时退回 responses。
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None,
                 handler: Optional[Callable[[str], Optional[CommandResult]]] = None):
        super().__init__()
        self.responses = dict(responses or {})
        self.handler = handler
        self.commands: List[str] = []
        self.interactive: List[str] = []
        self.files: Dict[str, bytes] = {}
        self.closed = False

    def _respond(self, command: str) -> CommandResult:
        if self.handler is not None:
            result = self.handler(command)
            if result is not None:
                return result
        response = self.responses.get(command)
        if response is None:
            return CommandResult()
        if isinstance(response, list):
            if len(response) > 1:
                return response.pop(0)
            return response[0]
        return response

    def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self._respond(command)

    def run_interactive(self, command: str) -> int:
        self.interactive.append(command)
        return self._respond(command).exit_code

    def run_stream(self, command: str, stdout, stderr) -> int:
        self.commands.append(command)
        result = self._respond(command)
        stdout.write(result.stdout)
        stderr.write(result.stderr)
        return result.exit_code

    def write_file(self, path: str, content: bytes) -> None:
        self.files[path] = content

    def close(self) -> None:
        self.closed = True

    def is_local(self) -> bool:
        return True

    def ran(self, prefix: str) -> List[str]:
        """返回以 prefix 开头的已执行命令"""
        return [c for c in self.commands if c.startswith(prefix)]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, exit_code=0)


def fail(stderr: str = "error", exit_code: int = 1) -> CommandResult:
    return CommandResult(stderr=stderr, exit_code=exit_code)


@pytest.fixture
def executor():
    return MockExecutor()
