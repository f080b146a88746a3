"""本地执行器

通过 sh -c 在本机执行命令，用于部署目标就是本机的场景。
"""

import os
import selectors
import subprocess

from ..exceptions import TransportError
from ..utils.common import INTERRUPTED_EXIT_CODE, TextSink, setup_module_logger
from .base import CommandResult, Executor

BUFFER_SIZE = 32768


class LocalExecutor(Executor):
    """在本机shell中执行命令"""

    def __init__(self):
        super().__init__()
        self.logger = setup_module_logger("stackpilot.executor.local")

    def _spawn_error(self, command: str, error: OSError) -> TransportError:
        return TransportError(
            f"Failed to start local command: {error}",
            error_code="SPAWN_FAILED",
            details={'command': command},
            original_exception=error
        )

    def run(self, command: str) -> CommandResult:
        self._log_command(command, "local")
        try:
            completed = subprocess.run(
                ["sh", "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            raise self._spawn_error(command, e)

        result = CommandResult(
            stdout=completed.stdout.decode('utf-8', errors='replace'),
            stderr=completed.stderr.decode('utf-8', errors='replace'),
            exit_code=completed.returncode
        )
        self._log_result(result)
        return result

    def run_interactive(self, command: str) -> int:
        self._log_command(command, "local")
        try:
            return subprocess.run(["sh", "-c", command]).returncode
        except OSError as e:
            raise self._spawn_error(command, e)

    def run_stream(self, command: str, stdout, stderr) -> int:
        self._log_command(command, "local")
        try:
            process = subprocess.Popen(
                ["sh", "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            raise self._spawn_error(command, e)

        sinks = {process.stdout: TextSink(stdout), process.stderr: TextSink(stderr)}
        selector = selectors.DefaultSelector()
        for pipe in sinks:
            selector.register(pipe, selectors.EVENT_READ)

        try:
            open_pipes = len(sinks)
            while open_pipes:
                for key, _ in selector.select():
                    data = os.read(key.fileobj.fileno(), BUFFER_SIZE)
                    if not data:
                        selector.unregister(key.fileobj)
                        open_pipes -= 1
                        continue
                    sinks[key.fileobj].write(data)
            return process.wait()
        except KeyboardInterrupt:
            self.logger.info("Streaming interrupted by user")
            process.terminate()
            process.wait()
            return INTERRUPTED_EXIT_CODE
        finally:
            selector.close()
            for pipe, sink in sinks.items():
                sink.close()
                pipe.close()

    def write_file(self, path: str, content: bytes) -> None:
        self.logger.debug(f"Writing {len(content)} bytes to {path}")
        try:
            with open(path, 'wb') as f:
                f.write(content)
        except OSError as e:
            raise TransportError(
                f"Failed to write {path}: {e}",
                error_code="WRITE_FAILED",
                details={'path': path},
                original_exception=e
            )

    def close(self) -> None:
        pass

    def is_local(self) -> bool:
        return True
