import logging
import os
import selectors
import signal
import subprocess
import time
from typing import Dict, Optional, Tuple

from .models import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
READ_CHUNK_BYTES = 64 * 1024

_FINISHED = "finished"
_TIMED_OUT = "timed_out"
_OVERFLOW = "overflow"


def _as_text(output: bytes) -> str:
    # commands may write anything; undecodable bytes must not fail the job
    return output.decode("utf-8", errors="replace")


def _kill_group(process: subprocess.Popen) -> None:
    """SIGKILL the shell and everything it started, then reap it."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    process.wait()


class CommandExecutor:
    """Runs a job's command through the shell and reports success/failure.

    Bounded run time and captured output size live here, not in the
    dispatch logic. A command that writes more than ``max_output_bytes`` to
    stdout or stderr is killed and reported as failed; nothing beyond the
    limit is ever held in memory.
    """

    def __init__(self, timeout: Optional[float] = DEFAULT_TIMEOUT, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES):
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def __call__(self, command: str) -> ExecutionResult:
        return self.run(command)

    def run(self, command: str) -> ExecutionResult:
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return ExecutionResult(success=False, error_message=f"Failed to run command: {exc}")

        status = None
        try:
            captured, status = self._collect(process)
        finally:
            if status != _FINISHED:
                _kill_group(process)
            process.stdout.close()
            process.stderr.close()

        stdout = _as_text(captured["stdout"])
        stderr = _as_text(captured["stderr"])

        if status == _TIMED_OUT:
            logger.debug("Command timed out after %ss: %s", self.timeout, command)
            return ExecutionResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                error_message=f"Command timed out after {self.timeout:g}s",
                timed_out=True,
            )
        if status == _OVERFLOW:
            logger.debug("Command exceeded %d output bytes: %s", self.max_output_bytes, command)
            return ExecutionResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                error_message=f"Command output exceeded {self.max_output_bytes} bytes",
            )

        if process.returncode == 0:
            return ExecutionResult(success=True, exit_code=0, stdout=stdout, stderr=stderr)

        message = f"Command failed with exit code {process.returncode}"
        detail = stderr.strip()
        if detail:
            message = f"{message}: {detail[-500:]}"
        return ExecutionResult(
            success=False,
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            error_message=message,
        )

    def _collect(self, process: subprocess.Popen) -> Tuple[Dict[str, bytes], str]:
        """Read both pipes in chunks until EOF, the deadline, or the output cap."""
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        buffers = {"stdout": bytearray(), "stderr": bytearray()}

        with selectors.DefaultSelector() as selector:
            selector.register(process.stdout, selectors.EVENT_READ, "stdout")
            selector.register(process.stderr, selectors.EVENT_READ, "stderr")
            while selector.get_map():
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return self._frozen(buffers), _TIMED_OUT
                for key, _ in selector.select(remaining):
                    data = os.read(key.fd, READ_CHUNK_BYTES)
                    if not data:
                        selector.unregister(key.fileobj)
                        continue
                    buffer = buffers[key.data]
                    room = self.max_output_bytes - len(buffer)
                    buffer += data[: max(room, 0)]
                    if len(data) > room:
                        return self._frozen(buffers), _OVERFLOW

        # both pipes closed; the shell may still be running
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
        try:
            process.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            return self._frozen(buffers), _TIMED_OUT
        return self._frozen(buffers), _FINISHED

    @staticmethod
    def _frozen(buffers: Dict[str, bytearray]) -> Dict[str, bytes]:
        return {name: bytes(data) for name, data in buffers.items()}
