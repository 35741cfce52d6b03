"""Child process execution for the adb and fastboot tools."""

import asyncio
from typing import Callable, Optional
import logging

from pydantic import BaseModel

from flasher.errors import ToolNotFound, ToolTimeout

LineCallback = Callable[[str, str], None]

READ_SIZE = 64 * 1024
# Output without newlines is cut into lines of at most this many bytes
MAX_LINE = 1024 * 1024


class ProcessResult(BaseModel):
    """Exit status and captured output of one child process."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr together (fastboot reports on stderr)."""
        return "\n".join(s for s in (self.stdout, self.stderr) if s)


class ProcessRunner:
    """Runs one external tool invocation and streams its output."""

    def __init__(self):
        self.logger = logging.getLogger("flasher.process")

    async def run(
        self,
        args: list[str],
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ProcessResult:
        """Execute a command and wait for it to exit.

        Args:
            args: Program and arguments (no shell)
            timeout: Seconds before the child is killed; None waits forever
            on_line: Called with ("stdout"|"stderr", line) for every output line

        Returns:
            ProcessResult; a non-zero exit code is not an exception here

        Raises:
            ToolNotFound: If the program cannot be executed
            ToolTimeout: If the child outlives the timeout
        """
        self.logger.debug(f"Running: {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            self.logger.debug(f"Cannot execute {args[0]}: {e}")
            raise ToolNotFound(args[0]) from e

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        def emit(raw: bytes, name: str, sink: list[str]) -> None:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            sink.append(line)
            if on_line is not None:
                on_line(name, line)

        async def pump(stream, name: str, sink: list[str]) -> None:
            pending = b""
            while True:
                chunk = await stream.read(READ_SIZE)
                if not chunk:
                    break
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for raw in lines:
                    emit(raw, name, sink)
                while len(pending) >= MAX_LINE:
                    emit(pending[:MAX_LINE], name, sink)
                    pending = pending[MAX_LINE:]
            if pending:
                emit(pending, name, sink)

        async def communicate() -> int:
            await asyncio.gather(
                pump(process.stdout, "stdout", stdout_lines),
                pump(process.stderr, "stderr", stderr_lines),
            )
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"{args[0]} timed out after {timeout}s, killing")
            await self._kill(process)
            raise ToolTimeout(args[0], timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        except Exception:
            self.logger.error(f"Reading output of {args[0]} failed, killing", exc_info=True)
            await self._kill(process)
            raise

        result = ProcessResult(
            args=list(args),
            returncode=returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )
        self.logger.debug(f"{args[0]} exited with code {returncode}")
        return result

    async def _kill(self, process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
