"""Backend subprocess execution with timeout escalation."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from mentor.broker.stream import StreamOutput, parse_stream
from mentor.errors import BackendExitError, BackendIOError, BackendTimeoutError, SpawnError

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_KILL_GRACE_SECONDS = 5.0

# Every backend capability that can reach the filesystem, network or a shell.
DISALLOWED_TOOLS: tuple[str, ...] = (
    "Bash",
    "Edit",
    "Write",
    "Read",
    "Glob",
    "Grep",
    "Task",
    "WebFetch",
    "WebSearch",
    "LS",
    "MultiEdit",
    "NotebookEdit",
    "TodoWrite",
)


@dataclass(frozen=True)
class Invocation:
    """Arguments for one backend run.

    `resume_session_id` selects resumption; otherwise `instructions` seed a new
    session. An `ephemeral` run carries neither and leaves no session behind.
    """

    message: str
    resume_session_id: str | None = None
    instructions: str | None = None
    ephemeral: bool = False
    timeout: float | None = None

    @property
    def is_new_session(self) -> bool:
        return self.resume_session_id is None


class ProcessHandle:
    """One spawned backend process and its two chained kill timers."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        timeout: float,
        kill_grace: float,
    ) -> None:
        self.process = process
        self.timed_out = False
        self._kill_grace = kill_grace
        self._loop = asyncio.get_running_loop()
        self._timeout_timer: asyncio.TimerHandle | None = self._loop.call_later(timeout, self._on_timeout)
        self._kill_timer: asyncio.TimerHandle | None = None

    def _on_timeout(self) -> None:
        self._timeout_timer = None
        if self.process.returncode is not None:
            return
        self.timed_out = True
        logger.warning("executor.timeout pid={} signal=SIGTERM", self.process.pid)
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()
        self._kill_timer = self._loop.call_later(self._kill_grace, self._on_grace_expired)

    def _on_grace_expired(self) -> None:
        self._kill_timer = None
        if self.process.returncode is not None:
            return
        logger.warning("executor.grace_expired pid={} signal=SIGKILL", self.process.pid)
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()

    async def communicate(self, payload: bytes) -> tuple[bytes, bytes]:
        """Write `payload` to stdin, then collect both output streams.

        Pipe errors while writing propagate to the caller.
        """
        try:
            stdin = self.process.stdin
            if stdin is not None:
                stdin.write(payload)
                await stdin.drain()
                stdin.close()
            return await self.process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await asyncio.shield(self.process.wait())
            raise
        finally:
            self.close()

    def close(self) -> None:
        for timer in (self._timeout_timer, self._kill_timer):
            if timer is not None:
                timer.cancel()
        self._timeout_timer = None
        self._kill_timer = None


class BackendExecutor:
    """Spawn the backend CLI for one invocation and parse what it prints."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        model: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace: float = DEFAULT_KILL_GRACE_SECONDS,
        disallowed_tools: Sequence[str] = DISALLOWED_TOOLS,
    ) -> None:
        self._command = list(command)
        self._model = model
        self._timeout = timeout
        self._kill_grace = kill_grace
        self._disallowed_tools = tuple(disallowed_tools)

    def build_args(self, invocation: Invocation) -> list[str]:
        args = [
            *self._command,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            self._model,
        ]
        if invocation.ephemeral:
            return args
        if invocation.resume_session_id is not None:
            args.extend(["--resume", invocation.resume_session_id])
            return args
        if invocation.instructions:
            args.extend(["--append-system-prompt", invocation.instructions])
        args.extend(["--disallowedTools", ",".join(self._disallowed_tools)])
        return args

    async def run(self, invocation: Invocation) -> StreamOutput:
        args = self.build_args(invocation)
        timeout = invocation.timeout or self._timeout
        logger.info(
            "executor.spawn new_session={} ephemeral={} resume={}",
            invocation.is_new_session,
            invocation.ephemeral,
            invocation.resume_session_id,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"failed to spawn {args[0]}: {exc}") from exc

        handle = ProcessHandle(process, timeout=timeout, kill_grace=self._kill_grace)
        try:
            stdout_bytes, stderr_bytes = await handle.communicate(invocation.message.encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The process may still be alive after the pipe broke.
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.communicate()
            if handle.timed_out:
                raise BackendTimeoutError(timeout) from exc
            logger.warning("executor.pipe_error pid={} error={!r}", process.pid, exc)
            raise BackendIOError(f"backend pipe reset: {exc!r}") from exc

        if handle.timed_out:
            raise BackendTimeoutError(timeout)

        stdout_text = (stdout_bytes or b"").decode("utf-8", errors="replace")
        stderr_text = (stderr_bytes or b"").decode("utf-8", errors="replace")
        if process.returncode != 0:
            logger.error("executor.exit returncode={} stderr={}", process.returncode, stderr_text.strip())
            raise BackendExitError(process.returncode or -1, stderr_text)
        return parse_stream(stdout_text)
