"""Process runner: spawn, stream lines, kill the tree on cancellation.

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Merged stdout/stderr streamed line by line into an output sink
- A race between process exit and the cancellation signal
- Forced termination of the whole process tree (no graceful shutdown)
- Cancel-safe cleanup using a shielded cancel scope

Key design points:
- POSIX: start_new_session=True, killed with SIGKILL to the process group
- Windows: CREATE_NEW_PROCESS_GROUP, killed with ``taskkill /F /T``
- A process that already exited when cancellation arrives is left alone
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import anyio

from ..errors import SpawnError
from ..output.base import OutputSink
from .cancellation import CancellationSignal

__all__ = [
    "OutcomeStatus",
    "ProcessOutcome",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait for the killed process to be reaped
DEFAULT_LINE_LIMIT = 1024 * 1024  # longer lines are delivered in chunks
EXIT_GRACE_PERIOD = 0.25  # wait for a process whose output already hit EOF

EXITED_MESSAGE = "Process exited with code {code}"
KILLED_MESSAGE = "Process killed"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        display_name: Text identifying the command in logs and errors
    """

    argv: list[str]
    cwd: Path
    display_name: str = ""

    @property
    def name(self) -> str:
        return self.display_name or " ".join(self.argv)


class OutcomeStatus(Enum):
    """How a run ended."""

    EXITED = "exited"
    KILLED = "killed"
    CANCELLED_AFTER_EXIT = "cancelled_after_exit"


@dataclass(frozen=True)
class ProcessOutcome:
    status: OutcomeStatus
    returncode: int | None


@dataclass
class ProcessRunner:
    """Runs one command to completion or cancellation.

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(argv=["npm", "run", "dev"], cwd=Path("/workspace"))
        outcome = await runner.run(spec, sink, cancel_signal)
    """

    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    line_limit: int = DEFAULT_LINE_LIMIT

    async def run(
        self,
        spec: ProcessSpec,
        sink: OutputSink,
        cancel_signal: CancellationSignal,
    ) -> ProcessOutcome:
        """Run the process, streaming its output into ``sink``.

        Waits for the process to exit or for ``cancel_signal``, whichever
        comes first. On exit, ``Process exited with code N`` is written to
        the sink; on cancellation of a running process, the process tree
        is killed and ``Process killed`` is written.

        Args:
            spec: Process specification
            sink: Receiver of output lines
            cancel_signal: Shared cancellation signal

        Returns:
            ProcessOutcome describing how the run ended

        Raises:
            SpawnError: If the process could not be started
        """
        process = await self._spawn(spec)
        output_closed = False
        exited = False
        outcome: ProcessOutcome | None = None

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._cancel_on_signal, cancel_signal, tg.cancel_scope)

                await self._pump_lines(process, sink)
                output_closed = True
                await process.wait()
                exited = True
                tg.cancel_scope.cancel()

            if exited:
                logger.debug(
                    f"Subprocess completed pid={process.pid} "
                    f"returncode={process.returncode}"
                )
                sink.write_line(EXITED_MESSAGE.format(code=process.returncode))
                outcome = ProcessOutcome(OutcomeStatus.EXITED, process.returncode)
            else:
                outcome = await self._handle_cancellation(process, sink, output_closed)
            return outcome

        finally:
            # Runner itself cancelled from outside: never leave an orphan
            if outcome is None and process.returncode is None:
                with anyio.CancelScope(shield=True):
                    await self._kill_process_tree(process)

    async def _spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        kwargs = self._build_subprocess_kwargs(spec)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=spec.cwd,
                limit=self.line_limit,
                **kwargs,
            )
        except OSError as e:
            logger.debug(f"Failed to start {spec.argv[0]} cwd={spec.cwd}: {e}")
            raise SpawnError(spec.name, str(spec.cwd), e) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv} cwd={spec.cwd}"
        )
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    async def _cancel_on_signal(
        cancel_signal: CancellationSignal,
        scope: anyio.CancelScope,
    ) -> None:
        await cancel_signal.wait()
        scope.cancel()

    async def _pump_lines(
        self,
        process: asyncio.subprocess.Process,
        sink: OutputSink,
    ) -> None:
        """Forward every output line to the sink until EOF.

        A trailing line without terminator is delivered at EOF. Lines
        longer than ``line_limit`` are delivered in several pieces.
        """
        stream = process.stdout
        if stream is None:
            return

        split = False
        while True:
            try:
                chunk = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # EOF: partial last line, or b"" when nothing is left
                chunk = e.partial
            except asyncio.LimitOverrunError as e:
                self._emit(sink, await stream.read(min(e.consumed, self.line_limit)))
                split = True
                continue

            if not chunk:
                break
            if split and not chunk.strip(b"\r\n"):
                # Terminator of a line already delivered in pieces
                split = False
                continue
            split = False
            self._emit(sink, chunk)

    @staticmethod
    def _emit(sink: OutputSink, chunk: bytes) -> None:
        sink.write_line(chunk.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _handle_cancellation(
        self,
        process: asyncio.subprocess.Process,
        sink: OutputSink,
        output_closed: bool = False,
    ) -> ProcessOutcome:
        if output_closed and process.returncode is None:
            # Output already at EOF, the process is most likely exiting
            with anyio.move_on_after(EXIT_GRACE_PERIOD, shield=True):
                await process.wait()

        if self._has_exited(process):
            if process.returncode is None:
                with anyio.move_on_after(self.kill_timeout, shield=True):
                    await process.wait()
            logger.debug(
                f"Cancellation after exit pid={process.pid} "
                f"returncode={process.returncode}, nothing to kill"
            )
            return ProcessOutcome(OutcomeStatus.CANCELLED_AFTER_EXIT, process.returncode)

        # No graceful interrupt, the whole tree is killed outright
        if not await self._kill_process_tree(process):
            return ProcessOutcome(OutcomeStatus.CANCELLED_AFTER_EXIT, process.returncode)
        sink.write_line(KILLED_MESSAGE)
        return ProcessOutcome(OutcomeStatus.KILLED, process.returncode)

    @staticmethod
    def _has_exited(process: asyncio.subprocess.Process) -> bool:
        """Whether the process has terminated, reaped or not.

        ``returncode`` is only set once the event loop has processed the
        child's exit, so on POSIX the child is also polled with
        ``waitid(WNOWAIT)``, which leaves it for asyncio to reap.
        """
        if process.returncode is not None:
            return True
        if IS_WINDOWS or not hasattr(os, "waitid"):
            return False
        try:
            status = os.waitid(
                os.P_PID, process.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT
            )
        except ChildProcessError:
            # Already reaped by the child watcher
            return True
        return status is not None

    async def _kill_process_tree(self, process: asyncio.subprocess.Process) -> bool:
        """Kill the process and its descendants, then wait for it.

        Args:
            process: The subprocess to kill

        Returns:
            True if the kill was delivered, False if the process was gone
        """
        pid = process.pid
        logger.debug(f"Killing subprocess tree pid={pid}")

        try:
            if IS_WINDOWS:
                await self._windows_kill_tree(process)
            else:
                self._posix_kill_tree(process)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
            return False

        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            logger.debug(
                f"Subprocess killed pid={pid} "
                f"returncode={process.returncode}"
            )
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={pid}")
        return True

    def _posix_kill_tree(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGKILL to the process group on POSIX systems.

        Args:
            process: The subprocess
        """
        try:
            # Process group ID equals pid due to start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()

    async def _windows_kill_tree(self, process: asyncio.subprocess.Process) -> None:
        """Kill the process tree on Windows with taskkill.

        Args:
            process: The subprocess
        """
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/F", "/T", "/PID", str(process.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await killer.wait()
        except OSError as e:
            logger.debug(f"taskkill failed to start, falling back to kill: {e}")
            returncode = -1

        if returncode != 0 and process.returncode is None:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
