"""ProcessRunner unit tests.

Test coverage:
- Line streaming (stdout and stderr merged)
- Exit message and exit code
- Partial last line, CRLF and invalid UTF-8
- Spawn failures
- Cancellation and process tree termination
- Cleanup when the runner task itself is cancelled
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from unittest import mock

import pytest
from conftest import RecordingSink

from parallel_cmd.errors import SpawnError
from parallel_cmd.runtime import (
    CancellationSignal,
    OutcomeStatus,
    ProcessOutcome,
    ProcessRunner,
    ProcessSpec,
)
from parallel_cmd.runtime.process_runner import IS_WINDOWS

posix_only = pytest.mark.skipif(IS_WINDOWS, reason="uses POSIX shell commands")


# =============================================================================
# Fixtures / helpers
# =============================================================================


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with a short kill timeout for testing."""
    return ProcessRunner(kill_timeout=0.5)


def sh(script: str, cwd: Path, **kwargs) -> ProcessSpec:
    return ProcessSpec(argv=["sh", "-c", script], cwd=cwd, **kwargs)


async def wait_for_lines(sink: RecordingSink, count: int, timeout: float = 5.0) -> None:
    """Wait until the sink has received at least ``count`` lines."""
    deadline = asyncio.get_running_loop().time() + timeout
    while len(sink.lines) < count:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Timed out waiting for {count} lines, got {sink.lines}")
        await asyncio.sleep(0.01)


def is_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    try:
        # Format: pid (comm) state ...
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


async def wait_until_dead(pid: int, timeout: float = 3.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if not is_alive(pid):
            return True
        await asyncio.sleep(0.05)
    return not is_alive(pid)


# =============================================================================
# ProcessSpec
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_defaults(self, temp_workspace: Path):
        spec = ProcessSpec(argv=["echo", "hi"], cwd=temp_workspace)
        assert spec.display_name == ""
        assert spec.name == "echo hi"

    def test_display_name(self, temp_workspace: Path):
        spec = ProcessSpec(argv=["echo"], cwd=temp_workspace, display_name="echo it")
        assert spec.name == "echo it"

    def test_frozen(self, temp_workspace: Path):
        spec = ProcessSpec(argv=["echo"], cwd=temp_workspace)
        with pytest.raises(AttributeError):
            spec.cwd = Path("/")  # type: ignore[misc]


# =============================================================================
# Output streaming
# =============================================================================


@posix_only
class TestOutputStreaming:
    """Test line streaming into the sink."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_lines_then_exit_message(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        outcome = await runner.run(
            sh("echo line1; echo line2; echo line3", temp_workspace),
            sink,
            CancellationSignal(),
        )

        assert sink.lines == ["line1", "line2", "line3", "Process exited with code 0"]
        assert outcome == ProcessOutcome(OutcomeStatus.EXITED, 0)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stderr_is_merged(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        await runner.run(
            sh("echo out; echo err 1>&2; echo out2", temp_workspace),
            sink,
            CancellationSignal(),
        )
        assert sink.lines[:3] == ["out", "err", "out2"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_nonzero_exit_code(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        outcome = await runner.run(sh("exit 3", temp_workspace), sink, CancellationSignal())

        assert sink.lines == ["Process exited with code 3"]
        assert outcome.status is OutcomeStatus.EXITED
        assert outcome.returncode == 3

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_working_directory(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        await runner.run(ProcessSpec(argv=["pwd"], cwd=temp_workspace), sink, CancellationSignal())
        assert Path(sink.lines[0]).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_environment_inherited(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink, monkeypatch
    ):
        monkeypatch.setenv("PCMD_TEST_VALUE", "from-env")
        await runner.run(
            sh('echo "$PCMD_TEST_VALUE"', temp_workspace),
            sink,
            CancellationSignal(),
        )
        assert sink.lines[0] == "from-env"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_partial_last_line(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        await runner.run(sh("printf 'a\\nb'", temp_workspace), sink, CancellationSignal())
        assert sink.lines == ["a", "b", "Process exited with code 0"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_crlf_and_blank_lines(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        await runner.run(sh("printf 'a\\r\\n\\nb\\n'", temp_workspace), sink, CancellationSignal())
        assert sink.lines == ["a", "", "b", "Process exited with code 0"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_invalid_utf8_is_replaced(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        await runner.run(sh("printf 'ok \\377\\n'", temp_workspace), sink, CancellationSignal())
        assert sink.lines[0] == "ok \ufffd"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_long_line_delivered_in_pieces(
        self, temp_workspace: Path, sink: RecordingSink
    ):
        runner = ProcessRunner(line_limit=64)
        script = "printf '%0200d\\n' 0; echo next"
        await runner.run(sh(script, temp_workspace), sink, CancellationSignal())

        assert sink.lines[-1] == "Process exited with code 0"
        assert sink.lines[-2] == "next"
        pieces = sink.lines[:-2]
        assert len(pieces) > 1
        assert all(0 < len(piece) <= 64 for piece in pieces)
        assert "".join(pieces) == "0" * 200

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stdin_is_closed(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        """cat 读取 stdin 应立即得到 EOF 而不是挂起。"""
        outcome = await runner.run(
            ProcessSpec(argv=["cat"], cwd=temp_workspace), sink, CancellationSignal()
        )
        assert outcome.status is OutcomeStatus.EXITED
        assert sink.lines == ["Process exited with code 0"]


# =============================================================================
# Spawn failures
# =============================================================================


class TestSpawnErrors:
    """Test failures to start the process."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_missing_executable(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        spec = ProcessSpec(
            argv=["pcmd-definitely-not-a-command", "x"],
            cwd=temp_workspace,
            display_name="pcmd-definitely-not-a-command x",
        )
        with pytest.raises(SpawnError) as exc_info:
            await runner.run(spec, sink, CancellationSignal())

        assert exc_info.value.command == "pcmd-definitely-not-a-command x"
        assert str(temp_workspace) in str(exc_info.value)
        assert sink.lines == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_missing_working_directory(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        missing = temp_workspace / "missing"
        argv = ["cmd", "/c", "echo"] if IS_WINDOWS else ["echo", "hi"]
        with pytest.raises(SpawnError) as exc_info:
            await runner.run(ProcessSpec(argv=argv, cwd=missing), sink, CancellationSignal())

        assert exc_info.value.cwd == str(missing)
        assert isinstance(exc_info.value.cause, OSError)


# =============================================================================
# Cancellation
# =============================================================================


@posix_only
class TestCancellation:
    """Test cancellation and process tree termination."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancel_kills_running_process(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        cancel_signal = CancellationSignal()
        task = asyncio.create_task(
            runner.run(sh("echo started; exec sleep 30", temp_workspace), sink, cancel_signal)
        )
        await wait_for_lines(sink, 1)

        cancel_signal.fire()
        outcome = await task

        assert outcome.status is OutcomeStatus.KILLED
        assert sink.lines == ["started", "Process killed"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_already_fired_signal_kills_immediately(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        cancel_signal = CancellationSignal()
        cancel_signal.fire()

        outcome = await runner.run(sh("exec sleep 30", temp_workspace), sink, cancel_signal)

        assert outcome.status is OutcomeStatus.KILLED
        assert sink.lines == ["Process killed"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_cancel_kills_whole_tree(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        """子进程派生的孙进程也必须被终止。"""
        cancel_signal = CancellationSignal()
        task = asyncio.create_task(
            runner.run(sh("sleep 30 & echo $!; wait", temp_workspace), sink, cancel_signal)
        )
        await wait_for_lines(sink, 1)
        grandchild = int(sink.lines[0])
        assert is_alive(grandchild)

        cancel_signal.fire()
        outcome = await task

        assert outcome.status is OutcomeStatus.KILLED
        assert await wait_until_dead(grandchild)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancel_after_exit_does_not_kill(self, runner: ProcessRunner, sink: RecordingSink):
        """取消到达时进程已退出：不杀进程，不写消息。"""
        process = mock.Mock(pid=12345, returncode=0)

        with mock.patch.object(runner, "_kill_process_tree", new=mock.AsyncMock()) as kill:
            outcome = await runner._handle_cancellation(process, sink)

        kill.assert_not_called()
        assert outcome == ProcessOutcome(OutcomeStatus.CANCELLED_AFTER_EXIT, 0)
        assert sink.lines == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_signal_after_completion_is_harmless(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        cancel_signal = CancellationSignal()
        outcome = await runner.run(sh("echo done", temp_workspace), sink, cancel_signal)
        cancel_signal.fire()

        assert outcome.status is OutcomeStatus.EXITED
        assert sink.lines == ["done", "Process exited with code 0"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(not hasattr(os, "waitid"), reason="needs os.waitid")
    async def test_exited_but_not_yet_reaped_is_not_killed(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        """子进程已退出但事件循环尚未回收（returncode 仍为 None）：不杀进程。"""
        process = await runner._spawn(ProcessSpec(argv=["true"], cwd=temp_workspace))
        try:
            # Block until the child has terminated, leaving it unreaped
            os.waitid(os.P_PID, process.pid, os.WEXITED | os.WNOWAIT)
        except ChildProcessError:
            pass

        with mock.patch("os.killpg") as killpg:
            outcome = await runner._handle_cancellation(process, sink)

        killpg.assert_not_called()
        assert outcome == ProcessOutcome(OutcomeStatus.CANCELLED_AFTER_EXIT, 0)
        assert sink.lines == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_output_closed_waits_for_exit(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        """输出已到 EOF 时先等待进程退出，而不是立即杀死。"""
        process = await runner._spawn(
            ProcessSpec(argv=["sh", "-c", "exec >&- 2>&-; sleep 0.1"], cwd=temp_workspace)
        )
        await process.stdout.read()

        with mock.patch("os.killpg") as killpg:
            outcome = await runner._handle_cancellation(process, sink, output_closed=True)

        killpg.assert_not_called()
        assert outcome == ProcessOutcome(OutcomeStatus.CANCELLED_AFTER_EXIT, 0)
        assert sink.lines == []

    @pytest.mark.asyncio
    async def test_kill_finding_no_process_writes_nothing(
        self, runner: ProcessRunner, sink: RecordingSink
    ):
        """检查之后、杀死之前退出的进程同样不写 "Process killed"。"""
        process = mock.Mock(pid=12345, returncode=None)

        with mock.patch.object(runner, "_has_exited", return_value=False), mock.patch.object(
            runner, "_kill_process_tree", new=mock.AsyncMock(return_value=False)
        ) as kill:
            outcome = await runner._handle_cancellation(process, sink)

        kill.assert_awaited_once_with(process)
        assert outcome.status is OutcomeStatus.CANCELLED_AFTER_EXIT
        assert sink.lines == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_runner_task_cancelled_kills_process(
        self, temp_workspace: Path, runner: ProcessRunner, sink: RecordingSink
    ):
        """运行任务本身被取消时，进程同样不能成为孤儿。"""
        task = asyncio.create_task(
            runner.run(sh("echo $$; exec sleep 30", temp_workspace), sink, CancellationSignal())
        )
        await wait_for_lines(sink, 1)
        pid = int(sink.lines[0])

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await wait_until_dead(pid)


class TestKillProcessTree:
    """Test the tree kill helpers with mocked processes."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX kill path")
    async def test_already_gone(self, runner: ProcessRunner):
        process = mock.Mock(pid=12345, returncode=None)
        process.wait = mock.AsyncMock(return_value=-9)

        with mock.patch("os.getpgid", side_effect=ProcessLookupError):
            assert await runner._kill_process_tree(process) is False

        process.wait.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX kill path")
    async def test_killpg_failure_falls_back_to_kill(self, runner: ProcessRunner):
        process = mock.Mock(pid=12345, returncode=None)
        process.wait = mock.AsyncMock(return_value=-9)

        with mock.patch("os.getpgid", return_value=12345), mock.patch(
            "os.killpg", side_effect=PermissionError
        ):
            assert await runner._kill_process_tree(process) is True

        process.kill.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_windows_taskkill(self, runner: ProcessRunner):
        process = mock.Mock(pid=4321, returncode=None)
        killer = mock.Mock()
        killer.wait = mock.AsyncMock(return_value=0)

        with mock.patch(
            "asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=killer)
        ) as create:
            await runner._windows_kill_tree(process)

        assert create.call_args.args[:5] == ("taskkill", "/F", "/T", "/PID", "4321")
        process.kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_windows_taskkill_failure_falls_back_to_kill(self, runner: ProcessRunner):
        process = mock.Mock(pid=4321, returncode=None)

        with mock.patch(
            "asyncio.create_subprocess_exec", new=mock.AsyncMock(side_effect=OSError("nope"))
        ):
            await runner._windows_kill_tree(process)

        process.kill.assert_called_once()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")
def test_subprocess_kwargs_start_new_session(temp_workspace: Path):
    kwargs = ProcessRunner()._build_subprocess_kwargs(
        ProcessSpec(argv=["true"], cwd=temp_workspace)
    )
    assert kwargs == {"start_new_session": True}
