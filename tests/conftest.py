"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from parallel_cmd.output.terminal import Color, Terminal  # noqa: E402


class ScreenTerminal(Terminal):
    """In-memory terminal with a character grid.

    Emulates just enough of a real terminal for rendering tests:
    cursor addressing, pending wrap at the right margin, scrolling at
    the bottom row, clear, colors and cursor visibility. Every call is
    also recorded in ``ops`` so tests can inspect the raw sequence.
    """

    def __init__(
        self,
        width: int = 40,
        height: int = 12,
        cursor_row: int | None = 0,
        yield_between_ops: bool = False,
    ) -> None:
        self._width = width
        self._height = height
        self._cursor_row_report = cursor_row
        self.yield_between_ops = yield_between_ops
        self.grid = [[" "] * width for _ in range(height)]
        self.row = cursor_row or 0
        self.col = 0
        self.cursor_visible = True
        self.colors: tuple[Color, Color] | None = None
        self.colored_rows: set[int] = set()
        self.scrolled = 0
        self.wraps = 0
        self.clears = 0
        self.ops: list[tuple[str, object]] = []
        self._ops_lock = threading.Lock()

    # -- Terminal interface -------------------------------------------------

    def size(self) -> tuple[int, int]:
        return self._width, self._height

    def get_cursor_row(self) -> int | None:
        return self._cursor_row_report

    def move_to(self, row: int, column: int = 0) -> None:
        self._record("move_to", (row, column))
        self.row = min(max(row, 0), self._height - 1)
        self.col = min(max(column, 0), self._width - 1)

    def set_colors(self, foreground: Color, background: Color) -> None:
        self._record("set_colors", (foreground, background))
        self.colors = (foreground, background)

    def reset_colors(self) -> None:
        self._record("reset_colors", None)
        self.colors = None

    def write(self, text: str) -> None:
        self._record("write", text)
        for char in text:
            if char == "\n":
                self._newline()
                continue
            if self.col >= self._width:
                self.wraps += 1
                self._newline()
            self.grid[self.row][self.col] = char
            if self.colors is not None:
                self.colored_rows.add(self.row)
            self.col += 1

    def clear(self) -> None:
        self._record("clear", None)
        self.clears += 1
        self.grid = [[" "] * self._width for _ in range(self._height)]
        self.row = 0
        self.col = 0

    def hide_cursor(self) -> None:
        self._record("hide_cursor", None)
        self.cursor_visible = False

    def show_cursor(self) -> None:
        self._record("show_cursor", None)
        self.cursor_visible = True

    # -- helpers ------------------------------------------------------------

    def resize(self, width: int, height: int) -> None:
        self._width = width
        self._height = height
        self.grid = [[" "] * width for _ in range(height)]
        self.row = min(self.row, height - 1)
        self.col = 0

    def line(self, row: int) -> str:
        """Row contents with trailing spaces removed."""
        return "".join(self.grid[row]).rstrip()

    def raw_line(self, row: int) -> str:
        return "".join(self.grid[row])

    @property
    def output(self) -> str:
        """Everything written, in order (for interlaced output)."""
        return "".join(str(arg) for op, arg in self.ops if op == "write")

    def _newline(self) -> None:
        self.col = 0
        if self.row >= self._height - 1:
            self.grid.pop(0)
            self.grid.append([" "] * self._width)
            self.scrolled += 1
        else:
            self.row += 1

    def _record(self, op: str, arg: object) -> None:
        with self._ops_lock:
            self.ops.append((op, arg))
        if self.yield_between_ops:
            time.sleep(0)


class RecordingSink:
    """Output sink that collects lines."""

    def __init__(self) -> None:
        self.lines: list[str] = []
        self._lock = threading.Lock()

    def write_line(self, text: str) -> None:
        with self._lock:
            self.lines.append(text)


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def screen() -> ScreenTerminal:
    """40x12 的内存终端，光标在第 0 行。"""
    return ScreenTerminal()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace
