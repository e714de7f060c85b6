"""Terminal device primitive and text fitting helpers.

The output multiplexers only talk to the terminal through the
``Terminal`` interface, which provides exactly what cursor-addressed
rendering needs:

- width/height of the visible window
- get the cursor row, move the cursor to a row/column
- set and reset foreground/background colors
- raw text writes, clearing the screen, showing/hiding the cursor

``AnsiTerminal`` implements it with ANSI/VT escape sequences on a text
stream (``sys.stdout`` by default). Row and column numbers are 0-based
everywhere in this package; the 1-based conversion happens here.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import sys
import unicodedata
from abc import ABC, abstractmethod
from enum import Enum
from typing import TextIO

import wcwidth

__all__ = [
    "AnsiTerminal",
    "Color",
    "Terminal",
    "display_width",
    "fit_to_width",
    "sanitize_line",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Fallback when the stream is not attached to a terminal
DEFAULT_TERMINAL_SIZE = (80, 24)

# Seconds to wait for the terminal to answer a cursor position query
CURSOR_QUERY_TIMEOUT = 0.2

ELLIPSIS = "..."

_ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"  # two-character sequences
)
_CURSOR_POSITION_RE = re.compile(rb"\x1b\[(\d+);(\d+)R")


class Color(Enum):
    """Console colors with their ANSI foreground codes."""

    BLACK = 30
    DARK_RED = 31
    DARK_GREEN = 32
    DARK_YELLOW = 33
    DARK_BLUE = 34
    DARK_MAGENTA = 35
    DARK_CYAN = 36
    GRAY = 37
    DARK_GRAY = 90
    WHITE = 97

    @property
    def foreground(self) -> str:
        return f"\x1b[{self.value}m"

    @property
    def background(self) -> str:
        return f"\x1b[{self.value + 10}m"


class Terminal(ABC):
    """Primitive terminal device used by the output multiplexers.

    Implementations are not thread safe; callers serialize access with
    the multiplexer's output lock.
    """

    @abstractmethod
    def size(self) -> tuple[int, int]:
        """Return ``(width, height)`` of the visible window in cells."""
        ...

    @abstractmethod
    def get_cursor_row(self) -> int | None:
        """Return the current cursor row, or None if it cannot be determined."""
        ...

    @abstractmethod
    def move_to(self, row: int, column: int = 0) -> None:
        ...

    @abstractmethod
    def set_colors(self, foreground: Color, background: Color) -> None:
        ...

    @abstractmethod
    def reset_colors(self) -> None:
        ...

    @abstractmethod
    def write(self, text: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        """Clear the screen and move the cursor to the top-left cell."""
        ...

    @abstractmethod
    def hide_cursor(self) -> None:
        ...

    @abstractmethod
    def show_cursor(self) -> None:
        ...

    def flush(self) -> None:
        """Flush buffered output, if the device buffers."""
        pass


class AnsiTerminal(Terminal):
    """Terminal driven by ANSI escape sequences.

    Example:
        terminal = AnsiTerminal()
        terminal.move_to(3)
        terminal.set_colors(Color.GRAY, Color.DARK_BLUE)
        terminal.write("header")
        terminal.reset_colors()
        terminal.flush()
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout

    def size(self) -> tuple[int, int]:
        try:
            size = os.get_terminal_size(self._stream.fileno())
            return size.columns, size.lines
        except (AttributeError, ValueError, OSError):
            size = shutil.get_terminal_size(fallback=DEFAULT_TERMINAL_SIZE)
            return size.columns, size.lines

    def get_cursor_row(self) -> int | None:
        """Query the cursor row with a Device Status Report (``ESC[6n``).

        Only supported on POSIX when both stdin and the output stream are
        terminals. Returns None otherwise or when the terminal does not
        answer in time.
        """
        if IS_WINDOWS:
            return None
        try:
            if not (self._stream.isatty() and sys.stdin.isatty()):
                return None
            fd = sys.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            return None

        import select
        import termios
        import tty

        old_attrs = termios.tcgetattr(fd)
        response = b""
        try:
            tty.setcbreak(fd, termios.TCSANOW)
            self._stream.write("\x1b[6n")
            self._stream.flush()
            while not response.endswith(b"R"):
                ready, _, _ = select.select([fd], [], [], CURSOR_QUERY_TIMEOUT)
                if not ready:
                    break
                response += os.read(fd, 1)
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_attrs)

        match = _CURSOR_POSITION_RE.search(response)
        if not match:
            logger.debug(f"No cursor position report, got {response!r}")
            return None
        return int(match.group(1)) - 1

    def move_to(self, row: int, column: int = 0) -> None:
        self._stream.write(f"\x1b[{max(row, 0) + 1};{max(column, 0) + 1}H")

    def set_colors(self, foreground: Color, background: Color) -> None:
        self._stream.write(foreground.foreground + background.background)

    def reset_colors(self) -> None:
        self._stream.write("\x1b[0m")

    def write(self, text: str) -> None:
        self._stream.write(text)

    def clear(self) -> None:
        self._stream.write("\x1b[2J\x1b[H")

    def hide_cursor(self) -> None:
        self._stream.write("\x1b[?25l")

    def show_cursor(self) -> None:
        self._stream.write("\x1b[?25h")

    def flush(self) -> None:
        self._stream.flush()


def sanitize_line(text: str) -> str:
    """Remove escape sequences and control characters, expand tabs.

    Child processes may emit colors or cursor movement of their own,
    which must not move the cursor out of a box.
    """
    text = _ANSI_ESCAPE_RE.sub("", text).expandtabs(8)
    return "".join(
        char for char in text if unicodedata.category(char) != "Cc"
    )


def _char_width(char: str) -> int:
    # wcwidth returns -1 for non-printable characters, treat as 0
    return max(wcwidth.wcwidth(char), 0)


def display_width(text: str) -> int:
    """Width of ``text`` in terminal cells."""
    return sum(_char_width(char) for char in text)


def _truncate_to_width(text: str, width: int) -> str:
    result = []
    used = 0
    for char in text:
        char_width = _char_width(char)
        if used + char_width > width:
            break
        result.append(char)
        used += char_width
    return "".join(result)


def fit_to_width(text: str | None, width: int) -> str:
    """Fit ``text`` to exactly ``width`` cells.

    Short text is padded with spaces. Text that is too wide is cut to
    ``width - 3`` cells and suffixed with ``"..."``; lines are never
    wrapped.

    Args:
        text: Line to fit (None is treated as an empty line)
        width: Target width in cells

    Returns:
        A string whose display width is exactly ``width``
    """
    if width <= 0:
        return ""
    text = sanitize_line(text or "")
    current = display_width(text)
    if current > width:
        if width <= len(ELLIPSIS):
            text = _truncate_to_width(text, width)
        else:
            text = _truncate_to_width(text, width - len(ELLIPSIS)) + ELLIPSIS
        current = display_width(text)
    return text + " " * (width - current)
