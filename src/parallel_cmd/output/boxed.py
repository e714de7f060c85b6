"""Boxed output: one fixed, scrolling region per command.

Layout for three commands with a box height of 4::

    top ->  [header: command 0      ]
            line
            line
            line
            [header: command 1      ]
            ...
            [header: command 2      ]
            ...
    bottom  (cursor is parked here on close)

Each box keeps the most recent ``height - 1`` lines in a ring buffer and
redraws only its own rows on every write. A background ``ResizeWatcher``
polls the terminal size and reflows every box when it changes. All
terminal mutations go through the multiplexer's lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from ..commands import CommandDescriptor
from .base import OutputMultiplexer, OutputSink
from .terminal import Color, Terminal, fit_to_width

__all__ = [
    "BoxGeometry",
    "BoxedMultiplexer",
    "CommandBox",
    "ResizeWatcher",
    "RingBuffer",
    "compute_geometry",
]

logger = logging.getLogger(__name__)

DEFAULT_RESIZE_INTERVAL = 0.5

HEADER_FOREGROUND = Color.GRAY
HEADER_BACKGROUND = Color.DARK_BLUE


class RingBuffer:
    """Fixed-capacity store of the most recent lines.

    ``write_cursor`` is the next slot to overwrite. Once the buffer has
    filled up (``has_wrapped``), the logical order is
    ``slots[write_cursor:] + slots[:write_cursor]``.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"Ring buffer capacity must be at least 1, got {capacity}")
        self._slots: list[str] = [""] * capacity
        self._write_cursor = 0
        self._has_wrapped = False

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def write_cursor(self) -> int:
        return self._write_cursor

    @property
    def has_wrapped(self) -> bool:
        return self._has_wrapped

    def append(self, line: str) -> None:
        self._slots[self._write_cursor] = line
        self._write_cursor += 1
        if self._write_cursor >= len(self._slots):
            self._write_cursor = 0
            self._has_wrapped = True

    def lines(self) -> list[str]:
        """Buffered lines, oldest first."""
        if self._has_wrapped:
            return self._slots[self._write_cursor:] + self._slots[:self._write_cursor]
        return self._slots[:self._write_cursor]

    def resize(self, capacity: int) -> None:
        """Change the capacity, keeping the most recent lines.

        When shrinking, the oldest lines are dropped first.
        """
        if capacity < 1:
            raise ValueError(f"Ring buffer capacity must be at least 1, got {capacity}")
        retained = self.lines()[-capacity:]
        self._slots = [""] * capacity
        self._write_cursor = 0
        self._has_wrapped = False
        for line in retained:
            self.append(line)

    def __len__(self) -> int:
        return len(self._slots) if self._has_wrapped else self._write_cursor


@dataclass(frozen=True)
class BoxGeometry:
    """Terminal coordinates of the whole boxed display.

    Attributes:
        top: Row of the first box's header
        width: Width of every box
        height: Height of every box, header included (at least 1)
        bottom: Row the cursor is parked on when the display closes
    """

    top: int
    width: int
    height: int
    bottom: int

    def region_top(self, index: int) -> int:
        """First row of the box at ``index``."""
        return self.top + index * self.height


def compute_geometry(
    terminal_width: int,
    terminal_height: int,
    top: int,
    command_count: int,
    box_size: int | None = None,
) -> BoxGeometry:
    """Compute the box layout.

    Args:
        terminal_width: Terminal width in cells
        terminal_height: Terminal height in rows
        top: Row where the first box starts
        command_count: Number of boxes
        box_size: Explicit box height, or None to split the terminal evenly

    Returns:
        BoxGeometry with ``height >= 1`` and
        ``bottom == top + height * command_count + 1``
    """
    command_count = max(command_count, 1)
    height = max(box_size or terminal_height // command_count, 1)
    return BoxGeometry(
        top=top,
        width=terminal_width,
        height=height,
        bottom=top + height * command_count + 1,
    )


class CommandBox(OutputSink):
    """Boxed sink: a header row followed by ``height - 1`` content rows.

    A box of height 1 has no header and shows only the latest line.
    """

    def __init__(
        self,
        lock: threading.RLock,
        terminal: Terminal,
        command: CommandDescriptor,
        region_top: int,
        width: int,
        height: int,
        screen_height: int | None = None,
    ) -> None:
        self._lock = lock
        self._terminal = terminal
        self.header_text = command.display_text
        self.region_top = region_top
        self.width = width
        self.height = max(height, 1)
        self._screen_height = screen_height
        self._buffer = RingBuffer(self._capacity_for(self.height))

        with self._lock:
            self._draw_header()
            self._terminal.flush()

    @staticmethod
    def _capacity_for(height: int) -> int:
        return height - 1 if height > 1 else 1

    @property
    def has_header(self) -> bool:
        return self.height > 1

    @property
    def buffer(self) -> RingBuffer:
        return self._buffer

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return self._buffer.lines()

    def write_line(self, text: str) -> None:
        with self._lock:
            self._buffer.append(text)
            self._draw_lines()
            self._terminal.flush()

    def resize(
        self,
        region_top: int,
        width: int,
        height: int,
        screen_height: int | None = None,
    ) -> None:
        """Move the box to a new region and redraw it.

        Only called by the resize watcher, with the output lock held.
        Retained lines beyond the new capacity are dropped oldest first.
        """
        with self._lock:
            self.region_top = region_top
            self.width = width
            self.height = max(height, 1)
            self._screen_height = screen_height
            self._buffer.resize(self._capacity_for(self.height))
            self._draw_header()
            self._draw_lines()

    def _row_visible(self, row: int) -> bool:
        return self._screen_height is None or row < self._screen_height

    def _draw_header(self) -> None:
        if not self.has_header or not self._row_visible(self.region_top):
            return
        self._terminal.move_to(self.region_top)
        self._terminal.set_colors(HEADER_FOREGROUND, HEADER_BACKGROUND)
        try:
            self._terminal.write(fit_to_width(self.header_text, self.width))
        finally:
            self._terminal.reset_colors()

    def _draw_lines(self) -> None:
        # No trailing newline: every row is positioned explicitly so a
        # display that exactly fits the window never scrolls.
        row = self.region_top + (1 if self.has_header else 0)
        for line in self._buffer.lines():
            if not self._row_visible(row):
                break
            self._terminal.move_to(row)
            self._terminal.write(fit_to_width(line, self.width))
            row += 1


class ResizeWatcher:
    """Background thread polling the terminal size.

    Calls ``BoxedMultiplexer.check_resize`` every ``interval`` seconds
    until stopped.
    """

    def __init__(
        self,
        multiplexer: BoxedMultiplexer,
        interval: float = DEFAULT_RESIZE_INTERVAL,
    ) -> None:
        self._multiplexer = multiplexer
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.warning("ResizeWatcher already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="resize-watcher",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Resize watcher started (interval={self.interval}s)")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self._multiplexer.check_resize()
            except Exception as e:
                logger.warning(f"Error while reflowing boxes: {e}")


class BoxedMultiplexer(OutputMultiplexer):
    """Creates one ``CommandBox`` per command and keeps them laid out.

    On construction the cursor is hidden and the terminal is scrolled so
    the whole stack of boxes fits below the current cursor row. If the
    cursor row cannot be queried the screen is cleared and the stack
    starts at the top.
    """

    def __init__(
        self,
        command_count: int,
        box_size: int | None = None,
        terminal: Terminal | None = None,
        resize_interval: float = DEFAULT_RESIZE_INTERVAL,
        start_watcher: bool = True,
    ) -> None:
        super().__init__(terminal)
        self.command_count = command_count
        self.box_size = box_size
        self._boxes: dict[int, CommandBox] = {}

        with self.lock:
            width, height = self.terminal.size()
            self._screen_size = (width, height)
            top = self.terminal.get_cursor_row()
            if top is None:
                self.terminal.clear()
                top = 0
            self.terminal.hide_cursor()
            geometry = compute_geometry(width, height, top, command_count, box_size)
            self.geometry = self._make_room(geometry)
            self._blank_display()
            self.terminal.flush()

        logger.debug(f"Boxed display initialized: {self.geometry}")

        self._watcher = ResizeWatcher(self, resize_interval)
        if start_watcher:
            self._watcher.start()

    @property
    def watcher(self) -> ResizeWatcher:
        return self._watcher

    @property
    def boxes(self) -> list[CommandBox]:
        with self.lock:
            return [self._boxes[index] for index in sorted(self._boxes)]

    def _rows_needed(self, geometry: BoxGeometry) -> int:
        return geometry.height * self.command_count

    def _make_room(self, geometry: BoxGeometry) -> BoxGeometry:
        """Scroll the terminal so the display fits below ``geometry.top``."""
        screen_height = self._screen_size[1]
        overflow = geometry.top + self._rows_needed(geometry) - screen_height
        scroll = max(0, min(overflow, geometry.top))
        if scroll == 0:
            return geometry
        self.terminal.move_to(screen_height - 1)
        self.terminal.write("\n" * scroll)
        return compute_geometry(
            geometry.width,
            screen_height,
            geometry.top - scroll,
            self.command_count,
            self.box_size,
        )

    def _blank_display(self) -> None:
        screen_height = self._screen_size[1]
        end = min(self.geometry.top + self._rows_needed(self.geometry), screen_height)
        for row in range(self.geometry.top, end):
            self.terminal.move_to(row)
            self.terminal.write(" " * self.geometry.width)

    def create(self, command: CommandDescriptor, index: int) -> CommandBox:
        with self.lock:
            box = CommandBox(
                self.lock,
                self.terminal,
                command,
                region_top=self.geometry.region_top(index),
                width=self.geometry.width,
                height=self.geometry.height,
                screen_height=self._screen_size[1],
            )
            self._boxes[index] = box
            return box

    def check_resize(self) -> bool:
        """Reflow every box if the terminal size changed.

        Returns:
            True if the display was reflowed
        """
        size = self.terminal.size()
        if size == self._screen_size:
            return False

        with self.lock:
            if self.closed:
                return False
            width, height = size
            self._screen_size = size
            self.terminal.clear()
            self.terminal.hide_cursor()
            self.geometry = compute_geometry(
                width, height, 0, self.command_count, self.box_size
            )
            for index in sorted(self._boxes):
                self._boxes[index].resize(
                    self.geometry.region_top(index),
                    self.geometry.width,
                    self.geometry.height,
                    screen_height=height,
                )
            self.terminal.flush()

        logger.debug(f"Terminal resized to {width}x{height}, reflowed: {self.geometry}")
        return True

    def close(self) -> None:
        # Stop the watcher before taking the lock, it may be waiting for it
        self._watcher.stop()
        super().close()

    def _restore_terminal(self) -> None:
        screen_height = self._screen_size[1]
        self.terminal.reset_colors()
        if self.geometry.bottom < screen_height:
            self.terminal.move_to(self.geometry.bottom)
        else:
            self.terminal.move_to(screen_height - 1)
            self.terminal.write("\n")
        self.terminal.show_cursor()
        self.terminal.flush()
