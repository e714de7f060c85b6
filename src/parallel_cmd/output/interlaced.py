"""Interlaced output: every line printed as ``[index] text``."""

from __future__ import annotations

import threading

from ..commands import CommandDescriptor
from .base import OutputMultiplexer, OutputSink
from .terminal import Terminal

__all__ = ["InterlacedMultiplexer", "InterlacedSink"]


class InterlacedSink(OutputSink):
    """Prints each line prefixed with the command index.

    The command itself is printed as the first line on construction so
    the user can map indexes to commands.
    """

    def __init__(
        self,
        lock: threading.RLock,
        terminal: Terminal,
        command: CommandDescriptor,
        index: int,
    ) -> None:
        self._lock = lock
        self._terminal = terminal
        self.index = index
        self.write_line(command.display_text)

    def write_line(self, text: str) -> None:
        with self._lock:
            self._terminal.write(f"[{self.index}] {text}\n")
            self._terminal.flush()


class InterlacedMultiplexer(OutputMultiplexer):
    """Multiplexer relying on natural terminal append/scroll behavior."""

    def __init__(self, terminal: Terminal | None = None) -> None:
        super().__init__(terminal)

    def create(self, command: CommandDescriptor, index: int) -> InterlacedSink:
        return InterlacedSink(self.lock, self.terminal, command, index)
