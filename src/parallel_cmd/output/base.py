"""Output sink and multiplexer abstractions.

An ``OutputSink`` receives complete lines from one command. An
``OutputMultiplexer`` creates one sink per command and owns the single
lock that serializes every terminal mutation made by its sinks (and,
in boxed mode, by the resize watcher).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from types import TracebackType
from typing import TYPE_CHECKING

from .terminal import AnsiTerminal, Terminal

if TYPE_CHECKING:
    from ..commands import CommandDescriptor
    from ..config import Config

__all__ = [
    "OutputMultiplexer",
    "OutputSink",
    "create_multiplexer",
]


class OutputSink(ABC):
    """Destination for the lines of a single command.

    ``write_line`` is safe to call concurrently from any thread.
    """

    @abstractmethod
    def write_line(self, text: str) -> None:
        ...


class OutputMultiplexer(ABC):
    """Factory for output sinks sharing one terminal.

    Use as a context manager so the terminal is restored on exit:

        with create_multiplexer(config, len(commands)) as multiplexer:
            sink = multiplexer.create(command, 0)
            sink.write_line("hello")
    """

    def __init__(self, terminal: Terminal | None = None) -> None:
        self.terminal = terminal if terminal is not None else AnsiTerminal()
        # Re-entrant so a sink can be written while the lock is already held
        # by the same thread (e.g. a header written during creation).
        self.lock = threading.RLock()
        self._closed = False

    @abstractmethod
    def create(self, command: CommandDescriptor, index: int) -> OutputSink:
        """Create the sink for the command at position ``index``."""
        ...

    def close(self) -> None:
        """Restore the terminal. Safe to call more than once."""
        with self.lock:
            if self._closed:
                return
            self._closed = True
            self._restore_terminal()

    def _restore_terminal(self) -> None:
        pass

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> OutputMultiplexer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def create_multiplexer(
    config: Config,
    command_count: int,
    terminal: Terminal | None = None,
) -> OutputMultiplexer:
    """Select and construct the multiplexer for the configured output format.

    Args:
        config: Runtime configuration (output format, box size, poll interval)
        command_count: Number of commands that will get a sink
        terminal: Terminal device (defaults to ANSI on stdout)
    """
    from ..config import OutputFormat
    from .boxed import BoxedMultiplexer
    from .interlaced import InterlacedMultiplexer

    if config.output_format is OutputFormat.BOXED:
        return BoxedMultiplexer(
            command_count,
            box_size=config.box_size,
            terminal=terminal,
            resize_interval=config.resize_interval,
        )
    return InterlacedMultiplexer(terminal=terminal)
