"""Output module: sinks that multiplex command output onto one terminal.

Two output formats are supported:
- interlaced: each line printed as ``[index] text``
- boxed: one fixed, scrolling region per command, reflowed on resize
"""

from __future__ import annotations

from .base import OutputMultiplexer, OutputSink, create_multiplexer
from .boxed import BoxedMultiplexer, CommandBox, RingBuffer
from .interlaced import InterlacedMultiplexer, InterlacedSink
from .terminal import AnsiTerminal, Terminal

__all__ = [
    "AnsiTerminal",
    "BoxedMultiplexer",
    "CommandBox",
    "InterlacedMultiplexer",
    "InterlacedSink",
    "OutputMultiplexer",
    "OutputSink",
    "RingBuffer",
    "Terminal",
    "create_multiplexer",
]
