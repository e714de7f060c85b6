"""Runtime module for subprocess management.

This module provides isolated process execution with line streaming
and reliable termination of the whole process tree on cancellation.
"""

from __future__ import annotations

from .cancellation import CancellationSignal
from .process_runner import OutcomeStatus, ProcessOutcome, ProcessRunner, ProcessSpec

__all__ = [
    "CancellationSignal",
    "OutcomeStatus",
    "ProcessOutcome",
    "ProcessRunner",
    "ProcessSpec",
]
