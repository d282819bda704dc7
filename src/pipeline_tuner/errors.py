"""Exception types raised by the tuning engine."""

from __future__ import annotations


class TunerError(RuntimeError):
    """Base class for tuning-engine failures."""


class StateFileError(TunerError):
    """Raised when a pipeline state file is missing or cannot be parsed."""
