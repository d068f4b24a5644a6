from __future__ import annotations

from typing import Optional


class AlertReplayError(Exception):
    """Base class for failures that abort a replay or diff run."""


class ConfigError(AlertReplayError, ValueError):
    """Invalid run configuration, reported before any query is issued."""


class ParseError(AlertReplayError, ValueError):
    def __init__(self, message: str, position: Optional[int] = None) -> None:
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)
        self.position = position


class QueryError(AlertReplayError, RuntimeError):
    """A backend query failed or returned an unusable payload."""


class EvaluationError(AlertReplayError, RuntimeError):
    """The alert state machine could not advance past a timestamp."""
