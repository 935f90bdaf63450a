"""Progress reporting for long running image transfers.

The transfer engine reports the lifecycle of every transfer unit through a
`ProgressSink`. Rendering is left to the sink implementation; the library ships
a silent sink (the default) and one that writes to the python logger.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import enum
import logging

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "UnitState",
    "ProgressEvent",
    "ProgressSink",
    "SilentProgress",
    "LoggingProgress",
]


class UnitState(str, enum.Enum):
    """State of a single transfer unit."""

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, kw_only=True)
class ProgressEvent:
    """A state transition of a transfer unit."""

    state: UnitState
    """The state the unit transitioned into."""

    title: str
    """Human readable description of the unit."""

    completed: int
    """Number of units that have succeeded so far."""

    total: int
    """Total number of units in the operation."""

    attempt: int = 0
    """Attempt number (1-based) for in-flight and retrying states."""

    error: BaseException | None = None
    """The error that caused a retry or failure."""


class ProgressSink(ABC):
    """Receives progress for a pull or push operation."""

    def start(self, title: str, total: int) -> None:
        """Called once before the first unit with the number of units."""

    @abstractmethod
    def on_event(self, event: ProgressEvent) -> None:
        """Called on every unit state transition."""

    def stop(self) -> None:
        """Called once when the operation finishes, successfully or not."""


class SilentProgress(ProgressSink):
    """A progress sink that discards all events."""

    def on_event(self, event: ProgressEvent) -> None:
        pass


class LoggingProgress(ProgressSink):
    """A progress sink that writes events to the logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        """Initialize LoggingProgress."""
        self._logger = logger or _LOGGER

    def start(self, title: str, total: int) -> None:
        self._logger.info("%s (%d total)", title, total)

    def on_event(self, event: ProgressEvent) -> None:
        prefix = f"[{event.completed}/{event.total}]"
        if event.state == UnitState.IN_FLIGHT:
            self._logger.info("%s %s", prefix, event.title)
        elif event.state == UnitState.RETRYING:
            self._logger.warning(
                "%s %s failed: %s, retrying (attempt %d)",
                prefix,
                event.title,
                event.error,
                event.attempt,
            )
        elif event.state == UnitState.FAILED:
            self._logger.error("%s %s failed: %s", prefix, event.title, event.error)
        else:
            self._logger.debug("%s %s %s", prefix, event.title, event.state.value)
