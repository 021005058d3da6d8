"""
Job context passed explicitly through pipeline entry points.

Replaces a process-global "job running" flag: the caller owns the context
and decides whether a second run may start.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from error_handling import JobInProgressError
from services.events import EventSink, LoggingEventSink

logger = logging.getLogger(__name__)


class JobContext:
    """Tracks the state of one long-running job and carries its event sink"""

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = sink or LoggingEventSink()
        self._lock = threading.Lock()
        self.name: Optional[str] = None
        self.running = False
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

    def start(self, name: str) -> None:
        """Mark a job as running. Raises JobInProgressError if one already is."""
        with self._lock:
            if self.running:
                raise JobInProgressError(f"Job '{self.name}' is already running")
            self.name = name
            self.running = True
            self.started_at = datetime.utcnow()
            self.finished_at = None
            self.last_error = None
        logger.info(f"Job started: {name}")

    def complete(self, result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        """Mark the current job as finished, recording its outcome."""
        with self._lock:
            self.running = False
            self.finished_at = datetime.utcnow()
            self.last_result = result
            self.last_error = error
        if error:
            logger.warning(f"Job finished with error: {self.name}: {error}")
        else:
            logger.info(f"Job finished: {self.name}")

    def status(self) -> Dict[str, Any]:
        """Snapshot of the job state."""
        with self._lock:
            return {
                "name": self.name,
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "last_result": self.last_result,
                "last_error": self.last_error,
            }

    # Convenience pass-throughs so services only need the context

    def log(self, message: str, level: str = "info", phase: Optional[str] = None) -> None:
        self.sink.log(message, level=level, phase=phase)

    def progress(self, phase: str, message: str, current: int, total: int) -> None:
        self.sink.progress(phase, message, current, total)
