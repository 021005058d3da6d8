"""
Event sinks for pipeline logs and progress.

Services publish structured events to a sink passed in by the caller;
they never format output for a terminal themselves.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

logger = logging.getLogger(__name__)

PHASE_INGEST = "ingest"
PHASE_MATCH = "match"
PHASE_GRAB = "grab"
PHASE_ENRICH = "enrich"


@dataclass
class PipelineEvent:
    """A single log or progress event"""

    kind: str  # 'log' or 'progress'
    message: str
    level: str = "info"
    phase: Optional[str] = None
    current: Optional[int] = None
    total: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


class EventSink:
    """Observer interface for pipeline events. The base class discards everything."""

    def log(self, message: str, level: str = "info", phase: Optional[str] = None) -> None:
        pass

    def progress(self, phase: str, message: str, current: int, total: int) -> None:
        pass


class LoggingEventSink(EventSink):
    """Forwards events to the standard logging module"""

    LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, name: str = "epg.pipeline"):
        self.logger = logging.getLogger(name)

    def log(self, message: str, level: str = "info", phase: Optional[str] = None) -> None:
        prefix = f"[{phase}] " if phase else ""
        self.logger.log(self.LEVELS.get(level, logging.INFO), f"{prefix}{message}")

    def progress(self, phase: str, message: str, current: int, total: int) -> None:
        self.logger.info(f"[{phase}] {message} ({current}/{total})")


class RecordingEventSink(EventSink):
    """Keeps every event in memory; useful for callers that render progress later"""

    def __init__(self):
        self.events: List[PipelineEvent] = []

    def log(self, message: str, level: str = "info", phase: Optional[str] = None) -> None:
        self.events.append(PipelineEvent(kind="log", message=message, level=level, phase=phase))

    def progress(self, phase: str, message: str, current: int, total: int) -> None:
        self.events.append(
            PipelineEvent(kind="progress", message=message, phase=phase, current=current, total=total)
        )

    def logs(self, level: Optional[str] = None) -> List[PipelineEvent]:
        return [e for e in self.events if e.kind == "log" and (level is None or e.level == level)]

    def progress_events(self, phase: Optional[str] = None) -> List[PipelineEvent]:
        return [e for e in self.events if e.kind == "progress" and (phase is None or e.phase == phase)]
