"""
Tests for job context and event sinks
"""
import logging

import pytest

from error_handling import JobInProgressError
from services.events import PHASE_GRAB, EventSink, LoggingEventSink, RecordingEventSink
from services.job_context import JobContext


class TestJobContext:
    """Tests for JobContext"""

    def test_second_start_rejected(self):
        """Test a job can't start while another is running"""
        ctx = JobContext(sink=EventSink())
        ctx.start("grab")

        with pytest.raises(JobInProgressError):
            ctx.start("match")

        assert ctx.status()["name"] == "grab"

    def test_complete_allows_restart(self):
        """Test a finished job frees the context"""
        ctx = JobContext(sink=EventSink())
        ctx.start("grab")
        ctx.complete({"channels": 3})
        ctx.start("match")

        assert ctx.status()["running"] is True
        assert ctx.status()["last_result"] == {"channels": 3}

    def test_status_after_error(self):
        """Test the error of the last run is reported"""
        ctx = JobContext(sink=EventSink())
        ctx.start("ingest")
        ctx.complete(error="feed unreachable")

        status = ctx.status()
        assert status["running"] is False
        assert status["last_error"] == "feed unreachable"
        assert status["started_at"] is not None
        assert status["finished_at"] is not None

    def test_events_forwarded_to_sink(self):
        """Test log and progress calls reach the sink"""
        sink = RecordingEventSink()
        ctx = JobContext(sink=sink)

        ctx.log("Grab failed: timeout", level="error", phase=PHASE_GRAB)
        ctx.progress(PHASE_GRAB, "Grabbing", 1, 4)

        assert [e.message for e in sink.logs("error")] == ["Grab failed: timeout"]
        progress = sink.progress_events(PHASE_GRAB)
        assert (progress[0].current, progress[0].total) == (1, 4)


class TestEventSinks:
    """Tests for the event sink implementations"""

    def test_recording_filters(self):
        """Test recorded events can be filtered by level and phase"""
        sink = RecordingEventSink()
        sink.log("a")
        sink.log("b", level="warning")
        sink.progress("match", "m", 1, 2)
        sink.progress("grab", "g", 1, 2)

        assert len(sink.logs()) == 2
        assert [e.message for e in sink.logs("warning")] == ["b"]
        assert [e.message for e in sink.progress_events("grab")] == ["g"]

    def test_logging_sink(self, caplog):
        """Test the logging sink prefixes the phase"""
        sink = LoggingEventSink("test.pipeline")

        with caplog.at_level(logging.INFO, logger="test.pipeline"):
            sink.log("Grabbed 12 programs", phase="grab")
            sink.progress("match", "Matching", 2, 5)

        assert "[grab] Grabbed 12 programs" in caplog.text
        assert "[match] Matching (2/5)" in caplog.text
