"""
Tests for the grab orchestrator: candidate fallback, site skipping and the worker pool
"""
import threading
import time
from datetime import timedelta
from unittest.mock import patch

from models import ChannelGrabStatus, EpgChannel, GrabLog, Program, Setting, SiteHealth
from services.events import PHASE_GRAB, RecordingEventSink
from services.grab_health_service import utcnow
from services.grab_orchestrator import GrabOrchestrator, grab_source_label
from services.grabber_service import GrabResult
from services.job_context import JobContext

COMMAND = ["grabber"]


def guide_xml(channel_id, count):
    programmes = "".join(
        f'<programme start="202501{day:02d}180000 +0000" stop="202501{day:02d}190000 +0000" channel="{channel_id}">'
        f"<title>Show {day}</title></programme>"
        for day in range(1, count + 1)
    )
    return f'<tv><channel id="{channel_id}"><display-name>{channel_id}</display-name></channel>{programmes}</tv>'


def fake_grabber(tmp_path, outputs):
    """Build a run_grab replacement returning a prepared file or error per site."""

    def run_grab(request, days, command=None, cwd=None):
        outcome = outputs[request.site]
        if isinstance(outcome, str) and outcome.startswith("Exit code"):
            return GrabResult(success=False, error=outcome)
        path = tmp_path / f"{request.site}.xml"
        path.write_text(outcome, encoding="utf-8")
        return GrabResult(success=True, output_path=path)

    return run_grab


class TestLoadCandidates:
    """Tests for GrabOrchestrator.load_candidates"""

    def test_ordered_and_deduplicated(self, db, make_candidate):
        """Test candidates keep corpus order and each site/site id appears once"""
        make_candidate("ESPN", "ESPN.us", site="b.example.com", site_id="1")
        make_candidate("ESPN HD", "ESPN.us", site="b.example.com", site_id="1")
        make_candidate("ESPN", "ESPN.us", site="a.example.com", site_id="espn")
        make_candidate("CNN", "CNN.us", site="a.example.com", site_id="cnn")

        candidates = GrabOrchestrator.load_candidates(["ESPN.us", "Missing.us"])

        assert [(c.site, c.site_id) for c in candidates["ESPN.us"]] == [("b.example.com", "1"), ("a.example.com", "espn")]
        assert "Missing.us" not in candidates
        assert "CNN.us" not in candidates


class TestGrabChannel:
    """Tests for the per-channel fallback chain"""

    def test_zero_programs_then_success(self, db, tmp_path, make_candidate):
        """Test a site returning no programmes counts as a failure and the next site is used"""
        make_candidate("ESPN", "ESPN.us", site="a.example.com")
        make_candidate("ESPN", "ESPN.us", site="b.example.com")
        outputs = {"a.example.com": guide_xml("Other.us", 3), "b.example.com": guide_xml("ESPN.us", 12)}

        with patch("services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)):
            stats = GrabOrchestrator.grab_channels(["ESPN.us"], concurrency=1, command=COMMAND)

        assert stats["succeeded"] == 1
        assert stats["programs"] == 12
        assert stats["results"]["ESPN.us"]["site"] == "b.example.com"
        assert Program.query.filter_by(channel_id="ESPN.us", source=grab_source_label("b.example.com")).count() == 12
        assert Program.query.filter_by(channel_id="Other.us").count() == 0
        assert EpgChannel.query.filter_by(channel_id="ESPN.us", source="grab:b.example.com").count() == 1

        logs = GrabLog.query.order_by(GrabLog.id).all()
        assert [(log.site, log.success, log.message) for log in logs] == [
            ("a.example.com", False, "Site returned 0 programs, trying next"),
            ("b.example.com", True, "Grabbed 12 programs"),
        ]
        assert logs[1].program_count == 12
        assert db.session.get(SiteHealth, "a.example.com").failure_count == 1
        assert db.session.get(SiteHealth, "b.example.com").failure_count == 0
        assert db.session.get(ChannelGrabStatus, "ESPN.us").failure_count == 0

    def test_regrab_replaces_programs(self, db, tmp_path, make_candidate):
        """Test grabbing a channel again replaces its earlier grabbed programmes"""
        make_candidate("ESPN", "ESPN.us", site="b.example.com")
        outputs = {"b.example.com": guide_xml("ESPN.us", 5)}

        with patch("services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)):
            GrabOrchestrator.grab_channels(["ESPN.us"], concurrency=1, command=COMMAND)
            GrabOrchestrator.grab_channels(["ESPN.us"], concurrency=1, command=COMMAND)

        assert Program.query.filter_by(channel_id="ESPN.us").count() == 5

    def test_cooling_site_skipped(self, db, tmp_path, make_candidate):
        """Test a site in cool-down is not invoked and not recorded as an attempt"""
        make_candidate("ESPN", "ESPN.us", site="a.example.com")
        make_candidate("ESPN", "ESPN.us", site="b.example.com")
        db.session.add(SiteHealth(site="a.example.com", failure_count=3, last_attempt=utcnow()))
        db.session.commit()
        outputs = {"b.example.com": guide_xml("ESPN.us", 4)}

        with patch(
            "services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)
        ) as mock_run:
            candidates = GrabOrchestrator.load_candidates(["ESPN.us"])["ESPN.us"]
            result = GrabOrchestrator.grab_channel("ESPN.us", candidates, 2, command=COMMAND)

        assert result["success"] is True
        assert mock_run.call_count == 1
        assert mock_run.call_args.args[0].site == "b.example.com"
        assert GrabLog.query.filter_by(site="a.example.com").count() == 0
        assert db.session.get(SiteHealth, "a.example.com").failure_count == 3

    def test_empty_grab_leaves_no_guide_channel(self, db, tmp_path, make_candidate):
        """Test an output with a channel element but no programmes stores no guide channel row"""
        make_candidate("ESPN", "ESPN.us", site="a.example.com")
        db.session.add(EpgChannel(channel_id="ESPN.us", source="grab:old.example.com", display_name="ESPN"))
        db.session.add(EpgChannel(channel_id="ESPN.us", source="feed.xml", display_name="ESPN"))
        db.session.commit()
        outputs = {"a.example.com": guide_xml("ESPN.us", 0)}

        with patch("services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)):
            stats = GrabOrchestrator.grab_channels(["ESPN.us"], concurrency=1, command=COMMAND)

        assert stats["failed"] == 1
        assert [row.source for row in EpgChannel.query.filter_by(channel_id="ESPN.us").all()] == ["feed.xml"]
        assert Program.query.count() == 0

    def test_all_sources_fail(self, db, tmp_path, make_candidate, make_channel):
        """Test exhaustion logs a summary under 'all' and counts a channel failure"""
        make_channel("ESPN", matched_epg_id="ESPN.us")
        make_candidate("ESPN", "ESPN.us", site="a.example.com")
        make_candidate("ESPN", "ESPN.us", site="b.example.com")
        Setting.set("channel_failure_threshold", "1")
        outputs = {"a.example.com": "Exit code 1: timeout", "b.example.com": "Exit code 2: blocked"}
        sink = RecordingEventSink()

        with patch("services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)):
            stats = GrabOrchestrator.grab_channels(["ESPN.us"], JobContext(sink), concurrency=1, command=COMMAND)

        assert stats["failed"] == 1
        assert stats["auto_disabled"] == ["ESPN.us"]
        messages = [(log.site, log.message) for log in GrabLog.query.order_by(GrabLog.id).all()]
        assert messages == [
            ("a.example.com", "Grab failed: Exit code 1: timeout"),
            ("b.example.com", "Grab failed: Exit code 2: blocked"),
            ("all", "All sources failed: Exit code 2: blocked"),
        ]
        status = db.session.get(ChannelGrabStatus, "ESPN.us")
        assert status.failure_count == 1
        assert status.auto_disabled is True
        assert any("auto-disabled" in event.message for event in sink.logs("warning"))
        assert sink.progress_events(PHASE_GRAB)[-1].current == 1

    def test_no_candidates(self, db):
        """Test ids without candidates are counted and leave health alone"""
        with patch("services.grab_orchestrator.GrabberService.run_grab") as mock_run:
            stats = GrabOrchestrator.grab_channels(["Nothing.us"], concurrency=1, command=COMMAND)

        assert stats["no_candidates"] == 1
        assert stats["completed"] == 0
        mock_run.assert_not_called()
        assert ChannelGrabStatus.query.count() == 0

    def test_empty_input(self, db):
        """Test nothing happens for an empty id list"""
        stats = GrabOrchestrator.grab_channels([])
        assert stats["total"] == 0


class TestWorkerPool:
    """Tests for the bounded worker pool"""

    def test_concurrency_cap(self, db, make_candidate):
        """Test no more than the configured number of channels run at once"""
        ids = [f"Channel{i}.us" for i in range(8)]
        for xmltv_id in ids:
            make_candidate(xmltv_id, xmltv_id)

        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def slow_grab(xmltv_id, candidates, days, command=None, cwd=None):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.05)
            with lock:
                state["running"] -= 1
            return {"success": True, "site": "example.com", "programs": 1, "error": None, "auto_disabled": False}

        with patch.object(GrabOrchestrator, "grab_channel", side_effect=slow_grab):
            stats = GrabOrchestrator.grab_channels(ids, concurrency=3, command=COMMAND)

        assert stats["completed"] == 8
        assert stats["succeeded"] == 8
        assert 1 < state["peak"] <= 3

    def test_settings_used_by_default(self, db, make_candidate):
        """Test days and pool size come from settings when not given"""
        make_candidate("ESPN", "ESPN.us")
        Setting.set("epg_days", "4")
        Setting.set("grabber_command", "my-grabber --fast")
        seen = {}

        def record(xmltv_id, candidates, days, command=None, cwd=None):
            seen.update(days=days, command=command)
            return {"success": False, "site": None, "programs": 0, "error": "x", "auto_disabled": False}

        with patch.object(GrabOrchestrator, "grab_channel", side_effect=record):
            GrabOrchestrator.grab_channels(["ESPN.us"])

        assert seen == {"days": 4, "command": ["my-grabber", "--fast"]}

    def test_worker_crash_is_contained(self, db, make_candidate):
        """Test an unexpected worker error fails that channel only"""
        make_candidate("ESPN", "ESPN.us")
        make_candidate("CNN", "CNN.us")

        def flaky(xmltv_id, candidates, days, command=None, cwd=None):
            if xmltv_id == "ESPN.us":
                raise RuntimeError("worker exploded")
            return {"success": True, "site": "example.com", "programs": 2, "error": None, "auto_disabled": False}

        with patch.object(GrabOrchestrator, "grab_channel", side_effect=flaky):
            stats = GrabOrchestrator.grab_channels(["ESPN.us", "CNN.us"], concurrency=2, command=COMMAND)

        assert stats["failed"] == 1
        assert stats["succeeded"] == 1
        assert stats["results"]["ESPN.us"]["error"] == "worker exploded"

    def test_site_cool_down_across_channels(self, db, tmp_path, make_candidate):
        """Test a cooling site is not run for any channel until its retry window has passed"""
        make_candidate("ESPN", "ESPN.us", site="a.example.com")
        make_candidate("CNN", "CNN.us", site="a.example.com")
        db.session.add(SiteHealth(site="a.example.com", failure_count=3, last_attempt=utcnow() - timedelta(hours=1)))
        db.session.commit()
        outputs = {"a.example.com": "Exit code 1: blocked"}

        with patch(
            "services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)
        ) as mock_run:
            stats = GrabOrchestrator.grab_channels(["ESPN.us", "CNN.us"], concurrency=1, command=COMMAND)

        mock_run.assert_not_called()
        assert stats["failed"] == 2
        assert stats["results"]["ESPN.us"]["error"] == "Site a.example.com is cooling down"

        health = db.session.get(SiteHealth, "a.example.com")
        health.last_attempt = utcnow() - timedelta(hours=21)
        db.session.commit()

        with patch(
            "services.grab_orchestrator.GrabberService.run_grab", side_effect=fake_grabber(tmp_path, outputs)
        ) as mock_run:
            GrabOrchestrator.grab_channels(["ESPN.us", "CNN.us"], concurrency=1, command=COMMAND)

        assert mock_run.call_count == 2
        assert sorted(call.args[0].xmltv_id for call in mock_run.call_args_list) == ["CNN.us", "ESPN.us"]
