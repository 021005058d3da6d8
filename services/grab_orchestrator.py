"""
Grab Orchestrator

Fetches guide data for channels that have none by running the external
grabber against each channel's candidate sites.

- Channels are processed in a bounded thread pool (at most N at once).
- Within a channel, candidate sites are tried one at a time in corpus order
  until one yields programmes.
- Sites in cool-down are skipped. A site that fails or returns no programmes
  counts as a failure for that site and the next candidate is tried.
- A channel that exhausts its candidates counts as a channel failure, which
  may auto-disable it.

Storage access from worker threads is serialized; only the external grabber
runs in parallel.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import insert

from error_handling import SourceFetchError
from models import CandidateMapping, EpgChannel, Program, Setting, db, db_write_lock, serialized_session
from services.events import PHASE_GRAB
from services.grab_health_service import GrabHealthService
from services.grabber_service import GrabberService, GrabRequest
from services.job_context import JobContext
from services.xmltv_ingest_service import XmltvIngestService, iter_source_chunks

logger = logging.getLogger(__name__)

CONCURRENCY_LIMIT = 10
DEFAULT_EPG_DAYS = 2
GRAB_SOURCE_PREFIX = "grab:"
SITE_ALL = "all"


def grab_source_label(site: str) -> str:
    return f"{GRAB_SOURCE_PREFIX}{site}"


class GrabOrchestrator:
    """Service for grabbing guide data for channels through their candidate sites"""

    @staticmethod
    def load_candidates(xmltv_ids: List[str]) -> Dict[str, List[GrabRequest]]:
        """
        Candidate sites per guide id, in corpus order.

        Returns:
            Dict mapping guide id to its ordered GrabRequest list
        """
        result: Dict[str, List[GrabRequest]] = {}
        seen = set()
        BATCH_SIZE = 500
        for i in range(0, len(xmltv_ids), BATCH_SIZE):
            batch = xmltv_ids[i : i + BATCH_SIZE]
            rows = (
                CandidateMapping.query.filter(CandidateMapping.xmltv_id.in_(batch))
                .order_by(CandidateMapping.id)
                .all()
            )
            for row in rows:
                # One grab per (site, site_id) even if the corpus lists several names
                key = (row.xmltv_id, row.site, row.site_id)
                if key in seen:
                    continue
                seen.add(key)
                result.setdefault(row.xmltv_id, []).append(
                    GrabRequest(site=row.site, site_id=row.site_id, xmltv_id=row.xmltv_id, name=row.name, lang=row.lang)
                )
        return result

    @staticmethod
    def ingest_grab_output(request: GrabRequest, output_path) -> int:
        """
        Replace a channel's grabbed programmes with the grabber's output.

        The guide channel row is written only when the output held
        programmes, so an empty grab leaves nothing behind for matching.

        Returns:
            Number of programmes stored for the channel
        """
        source = grab_source_label(request.site)
        with db_write_lock:
            with serialized_session() as session:
                session.query(Program).filter(
                    Program.channel_id == request.xmltv_id,
                    Program.source.like(f"{GRAB_SOURCE_PREFIX}%"),
                ).delete(synchronize_session=False)
                session.query(EpgChannel).filter(
                    EpgChannel.channel_id == request.xmltv_id,
                    EpgChannel.source.like(f"{GRAB_SOURCE_PREFIX}%"),
                ).delete(synchronize_session=False)

            stats = XmltvIngestService.ingest_stream(
                iter_source_chunks(str(output_path)),
                source,
                channel_ids={request.xmltv_id},
                replace_source=False,
                include_channels=False,
            )
            count = stats["program_counts"].get(request.xmltv_id, 0)

            if count:
                with serialized_session() as session:
                    session.execute(
                        insert(EpgChannel.__table__).prefix_with("OR IGNORE"),
                        [{"channel_id": request.xmltv_id, "source": source, "display_name": request.name or request.xmltv_id}],
                    )
        return count

    @staticmethod
    def grab_channel(
        xmltv_id: str,
        candidates: List[GrabRequest],
        days: int,
        command: Optional[List[str]] = None,
        cwd: Optional[str] = None,
    ) -> Dict:
        """
        Try a channel's candidates in order until one yields programmes.

        Returns:
            Dict with success, site, programs, error and auto_disabled
        """
        last_error = "No candidate sites"

        for request in candidates:
            site = request.site
            if GrabHealthService.should_skip_site(site):
                logger.debug(f"Skipping {site} for {xmltv_id}: site is cooling down")
                last_error = f"Site {site} is cooling down"
                continue

            started = time.monotonic()
            result = GrabberService.run_grab(request, days, command=command, cwd=cwd)
            count = 0
            error = result.error
            if result.success:
                try:
                    count = GrabOrchestrator.ingest_grab_output(request, result.output_path)
                except SourceFetchError as e:
                    error = str(e)
                    result.success = False
                finally:
                    result.cleanup()
            duration_ms = int((time.monotonic() - started) * 1000)

            if not result.success:
                last_error = error
                GrabHealthService.record_site_attempt(site, False)
                GrabHealthService.log_attempt(xmltv_id, site, False, f"Grab failed: {error}", 0, duration_ms)
                continue

            if count == 0:
                last_error = f"Site {site} returned 0 programs"
                GrabHealthService.record_site_attempt(site, False)
                GrabHealthService.log_attempt(
                    xmltv_id, site, False, "Site returned 0 programs, trying next", 0, duration_ms
                )
                continue

            GrabHealthService.record_site_attempt(site, True)
            GrabHealthService.record_channel_success(xmltv_id)
            GrabHealthService.log_attempt(xmltv_id, site, True, f"Grabbed {count} programs", count, duration_ms)
            logger.info(f"Grabbed {count} programs for {xmltv_id} from {site}")
            return {"success": True, "site": site, "programs": count, "error": None, "auto_disabled": False}

        disabled = GrabHealthService.record_channel_failure(xmltv_id, last_error)
        GrabHealthService.log_attempt(xmltv_id, SITE_ALL, False, f"All sources failed: {last_error}")
        logger.warning(f"No guide data for {xmltv_id}: {last_error}")
        return {"success": False, "site": None, "programs": 0, "error": last_error, "auto_disabled": disabled}

    @staticmethod
    def _grab_in_context(app, xmltv_id, candidates, days, command, cwd) -> Dict:
        with app.app_context():
            return GrabOrchestrator.grab_channel(xmltv_id, candidates, days, command=command, cwd=cwd)

    @staticmethod
    def grab_channels(
        xmltv_ids: List[str],
        ctx: Optional[JobContext] = None,
        days: Optional[int] = None,
        concurrency: Optional[int] = None,
        command: Optional[List[str]] = None,
        cwd: Optional[str] = None,
    ) -> Dict:
        """
        Grab guide data for a set of guide ids.

        Args:
            xmltv_ids: Guide ids needing data
            ctx: Optional job context receiving progress events
            days: Optional day span (defaults to the epg_days setting)
            concurrency: Optional pool size (defaults to the grab_concurrency setting)
            command: Optional grabber command (defaults to the grabber_command setting)
            cwd: Optional grabber working directory

        Returns:
            Dict with total/completed/succeeded/failed counts and per-channel results
        """
        ctx = ctx or JobContext()
        ids = list(dict.fromkeys(i for i in xmltv_ids if i))
        stats: Dict = {
            "total": len(ids),
            "completed": 0,
            "succeeded": 0,
            "failed": 0,
            "no_candidates": 0,
            "programs": 0,
            "auto_disabled": [],
            "results": {},
        }
        if not ids:
            return stats

        days = days or Setting.get_int("epg_days", DEFAULT_EPG_DAYS)
        concurrency = max(1, concurrency or Setting.get_int("grab_concurrency", CONCURRENCY_LIMIT))
        if command is None:
            command = GrabberService.get_command()
            cwd = cwd or Setting.get("grabber_workdir", "") or None
        candidates = GrabOrchestrator.load_candidates(ids)

        targets = []
        for xmltv_id in ids:
            if candidates.get(xmltv_id):
                targets.append(xmltv_id)
            else:
                stats["no_candidates"] += 1
                stats["results"][xmltv_id] = {"success": False, "error": "No candidate sites"}
        if stats["no_candidates"]:
            ctx.log(f"{stats['no_candidates']} channels have no candidate sites", level="warning", phase=PHASE_GRAB)

        # Workers use their own sessions; nothing may stay pending here
        db.session.commit()

        app = current_app._get_current_object()
        total = len(targets)
        ctx.log(f"Grabbing {total} channels with up to {concurrency} at a time", phase=PHASE_GRAB)
        ctx.progress(PHASE_GRAB, "Starting grab", 0, total)

        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            futures = {
                pool.submit(
                    GrabOrchestrator._grab_in_context, app, xmltv_id, candidates[xmltv_id], days, command, cwd
                ): xmltv_id
                for xmltv_id in targets
            }
            for future in as_completed(futures):
                xmltv_id = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.error(f"Grab worker for {xmltv_id} crashed: {e}", exc_info=True)
                    outcome = {"success": False, "error": str(e), "programs": 0, "auto_disabled": False}

                stats["completed"] += 1
                stats["results"][xmltv_id] = outcome
                if outcome["success"]:
                    stats["succeeded"] += 1
                    stats["programs"] += outcome["programs"]
                    message = f"{xmltv_id}: {outcome['programs']} programs from {outcome['site']}"
                else:
                    stats["failed"] += 1
                    message = f"{xmltv_id}: failed ({outcome['error']})"
                    if outcome.get("auto_disabled"):
                        stats["auto_disabled"].append(xmltv_id)
                        ctx.log(f"{xmltv_id} auto-disabled after repeated failures", level="warning", phase=PHASE_GRAB)
                ctx.progress(PHASE_GRAB, message, stats["completed"], total)

        logger.info(
            f"Grab finished: succeeded={stats['succeeded']}, failed={stats['failed']}, "
            f"no_candidates={stats['no_candidates']}, programs={stats['programs']}"
        )
        ctx.log(f"Grab finished: {stats['succeeded']}/{total} channels succeeded", phase=PHASE_GRAB)
        return stats
