"""
Metadata Enrichment Service

Adds genres, ratings and an external show id to programmes using the
TVMaze single-search API (https://www.tvmaze.com/api).

Lookups are keyed by a normalized title and cached for CACHE_TTL_DAYS,
including misses, so repeated passes only query titles not seen before.
Calls are strictly sequential with a fixed delay between them.
"""
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests

from error_handling import MetadataLookupError
from models import MetadataCacheEntry, Program, Setting, db, serialized_session
from services.events import PHASE_ENRICH
from services.grab_health_service import utcnow
from services.job_context import JobContext

logger = logging.getLogger(__name__)

TVMAZE_SEARCH_URL = "https://api.tvmaze.com/singlesearch/shows"
REQUEST_TIMEOUT = 10
REQUEST_DELAY = 0.1  # Seconds between external calls
CACHE_TTL_DAYS = 7
MIN_TITLE_LENGTH = 2
PROGRESS_EVERY = 25

_QUALITY_TOKENS = re.compile(r"\b(?:hd|sd|fhd|uhd|4k|1080p|720p|480p|hevc|h\.?264|x264|x265)\b")
_EPISODE_MARKER = re.compile(r"\bs?\d{1,2}[ex]\d{1,2}\b")
_SEASON_WORD = re.compile(r"\bseason\s*\d+\b")
_EPISODE_WORD = re.compile(r"\bepisode\s*\d+\b")
_PAREN_YEAR = re.compile(r"\(\d{4}\)")
_NON_WORD = re.compile(r"[^\w\s]|_")


def _strip_noise(value: str) -> str:
    value = _QUALITY_TOKENS.sub("", value)
    value = _EPISODE_MARKER.sub("", value)
    value = _SEASON_WORD.sub("", value)
    value = _EPISODE_WORD.sub("", value)
    value = _PAREN_YEAR.sub("", value)
    value = _NON_WORD.sub(" ", value)
    return " ".join(value.split())


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a programme title for metadata lookup.

    Examples:
        "The Simpsons: Homer's Odyssey" -> "the simpsons"
        "TV: Special Show" -> "tv special show"
        "Doctor Who (2005) S01E02 HD" -> "doctor who"
    """
    if not title:
        return ""
    show_name = title
    if ":" in title:
        first_part = title.split(":")[0].strip()
        if len(first_part) > 2:
            show_name = first_part

    value = show_name.lower()
    # Removing one token can expose another; repeat until nothing changes
    for _ in range(10):
        stripped = _strip_noise(value)
        if stripped == value:
            break
        value = stripped
    return value


@dataclass
class ShowMetadata:
    """Result of a successful show lookup"""

    external_id: str
    name: str
    genres: List[str]
    rating: Optional[str] = None

    @property
    def genres_text(self) -> str:
        return ", ".join(self.genres)


class TvMazeClient:
    """Thin client for TVMaze show search"""

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = REQUEST_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    def lookup(self, title: str) -> Optional[ShowMetadata]:
        """
        Search for a show by normalized title.

        Returns:
            ShowMetadata, or None when TVMaze has no match

        Raises:
            MetadataLookupError: on network errors or unexpected responses
        """
        try:
            response = self.session.get(TVMAZE_SEARCH_URL, params={"q": title}, timeout=self.timeout)
        except requests.RequestException as e:
            raise MetadataLookupError(f"TVMaze request failed: {e}") from e

        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise MetadataLookupError(f"TVMaze returned an invalid response: {e}") from e

        if not data or data.get("id") is None:
            return None
        average = (data.get("rating") or {}).get("average")
        return ShowMetadata(
            external_id=str(data["id"]),
            name=data.get("name") or title,
            genres=[g for g in (data.get("genres") or []) if g],
            rating=str(average) if average is not None else None,
        )


class EnrichmentService:
    """Service for enriching programmes with external show metadata"""

    @staticmethod
    def get_cached(normalized: str, now: Optional[datetime] = None) -> Optional[MetadataCacheEntry]:
        """Cache entry for a normalized title, or None if missing or expired."""
        now = now or utcnow()
        entry = db.session.get(MetadataCacheEntry, normalized)
        if not entry or not entry.cached_at:
            return None
        if now - entry.cached_at > timedelta(days=CACHE_TTL_DAYS):
            return None
        return entry

    @staticmethod
    def cache_result(normalized: str, show: Optional[ShowMetadata], now: Optional[datetime] = None) -> None:
        """Store a lookup outcome, overwriting any expired entry."""
        now = now or utcnow()
        with serialized_session() as session:
            entry = session.get(MetadataCacheEntry, normalized)
            if not entry:
                entry = MetadataCacheEntry(normalized_title=normalized)
                session.add(entry)
            entry.found = show is not None
            entry.external_id = show.external_id if show else None
            entry.genres = show.genres_text if show else None
            entry.rating = show.rating if show else None
            entry.cached_at = now

    @staticmethod
    def _apply(title: str, external_id: Optional[str], genres: Optional[str], rating: Optional[str]) -> int:
        """
        Mark every unenriched programme with this raw title as enriched.

        Only external_id, empty category/rating and the flag are written, so
        concurrent updates to other columns are left alone.
        """
        values = {Program.enriched: True}
        if external_id:
            values[Program.external_id] = external_id
            if genres:
                values[Program.category] = db.func.coalesce(db.func.nullif(Program.category, ""), genres)
            if rating:
                values[Program.rating] = db.func.coalesce(db.func.nullif(Program.rating, ""), rating)
        with serialized_session() as session:
            return (
                session.query(Program)
                .filter(Program.title == title, Program.enriched.is_(False))
                .update(values, synchronize_session=False)
            )

    @staticmethod
    def run_pass(
        ctx: Optional[JobContext] = None,
        client: Optional[TvMazeClient] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict:
        """
        Enrich every programme title not yet marked enriched.

        Args:
            ctx: Optional job context for progress
            client: Optional lookup client (defaults to TvMazeClient)
            force: Run even if metadata_enrichment_enabled is off
            now: Optional clock for cache expiry

        Returns:
            Dict with counts of titles matched, not found, skipped and served from cache
        """
        ctx = ctx or JobContext()
        stats = {
            "success": True,
            "enabled": True,
            "titles": 0,
            "programs": 0,
            "enriched": 0,
            "not_found": 0,
            "skipped": 0,
            "from_cache": 0,
            "api_calls": 0,
            "api_errors": 0,
        }

        if not force and not Setting.get_bool("metadata_enrichment_enabled"):
            stats["enabled"] = False
            logger.info("Metadata enrichment is disabled, skipping")
            return stats

        client = client or TvMazeClient()

        # Untitled programmes can never be looked up
        with serialized_session() as session:
            stats["skipped"] += (
                session.query(Program)
                .filter(Program.enriched.is_(False), db.or_(Program.title.is_(None), Program.title == ""))
                .update({Program.enriched: True}, synchronize_session=False)
            )

        titles = [
            row[0]
            for row in db.session.query(Program.title)
            .filter(Program.enriched.is_(False), Program.title.isnot(None))
            .distinct()
            .order_by(Program.title)
            .all()
        ]
        stats["titles"] = len(titles)
        ctx.log(f"Enriching {len(titles)} titles", phase=PHASE_ENRICH)

        for index, title in enumerate(titles, start=1):
            normalized = normalize_title(title)

            if len(normalized) < MIN_TITLE_LENGTH:
                stats["programs"] += EnrichmentService._apply(title, None, None, None)
                stats["skipped"] += 1
            else:
                entry = EnrichmentService.get_cached(normalized, now)
                if entry:
                    stats["from_cache"] += 1
                    external_id, genres, rating = entry.external_id, entry.genres, entry.rating
                    found = entry.found
                else:
                    time.sleep(REQUEST_DELAY)
                    stats["api_calls"] += 1
                    try:
                        show = client.lookup(normalized)
                    except MetadataLookupError as e:
                        logger.warning(f"Metadata lookup failed for '{title}': {e}")
                        stats["api_errors"] += 1
                        show = None
                    else:
                        EnrichmentService.cache_result(normalized, show, now)
                    found = show is not None
                    external_id = show.external_id if show else None
                    genres = show.genres_text if show else None
                    rating = show.rating if show else None

                if found:
                    stats["programs"] += EnrichmentService._apply(title, external_id, genres, rating)
                    stats["enriched"] += 1
                else:
                    stats["programs"] += EnrichmentService._apply(title, None, None, None)
                    stats["not_found"] += 1

            if index % PROGRESS_EVERY == 0 or index == len(titles):
                ctx.progress(
                    PHASE_ENRICH,
                    f"Enriching: {stats['enriched']} matched, {stats['from_cache']} cached",
                    index,
                    len(titles),
                )

        logger.info(
            f"Enrichment complete: matched={stats['enriched']}, not_found={stats['not_found']}, "
            f"skipped={stats['skipped']}, cached={stats['from_cache']}, api_calls={stats['api_calls']}"
        )
        return stats

    @staticmethod
    def get_stats() -> Dict:
        return {
            "cached_titles": MetadataCacheEntry.query.count(),
            "enriched_programs": Program.query.filter(Program.enriched.is_(True)).count(),
            "pending_programs": Program.query.filter(Program.enriched.is_(False)).count(),
        }

    @staticmethod
    def clear_cache() -> Dict:
        """Forget every cached lookup and mark all programmes for re-enrichment."""
        with serialized_session() as session:
            reset = session.query(Program).update(
                {Program.enriched: False, Program.external_id: None}, synchronize_session=False
            )
            removed = session.query(MetadataCacheEntry).delete(synchronize_session=False)
        logger.info(f"Enrichment cache cleared: {removed} entries, {reset} programmes reset")
        return {"cache_entries_removed": removed, "programs_reset": reset}
