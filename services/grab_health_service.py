"""
Grab Health Service - tracks grab outcomes per site and per guide channel.

This service is responsible for:
1. A cool-down breaker per grab site (skip a site after repeated failures)
2. Consecutive failure counters per guide channel
3. Auto-disabling lineup channels that keep failing, and re-enabling them
4. Read-only diagnostics over health counters and the grab log

All writes go through the shared storage lock, so worker threads can
record outcomes concurrently.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import or_

from models import (
    Channel,
    ChannelGrabStatus,
    GrabLog,
    ManualOverride,
    Setting,
    SiteHealth,
    db,
    serialized_session,
)

logger = logging.getLogger(__name__)

MAX_FAILURES_BEFORE_SKIP = 3
RETRY_INTERVAL_HOURS = 20
MAX_CHANNEL_FAILURES_BEFORE_DISABLE = 5


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_channel_ids(value: Optional[str]) -> List[int]:
    return [int(part) for part in (value or "").split(",") if part.strip().isdigit()]


class GrabHealthService:
    """Service for site cool-down and channel auto-disable bookkeeping"""

    @staticmethod
    def site_failure_threshold() -> int:
        return Setting.get_int("site_failure_threshold", MAX_FAILURES_BEFORE_SKIP)

    @staticmethod
    def site_retry_interval() -> timedelta:
        return timedelta(hours=Setting.get_float("site_retry_hours", RETRY_INTERVAL_HOURS))

    @staticmethod
    def channel_failure_threshold() -> int:
        return Setting.get_int("channel_failure_threshold", MAX_CHANNEL_FAILURES_BEFORE_DISABLE)

    # ------------------------------------------------------------------
    # Site breaker
    # ------------------------------------------------------------------

    @staticmethod
    def should_skip_site(site: str, now: Optional[datetime] = None) -> bool:
        """
        Check whether a site is in cool-down.

        A site is skipped once its consecutive failures reach the threshold and
        its last attempt is inside the retry window. Past the window it is tried
        again, whatever its failure count.
        """
        now = _as_naive_utc(now) or utcnow()
        with serialized_session() as session:
            health = session.get(SiteHealth, site)
            if not health or not health.last_attempt:
                return False
            if health.failure_count < GrabHealthService.site_failure_threshold():
                return False
            return now - health.last_attempt < GrabHealthService.site_retry_interval()

    @staticmethod
    def record_site_attempt(site: str, success: bool, now: Optional[datetime] = None) -> None:
        """Record one grab attempt against a site."""
        now = _as_naive_utc(now) or utcnow()
        with serialized_session() as session:
            health = session.get(SiteHealth, site)
            if not health:
                health = SiteHealth(site=site, failure_count=0)
                session.add(health)
            health.last_attempt = now
            if success:
                health.last_success = now
                health.failure_count = 0
            else:
                health.failure_count = (health.failure_count or 0) + 1
                if health.failure_count == GrabHealthService.site_failure_threshold():
                    logger.warning(f"Grab site {site} reached {health.failure_count} failures, cooling down")

    # ------------------------------------------------------------------
    # Channel tracker
    # ------------------------------------------------------------------

    @staticmethod
    def _lineup_channels_for(session, xmltv_id: str, status: Optional[ChannelGrabStatus] = None):
        """
        Lineup channels using a guide id, by match or override.

        Channels an earlier auto-disable turned off are included even if a
        later matching pass has since cleared their match.
        """
        override_ids = db.select(ManualOverride.channel_id).where(ManualOverride.epg_id == xmltv_id)
        conditions = [Channel.matched_epg_id == xmltv_id, Channel.id.in_(override_ids)]
        remembered = _parse_channel_ids(status.disabled_channel_ids if status else None)
        if remembered:
            conditions.append(Channel.id.in_(remembered))
        return session.query(Channel).filter(or_(*conditions))

    @staticmethod
    def _enable_lineup_channels(session, status: ChannelGrabStatus) -> int:
        enabled = GrabHealthService._lineup_channels_for(session, status.xmltv_id, status).update(
            {Channel.enabled: True}, synchronize_session=False
        )
        status.disabled_channel_ids = None
        return enabled

    @staticmethod
    def record_channel_success(xmltv_id: str, now: Optional[datetime] = None) -> None:
        """Reset a channel's failure counter and lift any auto-disable."""
        now = _as_naive_utc(now) or utcnow()
        with serialized_session() as session:
            status = session.get(ChannelGrabStatus, xmltv_id)
            if not status:
                status = ChannelGrabStatus(xmltv_id=xmltv_id)
                session.add(status)
            was_disabled = bool(status.auto_disabled)
            status.failure_count = 0
            status.last_success = now
            status.last_error = None
            status.auto_disabled = False
            if was_disabled:
                GrabHealthService._enable_lineup_channels(session, status)
                logger.info(f"Channel {xmltv_id} re-enabled after successful grab")

    @staticmethod
    def record_channel_failure(xmltv_id: str, error: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        """
        Count a failed grab for a channel.

        Returns:
            True if this failure auto-disabled the channel
        """
        now = _as_naive_utc(now) or utcnow()
        disabled_now = False
        with serialized_session() as session:
            status = session.get(ChannelGrabStatus, xmltv_id)
            if not status:
                status = ChannelGrabStatus(xmltv_id=xmltv_id, failure_count=0, auto_disabled=False)
                session.add(status)
            status.failure_count = (status.failure_count or 0) + 1
            status.last_failure = now
            status.last_error = error

            if not status.auto_disabled and status.failure_count >= GrabHealthService.channel_failure_threshold():
                status.auto_disabled = True
                disabled_now = True
                lineup = GrabHealthService._lineup_channels_for(session, xmltv_id).filter(Channel.enabled.is_(True))
                channel_ids = [row[0] for row in lineup.with_entities(Channel.id).all()]
                status.disabled_channel_ids = ",".join(str(i) for i in channel_ids) or None
                if channel_ids:
                    session.query(Channel).filter(Channel.id.in_(channel_ids)).update(
                        {Channel.enabled: False}, synchronize_session=False
                    )

        if disabled_now:
            logger.warning(f"Channel {xmltv_id} auto-disabled after repeated grab failures")
        return disabled_now

    @staticmethod
    def reenable_channels(xmltv_ids: List[str]) -> Dict:
        """
        Clear auto-disable state for the given guide ids without needing a grab.

        Returns:
            Dict with the number of status rows reset and lineup channels enabled
        """
        stats = {"requested": len(xmltv_ids), "reset": 0, "channels_enabled": 0}
        if not xmltv_ids:
            return stats

        with serialized_session() as session:
            for xmltv_id in xmltv_ids:
                status = session.get(ChannelGrabStatus, xmltv_id)
                if status:
                    status.failure_count = 0
                    status.auto_disabled = False
                    stats["reset"] += 1
                    stats["channels_enabled"] += GrabHealthService._enable_lineup_channels(session, status)
                else:
                    stats["channels_enabled"] += GrabHealthService._lineup_channels_for(session, xmltv_id).update(
                        {Channel.enabled: True}, synchronize_session=False
                    )

        logger.info(f"Re-enabled {stats['reset']} channel statuses, {stats['channels_enabled']} lineup channels")
        return stats

    # ------------------------------------------------------------------
    # Grab log
    # ------------------------------------------------------------------

    @staticmethod
    def log_attempt(
        xmltv_id: str,
        site: str,
        success: bool,
        message: str,
        program_count: int = 0,
        duration_ms: Optional[int] = None,
    ) -> None:
        """Append an entry to the grab log."""
        with serialized_session() as session:
            session.add(
                GrabLog(
                    xmltv_id=xmltv_id,
                    site=site,
                    success=success,
                    message=message,
                    program_count=program_count,
                    duration_ms=duration_ms,
                    created_at=utcnow(),
                )
            )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def get_site_health() -> List[Dict]:
        """Health counters for every site, with the current skip decision."""
        now = utcnow()
        threshold = GrabHealthService.site_failure_threshold()
        window = GrabHealthService.site_retry_interval()
        result = []
        for health in SiteHealth.query.order_by(SiteHealth.site).all():
            cooling = bool(
                health.last_attempt and health.failure_count >= threshold and now - health.last_attempt < window
            )
            result.append(
                {
                    "site": health.site,
                    "failure_count": health.failure_count,
                    "last_attempt": health.last_attempt.isoformat() if health.last_attempt else None,
                    "last_success": health.last_success.isoformat() if health.last_success else None,
                    "cooling_down": cooling,
                }
            )
        return result

    @staticmethod
    def get_disabled_channels() -> List[Dict]:
        """Guide ids currently auto-disabled."""
        rows = ChannelGrabStatus.query.filter_by(auto_disabled=True).order_by(ChannelGrabStatus.xmltv_id).all()
        return [
            {
                "xmltv_id": row.xmltv_id,
                "failure_count": row.failure_count,
                "last_failure": row.last_failure.isoformat() if row.last_failure else None,
                "last_error": row.last_error,
            }
            for row in rows
        ]

    @staticmethod
    def latest_status_per_channel() -> Dict[str, Dict]:
        """Most recent grab log entry per guide id."""
        latest_ids = db.select(db.func.max(GrabLog.id)).group_by(GrabLog.xmltv_id)
        rows = GrabLog.query.filter(GrabLog.id.in_(latest_ids)).all()
        return {
            row.xmltv_id: {
                "site": row.site,
                "success": row.success,
                "message": row.message,
                "program_count": row.program_count,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        }
