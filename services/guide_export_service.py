"""
Guide Export Service

Housekeeping and output for the merged guide:
- cleanup_guide_data() drops programmes that have ended and guide data no
  enabled channel points at
- export_guide() writes one XMLTV file (and optionally an M3U playlist) for
  the enabled, matched lineup, with one schedule per channel
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from models import Channel, EpgChannel, ManualOverride, Program, db, serialized_session
from services.xmltv_ingest_service import parse_xmltv_time
from services.xmltv_writer import XmltvWriter

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 500


def effective_channels() -> List[Dict]:
    """Enabled channels with the guide id they use (override first, then match)."""
    overrides = {o.channel_id: o.epg_id for o in ManualOverride.query.all()}
    result = []
    for channel in Channel.query.filter_by(enabled=True).order_by(Channel.channel_number, Channel.id).all():
        epg_id = overrides.get(channel.id) or channel.matched_epg_id
        result.append({"channel": channel, "epg_id": epg_id})
    return result


class GuideExportService:
    """Service for pruning and exporting the merged guide"""

    @staticmethod
    def cleanup_guide_data(now: Optional[datetime] = None) -> Dict:
        """
        Remove ended programmes and guide data nothing in the lineup uses.

        Returns:
            Dict with expired_removed, orphaned_removed and channels_removed counts
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        stats = {"expired_removed": 0, "orphaned_removed": 0, "channels_removed": 0}

        valid_ids = {row["epg_id"] for row in effective_channels() if row["epg_id"]}

        expired = []
        orphaned = []
        for program_id, channel_id, stop in db.session.query(Program.id, Program.channel_id, Program.stop).yield_per(
            1000
        ):
            stop_at = parse_xmltv_time(stop)
            if stop_at is not None and stop_at < now:
                expired.append(program_id)
            elif channel_id not in valid_ids:
                orphaned.append(program_id)

        with serialized_session() as session:
            for ids, key in ((expired, "expired_removed"), (orphaned, "orphaned_removed")):
                for i in range(0, len(ids), DELETE_BATCH_SIZE):
                    batch = ids[i : i + DELETE_BATCH_SIZE]
                    stats[key] += (
                        session.query(Program).filter(Program.id.in_(batch)).delete(synchronize_session=False)
                    )
            stale_channels = session.query(EpgChannel).filter(EpgChannel.channel_id.notin_(valid_ids))
            stats["channels_removed"] = stale_channels.delete(synchronize_session=False)

        logger.info(
            f"Guide cleanup: expired={stats['expired_removed']}, orphaned={stats['orphaned_removed']}, "
            f"guide_channels={stats['channels_removed']}"
        )
        return stats

    @staticmethod
    def export_guide(xml_path: str, m3u_path: Optional[str] = None) -> Dict:
        """
        Write the merged guide for enabled, matched channels.

        Programmes for the same guide id and start time coming from several
        sources are written once, from the source loaded first.

        Returns:
            Dict with channel and programme counts
        """
        stats = {"channels": 0, "programs": 0, "duplicates_dropped": 0, "playlist_entries": 0}
        rows = [row for row in effective_channels() if row["epg_id"]]

        guide_meta: Dict[str, EpgChannel] = {}
        for gc in EpgChannel.query.order_by(EpgChannel.id).all():
            guide_meta.setdefault(gc.channel_id, gc)

        epg_ids: List[str] = []
        fallback: Dict[str, Channel] = {}
        for row in rows:
            if row["epg_id"] not in fallback:
                fallback[row["epg_id"]] = row["channel"]
                epg_ids.append(row["epg_id"])

        Path(xml_path).parent.mkdir(parents=True, exist_ok=True)
        with open(xml_path, "wb") as f:
            writer = XmltvWriter(f)
            writer.start_document()
            for epg_id in epg_ids:
                meta = guide_meta.get(epg_id)
                channel = fallback[epg_id]
                writer.write_channel(
                    epg_id,
                    (meta.display_name if meta else None) or channel.name,
                    (meta.icon if meta else None) or channel.tvg_logo,
                )
                stats["channels"] += 1

            for epg_id in epg_ids:
                seen_starts = set()
                programs = Program.query.filter_by(channel_id=epg_id).order_by(Program.id)
                for program in sorted(programs.all(), key=lambda p: parse_xmltv_time(p.start)):
                    if program.start in seen_starts:
                        stats["duplicates_dropped"] += 1
                        continue
                    seen_starts.add(program.start)
                    writer.write_programme(
                        {
                            "channel_id": program.channel_id,
                            "start": program.start,
                            "stop": program.stop,
                            "title": program.title,
                            "sub_title": program.sub_title,
                            "description": program.description,
                            "category": program.category,
                            "episode_num": program.episode_num,
                            "episode_num_system": program.episode_num_system,
                            "rating": program.rating,
                            "icon": program.icon,
                        }
                    )
                    stats["programs"] += 1
            writer.end_document()

        if m3u_path:
            stats["playlist_entries"] = GuideExportService.write_playlist(m3u_path, rows)

        logger.info(
            f"Exported guide to {xml_path}: channels={stats['channels']}, programs={stats['programs']}, "
            f"duplicates_dropped={stats['duplicates_dropped']}"
        )
        return stats

    @staticmethod
    def write_playlist(m3u_path: str, rows: List[Dict]) -> int:
        """Write an M3U playlist of matched channels pointing at their guide ids."""

        def attr(value) -> str:
            return str(value or "").replace('"', "'")

        Path(m3u_path).parent.mkdir(parents=True, exist_ok=True)
        with open(m3u_path, "w", encoding="utf-8") as f:
            f.write("#EXTM3U\n")
            for row in rows:
                channel = row["channel"]
                number = f' tvg-chno="{channel.channel_number}"' if channel.channel_number else ""
                f.write(
                    f'#EXTINF:-1 tvg-id="{attr(row["epg_id"])}"{number} tvg-logo="{attr(channel.tvg_logo)}" '
                    f'group-title="{attr(channel.group_title)}",{channel.name}\n{channel.url}\n'
                )
        return len(rows)
