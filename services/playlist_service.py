"""
Playlist Service

Imports the user's M3U playlist into the channel lineup.

Channels are keyed by md5(url + name), so re-importing the same playlist
updates channels in place and keeps their matches and display numbers.
Channels missing from the new playlist are removed.
"""
import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List

import requests
from marshmallow import ValidationError

from error_handling import SourceFetchError
from models import Channel, ManualOverride, db, db_write_lock
from schemas import PlaylistEntrySchema
from services.matching_service import allocate_channel_number
from services.xmltv_ingest_service import USER_AGENT, is_remote_source

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30

_ATTRIBUTE = re.compile(r'([\w-]+)="([^"]*)"')


def channel_key(url: str, name: str) -> str:
    return hashlib.md5(f"{url}{name}".encode("utf-8")).hexdigest()


def parse_m3u(text: str) -> List[Dict]:
    """
    Parse M3U text into raw entries.

    Each #EXTINF line is paired with the next non-comment line (the stream URL).
    """
    entries = []
    pending = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF"):
            matches = list(_ATTRIBUTE.finditer(line))
            attrs = {m.group(1).lower(): m.group(2) for m in matches}
            # Display name follows the first comma after the attributes
            comma = line.find(",", matches[-1].end() if matches else 0)
            pending = {
                "name": line[comma + 1 :].strip() if comma >= 0 else "",
                "tvg_id": attrs.get("tvg-id"),
                "tvg_name": attrs.get("tvg-name"),
                "tvg_logo": attrs.get("tvg-logo"),
                "tvg_language": attrs.get("tvg-language"),
                "group_title": attrs.get("group-title"),
            }
        elif line.startswith("#"):
            continue
        elif pending is not None:
            pending["url"] = line
            entries.append(pending)
            pending = None
    return entries


def read_playlist(location: str) -> str:
    """Read playlist text from a URL or local file."""
    try:
        if is_remote_source(location):
            response = requests.get(location, headers={"User-Agent": USER_AGENT}, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.text
        return Path(location).read_text(encoding="utf-8", errors="replace")
    except (requests.RequestException, OSError) as e:
        raise SourceFetchError(f"Failed to read playlist {location}: {e}") from e


class PlaylistService:
    """Service for importing the channel lineup"""

    @staticmethod
    def import_entries(entries: List[Dict]) -> Dict:
        """
        Upsert lineup channels from parsed playlist entries.

        Returns:
            Dict with added/updated/removed/rejected counts
        """
        stats = {"total": len(entries), "added": 0, "updated": 0, "removed": 0, "rejected": 0}
        schema = PlaylistEntrySchema()

        with db_write_lock:
            existing = {c.channel_key: c for c in Channel.query.all()}
            seen = set()

            for raw in entries:
                try:
                    entry = schema.load(raw)
                except ValidationError as e:
                    logger.debug(f"Skipping playlist entry {raw.get('name')!r}: {e.messages}")
                    stats["rejected"] += 1
                    continue

                key = channel_key(entry["url"], entry["name"])
                if key in seen:
                    continue
                seen.add(key)

                channel = existing.get(key)
                if channel is None:
                    channel = Channel(channel_key=key, enabled=True)
                    db.session.add(channel)
                    stats["added"] += 1
                else:
                    stats["updated"] += 1
                channel.name = entry["name"]
                channel.url = entry["url"]
                channel.tvg_id = entry["tvg_id"]
                channel.tvg_name = entry["tvg_name"]
                channel.tvg_logo = entry["tvg_logo"]
                channel.lang = entry["tvg_language"]
                channel.group_title = entry["group_title"]
                if channel.channel_number is None:
                    channel.channel_number = allocate_channel_number()

            for key, channel in existing.items():
                if key not in seen:
                    ManualOverride.query.filter_by(channel_id=channel.id).delete()
                    db.session.delete(channel)
                    stats["removed"] += 1

            db.session.commit()

        logger.info(
            f"Playlist import: added={stats['added']}, updated={stats['updated']}, "
            f"removed={stats['removed']}, rejected={stats['rejected']}"
        )
        return stats

    @staticmethod
    def import_playlist(location: str) -> Dict:
        """Fetch, parse and import a playlist from a URL or file."""
        text = read_playlist(location)
        entries = parse_m3u(text)
        if not entries:
            # An empty download must not wipe the lineup
            logger.warning(f"No channels found in playlist {location}, keeping current lineup")
            return {"total": 0, "added": 0, "updated": 0, "removed": 0, "rejected": 0}
        return PlaylistService.import_entries(entries)
