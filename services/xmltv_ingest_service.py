"""
XMLTV Stream Ingestor

Parses XMLTV guide feeds incrementally and persists guide channels and
programmes in batches, so memory stays bounded regardless of feed size.

Feeds can be local files or http(s) URLs, plain or gzip-compressed.
Before a source is processed all of its previous records are deleted,
which makes re-ingesting the same feed idempotent.
"""
import logging
import re
import time
import xml.etree.ElementTree as ET
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Union

import requests
from sqlalchemy import insert

from error_handling import SourceFetchError
from models import EpgChannel, Program, serialized_session
from services.events import PHASE_INGEST
from services.job_context import JobContext

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
CHANNEL_BATCH_SIZE = 100
PROGRAM_BATCH_SIZE = 500
CATEGORY_DELIMITER = ", "
REQUEST_TIMEOUT = 60
USER_AGENT = "epg-aggregator/1.0"
GZIP_MAGIC = b"\x1f\x8b"

_TZ_OFFSET = re.compile(r"^([+-])(\d{2})(\d{2})$")


def parse_xmltv_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an XMLTV timestamp ("20250101180000 +0100") into an aware datetime.

    Missing offsets are read as UTC. Returns None when the value can't be parsed.
    """
    if not value:
        return None
    parts = value.strip().split()
    if not parts:
        return None

    stamp = parts[0]
    parsed = None
    for fmt in ("%Y%m%d%H%M%S", "%Y%m%d%H%M"):
        try:
            parsed = datetime.strptime(stamp, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        return None

    tz = timezone.utc
    if len(parts) > 1:
        match = _TZ_OFFSET.match(parts[1])
        if not match:
            return None
        sign = -1 if match.group(1) == "-" else 1
        tz = timezone(sign * timedelta(hours=int(match.group(2)), minutes=int(match.group(3))))
    return parsed.replace(tzinfo=tz)


def format_xmltv_time(value: datetime) -> str:
    """Format an aware datetime in XMLTV form."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.strftime("%Y%m%d%H%M%S %z")


def is_remote_source(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def iter_source_chunks(source: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield raw byte chunks from a URL or a local file.

    Raises:
        SourceFetchError: on network or file errors, at any point of the stream
    """
    try:
        if is_remote_source(source):
            response = requests.get(
                source,
                stream=True,
                timeout=REQUEST_TIMEOUT,
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
            with response:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        yield chunk
        else:
            path = Path(source)
            if not path.is_file():
                raise SourceFetchError(f"Guide file not found: {source}")
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(chunk_size), b""):
                    yield chunk
    except (requests.RequestException, OSError) as e:
        raise SourceFetchError(f"Failed to read {source}: {e}") from e


def iter_decompressed(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Pass chunks through, inflating them on the fly when the stream is gzip."""
    decompressor = None
    first = True
    for chunk in chunks:
        if not chunk:
            continue
        if first:
            first = False
            if chunk[:2] == GZIP_MAGIC:
                decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        if decompressor is None:
            yield chunk
            continue
        try:
            data = decompressor.decompress(chunk)
        except zlib.error as e:
            raise SourceFetchError(f"Corrupt gzip stream: {e}") from e
        if data:
            yield data
    if decompressor is not None:
        tail = decompressor.flush()
        if tail:
            yield tail


@dataclass
class ChannelRecord:
    """A parsed <channel> element"""

    channel_id: str
    display_name: Optional[str] = None
    icon: Optional[str] = None

    def to_row(self, source: str) -> Dict:
        return {
            "channel_id": self.channel_id,
            "source": source,
            "display_name": self.display_name or self.channel_id,
            "icon": self.icon,
        }


@dataclass
class ProgramRecord:
    """A parsed <programme> element"""

    channel_id: str
    start: str
    stop: str
    title: Optional[str] = None
    sub_title: Optional[str] = None
    description: Optional[str] = None
    episode_num: Optional[str] = None
    episode_num_system: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    rating: Optional[str] = None
    icon: Optional[str] = None

    @property
    def category(self) -> Optional[str]:
        return CATEGORY_DELIMITER.join(self.categories) if self.categories else None

    def to_row(self, source: str) -> Dict:
        return {
            "channel_id": self.channel_id,
            "source": source,
            "start": self.start,
            "stop": self.stop,
            "title": self.title,
            "sub_title": self.sub_title,
            "description": self.description,
            "episode_num": self.episode_num,
            "episode_num_system": self.episode_num_system,
            "category": self.category,
            "rating": self.rating,
            "icon": self.icon,
            "enriched": False,
            "external_id": None,
        }


class XmltvStreamParser:
    """
    Event-driven XMLTV parser.

    Feed it byte chunks; each call returns the channel and programme records
    completed by that chunk. Finished elements are dropped from the tree
    right away.
    """

    def __init__(self, channel_ids: Optional[Set[str]] = None):
        self.channel_ids = channel_ids
        self.skipped = 0
        self._parser = ET.XMLPullParser(events=("start", "end"))
        self._root: Optional[ET.Element] = None
        self._record: Optional[Union[ChannelRecord, ProgramRecord]] = None
        self._in_rating = False

    def feed(self, chunk: bytes) -> List[Union[ChannelRecord, ProgramRecord]]:
        self._parser.feed(chunk)
        return self._drain()

    def close(self) -> List[Union[ChannelRecord, ProgramRecord]]:
        self._parser.close()
        return self._drain()

    def _drain(self) -> List[Union[ChannelRecord, ProgramRecord]]:
        finished: List[Union[ChannelRecord, ProgramRecord]] = []
        for event, elem in self._parser.read_events():
            if event == "start":
                self._on_start(elem)
            else:
                record = self._on_end(elem)
                if record is not None:
                    finished.append(record)
        return finished

    def _on_start(self, elem: ET.Element) -> None:
        if self._root is None:
            self._root = elem
            return

        tag = elem.tag
        if self._record is None:
            if tag == "channel":
                self._record = ChannelRecord(channel_id=(elem.get("id") or "").strip())
            elif tag == "programme":
                self._record = ProgramRecord(
                    channel_id=(elem.get("channel") or "").strip(),
                    start=(elem.get("start") or "").strip(),
                    stop=(elem.get("stop") or "").strip(),
                )
            return

        if tag == "icon" and self._record.icon is None:
            self._record.icon = elem.get("src")
        elif tag == "episode-num" and isinstance(self._record, ProgramRecord):
            if self._record.episode_num is None:
                self._record.episode_num_system = elem.get("system")
        elif tag == "rating":
            self._in_rating = True

    def _on_end(self, elem: ET.Element) -> Optional[Union[ChannelRecord, ProgramRecord]]:
        record = self._record
        if record is None or elem is self._root:
            return None

        tag = elem.tag
        if tag in ("channel", "programme"):
            self._record = None
            self._in_rating = False
            finished = self._finalize(record)
            # Top-level element is complete; drop it from the tree
            elem.clear()
            if self._root is not None:
                self._root.clear()
            return finished

        text = (elem.text or "").strip()
        if isinstance(record, ChannelRecord):
            if tag == "display-name" and text and not record.display_name:
                record.display_name = text
            return None

        if tag == "title" and text and record.title is None:
            record.title = text
        elif tag == "sub-title" and text and record.sub_title is None:
            record.sub_title = text
        elif tag == "desc" and text and record.description is None:
            record.description = text
        elif tag == "category" and text:
            record.categories.append(text)
        elif tag == "episode-num" and text and record.episode_num is None:
            record.episode_num = text
        elif tag == "value" and self._in_rating and text and record.rating is None:
            record.rating = text
        elif tag == "rating":
            self._in_rating = False
        return None

    def _finalize(self, record: Union[ChannelRecord, ProgramRecord]) -> Optional[Union[ChannelRecord, ProgramRecord]]:
        if isinstance(record, ChannelRecord):
            if not record.channel_id:
                self.skipped += 1
                return None
            if self.channel_ids is not None and record.channel_id not in self.channel_ids:
                return None
            return record

        if not record.channel_id or not record.start or not record.stop:
            self.skipped += 1
            return None
        if self.channel_ids is not None and record.channel_id not in self.channel_ids:
            return None
        start = parse_xmltv_time(record.start)
        stop = parse_xmltv_time(record.stop)
        if start is None or stop is None or stop <= start:
            self.skipped += 1
            return None
        return record


class XmltvIngestService:
    """Service for loading XMLTV feeds into storage"""

    @staticmethod
    def purge_source(source: str) -> int:
        """Delete all guide channels and programmes previously loaded from a source."""
        with serialized_session() as session:
            removed = session.query(Program).filter(Program.source == source).delete(synchronize_session=False)
            session.query(EpgChannel).filter(EpgChannel.source == source).delete(synchronize_session=False)
        logger.debug(f"Purged {removed} programmes for source {source}")
        return removed

    @staticmethod
    def _flush_channels(batch: List[ChannelRecord], source: str) -> None:
        if not batch:
            return
        rows = [record.to_row(source) for record in batch]
        with serialized_session() as session:
            session.execute(insert(EpgChannel.__table__).prefix_with("OR IGNORE"), rows)
        batch.clear()

    @staticmethod
    def _flush_programs(batch: List[ProgramRecord], source: str) -> None:
        if not batch:
            return
        rows = [record.to_row(source) for record in batch]
        with serialized_session() as session:
            session.execute(insert(Program.__table__), rows)
        batch.clear()

    @staticmethod
    def ingest_stream(
        chunks: Iterable[bytes],
        source: str,
        channel_ids: Optional[Set[str]] = None,
        replace_source: bool = True,
        include_channels: bool = True,
    ) -> Dict:
        """
        Parse a byte stream and persist its channels and programmes.

        Args:
            chunks: Raw (optionally gzip) XMLTV bytes, in chunks
            source: Source identifier stored on every record
            channel_ids: Optional - keep only records for these guide ids
            replace_source: Delete the source's previous records first
            include_channels: Store <channel> records; off when the caller writes its own

        Returns:
            Dict with counts and 'program_counts' per guide channel id

        Raises:
            SourceFetchError: on I/O failure or a stream that isn't well-formed XML
        """
        stats: Dict = {
            "source": source,
            "channels": 0,
            "programs": 0,
            "skipped": 0,
            "program_counts": {},
        }

        if replace_source:
            XmltvIngestService.purge_source(source)

        parser = XmltvStreamParser(channel_ids)
        channel_batch: List[ChannelRecord] = []
        program_batch: List[ProgramRecord] = []
        program_counts: Dict[str, int] = stats["program_counts"]

        def collect(records):
            for record in records:
                if isinstance(record, ChannelRecord):
                    if not include_channels:
                        continue
                    channel_batch.append(record)
                    stats["channels"] += 1
                    if len(channel_batch) >= CHANNEL_BATCH_SIZE:
                        XmltvIngestService._flush_channels(channel_batch, source)
                else:
                    program_batch.append(record)
                    stats["programs"] += 1
                    program_counts[record.channel_id] = program_counts.get(record.channel_id, 0) + 1
                    if len(program_batch) >= PROGRAM_BATCH_SIZE:
                        XmltvIngestService._flush_programs(program_batch, source)

        try:
            for chunk in iter_decompressed(chunks):
                collect(parser.feed(chunk))
                # Let other threads run between chunks
                time.sleep(0)
            collect(parser.close())
        except ET.ParseError as e:
            raise SourceFetchError(f"Invalid XMLTV from {source}: {e}") from e
        finally:
            XmltvIngestService._flush_channels(channel_batch, source)
            XmltvIngestService._flush_programs(program_batch, source)

        stats["skipped"] = parser.skipped
        logger.info(
            f"Ingested {source}: channels={stats['channels']}, programs={stats['programs']}, "
            f"skipped={stats['skipped']}"
        )
        return stats

    @staticmethod
    def ingest_source(source: str, channel_ids: Optional[Set[str]] = None, replace_source: bool = True) -> Dict:
        """Ingest one URL or local file."""
        return XmltvIngestService.ingest_stream(
            iter_source_chunks(source), source, channel_ids=channel_ids, replace_source=replace_source
        )

    @staticmethod
    def ingest_sources(sources: List[str], ctx: Optional[JobContext] = None) -> Dict:
        """
        Ingest several guide sources one after another.

        A source that fails is reported and skipped; the remaining sources
        are still processed.

        Returns:
            Dict with overall counts, per-source results and errors
        """
        ctx = ctx or JobContext()
        stats: Dict = {
            "success": True,
            "sources": len(sources),
            "succeeded": 0,
            "failed": 0,
            "channels": 0,
            "programs": 0,
            "results": {},
            "errors": [],
        }

        for index, source in enumerate(sources, start=1):
            ctx.progress(PHASE_INGEST, f"Loading {source}", index - 1, len(sources))
            try:
                result = XmltvIngestService.ingest_source(source)
            except SourceFetchError as e:
                logger.error(f"Failed to ingest {source}: {e}")
                ctx.log(f"Failed to load {source}: {e}", level="error", phase=PHASE_INGEST)
                stats["failed"] += 1
                stats["errors"].append({"source": source, "error": str(e)})
                continue

            stats["succeeded"] += 1
            stats["channels"] += result["channels"]
            stats["programs"] += result["programs"]
            stats["results"][source] = result
            ctx.log(
                f"Loaded {result['programs']} programmes for {result['channels']} channels from {source}",
                phase=PHASE_INGEST,
            )

        ctx.progress(PHASE_INGEST, "Guide sources loaded", len(sources), len(sources))
        stats["success"] = stats["failed"] == 0
        return stats
