"""
Channel Matching Service

Resolves lineup channels to guide channel ids.

Two passes:
1. Guide matching, against guide channels already ingested. Tiers, first hit wins:
   confirmed match, manual override, kept candidate match, exact id, partial id,
   normalized name, fuzzy name. A candidate match whose guide id has no ingested
   channel yet (it is still waiting for a grab) is kept as is.
2. Candidate matching, against the community corpus of grab candidates. Tiers:
   exact id, normalized name, fuzzy name. This pass also hands out display numbers.

Precedence is the same in both passes: an existing confirmed match beats a
manual override, which beats every automatic tier. Setting or clearing an
override is the only way to move a confirmed channel.
"""
import logging
import re
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from error_handling import ResourceNotFoundError
from models import CandidateMapping, Channel, EpgChannel, ManualOverride, Program, Setting, db, db_write_lock
from schemas import OverrideSchema, load_or_raise
from services.events import PHASE_MATCH
from services.job_context import JobContext

logger = logging.getLogger(__name__)

STARTING_CHANNEL_NUMBER = 700
GUIDE_FUZZY_THRESHOLD = 0.25
CANDIDATE_FUZZY_THRESHOLD = 0.3
NAME_WEIGHT = 1.0
ID_WEIGHT = 0.8

MATCH_CONFIRMED = "confirmed"
MATCH_OVERRIDE = "override"
MATCH_EXACT_ID = "exact_id"
MATCH_PARTIAL_ID = "partial_id"
MATCH_EXACT_NAME = "exact_name"
MATCH_FUZZY = "fuzzy"
MATCH_CANDIDATE_ID = "candidate_exact_id"
MATCH_CANDIDATE_NAME = "candidate_exact_name"
MATCH_CANDIDATE_FUZZY = "candidate_fuzzy"
MATCH_CANDIDATE_PREFIX = "candidate_"
MATCH_CANDIDATE_KEPT = "candidate_kept"

_BRACKETED = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_COUNTRY_PREFIX = re.compile(r"^(?:US|UK|CA|AU|ES|MX|FR|DE|IT|FRANCE|USA)\s*[:|]\s*", re.IGNORECASE)
_RESOLUTION = re.compile(r"\b\d{3,4}p\b", re.IGNORECASE)
_QUALITY = re.compile(r"\b(?:HD|FHD|SD|4K|HEVC|UHD)\b", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^\w\s]|_")
_ID_SUFFIX = re.compile(r"\.[a-z]{2}(?:@[\w-]+)?$", re.IGNORECASE)


def clean_channel_name(name: Optional[str]) -> str:
    """
    Normalize a channel name for matching.

    Examples:
        "US: ESPN HD (Backup) [1080p]" -> "espn"
        "BBC One | UK" -> "bbc one uk"
    """
    if not name:
        return ""
    value = _BRACKETED.sub(" ", name).strip()
    value = _COUNTRY_PREFIX.sub("", value)
    value = _RESOLUTION.sub(" ", value)
    value = _QUALITY.sub(" ", value)
    value = _NON_ALNUM.sub(" ", value.lower())
    return " ".join(value.split())


def clean_guide_id(xmltv_id: Optional[str]) -> str:
    """Normalize a guide id for fuzzy lookup ("ESPN2.us@HD" -> "espn2")."""
    if not xmltv_id:
        return ""
    return clean_channel_name(_ID_SUFFIX.sub("", xmltv_id.strip()))


def choose_by_language(
    options: Sequence[Tuple[str, Optional[str]]], channel_lang: Optional[str], preferred_lang: Optional[str]
) -> Optional[str]:
    """
    Pick one guide id among candidates sharing a name.

    The target language is the channel's own, else the preferred setting.
    An exact language match wins, then a candidate without language.
    A candidate tagged with a different language is never chosen.

    Args:
        options: (xmltv_id, lang) pairs in corpus order

    Returns:
        The chosen guide id or None
    """
    if not options:
        return None
    target = (channel_lang or preferred_lang or "").strip().lower()
    if not target:
        return options[0][0]
    for xmltv_id, lang in options:
        if (lang or "").strip().lower() == target:
            return xmltv_id
    for xmltv_id, lang in options:
        if not (lang or "").strip():
            return xmltv_id
    return None


class FuzzyNameIndex:
    """
    Weighted fuzzy lookup over normalized names.

    Scores run from 0 (identical) to 1 (nothing in common) and a key's weight
    scales its similarity down. The best score at or under the threshold wins;
    on equal scores the entry added first is kept.
    """

    def __init__(self, threshold: float):
        self.threshold = threshold
        self._entries: List[Tuple[str, float, Any]] = []

    def __len__(self):
        return len(self._entries)

    def add(self, key: str, payload: Any, weight: float = NAME_WEIGHT) -> None:
        if key:
            self._entries.append((key, weight, payload))

    def search(self, query: str) -> Optional[Tuple[Any, float]]:
        if not query or not self._entries:
            return None

        best_payload = None
        best_score: Optional[float] = None
        for key, weight, payload in self._entries:
            matcher = SequenceMatcher(None, query, key)
            # Upper bounds on the ratio let us skip most keys cheaply
            if 1 - matcher.real_quick_ratio() * weight > self.threshold:
                continue
            if 1 - matcher.quick_ratio() * weight > self.threshold:
                continue
            score = 1 - matcher.ratio() * weight
            if score > self.threshold:
                continue
            if best_score is None or score < best_score:
                best_score = score
                best_payload = payload

        if best_score is None:
            return None
        return best_payload, best_score


def allocate_channel_number() -> int:
    """
    Return the next display number.

    Numbers start at STARTING_CHANNEL_NUMBER and only ever grow. The high-water
    mark is persisted so numbers of deleted channels are never handed out again.
    Caller commits.
    """
    high_water = Setting.get_int("channel_number_high_water", 0)
    current_max = db.session.query(db.func.max(Channel.channel_number)).scalar() or 0
    number = max(high_water, current_max, STARTING_CHANNEL_NUMBER - 1) + 1
    Setting.set("channel_number_high_water", number, commit=False)
    return number


class ChannelMatchingService:
    """Service for matching lineup channels to guide channels and grab candidates"""

    @staticmethod
    def _build_guide_indices(guide_channels: List[EpgChannel]):
        ordered_ids: List[str] = []
        seen = set()
        by_name: Dict[str, str] = {}
        fuzzy = FuzzyNameIndex(GUIDE_FUZZY_THRESHOLD)

        for gc in guide_channels:
            if gc.channel_id not in seen:
                seen.add(gc.channel_id)
                ordered_ids.append(gc.channel_id)
            normalized = clean_channel_name(gc.display_name)
            if normalized and normalized not in by_name:
                by_name[normalized] = gc.channel_id
                fuzzy.add(normalized, gc.channel_id, NAME_WEIGHT)

        for channel_id in ordered_ids:
            fuzzy.add(clean_guide_id(channel_id), channel_id, ID_WEIGHT)

        return ordered_ids, seen, by_name, fuzzy

    @staticmethod
    def resolve_guide_match(
        channel: Channel,
        override_id: Optional[str],
        ordered_ids: List[str],
        guide_ids: set,
        by_name: Dict[str, str],
        fuzzy: FuzzyNameIndex,
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Run the guide tiers for one channel.

        Returns:
            Tuple of (guide id, match type), or (None, None)
        """
        if channel.matched_epg_id and channel.matched_epg_id in guide_ids:
            return channel.matched_epg_id, MATCH_CONFIRMED

        if override_id and override_id in guide_ids:
            return override_id, MATCH_OVERRIDE

        if channel.matched_epg_id and (channel.match_type or "").startswith(MATCH_CANDIDATE_PREFIX):
            return channel.matched_epg_id, channel.match_type

        hint = (channel.tvg_id or "").strip()
        if hint:
            if hint in guide_ids:
                return hint, MATCH_EXACT_ID
            hint_lower = hint.lower()
            for guide_id in ordered_ids:
                guide_lower = guide_id.lower()
                if hint_lower in guide_lower or guide_lower in hint_lower:
                    return guide_id, MATCH_PARTIAL_ID

        normalized = clean_channel_name(channel.name)
        if normalized:
            if normalized in by_name:
                return by_name[normalized], MATCH_EXACT_NAME
            hit = fuzzy.search(normalized)
            if hit:
                return hit[0], MATCH_FUZZY

        return None, None

    @staticmethod
    def match_guide_channels(ctx: Optional[JobContext] = None) -> Dict:
        """
        Match every lineup channel against the ingested guide channels.

        Returns:
            Dict with per-tier counts
        """
        ctx = ctx or JobContext()
        stats = {
            "total_channels": 0,
            "matched": 0,
            "unmatched": 0,
            MATCH_CONFIRMED: 0,
            MATCH_OVERRIDE: 0,
            MATCH_EXACT_ID: 0,
            MATCH_PARTIAL_ID: 0,
            MATCH_EXACT_NAME: 0,
            MATCH_FUZZY: 0,
            MATCH_CANDIDATE_KEPT: 0,
        }

        with db_write_lock:
            guide_channels = EpgChannel.query.order_by(EpgChannel.id).all()
            ordered_ids, guide_ids, by_name, fuzzy = ChannelMatchingService._build_guide_indices(guide_channels)
            overrides = {o.channel_id: o.epg_id for o in ManualOverride.query.all()}
            channels = Channel.query.order_by(Channel.id).all()
            stats["total_channels"] = len(channels)

            for index, channel in enumerate(channels, start=1):
                epg_id, match_type = ChannelMatchingService.resolve_guide_match(
                    channel, overrides.get(channel.id), ordered_ids, guide_ids, by_name, fuzzy
                )
                if epg_id:
                    stats["matched"] += 1
                    stats[match_type if match_type in stats else MATCH_CANDIDATE_KEPT] += 1
                else:
                    stats["unmatched"] += 1
                if channel.matched_epg_id != epg_id or channel.match_type != match_type:
                    channel.matched_epg_id = epg_id
                    channel.match_type = match_type
                if index % 100 == 0:
                    ctx.progress(PHASE_MATCH, "Matching channels to guide", index, len(channels))

            db.session.commit()

        ctx.progress(PHASE_MATCH, "Guide matching complete", stats["total_channels"], stats["total_channels"])
        logger.info(
            f"Guide matching: matched={stats['matched']}, unmatched={stats['unmatched']}, "
            f"confirmed={stats[MATCH_CONFIRMED]}, override={stats[MATCH_OVERRIDE]}, "
            f"exact_id={stats[MATCH_EXACT_ID]}, partial_id={stats[MATCH_PARTIAL_ID]}, "
            f"exact_name={stats[MATCH_EXACT_NAME]}, fuzzy={stats[MATCH_FUZZY]}, "
            f"candidate_kept={stats[MATCH_CANDIDATE_KEPT]}"
        )
        return stats

    @staticmethod
    def _build_candidate_indices(candidates: List[CandidateMapping]):
        by_id: Dict[str, str] = {}
        by_id_options: Dict[str, List[Tuple[str, Optional[str]]]] = {}
        by_name: Dict[str, List[Tuple[str, Optional[str]]]] = {}
        fuzzy = FuzzyNameIndex(CANDIDATE_FUZZY_THRESHOLD)

        for row in candidates:
            canonical = by_id.setdefault(row.xmltv_id.lower(), row.xmltv_id)
            id_options = by_id_options.setdefault(canonical, [])
            if (canonical, row.lang) not in id_options:
                id_options.append((canonical, row.lang))
            normalized = clean_channel_name(row.name)
            if not normalized:
                continue
            options = by_name.setdefault(normalized, [])
            if (row.xmltv_id, row.lang) not in options:
                options.append((row.xmltv_id, row.lang))

        # Name groups share one list object, so the fuzzy hit sees every option
        for normalized, options in by_name.items():
            fuzzy.add(normalized, options, NAME_WEIGHT)
        # Id entries carry the languages of their rows so the language rule applies to them too
        for xmltv_id, id_options in by_id_options.items():
            fuzzy.add(clean_guide_id(xmltv_id), id_options, ID_WEIGHT)

        return by_id, by_name, fuzzy

    @staticmethod
    def resolve_candidate_match(
        channel: Channel,
        preferred_lang: Optional[str],
        by_id: Dict[str, str],
        by_name: Dict[str, List[Tuple[str, Optional[str]]]],
        fuzzy: FuzzyNameIndex,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Run the candidate tiers for one channel."""
        hint = (channel.tvg_id or "").strip().lower()
        if hint and hint in by_id:
            return by_id[hint], MATCH_CANDIDATE_ID

        normalized = clean_channel_name(channel.name)
        if not normalized:
            return None, None

        if normalized in by_name:
            chosen = choose_by_language(by_name[normalized], channel.lang, preferred_lang)
            if chosen:
                return chosen, MATCH_CANDIDATE_NAME

        hit = fuzzy.search(normalized)
        if hit:
            chosen = choose_by_language(hit[0], channel.lang, preferred_lang)
            if chosen:
                return chosen, MATCH_CANDIDATE_FUZZY

        return None, None

    @staticmethod
    def match_candidates(ctx: Optional[JobContext] = None) -> Dict:
        """
        Match lineup channels to the community corpus and number every channel.

        Channels that already have a match or a manual override keep it.

        Returns:
            Dict with match and numbering counts
        """
        ctx = ctx or JobContext()
        stats = {
            "total_channels": 0,
            "matched": 0,
            "unmatched": 0,
            "already_matched": 0,
            "numbered": 0,
            MATCH_CANDIDATE_ID: 0,
            MATCH_CANDIDATE_NAME: 0,
            MATCH_CANDIDATE_FUZZY: 0,
        }

        with db_write_lock:
            candidates = CandidateMapping.query.order_by(CandidateMapping.id).all()
            by_id, by_name, fuzzy = ChannelMatchingService._build_candidate_indices(candidates)
            preferred_lang = Setting.get("preferred_lang", "")
            overrides = {o.channel_id for o in ManualOverride.query.all()}
            channels = Channel.query.order_by(Channel.id).all()
            stats["total_channels"] = len(channels)

            for index, channel in enumerate(channels, start=1):
                if channel.matched_epg_id or channel.id in overrides:
                    stats["already_matched"] += 1
                else:
                    epg_id, match_type = ChannelMatchingService.resolve_candidate_match(
                        channel, preferred_lang, by_id, by_name, fuzzy
                    )
                    if epg_id:
                        channel.matched_epg_id = epg_id
                        channel.match_type = match_type
                        stats["matched"] += 1
                        stats[match_type] += 1
                    else:
                        stats["unmatched"] += 1

                if channel.channel_number is None:
                    channel.channel_number = allocate_channel_number()
                    stats["numbered"] += 1

                if index % 100 == 0:
                    ctx.progress(PHASE_MATCH, "Matching channels to grab candidates", index, len(channels))

            db.session.commit()

        ctx.progress(PHASE_MATCH, "Candidate matching complete", stats["total_channels"], stats["total_channels"])
        logger.info(
            f"Candidate matching: matched={stats['matched']}, unmatched={stats['unmatched']}, "
            f"kept={stats['already_matched']}, numbered={stats['numbered']}"
        )
        return stats

    @staticmethod
    def set_override(channel_id: int, epg_id: Optional[str]) -> Dict:
        """
        Pin a channel to a guide id, or remove the pin when epg_id is empty.

        Either way the current match is cleared so the next matching pass
        re-derives it; this is the only path that moves a confirmed match.
        """
        data = load_or_raise(OverrideSchema(), {"channel_id": channel_id, "epg_id": epg_id or ""})
        channel_id = data["channel_id"]
        epg_id = (data.get("epg_id") or "").strip()

        channel = db.session.get(Channel, channel_id)
        if not channel:
            raise ResourceNotFoundError(f"Channel {channel_id} not found")

        with db_write_lock:
            override = db.session.get(ManualOverride, channel_id)
            if epg_id:
                if override:
                    override.epg_id = epg_id
                else:
                    db.session.add(ManualOverride(channel_id=channel_id, epg_id=epg_id))
                action = "set"
            else:
                if override:
                    db.session.delete(override)
                action = "cleared"
            channel.matched_epg_id = None
            channel.match_type = None
            db.session.commit()

        logger.info(f"Override {action} for channel {channel_id}: {epg_id or '-'}")
        return {"success": True, "channel_id": channel_id, "epg_id": epg_id or None, "action": action}

    @staticmethod
    def get_grab_targets() -> List[str]:
        """
        Guide ids of enabled channels that have no programmes yet.

        Uses the manual override when present, else the current match.
        """
        overrides = {o.channel_id: o.epg_id for o in ManualOverride.query.all()}
        channels = Channel.query.filter_by(enabled=True).order_by(Channel.id).all()

        wanted: List[str] = []
        seen = set()
        for channel in channels:
            epg_id = overrides.get(channel.id) or channel.matched_epg_id
            if epg_id and epg_id not in seen:
                seen.add(epg_id)
                wanted.append(epg_id)
        if not wanted:
            return []

        covered = set()
        BATCH_SIZE = 500
        for i in range(0, len(wanted), BATCH_SIZE):
            batch = wanted[i : i + BATCH_SIZE]
            rows = db.session.query(Program.channel_id).filter(Program.channel_id.in_(batch)).distinct().all()
            covered.update(row[0] for row in rows)

        return [epg_id for epg_id in wanted if epg_id not in covered]
