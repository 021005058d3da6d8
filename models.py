"""
Database models for the EPG aggregator
"""

import threading
from contextlib import contextmanager
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Serializes storage writes coming from grab worker threads
db_write_lock = threading.RLock()


@contextmanager
def serialized_session():
    """
    Run a unit of storage work under the process-wide write lock.

    Commits on success and rolls back on error. Worker threads must not
    touch ORM instances outside the block.
    """
    with db_write_lock:
        try:
            yield db.session
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class Setting(db.Model):  # type: ignore[name-defined]
    """
    Global runtime settings.

    Stores configuration that affects matching, grabbing and enrichment,
    such as the preferred guide language and failure thresholds.
    """

    __tablename__ = "settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Default configuration values
    DEFAULTS = {
        "preferred_lang": ("", "Language used to pick between guide ids sharing a channel name (e.g. 'en')."),
        "epg_days": ("2", "Number of days of guide data requested from the grabber."),
        "grab_concurrency": ("10", "Maximum number of channels grabbed at the same time."),
        "site_failure_threshold": ("3", "Consecutive failures before a grab site is put in cool-down."),
        "site_retry_hours": ("20", "Hours a failing grab site stays in cool-down before it is retried."),
        "channel_failure_threshold": ("5", "Consecutive failed grabs before a channel is auto-disabled."),
        "metadata_enrichment_enabled": ("false", "Enrich programs with ratings and genres from TVMaze."),
        "grabber_command": ("npm run grab --", "Command used to run the external guide grabber."),
        "grabber_workdir": ("", "Working directory for the grabber command (empty = current directory)."),
        "channel_number_high_water": ("0", "Highest display number ever assigned to a channel."),
    }

    @staticmethod
    def get(key, default=None):
        """Get a setting value by key, with fallback to defaults."""
        record = Setting.query.filter_by(key=key).first()
        if record:
            return record.value
        if key in Setting.DEFAULTS:
            return Setting.DEFAULTS[key][0]
        return default

    @staticmethod
    def get_int(key, default=0):
        """Get a setting as integer."""
        try:
            return int(Setting.get(key, default))
        except (ValueError, TypeError):
            return default

    @staticmethod
    def get_float(key, default=0.0):
        """Get a setting as float."""
        try:
            return float(Setting.get(key, default))
        except (ValueError, TypeError):
            return default

    @staticmethod
    def get_bool(key, default=False):
        """Get a setting as boolean."""
        value = Setting.get(key)
        if value is None:
            return default
        return str(value).lower() in ("true", "1", "yes", "on")

    @staticmethod
    def set(key, value, description=None, commit=True):
        """Set a setting value."""
        record = Setting.query.filter_by(key=key).first()
        if record:
            record.value = str(value)
            record.updated_at = datetime.utcnow()
            if description:
                record.description = description
        else:
            desc = description
            if not desc and key in Setting.DEFAULTS:
                desc = Setting.DEFAULTS[key][1]
            record = Setting(key=key, value=str(value), description=desc)
            db.session.add(record)
        if commit:
            db.session.commit()
        return record

    @staticmethod
    def get_all():
        """Get all settings as a dict, including defaults."""
        result = {}
        for key, (value, description) in Setting.DEFAULTS.items():
            result[key] = {"value": value, "description": description}
        for record in Setting.query.all():
            result[record.key] = {"value": record.value, "description": record.description}
        return result

    def __repr__(self):
        return f"<Setting {self.key}={self.value}>"


class Channel(db.Model):  # type: ignore[name-defined]
    """A lineup channel imported from the user's playlist"""

    __tablename__ = "channels"

    id = db.Column(db.Integer, primary_key=True)
    channel_key = db.Column(db.String(32), unique=True, nullable=False)  # md5(url + name)
    name = db.Column(db.String(500), nullable=False)
    group_title = db.Column(db.String(255))
    url = db.Column(db.Text)
    tvg_id = db.Column(db.String(255))  # Guide id hint declared by the playlist
    tvg_name = db.Column(db.String(500))
    tvg_logo = db.Column(db.Text)
    lang = db.Column(db.String(20))  # Declared language, e.g. 'en'
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    channel_number = db.Column(db.Integer)  # Display number, assigned once
    matched_epg_id = db.Column(db.String(255))  # Guide channel id of the current match
    match_type = db.Column(db.String(100))  # How the current match was found
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index("idx_channel_matched_epg", "matched_epg_id"),
        db.Index("idx_channel_number", "channel_number"),
    )

    @property
    def effective_epg_id(self):
        """Guide id used for this channel: manual override first, then the current match."""
        override = db.session.get(ManualOverride, self.id)
        if override and override.epg_id:
            return override.epg_id
        return self.matched_epg_id

    def __repr__(self):
        return f"<Channel {self.id}: {self.name}>"


class EpgChannel(db.Model):  # type: ignore[name-defined]
    """A channel as declared by one guide source"""

    __tablename__ = "epg_channels"

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.String(255), nullable=False)  # XMLTV channel id attribute
    source = db.Column(db.String(500), nullable=False)  # URL, path or 'grab:<site>'
    display_name = db.Column(db.String(500))
    icon = db.Column(db.Text)

    __table_args__ = (
        db.UniqueConstraint("source", "channel_id", name="uq_epg_channel_source"),
        db.Index("idx_epg_channel_id", "channel_id"),
    )

    def __repr__(self):
        return f"<EpgChannel {self.channel_id} ({self.source})>"


class Program(db.Model):  # type: ignore[name-defined]
    """A single programme scheduled on a guide channel"""

    __tablename__ = "epg_programs"

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.String(255), nullable=False)
    source = db.Column(db.String(500), nullable=False)
    start = db.Column(db.String(30), nullable=False)  # XMLTV format: 20250101180000 +0000
    stop = db.Column(db.String(30), nullable=False)
    title = db.Column(db.Text)
    sub_title = db.Column(db.Text)
    description = db.Column(db.Text)
    episode_num = db.Column(db.String(100))
    episode_num_system = db.Column(db.String(50))  # e.g. 'xmltv_ns', 'onscreen'
    category = db.Column(db.Text)  # Multiple categories joined with ', '
    rating = db.Column(db.String(50))
    icon = db.Column(db.Text)
    enriched = db.Column(db.Boolean, default=False, nullable=False)
    external_id = db.Column(db.String(50))  # External show id from metadata lookup

    __table_args__ = (
        db.Index("idx_program_channel_source", "channel_id", "source"),
        db.Index("idx_program_enriched", "enriched"),
        db.Index("idx_program_title", "title"),
    )

    def __repr__(self):
        return f"<Program {self.channel_id} {self.start} {self.title}>"


class CandidateMapping(db.Model):  # type: ignore[name-defined]
    """
    A grab candidate from the community metadata corpus.

    The autoincrement id preserves corpus order and is the ranking used
    when a guide id has several candidate sites.
    """

    __tablename__ = "candidate_mappings"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(500), nullable=False)
    xmltv_id = db.Column(db.String(255), nullable=False)
    lang = db.Column(db.String(20))
    site = db.Column(db.String(255), nullable=False)
    site_id = db.Column(db.String(500), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("xmltv_id", "site", "site_id", "name", name="uq_candidate_mapping"),
        db.Index("idx_candidate_xmltv_id", "xmltv_id"),
    )

    def __repr__(self):
        return f"<CandidateMapping {self.xmltv_id} via {self.site}:{self.site_id}>"


class ManualOverride(db.Model):  # type: ignore[name-defined]
    """User pin of a lineup channel to a guide id"""

    __tablename__ = "manual_overrides"

    channel_id = db.Column(db.Integer, db.ForeignKey("channels.id", ondelete="CASCADE"), primary_key=True)
    epg_id = db.Column(db.String(255), nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ManualOverride {self.channel_id} -> {self.epg_id}>"


class SiteHealth(db.Model):  # type: ignore[name-defined]
    """Rolling grab outcome per source site; drives the cool-down breaker"""

    __tablename__ = "site_health"

    site = db.Column(db.String(255), primary_key=True)
    last_attempt = db.Column(db.DateTime)
    last_success = db.Column(db.DateTime)
    failure_count = db.Column(db.Integer, default=0, nullable=False)  # Consecutive failures

    def __repr__(self):
        return f"<SiteHealth {self.site} failures={self.failure_count}>"


class ChannelGrabStatus(db.Model):  # type: ignore[name-defined]
    """Rolling grab outcome per guide channel id; drives auto-disable"""

    __tablename__ = "channel_grab_status"

    xmltv_id = db.Column(db.String(255), primary_key=True)
    failure_count = db.Column(db.Integer, default=0, nullable=False)  # Consecutive failures
    last_success = db.Column(db.DateTime)
    last_failure = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    auto_disabled = db.Column(db.Boolean, default=False, nullable=False)
    disabled_channel_ids = db.Column(db.Text)  # Lineup channel ids turned off by auto-disable, comma separated

    def __repr__(self):
        return f"<ChannelGrabStatus {self.xmltv_id} failures={self.failure_count}>"


class GrabLog(db.Model):  # type: ignore[name-defined]
    """Append-only record of a grab attempt"""

    __tablename__ = "grab_logs"

    id = db.Column(db.Integer, primary_key=True)
    xmltv_id = db.Column(db.String(255), nullable=False)
    site = db.Column(db.String(255), nullable=False)  # 'all' for exhaustion summaries
    success = db.Column(db.Boolean, nullable=False)
    message = db.Column(db.Text)
    program_count = db.Column(db.Integer, default=0)
    duration_ms = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (db.Index("idx_grab_log_channel_time", "xmltv_id", "created_at"),)

    def __repr__(self):
        return f"<GrabLog {self.xmltv_id} {self.site} success={self.success}>"


class MetadataCacheEntry(db.Model):  # type: ignore[name-defined]
    """Cached outcome of an external show lookup, including misses"""

    __tablename__ = "metadata_cache"

    normalized_title = db.Column(db.String(500), primary_key=True)
    external_id = db.Column(db.String(50))
    genres = db.Column(db.Text)  # Comma separated
    rating = db.Column(db.String(20))
    found = db.Column(db.Boolean, default=False, nullable=False)
    cached_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<MetadataCacheEntry {self.normalized_title} found={self.found}>"
