"""
Marshmallow schemas for input validation

Validates data entering the pipeline from outside: community corpus rows,
playlist entries, guide source locations and manual overrides.
"""
import re

from marshmallow import EXCLUDE, Schema, ValidationError, fields, pre_load, validate, validates

from error_handling import ValidationError as InputValidationError

_URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)


def _strip_strings(data):
    return {k: v.strip() if isinstance(v, str) else v for k, v in data.items()}


# ============================================================================
# Community Corpus Schemas
# ============================================================================


class CandidateRowSchema(Schema):
    """One (name, guide id, language, site, site id) row of the community corpus"""

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(required=True, validate=validate.Length(min=1, max=500))
    xmltv_id = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    lang = fields.Str(load_default=None, allow_none=True)
    site = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    site_id = fields.Str(required=True, validate=validate.Length(min=1, max=500))

    @pre_load
    def strip_values(self, data, **kwargs):
        data = _strip_strings(data)
        if data.get("lang") == "":
            data["lang"] = None
        return data


# ============================================================================
# Playlist Schemas
# ============================================================================


class PlaylistEntrySchema(Schema):
    """One #EXTINF entry of an M3U playlist"""

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(required=True, validate=validate.Length(min=1, max=500))
    url = fields.Str(required=True, validate=validate.Length(min=1, max=4000))
    tvg_id = fields.Str(load_default=None, allow_none=True)
    tvg_name = fields.Str(load_default=None, allow_none=True)
    tvg_logo = fields.Str(load_default=None, allow_none=True)
    tvg_language = fields.Str(load_default=None, allow_none=True)
    group_title = fields.Str(load_default=None, allow_none=True)

    @pre_load
    def strip_values(self, data, **kwargs):
        data = _strip_strings(data)
        for key in ("tvg_id", "tvg_name", "tvg_logo", "tvg_language", "group_title"):
            if data.get(key) == "":
                data[key] = None
        return data


# ============================================================================
# Source and Override Schemas
# ============================================================================


class GuideSourceSchema(Schema):
    """A guide feed location: http(s) URL or local file path"""

    location = fields.Str(required=True)

    @validates("location")
    def validate_location(self, value, **kwargs):
        value = value.strip()
        if not value:
            raise ValidationError("Source location cannot be empty")
        if "://" in value and not _URL_PATTERN.match(value):
            raise ValidationError("Only http(s) URLs and local paths are supported")


class OverrideSchema(Schema):
    """Manual override input. An empty epg_id removes the override."""

    channel_id = fields.Int(required=True, strict=False)
    epg_id = fields.Str(load_default="", allow_none=True, validate=validate.Length(max=255))


# ============================================================================
# Helpers
# ============================================================================


def load_or_raise(schema: Schema, data):
    """Load data through a schema, converting marshmallow errors to ours."""
    try:
        return schema.load(data)
    except ValidationError as e:
        raise InputValidationError("Invalid input", details=e.messages) from e


def validate_sources(locations):
    """Validate and normalize a list of guide source locations."""
    schema = GuideSourceSchema()
    return [load_or_raise(schema, {"location": location})["location"].strip() for location in locations]
