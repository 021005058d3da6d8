"""
Tests for Marshmallow schemas

Tests validation of data entering the pipeline.
"""
import pytest
from marshmallow import ValidationError

from error_handling import ValidationError as InputValidationError
from schemas import (
    CandidateRowSchema,
    GuideSourceSchema,
    OverrideSchema,
    PlaylistEntrySchema,
    load_or_raise,
    validate_sources,
)


class TestCandidateRowSchema:
    """Tests for corpus rows"""

    def test_valid_row(self):
        """Test values are stripped and blank lang becomes None"""
        row = CandidateRowSchema().load(
            {"name": " ESPN ", "xmltv_id": "ESPN.us", "lang": "", "site": "tvguide.com", "site_id": "1", "extra": "x"}
        )
        assert row == {"name": "ESPN", "xmltv_id": "ESPN.us", "lang": None, "site": "tvguide.com", "site_id": "1"}

    def test_missing_guide_id(self):
        """Test rows without a guide id are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            CandidateRowSchema().load({"name": "ESPN", "xmltv_id": "  ", "site": "s.com", "site_id": "1"})
        assert "xmltv_id" in exc_info.value.messages


class TestPlaylistEntrySchema:
    """Tests for playlist entries"""

    def test_blank_attributes_become_none(self):
        """Test empty tvg attributes are stored as None"""
        entry = PlaylistEntrySchema().load({"name": "CNN", "url": "http://x", "tvg_id": "", "group_title": " "})
        assert entry["tvg_id"] is None
        assert entry["group_title"] is None

    def test_url_required(self):
        """Test entries need a URL"""
        with pytest.raises(ValidationError):
            PlaylistEntrySchema().load({"name": "CNN"})


class TestSourceSchemas:
    """Tests for guide source and override input"""

    def test_sources(self):
        """Test URLs and local paths are accepted and stripped"""
        assert validate_sources([" http://example.com/guide.xml.gz ", "/data/guide.xml"]) == [
            "http://example.com/guide.xml.gz",
            "/data/guide.xml",
        ]

    @pytest.mark.parametrize("location", ["", "   ", "ftp://example.com/guide.xml"])
    def test_invalid_sources(self, location):
        """Test empty and non-http URLs are rejected"""
        with pytest.raises(InputValidationError) as exc_info:
            validate_sources([location])
        assert "location" in exc_info.value.details

    def test_override_defaults(self):
        """Test a missing epg_id means clear the override"""
        data = load_or_raise(OverrideSchema(), {"channel_id": "7"})
        assert data == {"channel_id": 7, "epg_id": ""}

    def test_load_or_raise(self):
        """Test marshmallow errors are converted with their details"""
        with pytest.raises(InputValidationError) as exc_info:
            load_or_raise(GuideSourceSchema(), {})
        assert str(exc_info.value) == "Invalid input"
        assert "location" in exc_info.value.details
