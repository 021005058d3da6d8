"""
Tests for playlist import
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from error_handling import SourceFetchError
from models import Channel, ManualOverride
from services.playlist_service import PlaylistService, channel_key, parse_m3u, read_playlist

PLAYLIST = """#EXTM3U
#EXTINF:-1 tvg-id="ESPN.us" tvg-name="ESPN" tvg-logo="http://logos.example.com/espn.png" tvg-language="en" group-title="Sports",US: ESPN HD
#EXTVLCOPT:http-user-agent=Player
http://streams.example.com/espn.ts
#EXTINF:-1 tvg-id="" group-title="News",CNN, International
http://streams.example.com/cnn.ts
#EXTINF:-1,No Url Entry
"""


class TestParseM3u:
    """Tests for parse_m3u"""

    def test_entries(self):
        """Test attributes, names and URLs are read"""
        entries = parse_m3u(PLAYLIST)

        assert len(entries) == 2
        assert entries[0]["name"] == "US: ESPN HD"
        assert entries[0]["tvg_id"] == "ESPN.us"
        assert entries[0]["tvg_language"] == "en"
        assert entries[0]["group_title"] == "Sports"
        assert entries[0]["url"] == "http://streams.example.com/espn.ts"
        assert entries[1]["name"] == "CNN, International"
        assert entries[1]["tvg_id"] == ""

    def test_channel_key_stable(self):
        """Test the key depends on url and name only"""
        assert channel_key("http://a", "A") == channel_key("http://a", "A")
        assert channel_key("http://a", "A") != channel_key("http://a", "B")


class TestImport:
    """Tests for PlaylistService"""

    def test_import_file(self, db, tmp_path):
        """Test a playlist file creates numbered channels"""
        path = tmp_path / "playlist.m3u"
        path.write_text(PLAYLIST, encoding="utf-8")

        stats = PlaylistService.import_playlist(str(path))

        assert stats["added"] == 2
        espn = Channel.query.filter_by(name="US: ESPN HD").one()
        assert espn.tvg_id == "ESPN.us"
        assert espn.lang == "en"
        assert espn.channel_number == 700
        cnn = Channel.query.filter_by(name="CNN, International").one()
        assert cnn.tvg_id is None
        assert cnn.channel_number == 701

    def test_reimport_updates_and_removes(self, db):
        """Test re-import keeps existing channels and drops missing ones"""
        entries = parse_m3u(PLAYLIST)
        PlaylistService.import_entries(entries)
        espn = Channel.query.filter_by(name="US: ESPN HD").one()
        espn.matched_epg_id = "ESPN.us"
        cnn = Channel.query.filter_by(name="CNN, International").one()
        db.session.add(ManualOverride(channel_id=cnn.id, epg_id="CNN.us"))
        db.session.commit()

        stats = PlaylistService.import_entries(entries[:1])

        assert stats == {"total": 1, "added": 0, "updated": 1, "removed": 1, "rejected": 0}
        kept = Channel.query.one()
        assert kept.matched_epg_id == "ESPN.us"
        assert kept.channel_number == 700
        assert ManualOverride.query.count() == 0

    def test_invalid_entries_rejected(self, db):
        """Test entries without a name are rejected"""
        stats = PlaylistService.import_entries([{"name": "", "url": "http://x"}])
        assert stats["rejected"] == 1
        assert Channel.query.count() == 0

    def test_empty_playlist_keeps_lineup(self, db, tmp_path, make_channel):
        """Test an empty download does not wipe the lineup"""
        make_channel("ESPN")
        path = tmp_path / "empty.m3u"
        path.write_text("#EXTM3U\n", encoding="utf-8")

        stats = PlaylistService.import_playlist(str(path))

        assert stats["total"] == 0
        assert Channel.query.count() == 1

    @patch("services.playlist_service.requests.get")
    def test_remote_playlist(self, mock_get):
        """Test http playlists are downloaded"""
        mock_get.return_value = MagicMock(text=PLAYLIST)
        assert read_playlist("http://provider.example.com/list.m3u") == PLAYLIST

    @patch("services.playlist_service.requests.get")
    def test_remote_failure(self, mock_get):
        """Test download errors raise SourceFetchError"""
        mock_get.side_effect = requests.Timeout("slow")
        with pytest.raises(SourceFetchError):
            read_playlist("http://provider.example.com/list.m3u")
