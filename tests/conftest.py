"""
Pytest configuration and shared fixtures for test suite

Provides Flask app, database, and small data-building fixtures for testing.
"""
import os
import sys
from pathlib import Path

import pytest

# Add parent directory to path so we can import app modules
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test database URI BEFORE importing app
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

# Import app and models AFTER setting environment
import app as app_module
from models import CandidateMapping, Channel, EpgChannel, db as _db


@pytest.fixture(scope="function")
def app():
    """
    Create Flask app configured for testing

    Uses in-memory SQLite database that's reset between tests.
    """
    flask_app = app_module.app
    flask_app.config["TESTING"] = True

    with flask_app.app_context():
        _db.create_all()
        yield flask_app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope="function")
def db(app):
    """
    Database fixture with app context

    Provides access to db.session for direct database operations.
    """
    with app.app_context():
        yield _db


@pytest.fixture(scope="function")
def runner(app):
    """Click runner for the Flask CLI commands"""
    return app.test_cli_runner()


@pytest.fixture
def make_channel(db):
    """Create a lineup channel; keyword arguments override the defaults."""
    counter = {"n": 0}

    def _make(name, **kwargs):
        counter["n"] += 1
        values = {
            "channel_key": f"key-{counter['n']}-{name}",
            "name": name,
            "url": f"http://streams.example.com/{counter['n']}.ts",
            "enabled": True,
        }
        values.update(kwargs)
        channel = Channel(**values)
        db.session.add(channel)
        db.session.commit()
        return channel

    return _make


@pytest.fixture
def make_guide_channel(db):
    """Create a guide channel as loaded from a feed."""

    def _make(channel_id, display_name=None, source="feed.xml", icon=None):
        gc = EpgChannel(channel_id=channel_id, display_name=display_name or channel_id, source=source, icon=icon)
        db.session.add(gc)
        db.session.commit()
        return gc

    return _make


@pytest.fixture
def make_candidate(db):
    """Create a grab candidate row of the community corpus."""

    def _make(name, xmltv_id, site="example.com", site_id=None, lang=None):
        row = CandidateMapping(name=name, xmltv_id=xmltv_id, site=site, site_id=site_id or xmltv_id, lang=lang)
        db.session.add(row)
        db.session.commit()
        return row

    return _make
