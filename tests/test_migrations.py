"""
Tests for schema migrations on databases created by older releases
"""
import sqlite3

import pytest

import run_migrations

OLD_PROGRAMS_TABLE = """
CREATE TABLE epg_programs (
    id INTEGER PRIMARY KEY,
    channel_id VARCHAR(255) NOT NULL,
    source VARCHAR(500) NOT NULL,
    start VARCHAR(30) NOT NULL,
    stop VARCHAR(30) NOT NULL,
    title TEXT,
    episode_num VARCHAR(100),
    category TEXT,
    rating VARCHAR(50)
)
"""


@pytest.fixture
def old_db(tmp_path):
    """A database with the programme table as first released"""
    path = tmp_path / "epg.db"
    conn = sqlite3.connect(path)
    conn.execute(OLD_PROGRAMS_TABLE)
    conn.execute(
        "INSERT INTO epg_programs (channel_id, source, start, stop, title) "
        "VALUES ('ESPN.us', 'feed.xml', '20250101180000 +0000', '20250101190000 +0000', 'SportsCenter')"
    )
    conn.commit()
    conn.close()
    return str(path)


def table_names(db_path):
    conn = sqlite3.connect(db_path)
    try:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()


def column_names(db_path, table):
    conn = sqlite3.connect(db_path)
    try:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
    finally:
        conn.close()


class TestRunMigrations:
    """Tests for run_migrations.py"""

    def test_database_path(self):
        """Test sqlite URLs are turned into file paths"""
        assert run_migrations.get_database_path("sqlite:///data/epg.db") == "data/epg.db"
        assert run_migrations.get_database_path("sqlite:////var/lib/epg.db") == "/var/lib/epg.db"

    def test_discovery_order(self):
        """Test migrations are found in filename order"""
        names = [f.stem for f in run_migrations.discover_migrations()]
        assert names == sorted(names)
        assert "2025_01_add_grab_health_tables" in names

    def test_upgrade_old_database(self, old_db):
        """Test an old database gains the new tables and columns with data kept"""
        outcome = run_migrations.apply_migrations(old_db)

        assert outcome["failed"] == []
        assert len(outcome["applied"]) == 3
        assert {"site_health", "channel_grab_status", "grab_logs", "metadata_cache"} <= table_names(old_db)
        assert {"episode_num_system", "enriched", "external_id"} <= column_names(old_db, "epg_programs")
        assert "disabled_channel_ids" in column_names(old_db, "channel_grab_status")

        conn = sqlite3.connect(old_db)
        try:
            assert conn.execute("SELECT title, enriched FROM epg_programs").fetchall() == [("SportsCenter", 0)]
        finally:
            conn.close()

    def test_idempotent(self, old_db):
        """Test a second run skips every migration"""
        run_migrations.apply_migrations(old_db)

        outcome = run_migrations.apply_migrations(old_db)

        assert outcome["applied"] == []
        assert outcome["failed"] == []
        assert len(outcome["skipped"]) == 3

    def test_missing_programs_table(self, tmp_path):
        """Test the column migration waits for the programme table"""
        path = str(tmp_path / "empty.db")
        sqlite3.connect(path).close()

        outcome = run_migrations.apply_migrations(path)

        assert "2025_02_add_program_enrichment_columns" in outcome["skipped"]
        assert "epg_programs" not in table_names(path)

    def test_failed_migration_reported(self, old_db, tmp_path):
        """Test a broken migration is reported without stopping the rest"""
        broken = tmp_path / "0001_broken.py"
        broken.write_text("def migrate(db_path):\n    raise RuntimeError('boom')\n", encoding="utf-8")
        migrations = [broken] + run_migrations.discover_migrations()

        outcome = run_migrations.apply_migrations(old_db, migrations)

        assert outcome["failed"] == ["0001_broken"]
        assert len(outcome["applied"]) == 3

    def test_missing_database(self, tmp_path):
        """Test a missing database is not an error"""
        assert run_migrations.run_migrations(str(tmp_path / "nope.db")) is True
