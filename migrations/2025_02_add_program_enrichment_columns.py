"""
Add metadata enrichment columns to epg_programs and the lookup cache table.

Adds columns:
- epg_programs.episode_num_system: Numbering system of episode_num (xmltv_ns, onscreen)
- epg_programs.enriched: Whether the enrichment pass has processed the programme
- epg_programs.external_id: Show id from the metadata lookup

Creates table:
- metadata_cache: Lookup outcome per normalized title, including misses
"""
import logging
import sqlite3

logger = logging.getLogger(__name__)

NEW_COLUMNS = [
    ("episode_num_system", "VARCHAR(50)"),
    ("enriched", "BOOLEAN DEFAULT 0 NOT NULL"),
    ("external_id", "VARCHAR(50)"),
]


def migrate(db_path):
    """Add enrichment columns and the metadata cache table"""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='epg_programs'")
        if not cursor.fetchone():
            logger.info("epg_programs table does not exist yet, skipping")
            return True, "Programs table not created yet, skipping"

        cursor.execute("PRAGMA table_info(epg_programs)")
        existing = {row[1] for row in cursor.fetchall()}
        added = []
        for name, definition in NEW_COLUMNS:
            if name not in existing:
                cursor.execute(f"ALTER TABLE epg_programs ADD COLUMN {name} {definition}")
                added.append(name)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_program_enriched ON epg_programs (enriched)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_program_title ON epg_programs (title)")

        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='metadata_cache'")
        cache_exists = cursor.fetchone() is not None
        if not cache_exists:
            cursor.execute(
                """
                CREATE TABLE metadata_cache (
                    normalized_title VARCHAR(500) PRIMARY KEY,
                    external_id VARCHAR(50),
                    genres TEXT,
                    rating VARCHAR(20),
                    found BOOLEAN DEFAULT 0 NOT NULL,
                    cached_at DATETIME DEFAULT CURRENT_TIMESTAMP NOT NULL
                )
            """
            )

        conn.commit()

        if not added and cache_exists:
            logger.info("Enrichment columns already exist, skipping")
            return True, "Columns already exist"

        logger.info(f"Added enrichment columns: {', '.join(added) or 'none'}")
        return True, f"Added columns: {', '.join(added) or 'none'}; metadata_cache ready"

    except Exception as e:
        conn.rollback()
        logger.error(f"Error adding enrichment columns: {e}")
        return False, str(e)

    finally:
        conn.close()
