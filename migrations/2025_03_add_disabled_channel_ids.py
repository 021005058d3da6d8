"""
Remember which lineup channels an auto-disable turned off.

Adds column:
- channel_grab_status.disabled_channel_ids: Comma separated lineup channel ids

A later matching pass can clear a channel's guide match while it is
disabled; the stored ids let re-enable find it again.
"""
import logging
import sqlite3

logger = logging.getLogger(__name__)


def migrate(db_path):
    """Add disabled_channel_ids to channel_grab_status"""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='channel_grab_status'")
        if not cursor.fetchone():
            logger.info("channel_grab_status table does not exist yet, skipping")
            return True, "Grab status table not created yet, skipping"

        cursor.execute("PRAGMA table_info(channel_grab_status)")
        if "disabled_channel_ids" in {row[1] for row in cursor.fetchall()}:
            logger.info("disabled_channel_ids column already exists, skipping")
            return True, "Column already exists"

        cursor.execute("ALTER TABLE channel_grab_status ADD COLUMN disabled_channel_ids TEXT")
        conn.commit()

        logger.info("Added disabled_channel_ids to channel_grab_status")
        return True, "Added column disabled_channel_ids"

    except Exception as e:
        conn.rollback()
        logger.error(f"Error adding disabled_channel_ids column: {e}")
        return False, str(e)

    finally:
        conn.close()
