"""
Add grab health tracking tables.

Creates tables:
- site_health: Consecutive failures and last attempt per grab site
- channel_grab_status: Consecutive failures and auto-disable flag per guide id
- grab_logs: One row per grab attempt

Databases created before grab health tracking existed only have the lineup
and guide tables; this adds the rest without touching existing data.
"""
import logging
import sqlite3

logger = logging.getLogger(__name__)


def migrate(db_path):
    """Create grab health tracking tables"""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        # Check if tables already exist
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='site_health'")
        if cursor.fetchone():
            logger.info("Grab health tables already exist, skipping")
            return True, "Tables already exist"

        cursor.execute(
            """
            CREATE TABLE site_health (
                site VARCHAR(255) PRIMARY KEY,
                last_attempt DATETIME,
                last_success DATETIME,
                failure_count INTEGER DEFAULT 0 NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS channel_grab_status (
                xmltv_id VARCHAR(255) PRIMARY KEY,
                failure_count INTEGER DEFAULT 0 NOT NULL,
                last_success DATETIME,
                last_failure DATETIME,
                last_error TEXT,
                auto_disabled BOOLEAN DEFAULT 0 NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS grab_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                xmltv_id VARCHAR(255) NOT NULL,
                site VARCHAR(255) NOT NULL,
                success BOOLEAN NOT NULL,
                message TEXT,
                program_count INTEGER DEFAULT 0,
                duration_ms INTEGER,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_grab_log_channel_time
            ON grab_logs (xmltv_id, created_at)
        """
        )

        conn.commit()
        logger.info("Created grab health tables")
        return True, "Created site_health, channel_grab_status, and grab_logs tables"

    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating grab health tables: {e}")
        return False, str(e)

    finally:
        conn.close()
