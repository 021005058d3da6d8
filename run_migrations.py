#!/usr/bin/env python3
"""
Apply schema migrations to an existing EPG database.

New databases get the full schema from `flask --app app init-db`; the
scripts in migrations/ bring databases created by older releases up to date.
Every script exposes migrate(db_path) -> (success, message), is idempotent,
and is applied in filename order.

Usage:
    python run_migrations.py [DB_PATH]

Environment Variables:
    DATABASE_URL: Path to database (default: sqlite:///data/epg.db)
"""

import importlib.util
import os
import sys
from pathlib import Path

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def get_database_path(url=None):
    """Turn a sqlite:/// URL (or the DATABASE_URL env var) into a file path."""
    url = url or os.getenv("DATABASE_URL", "sqlite:///data/epg.db")
    for prefix in ("sqlite:///", "sqlite://"):
        if url.startswith(prefix):
            return url[len(prefix) :]
    return url


def discover_migrations(migrations_dir=MIGRATIONS_DIR):
    """Migration scripts in the order they must run."""
    if not migrations_dir.exists():
        return []
    return sorted(f for f in migrations_dir.glob("*.py") if f.name != "__init__.py" and not f.name.startswith("."))


def load_migration(migration_file):
    """Import a migration script by path (names start with digits, so no plain import)."""
    spec = importlib.util.spec_from_file_location(migration_file.stem, migration_file)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def apply_migrations(db_path, migrations=None):
    """
    Apply migrations to db_path.

    Returns:
        dict with applied, skipped and failed lists of migration names
    """
    outcome = {"applied": [], "skipped": [], "failed": []}

    for migration_file in migrations if migrations is not None else discover_migrations():
        name = migration_file.stem
        try:
            module = load_migration(migration_file)
            if not hasattr(module, "migrate"):
                print(f"  ⚠️  {name}: no migrate() function, skipping")
                outcome["skipped"].append(name)
                continue
            success, message = module.migrate(db_path)
        except Exception as e:
            print(f"  ❌ {name}: {e}")
            outcome["failed"].append(name)
            continue

        if not success:
            print(f"  ❌ {name}: {message}")
            outcome["failed"].append(name)
        elif "skipping" in message.lower() or "already" in message.lower():
            print(f"  ⏭️  {name}: {message}")
            outcome["skipped"].append(name)
        else:
            print(f"  ✅ {name}: {message}")
            outcome["applied"].append(name)

    return outcome


def run_migrations(db_path=None):
    """Apply every migration to the configured database. Returns True when none failed."""
    db_path = db_path or get_database_path()

    if not os.path.exists(db_path):
        print(f"⚠️  Database not found at: {db_path}")
        print("   Run 'flask --app app init-db' to create it")
        return True

    print("=" * 60)
    print("EPG Aggregator - Database Migrations")
    print("=" * 60)
    print(f"Database: {db_path}")

    outcome = apply_migrations(db_path)

    print("=" * 60)
    print(
        f"Summary: {len(outcome['applied'])} applied, {len(outcome['skipped'])} skipped, "
        f"{len(outcome['failed'])} failed"
    )
    print("=" * 60)
    return not outcome["failed"]


if __name__ == "__main__":
    success = run_migrations(sys.argv[1] if len(sys.argv) > 1 else None)
    sys.exit(0 if success else 1)
