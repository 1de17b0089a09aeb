"""
Create the integration outbox, accounting export and audit log tables.

Usage:
    python migrations/create_outbox_tables.py
    python migrations/create_outbox_tables.py --database-url postgresql://...

The script is idempotent and safe to run multiple times. It inspects the current
schema and only creates tables that are missing.
"""

import argparse
import os
import sys

from dotenv import load_dotenv

from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import OperationalError, ProgrammingError

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_SQLITE_PATH = os.path.join(ROOT_DIR, "propertyops.sqlite")

sys.path.insert(0, ROOT_DIR)

# Load environment variables from a .env file if present
load_dotenv()

TABLES = ["invoices", "invoice_lines", "outbox_events", "accounting_exports", "audit_logs"]


def normalize_sqlite_path(path: str) -> str:
    """Return a SQLAlchemy-friendly SQLite URL for the given path."""
    if not os.path.isabs(path):
        path = os.path.join(ROOT_DIR, path)
    return f"sqlite:///{path}"


def infer_database_url(cli_url: str = None) -> str:
    """Figure out which database to hit, honoring CLI and environment defaults."""
    candidates = [
        cli_url,
        os.environ.get("DATABASE_URL"),
        os.environ.get("PRODUCTION_DATABASE_URL"),
        os.environ.get("SANDBOX_DATABASE_URL"),
        os.environ.get("LOCAL_DATABASE_URL"),
    ]

    for value in candidates:
        if not value:
            continue

        value = value.strip()
        if value.startswith("postgres://"):
            # SQLAlchemy expects postgresql://
            return value.replace("postgres://", "postgresql://", 1)

        if value.startswith(("postgresql://", "mysql://", "mariadb://", "sqlite://")):
            return value

        return normalize_sqlite_path(value)

    return normalize_sqlite_path(DEFAULT_SQLITE_PATH)


def migrate(database_url: str = None) -> bool:
    """Create any of the tables that do not exist yet."""
    from propertyops.models import db

    db_url = infer_database_url(database_url)
    print(f"Connecting to database: {db_url}")

    engine = create_engine(db_url)

    try:
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in TABLES if name not in existing]
        if not missing:
            print("✓ All outbox tables already exist. Nothing to do.")
            return True

        print(f"Creating tables: {', '.join(missing)}")
        tables = [db.metadata.tables[name] for name in missing]
        db.metadata.create_all(bind=engine, tables=tables)
        print("✓ Migration complete.")
        return True
    except (OperationalError, ProgrammingError) as e:
        print(f"✗ Migration failed: {e}")
        return False
    finally:
        engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Create the outbox/export/audit tables")
    parser.add_argument("--database-url", help="Database URL (defaults to environment)")
    args = parser.parse_args()

    return 0 if migrate(args.database_url) else 1


if __name__ == "__main__":
    sys.exit(main())
