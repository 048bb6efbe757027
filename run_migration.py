#!/usr/bin/env python3
"""Migration runner for the curriculum engine schema.

Usage:
    python3 run_migration.py                      # apply every migrations/*.sql in order
    python3 run_migration.py migrations/0001_initial_schema.sql
"""
import os
import sys
from pathlib import Path

import psycopg2

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def migration_files(args: list[str]) -> list[Path]:
    if args:
        return [Path(arg) for arg in args]
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def main() -> None:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("❌ DATABASE_URL environment variable not set")
        sys.exit(1)

    files = migration_files(sys.argv[1:])
    if not files:
        print(f"❌ No migration files found in {MIGRATIONS_DIR}")
        sys.exit(1)

    print("🔌 Connecting to database...")
    conn = psycopg2.connect(database_url)

    try:
        for migration_file in files:
            sql = migration_file.read_text(encoding="utf-8")
            print(f"📄 {migration_file.name} ({len(sql)} bytes)")
            with conn.cursor() as cursor:
                cursor.execute(sql)
            conn.commit()
            print(f"✅ Applied {migration_file.name}")
    except Exception as e:
        conn.rollback()
        print(f"❌ Error running migration: {e}")
        sys.exit(1)
    finally:
        conn.close()

    print("✅ Migrations complete!")


if __name__ == "__main__":
    main()
