#!/usr/bin/env python
"""Schema migration CLI for the bot's SQLite state database.

Usage (examples):

python scripts/migrate.py --db data/spotbot.db list
python scripts/migrate.py --db data/spotbot.db apply --dry-run
python scripts/migrate.py --db data/spotbot.db apply
python scripts/migrate.py --db data/spotbot.db rollback --last --yes
python scripts/migrate.py --db data/spotbot.db rollback --version 3
"""
import argparse
import sqlite3
import sys
from pathlib import Path

# Ensure project root is on sys.path so `spotbot` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotbot.db_migrations import (  # noqa: E402
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        doc = (MIGRATIONS[v].__doc__ or "").strip()
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')}) {doc}")


def _confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # Non-interactive stdin; treat as confirmed
        return True


def cmd_apply(conn, dry_run: bool) -> int:
    if dry_run:
        pending = pending_versions(conn)
        if pending:
            print("Pending migrations:", pending)
        else:
            print("No pending migrations; database up-to-date.")
        return 0
    applied = apply_migrations(conn)
    if applied:
        print("Applied migrations:", applied)
    else:
        print("No migrations applied; database up-to-date.")
    return 0


def cmd_rollback(conn, args) -> int:
    if args.version is not None:
        target = args.version
        if target not in applied_versions(conn):
            print(f"Migration {target} is not applied")
            return 1
    elif args.last:
        applied = applied_versions(conn)
        if not applied:
            print("No applied migrations to rollback")
            return 0
        target = max(applied)
    else:
        print("rollback needs --version or --last")
        return 2

    if args.dry_run:
        print(f"Would rollback migration {target} (dry-run)")
        return 0
    if not args.yes and not _confirm(
        f"Rollback migration {target}? This may DROP data. Type 'yes' to continue: "
    ):
        print("Aborted.")
        return 1

    if args.last:
        rollback_last(conn)
    else:
        rollback_migration(conn, target)
    print(f"Rolled back migration {target}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Manage the bot's SQLite schema")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args(argv)
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)
    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0
        if args.cmd == "apply":
            return cmd_apply(conn, args.dry_run)
        if args.cmd == "rollback":
            return cmd_rollback(conn, args)
        parser.print_help()
        return 0
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
