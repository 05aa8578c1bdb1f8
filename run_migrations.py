#!/usr/bin/env python
"""
Reminder engine schema and lock maintenance.

Applies the Alembic revisions for the patients, reminders, followups and
distributed_locks tables, and sweeps lock rows left behind by crashed
cron runs.

Usage:
    python run_migrations.py create "message"   # Autogenerate a revision from the models
    python run_migrations.py upgrade [rev]      # Upgrade to rev (default: head)
    python run_migrations.py downgrade [rev]    # Downgrade to rev (default: -1)
    python run_migrations.py current            # Show the applied revision
    python run_migrations.py history            # List revisions
    python run_migrations.py cleanup-locks      # Delete expired distributed_locks rows
"""
import asyncio
import os
import sys

from alembic import command
from alembic.config import Config


# alembic.ini sits next to this script
alembic_cfg = Config(os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"))


def create_migration(message: str):
    """Autogenerate a revision by diffing app.models against the database."""
    try:
        command.revision(alembic_cfg, message=message, autogenerate=True)
        print(f"Migration '{message}' created successfully")
        print("   Run 'python run_migrations.py upgrade' to apply it")
    except Exception as e:
        print(f"Error creating migration: {str(e)}")
        sys.exit(1)


def upgrade_migrations(revision: str = "head"):
    try:
        print(f"Upgrading database to: {revision}")
        command.upgrade(alembic_cfg, revision)
        print("Database upgraded successfully")
    except Exception as e:
        print(f"Error upgrading database: {str(e)}")
        sys.exit(1)


def downgrade_migrations(revision: str = "-1"):
    try:
        print(f"Downgrading database to: {revision}")
        command.downgrade(alembic_cfg, revision)
        print("Database downgraded successfully")
    except Exception as e:
        print(f"Error downgrading database: {str(e)}")
        sys.exit(1)


def cleanup_locks():
    """
    Delete distributed_locks rows whose expires_at has passed.

    Expired rows never block acquisition; this only keeps the table small
    when no Redis lock backend is configured.
    """
    from app.db.session import engine
    from app.services.lock_service import DatabaseLockStore, DistributedLockService

    async def _run() -> int:
        try:
            return await DistributedLockService(DatabaseLockStore()).cleanup_expired_locks()
        finally:
            await engine.dispose()

    cleaned = asyncio.run(_run())
    print(f"Removed {cleaned} expired lock(s)")


def print_usage():
    print(__doc__)


def main():
    if len(sys.argv) < 2:
        print_usage()
        sys.exit(1)

    action = sys.argv[1].lower()

    if action == "create":
        if len(sys.argv) < 3:
            print("Error: Migration message required")
            print("   Usage: python run_migrations.py create 'migration message'")
            sys.exit(1)
        create_migration(sys.argv[2])

    elif action == "upgrade":
        upgrade_migrations(sys.argv[2] if len(sys.argv) > 2 else "head")

    elif action == "downgrade":
        downgrade_migrations(sys.argv[2] if len(sys.argv) > 2 else "-1")

    elif action == "current":
        command.current(alembic_cfg)

    elif action == "history":
        command.history(alembic_cfg)

    elif action == "cleanup-locks":
        cleanup_locks()

    else:
        print(f"Unknown action: {action}")
        print_usage()
        sys.exit(1)


if __name__ == "__main__":
    main()
