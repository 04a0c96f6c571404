"""Shared infrastructure services for the orchestration engine."""

from services.database import check_connection, get_sync_session, run_migrations_sync

__all__ = [
    "check_connection",
    "get_sync_session",
    "run_migrations_sync",
]
