import logging

from sqlalchemy import inspect, text

from db import engine

logger = logging.getLogger(__name__)

# (table, column, DDL type) for columns added after the first release
ADDED_COLUMNS = [
    ("users", "job_title", "VARCHAR(100) NULL"),
    ("users", "last_update_submitted", "DATETIME NULL"),
    ("tasks", "restrict_to", "JSON NULL"),
    ("tasks", "summary", "TEXT NULL"),
    ("tasks", "completed_at", "DATETIME NULL"),
    ("task_updates", "subtask_completions", "JSON NULL"),
    ("assign_requests", "resolved_note", "TEXT NULL"),
]


def _existing_columns(sync_conn, table: str) -> set:
    inspector = inspect(sync_conn)
    if not inspector.has_table(table):
        return set()
    return {c["name"] for c in inspector.get_columns(table)}


async def run_migrations():
    """Add any missing columns to tables created by an older schema. Safe to run on every start."""
    added = []
    async with engine.begin() as conn:
        for table, column, ddl in ADDED_COLUMNS:
            columns = await conn.run_sync(_existing_columns, table)
            if not columns:
                # Table does not exist yet; create_all builds it complete
                continue
            if column in columns:
                continue
            await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            added.append(f"{table}.{column}")
            logger.info(f"Added {column} column to {table} table")
    if not added:
        logger.info("Schema is up to date")
    return added
