from sqlalchemy import inspect, text

from db import Base, engine
from migrations import run_migrations


async def columns_of(table):
    async with engine.connect() as conn:
        return await conn.run_sync(lambda c: {col["name"] for col in inspect(c).get_columns(table)})


async def test_fresh_schema_needs_nothing():
    assert await run_migrations() == []


async def test_adds_missing_columns_to_old_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(
            "CREATE TABLE users (id INTEGER PRIMARY KEY, name VARCHAR(100), email VARCHAR(255), "
            "password_hash VARCHAR(255), role VARCHAR(20))"
        ))
        await conn.execute(text("CREATE TABLE assign_requests (id INTEGER PRIMARY KEY, note TEXT)"))

    added = await run_migrations()

    assert added == ["users.job_title", "users.last_update_submitted", "assign_requests.resolved_note"]
    assert {"job_title", "last_update_submitted"} <= await columns_of("users")
    assert "resolved_note" in await columns_of("assign_requests")

    # second run is a no-op
    assert await run_migrations() == []

    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE users"))
        await conn.execute(text("DROP TABLE assign_requests"))
