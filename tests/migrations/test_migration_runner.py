"""Tests for the journal migration runner."""

import aiosqlite
import pytest

from cohort.migrations.runner import apply_migrations, discover_migrations, get_schema_version


# ── get_schema_version tests ────────────────────────────────────

@pytest.mark.asyncio
async def test_get_schema_version_empty_db(db_path):
    """Fresh database starts at version 0."""
    assert await get_schema_version(db_path) == 0


@pytest.mark.asyncio
async def test_get_schema_version_after_insert(db_path):
    """Returns the max version after manual insert."""
    await get_schema_version(db_path)

    async with aiosqlite.connect(db_path) as db:
        await db.execute("INSERT INTO schema_version (version) VALUES (5)")
        await db.commit()

    assert await get_schema_version(db_path) == 5


# ── apply_migrations tests ──────────────────────────────────────

def test_discover_finds_baseline():
    assert discover_migrations()[0] == (1, "m_001_initial")


@pytest.mark.asyncio
async def test_apply_migrations_baseline(db_path):
    """A fresh DB gets the journal table."""
    applied = await apply_migrations(db_path)
    assert applied == [1]

    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='journal'"
        )
        assert await cursor.fetchone() is not None


@pytest.mark.asyncio
async def test_apply_migrations_idempotent(db_path):
    """Running twice applies nothing the second time."""
    await apply_migrations(db_path)
    assert await apply_migrations(db_path) == []
    assert await get_schema_version(db_path) == 1
