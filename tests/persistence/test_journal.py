"""Tests for the append-only journal."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from cohort.persistence.journal import Journal


class Note(BaseModel):
    id: str
    text: str
    tags: list[str] = []


@pytest.fixture
async def journal(db_path):
    j = Journal(db_path)
    await j.initialize()
    yield j
    await j.close()


async def test_append_and_load_in_order(journal):
    for i in range(3):
        await journal.append("notes", Note(id=f"n{i}", text=f"note {i}", tags=["x"]))

    loaded = await journal.load("notes", Note)

    assert [n.id for n in loaded] == ["n0", "n1", "n2"]
    assert loaded[0].tags == ["x"]
    assert await journal.count("notes") == 3


async def test_streams_are_separate(journal):
    await journal.append("a", Note(id="1", text="a"))
    await journal.append("b", Note(id="2", text="b"))
    assert [n.text for n in await journal.load("a", Note)] == ["a"]
    assert await journal.count("missing") == 0


async def test_load_limit_keeps_most_recent(journal):
    for i in range(5):
        await journal.append("notes", Note(id=str(i), text=str(i)))
    recent = await journal.load("notes", Note, limit=2)
    assert [n.id for n in recent] == ["3", "4"]


async def test_records_survive_reopen(db_path):
    first = Journal(db_path)
    await first.initialize()
    await first.append("notes", Note(id="keep", text="durable"))
    await first.close()

    second = Journal(db_path)
    await second.initialize()
    try:
        assert [n.id for n in await second.load("notes", Note)] == ["keep"]
    finally:
        await second.close()


async def test_uninitialized_journal_refuses_use(db_path):
    with pytest.raises(RuntimeError, match="not initialized"):
        await Journal(db_path).append("notes", Note(id="x", text="x"))
