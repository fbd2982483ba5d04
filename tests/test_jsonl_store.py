from __future__ import annotations

import asyncio

import pytest

from folio.live.jsonl_store import (
    SerialAppendWriter,
    append_jsonl,
    executions_history_path,
    portfolio_history_path,
    read_jsonl,
    sanitize_account_id,
)


def test_account_paths_are_sanitized(tmp_path) -> None:
    assert sanitize_account_id("U1234567") == "U1234567"
    assert sanitize_account_id("a.b/c d") == "a_b_c_d"
    assert sanitize_account_id(None) == "unknown"
    assert executions_history_path("U1", tmp_path) == tmp_path / "executions-U1.jsonl"
    assert portfolio_history_path(None, tmp_path) == tmp_path / "portfolio-history-unknown.jsonl"


def test_read_missing_file_and_append_creates_parents(tmp_path) -> None:
    path = tmp_path / "nested" / "log.jsonl"
    assert read_jsonl(path) == []
    append_jsonl(path, {"a": 1})
    append_jsonl(path, {"a": 2})
    assert read_jsonl(path) == [{"a": 1}, {"a": 2}]


def test_write_failure_is_logged_and_swallowed(tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    writer = SerialAppendWriter(blocker / "log.jsonl")
    writer.submit({"a": 1})
    assert writer.failed_writes == 1


@pytest.mark.asyncio
async def test_writer_serializes_submissions_from_many_tasks(tmp_path) -> None:
    writer = SerialAppendWriter(tmp_path / "log.jsonl")

    async def producer(start: int) -> None:
        for i in range(start, start + 20):
            writer.submit({"n": i})
            await asyncio.sleep(0)

    await asyncio.gather(producer(0), producer(100))
    await writer.flush()
    assert writer.pending == 0

    rows = read_jsonl(writer.path)
    assert len(rows) == 40
    assert [r["n"] for r in rows if r["n"] < 100] == list(range(20))
    assert [r["n"] for r in rows if r["n"] >= 100] == list(range(100, 120))
    await writer.close()


def test_writer_moves_to_a_new_event_loop(tmp_path) -> None:
    writer = SerialAppendWriter(tmp_path / "log.jsonl")

    async def first_loop() -> None:
        writer.submit({"n": 1})

    async def second_loop() -> None:
        writer.submit({"n": 2})
        await writer.close()

    asyncio.run(first_loop())
    asyncio.run(second_loop())

    assert [r["n"] for r in read_jsonl(writer.path)] == [1, 2]
