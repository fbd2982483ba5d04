"""Per-account JSONL append logs with a serialized write chain."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
import json
import re

from loguru import logger

DEFAULT_BASE_DIR = Path("~/.folio")

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_account_id(account_id: str | None) -> str:
    return _UNSAFE.sub("_", str(account_id or "unknown"))


def portfolio_history_path(account_id: str | None, base_dir: str | Path = DEFAULT_BASE_DIR) -> Path:
    return Path(base_dir).expanduser() / f"portfolio-history-{sanitize_account_id(account_id)}.jsonl"


def executions_history_path(account_id: str | None, base_dir: str | Path = DEFAULT_BASE_DIR) -> Path:
    return Path(base_dir).expanduser() / f"executions-{sanitize_account_id(account_id)}.jsonl"


def read_jsonl(path: str | Path) -> list[dict[str, Any]]:
    """Read all JSON object lines; a missing file is empty and bad lines are skipped."""
    file_path = Path(path)
    if not file_path.exists():
        return []
    out: list[dict[str, Any]] = []
    with file_path.open("r", encoding="utf-8") as handle:
        for raw in handle:
            raw = raw.strip()
            if not raw:
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(row, dict):
                out.append(row)
    return out


def append_jsonl(path: str | Path, record: dict[str, Any]) -> None:
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str) + "\n")


class SerialAppendWriter:
    """
    Ordered append chain for one JSONL file.

    Inside a running event loop, records are queued and written one at a
    time by a single worker task, so concurrent appends never interleave.
    Without a running loop the write happens inline. Write failures are
    logged and dropped; the caller's in-memory state stays authoritative.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._queue: asyncio.Queue[dict[str, Any]] | None = None
        self._worker: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.failed_writes = 0

    def submit(self, record: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(record)
            return
        if loop is not self._loop:
            self._rebind(loop)
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        self._queue.put_nowait(record)

    def _rebind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Move the chain onto `loop`, writing anything left from the previous loop."""
        stale = self._queue
        if stale is not None:
            while not stale.empty():
                self._write(stale.get_nowait())
        self._queue = asyncio.Queue()
        self._worker = None
        self._loop = loop

    def _write(self, record: dict[str, Any]) -> None:
        try:
            append_jsonl(self.path, record)
        except OSError as exc:
            self.failed_writes += 1
            logger.warning(f"Failed to append to {self.path}: {exc}")

    async def _drain(self) -> None:
        queue = self._queue
        while True:
            record = await queue.get()
            try:
                await asyncio.to_thread(self._write, record)
            finally:
                queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def flush(self) -> None:
        """Wait until every queued record has been written."""
        loop = asyncio.get_running_loop()
        if self._queue is not None and loop is not self._loop:
            self._rebind(loop)
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._queue = None
        self._loop = None
