"""
Durable session persistence with debounced whole-snapshot writes.

``SessionStore`` is the only component that reads or writes stored
sessions. The in-memory cache is the source of truth between flushes;
writes go through ``WriteCoalescer``, which keeps only the latest
snapshot per session and writes it after a short idle period. Every
write replaces the whole snapshot, so a crash loses at most the
unflushed delta and never leaves a half-written session.
"""

import asyncio
import json
import os
import re
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from tutor_scheduler.config import settings
from tutor_scheduler.logging_context import get_session_logger
from tutor_scheduler.schemas.session_schema import Session

logger = get_session_logger(__name__)

Snapshot = dict[str, Any]
WriteFn = Callable[[str, Snapshot], Awaitable[None]]


class KeyValueStore(Protocol):
    """Single-instance-per-key storage with get/put semantics."""

    async def get(self, key: str) -> Optional[Snapshot]: ...

    async def put(self, key: str, value: Snapshot) -> None: ...


class InMemoryKeyValueStore:
    """Stores serialized JSON per key, so reads never share state with writers."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.put_count = 0

    async def get(self, key: str) -> Optional[Snapshot]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Snapshot) -> None:
        self._data[key] = json.dumps(value)
        self.put_count += 1

    def __contains__(self, key: str) -> bool:
        return key in self._data


class FileKeyValueStore:
    """One JSON file per key, replaced atomically on every put."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self._dir / f"{safe}.json"

    async def get(self, key: str) -> Optional[Snapshot]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def put(self, key: str, value: Snapshot) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    @staticmethod
    def _read(path: Path) -> Optional[Snapshot]:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, value: Snapshot) -> None:
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False)
        os.replace(tmp, path)


class WriteCoalescer:
    """
    Debounced single-writer queue of whole snapshots.

    ``enqueue`` records the latest snapshot for a key and (re)starts the
    idle timer. One writer task waits until no enqueue has happened for
    ``delay`` seconds, then writes the latest snapshot of every pending
    key. Enqueueing while a drain is in progress only updates "latest".
    """

    def __init__(self, write: WriteFn, delay: float) -> None:
        self._write = write
        self._delay = delay
        self._latest: dict[str, Snapshot] = {}
        self._activity = asyncio.Event()
        self._drain_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._writing: Optional[str] = None
        self.writes = 0

    @property
    def pending(self) -> bool:
        return bool(self._latest)

    def is_pending(self, key: str) -> bool:
        """Whether a snapshot for ``key`` is queued or being written."""
        return key in self._latest or key == self._writing

    def enqueue(self, key: str, snapshot: Snapshot) -> None:
        self._latest[key] = snapshot
        self._activity.set()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def flush(self) -> None:
        """Write every pending snapshot now."""
        await self._drain()

    async def close(self) -> None:
        await self.flush()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        try:
            while self._latest:
                await self._wait_idle()
                await self._drain()
        except Exception:
            logger.exception("Session write failed; %d snapshot(s) still pending", len(self._latest))

    async def _wait_idle(self) -> None:
        while True:
            self._activity.clear()
            try:
                await asyncio.wait_for(self._activity.wait(), self._delay)
            except asyncio.TimeoutError:
                return

    async def _drain(self) -> None:
        async with self._drain_lock:
            while self._latest:
                key = next(iter(self._latest))
                snapshot = self._latest.pop(key)
                self._writing = key
                try:
                    await self._write(key, snapshot)
                except Exception:
                    # Keep the snapshot unless a newer one arrived meanwhile
                    self._latest.setdefault(key, snapshot)
                    raise
                finally:
                    self._writing = None
                self.writes += 1
                logger.debug("Persisted session '%s'", key)


class SessionStore:
    """Sole persistence authority for session snapshots."""

    def __init__(
        self,
        kv: KeyValueStore,
        flush_delay: Optional[float] = None,
        cache_size: Optional[int] = None,
    ) -> None:
        self._kv = kv
        delay = settings.session.flush_delay_sec if flush_delay is None else flush_delay
        self._cache_size = settings.session.cache_size if cache_size is None else cache_size
        self._cache: OrderedDict[str, Session] = OrderedDict()
        self._coalescer = WriteCoalescer(kv.put, delay)

    @property
    def coalescer(self) -> WriteCoalescer:
        return self._coalescer

    def __len__(self) -> int:
        return len(self._cache)

    def _remember(self, session_id: str, session: Session) -> None:
        """Cache a snapshot, evicting least recently used ones with no pending write."""
        self._cache[session_id] = session
        self._cache.move_to_end(session_id)
        if len(self._cache) <= self._cache_size:
            return
        for key in list(self._cache):
            if len(self._cache) <= self._cache_size:
                break
            if key != session_id and not self._coalescer.is_pending(key):
                del self._cache[key]
                logger.debug("Evicted session '%s' from cache", key)

    async def get(self, session_id: str) -> Optional[Session]:
        """Return a private copy of the session, or None if it was never stored."""
        cached = self._cache.get(session_id)
        if cached is None:
            data = await self._kv.get(session_id)
            if data is None:
                return None
            # A put may have landed while the read was in flight
            cached = self._cache.get(session_id) or Session.from_snapshot(data)
            cached.session_id = cached.session_id or session_id
        self._remember(session_id, cached)
        return cached.model_copy(deep=True)

    async def put(self, session: Session) -> Session:
        """Replace the stored session with this one and schedule the write."""
        if not session.session_id:
            raise ValueError("Session must have a session_id before it is stored")
        session.last_accessed_at = datetime.now(timezone.utc)
        stored = session.model_copy(deep=True)
        self._coalescer.enqueue(session.session_id, stored.to_snapshot())
        self._remember(session.session_id, stored)
        return session

    async def update(self, session: Session, partial: Snapshot) -> Session:
        """
        Merge a partial update at top-level-key granularity.

        Nested values replace the stored value wholesale. Keys may be
        given as camelCase aliases or snake_case field names.

        Raises:
            ValueError: If a key is not a session field or the result is invalid.
        """
        snapshot = session.to_snapshot()
        for key, value in partial.items():
            alias = _field_alias(key)
            if alias is None:
                raise ValueError(f"Unknown session field: {key}")
            snapshot[alias] = value
        snapshot["sessionId"] = session.session_id
        merged = Session.from_snapshot(snapshot)
        return await self.put(merged)

    async def flush(self) -> None:
        await self._coalescer.flush()

    async def close(self) -> None:
        await self._coalescer.close()


def _field_alias(key: str) -> Optional[str]:
    for name, info in Session.model_fields.items():
        alias = info.alias or name
        if key in (name, alias):
            return alias
    return None
