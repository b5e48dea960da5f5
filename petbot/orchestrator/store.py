from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from typing import Protocol, Union

from petbot.domain.models import CUSTODY, TRADE, CustodyRequest, TradeRequest
from petbot.orchestrator import state_machine
from petbot.utils import database

logger = logging.getLogger(__name__)

BotRequest = Union[TradeRequest, CustodyRequest]


class RequestStore(Protocol):
    def put(self, request: BotRequest) -> None: ...

    def get(self, request_id: str) -> BotRequest | None: ...

    def list(self, kind: str | None = None, limit: int = 500) -> list[BotRequest]: ...

    def non_terminal(self) -> list[BotRequest]: ...

    def flush(self, timeout: float | None = None) -> None: ...


class MemoryRequestStore:
    """Process-local map; everything is lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, BotRequest] = {}

    def put(self, request: BotRequest) -> None:
        with self._lock:
            self._items[request.id] = request

    def get(self, request_id: str) -> BotRequest | None:
        with self._lock:
            return self._items.get(request_id)

    def list(self, kind: str | None = None, limit: int = 500) -> list[BotRequest]:
        with self._lock:
            items = [r for r in self._items.values() if kind is None or r.kind == kind]
        items.sort(key=lambda r: r.updated_at, reverse=True)
        return items[: int(limit)]

    def non_terminal(self) -> list[BotRequest]:
        with self._lock:
            return [r for r in self._items.values() if not state_machine.is_terminal(r.kind, r.status)]

    def flush(self, timeout: float | None = None) -> None:
        return None


def _log_failed_write(request_id: str, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Failed to persist request %s: %s: %s", request_id, type(exc).__name__, exc)


def _from_doc(kind: str, doc: dict) -> BotRequest:
    if kind == CUSTODY:
        return CustodyRequest.from_dict(doc)
    return TradeRequest.from_dict(doc)


class SqliteRequestStore:
    """
    Durable store backed by the `bot_requests` table.

    Objects returned by `get` are cached so in-place mutation by the orchestrator
    followed by `put` behaves the same as with the in-memory store.

    `put` updates the cache at once and queues the upsert on a single writer
    thread. Writes land in submission order; `flush` blocks until the queue is
    drained. Cache misses read through a query-only WAL connection.
    """

    def __init__(self) -> None:
        database.init_db()
        self._lock = threading.Lock()
        self._cache: dict[str, BotRequest] = {}
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="request_store")
        self._last_write: Future | None = None

    def put(self, request: BotRequest) -> None:
        doc = request.to_dict()
        with self._lock:
            self._cache[request.id] = request
            future = self._writer.submit(database.save_request, request.id, request.kind, request.status, doc)
            self._last_write = future
        future.add_done_callback(partial(_log_failed_write, request.id))

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = self._last_write
        if pending is not None:
            wait([pending], timeout=timeout)

    def get(self, request_id: str) -> BotRequest | None:
        with self._lock:
            cached = self._cache.get(request_id)
        if cached is not None:
            return cached
        doc = database.get_request_doc(request_id)
        if doc is None:
            return None
        request = _from_doc(str(doc.get("kind") or TRADE), doc)
        with self._lock:
            self._cache[request.id] = request
        return request

    def list(self, kind: str | None = None, limit: int = 500) -> list[BotRequest]:
        docs = database.list_request_docs(kind=kind, limit=limit)
        return [_from_doc(str(d.get("kind") or TRADE), d) for d in docs]

    def non_terminal(self) -> list[BotRequest]:
        out: list[BotRequest] = []
        for kind in (TRADE, CUSTODY):
            open_statuses = [s for s in state_machine.statuses(kind) if not state_machine.is_terminal(kind, s)]
            docs = database.list_request_docs(kind=kind, statuses=open_statuses, limit=10_000)
            out.extend(_from_doc(kind, d) for d in docs)
        return out


def build_store(config: dict) -> RequestStore:
    backend = str((config.get("store") or {}).get("backend", "memory"))
    if backend == "sqlite":
        logger.info("Using SQLite request store at %s", database.DB_PATH)
        return SqliteRequestStore()
    logger.info("Using in-memory request store (requests are lost on restart)")
    return MemoryRequestStore()
