from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from .audit import log_write_dropped
from .errors import PersistenceError
from .models import ViolationEvent

logger = logging.getLogger(__name__)


class ViolationSink:
    """
    Best-effort, append-only violation log in front of a store.

    The store is any object with blocking `insert_violation(event) -> dict`
    and `violations(session_id) -> list` methods; calls run on a worker
    thread. A failed write is retried `retries` times and then dropped with a
    log line. Every appended event is also kept in memory so reads fall back to
    it when the store is degraded, and events the store never accepted are
    merged into store reads until the session is forgotten.
    """

    def __init__(self, store: Any = None, retries: int = 1):
        self.store = store
        self.retries = retries
        self._unsaved: Dict[str, List[ViolationEvent]] = {}
        self._recorded: Dict[str, List[ViolationEvent]] = {}
        self._pending: Set[asyncio.Task] = set()

    def append(self, event: ViolationEvent) -> "asyncio.Task[Optional[Dict[str, Any]]]":
        self._recorded.setdefault(event.session_id, []).append(event)
        task = asyncio.get_running_loop().create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, event: ViolationEvent) -> Optional[Dict[str, Any]]:
        if self.store is None:
            return None
        last_error: Optional[Exception] = None
        for _ in range(self.retries + 1):
            try:
                return await asyncio.to_thread(self.store.insert_violation, event)
            except Exception as exc:
                last_error = exc
        log_write_dropped(event.session_id, event.type.value, last_error)
        self._unsaved.setdefault(event.session_id, []).append(event)
        return None

    def unsaved(self, session_id: str) -> List[ViolationEvent]:
        return list(self._unsaved.get(session_id, []))

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def recorded(self, session_id: str) -> List[ViolationEvent]:
        return sorted(self._recorded.get(session_id, []), key=lambda e: e.timestamp)

    async def list_by_session(self, session_id: str) -> List[ViolationEvent]:
        if self.store is None:
            return self.recorded(session_id)
        try:
            rows = await asyncio.to_thread(self.store.violations, session_id)
        except Exception:
            logger.exception("violation read failed for %s; serving in-memory log", session_id)
            return self.recorded(session_id)
        events = [row if isinstance(row, ViolationEvent) else ViolationEvent.from_dict(row) for row in rows]
        events.extend(self._unsaved.get(session_id, []))
        return sorted(events, key=lambda e: e.timestamp)

    def forget(self, session_id: str) -> None:
        self._recorded.pop(session_id, None)
        dropped = self._unsaved.pop(session_id, None)
        if dropped:
            logger.warning("releasing %d unsaved violations for %s", len(dropped), session_id)


class HttpViolationStore:
    """Writes violations to a remote review server over its REST contract."""

    def __init__(self, base_url: str, timeout: float = 2.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def insert_violation(self, event: ViolationEvent) -> Dict[str, Any]:
        payload = {
            "session_id": event.session_id,
            "type": event.type.value,
            "severity": event.severity.value,
            "metadata": event.metadata,
        }
        try:
            response = self.client.post("/api/violations", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"violation POST failed: {exc}") from exc
        body = response.json()
        return body.get("violation") or body

    def violations(self, session_id: str) -> List[Dict[str, Any]]:
        try:
            response = self.client.get(f"/api/violations/{session_id}")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"violation GET failed: {exc}") from exc
        return response.json()

    def close(self) -> None:
        self.client.close()
