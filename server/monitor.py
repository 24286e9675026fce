from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from proctor.config import MonitorSettings
from proctor.errors import PersistenceError, SessionNotFound, SessionStateError
from proctor.models import Detection, Session, SessionStatus, Severity, SignalKind, SignalMessage, ViolationEvent, ViolationType
from proctor.pipeline import build_collectors
from proctor.scheduler import AsyncioScheduler, Clock, Scheduler, SystemClock
from proctor.session import MonitoringSession
from proctor.sink import ViolationSink
from proctor.throttle import Throttler

from .db import Database

logger = logging.getLogger(__name__)


class MonitorService:
    """Owns the live monitoring sessions of this process and the shared throttler and sink."""

    def __init__(
        self,
        settings: MonitorSettings,
        db: Database,
        clock: Optional[Clock] = None,
        scheduler_factory: Optional[Callable[[], Scheduler]] = None,
        collector_factory: Callable[..., list] = build_collectors,
    ):
        self.settings = settings
        self.db = db
        self.clock = clock or SystemClock()
        self.scheduler_factory = scheduler_factory or (lambda: AsyncioScheduler(self.clock))
        self.collector_factory = collector_factory

        self.throttler = Throttler(settings.throttle)
        self.sink = ViolationSink(db, retries=settings.storage.write_retries)
        self.sessions: Dict[str, MonitoringSession] = {}
        self.schedulers: Dict[str, Scheduler] = {}
        self.references: Dict[str, Any] = {}
        self.completing: Set[str] = set()
        self.listeners: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.listeners.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.listeners:
            self.listeners.remove(queue)

    def _broadcast(self, event: ViolationEvent) -> None:
        payload = json.dumps(event.to_dict())
        for queue in self.listeners:
            self._push_queue(queue, payload)

    @staticmethod
    def _push_queue(queue: asyncio.Queue, payload: str) -> None:
        try:
            if queue.qsize() > 32:
                queue.get_nowait()
            queue.put_nowait(payload)
        except (asyncio.QueueFull, asyncio.QueueEmpty):
            return

    def update_settings(self, settings: MonitorSettings) -> None:
        self.settings = settings
        self.throttler.update_config(settings.throttle)
        self.sink.retries = settings.storage.write_retries
        for monitoring in self.sessions.values():
            monitoring.settings = settings

    async def _launch(self, session: Session) -> MonitoringSession:
        scheduler = self.scheduler_factory()
        collectors = self.collector_factory(
            self.settings,
            session.session_id,
            scheduler,
            self.clock,
            self.references.get(session.session_id),
        )
        monitoring = MonitoringSession(session, collectors, self.throttler, self.sink, self.settings, self.clock)
        monitoring.listeners.append(self._broadcast)
        # registered before starting so concurrent requests reuse it
        self.sessions[session.session_id] = monitoring
        self.schedulers[session.session_id] = scheduler
        await monitoring.start()
        return monitoring

    async def start_session(self, exam_id: str, user_id: str) -> MonitoringSession:
        session = Session(
            session_id=uuid.uuid4().hex,
            exam_id=exam_id,
            user_id=user_id,
            started_at=self.clock.now(),
        )
        await asyncio.to_thread(self.db.create_session, session)
        return await self._launch(session)

    def get_session(self, session_id: str) -> Session:
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def monitoring(self, session_id: str) -> MonitoringSession:
        """The live session, relaunched without history if this process restarted mid-exam."""
        monitoring = self.sessions.get(session_id)
        if monitoring is not None:
            return monitoring
        session = self.get_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise SessionStateError(f"session {session_id} is completed")
        logger.info("resuming monitoring for %s", session_id)
        return await self._launch(session)

    async def report(
        self,
        session_id: str,
        violation_type: ViolationType,
        severity: Optional[Severity] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[ViolationEvent], Optional[Dict[str, Any]]]:
        monitoring = await self.monitoring(session_id)
        detection = Detection(type=violation_type, timestamp=self.clock.now(), metadata=metadata or {})
        event = monitoring.report(detection, severity)
        if event is None:
            return None, None
        record = await monitoring.last_write
        return event, record

    async def signal(
        self, session_id: str, kind: SignalKind, active: bool, timestamp: Optional[float] = None
    ) -> Tuple[List[ViolationEvent], bool]:
        monitoring = await self.monitoring(session_id)
        message = SignalMessage(kind=kind, active=active, timestamp=timestamp or self.clock.now())
        events = monitoring.signal(message)
        return events, monitoring.screen_share_required

    async def register_reference(self, session_id: str, image: Any) -> bool:
        self.get_session(session_id)
        self.references[session_id] = image
        monitoring = self.sessions.get(session_id)
        verifier = monitoring.collector("identity") if monitoring else None
        if verifier is None:
            return False
        return await asyncio.to_thread(verifier.set_reference, image)

    async def violations(self, session_id: str) -> List[ViolationEvent]:
        self.get_session(session_id)
        return await self.sink.list_by_session(session_id)

    async def complete(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise SessionStateError(f"session {session_id} is already completed")
        if session_id in self.completing:
            raise SessionStateError(f"session {session_id} is already being completed")

        self.completing.add(session_id)
        try:
            monitoring = self.sessions.get(session_id)
            # a live session that is already completed means an earlier final write failed
            if monitoring is not None and monitoring.status == SessionStatus.IN_PROGRESS:
                await monitoring.complete()
            ended_at = monitoring.session.ended_at if monitoring else self.clock.now()

            stored = await self._persist_completion(session_id, ended_at)
            self._release(session_id)
            return stored
        finally:
            self.completing.discard(session_id)

    async def _persist_completion(self, session_id: str, ended_at: float) -> Session:
        try:
            return await asyncio.to_thread(self.db.complete_session, session_id, ended_at)
        except PersistenceError:
            logger.warning("completion write failed for %s, retrying once", session_id)
        return await asyncio.to_thread(self.db.complete_session, session_id, ended_at)

    def _release(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.references.pop(session_id, None)
        self.sink.forget(session_id)
        scheduler = self.schedulers.pop(session_id, None)
        if scheduler is not None:
            scheduler.stop()

    async def shutdown(self) -> None:
        for session_id, monitoring in list(self.sessions.items()):
            monitoring.abort()
            self._release(session_id)
        await self.sink.flush()
