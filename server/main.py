from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from proctor.config import MonitorSettings
from proctor.errors import PersistenceError, SessionNotFound, SessionStateError
from proctor.models import Session, ViolationEvent
from proctor.scoring import credibility_band, score, severity_histogram

from .config_loader import load_settings, persist_settings, resolve_config_path
from .db import Database
from .monitor import MonitorService
from .schemas import (
    CredibilitySchema,
    ReferencePhoto,
    ReferenceReceipt,
    SessionCreate,
    SessionDetail,
    SessionSchema,
    SessionStarted,
    SessionSummary,
    SettingsSchema,
    SignalCreate,
    SignalReceipt,
    ViolationCreate,
    ViolationReceipt,
    ViolationSchema,
)

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent.parent
CONFIG_PATH = resolve_config_path(ROOT / "configs" / "default.yaml")


def _violation_dicts(violations: List[Any]) -> List[Dict[str, Any]]:
    return [v.to_dict() if isinstance(v, ViolationEvent) else v for v in violations]


def _summary(session: Session, violations: List[Dict[str, Any]], settings: MonitorSettings) -> SessionSummary:
    credibility = score(violations, settings.scoring)
    latest = max(violations, key=lambda v: v["timestamp"]) if violations else None
    return SessionSummary(
        **session.to_dict(),
        violation_count=len(violations),
        credibility_score=credibility.score,
        credibility_band=credibility_band(credibility.score),
        latest_violation=latest,
    )


def create_app(
    settings: Optional[MonitorSettings] = None,
    database: Optional[Database] = None,
    config_path: Path = CONFIG_PATH,
    service: Optional[MonitorService] = None,
) -> FastAPI:
    settings = settings or load_settings(str(config_path))
    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if database is None:
        db_path = ROOT / settings.storage.database_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        database = Database(str(db_path))
    monitor = service or MonitorService(settings, database)
    state = {"settings": settings}

    app = FastAPI(title="integrity-guard", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.monitor = monitor
    app.state.database = database

    @app.exception_handler(SessionNotFound)
    async def session_not_found(request: Request, exc: SessionNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionStateError)
    async def session_state(request: Request, exc: SessionStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("persistence failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await monitor.shutdown()

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "active_sessions": len(monitor.sessions)}

    @app.get("/api/settings", response_model=SettingsSchema)
    async def get_settings() -> SettingsSchema:
        return SettingsSchema(**state["settings"].to_dict())

    @app.post("/api/settings", response_model=SettingsSchema)
    async def update_settings(payload: SettingsSchema) -> SettingsSchema:
        data = payload.model_dump(mode="json")
        new_settings = MonitorSettings.from_dict(data)
        state["settings"] = new_settings
        monitor.update_settings(new_settings)
        persist_settings(str(config_path), data)
        return payload

    @app.post("/api/sessions", response_model=SessionStarted)
    async def start_session(payload: SessionCreate) -> SessionStarted:
        monitoring = await monitor.start_session(payload.exam_id, payload.user_id)
        return SessionStarted(**monitoring.describe())

    @app.get("/api/sessions", response_model=List[SessionSummary])
    async def list_sessions(
        exam_id: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
    ) -> List[SessionSummary]:
        summaries = []
        for session in database.list_sessions(exam_id=exam_id, status=status):
            summaries.append(_summary(session, database.violations(session.session_id), state["settings"]))
        return summaries

    @app.get("/api/sessions/{session_id}", response_model=SessionDetail)
    async def session_detail(session_id: str) -> SessionDetail:
        session = monitor.get_session(session_id)
        violations = _violation_dicts(await monitor.violations(session_id))
        credibility = score(violations, state["settings"].scoring)
        return SessionDetail(
            session=session.to_dict(),
            violations=violations,
            credibility_score=credibility.score,
            credibility_band=credibility_band(credibility.score),
            violations_by_severity=severity_histogram(violations),
            total_violations=credibility.total_violations,
            unsaved_violations=len(monitor.sink.unsaved(session_id)),
        )

    @app.get("/api/sessions/{session_id}/credibility", response_model=CredibilitySchema)
    async def session_credibility(session_id: str) -> CredibilitySchema:
        violations = await monitor.violations(session_id)
        return CredibilitySchema(**score(violations, state["settings"].scoring).to_dict())

    @app.post("/api/sessions/{session_id}/complete", response_model=SessionSchema)
    async def complete_session(session_id: str) -> SessionSchema:
        session = await monitor.complete(session_id)
        return SessionSchema(**session.to_dict())

    @app.post("/api/sessions/{session_id}/signals", response_model=SignalReceipt)
    async def push_signal(session_id: str, payload: SignalCreate) -> SignalReceipt:
        events, reprompt = await monitor.signal(session_id, payload.kind, payload.active, payload.timestamp)
        return SignalReceipt(admitted=[e.to_dict() for e in events], screen_share_required=reprompt)

    @app.post("/api/sessions/{session_id}/reference", response_model=ReferenceReceipt)
    async def register_reference(session_id: str, payload: ReferencePhoto) -> ReferenceReceipt:
        from proctor.devices import decode_image

        try:
            raw = base64.b64decode(payload.image_base64.split(",")[-1], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"invalid base64 image: {exc}")
        image = decode_image(raw)
        if image is None:
            raise HTTPException(status_code=422, detail="image could not be decoded")
        if await monitor.register_reference(session_id, image):
            return ReferenceReceipt(registered=True, message="reference photo registered")
        return ReferenceReceipt(registered=False, message="reference stored; identity checks inactive or no embedding")

    @app.get("/api/sessions/{session_id}/export")
    async def export(session_id: str) -> StreamingResponse:
        monitor.get_session(session_id)
        filename = f"violations_{session_id}.csv"
        return StreamingResponse(
            database.export_csv(session_id),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/violations", response_model=ViolationReceipt)
    async def log_violation(payload: ViolationCreate) -> ViolationReceipt:
        event, record = await monitor.report(payload.session_id, payload.type, payload.severity, payload.metadata)
        if event is None:
            return ViolationReceipt(admitted=False)
        return ViolationReceipt(
            admitted=True,
            persisted=record is not None,
            violation=record or event.to_dict(),
        )

    @app.get("/api/violations/{session_id}", response_model=List[ViolationSchema])
    async def list_violations(session_id: str) -> List[Dict[str, Any]]:
        return _violation_dicts(await monitor.violations(session_id))

    @app.get("/api/users/{user_id}/history", response_model=List[SessionSummary])
    async def user_history(user_id: str) -> List[SessionSummary]:
        return [
            _summary(session, database.violations(session.session_id), state["settings"])
            for session in database.user_history(user_id)
        ]

    @app.websocket("/api/stream")
    async def websocket_stream(ws: WebSocket) -> None:
        await ws.accept()
        queue = monitor.subscribe()
        try:
            while True:
                payload = await queue.get()
                await ws.send_text(payload)
        except WebSocketDisconnect:
            pass
        finally:
            monitor.unsubscribe(queue)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("server.main:app", host="0.0.0.0", port=8000, reload=True)
