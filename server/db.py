from __future__ import annotations

import csv
import io
import json
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from proctor.errors import PersistenceError, SessionNotFound
from proctor.models import Session, SessionStatus, ViolationEvent

SESSION_KEYS = ["session_id", "exam_id", "user_id", "started_at", "status", "ended_at"]
VIOLATION_KEYS = ["id", "session_id", "type", "severity", "timestamp", "metadata"]


def _session_from_row(row: tuple) -> Session:
    data = dict(zip(SESSION_KEYS, row))
    data["status"] = SessionStatus(data["status"])
    return Session(**data)


def _violation_from_row(row: tuple) -> Dict[str, Any]:
    data = dict(zip(VIOLATION_KEYS, row))
    data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
    return data


class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute("PRAGMA foreign_keys = ON;")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    exam_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    status TEXT NOT NULL,
                    ended_at REAL
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_exam ON sessions(exam_id);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS violations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL REFERENCES sessions(id),
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    ts REAL NOT NULL,
                    metadata TEXT
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_violations_session_ts ON violations(session_id, ts);")
            self.conn.commit()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def create_session(self, session: Session) -> Session:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                "INSERT INTO sessions (id, exam_id, user_id, started_at, status, ended_at) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    session.session_id,
                    session.exam_id,
                    session.user_id,
                    session.started_at,
                    session.status.value,
                    session.ended_at,
                ),
            )
            self.conn.commit()
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT id, exam_id, user_id, started_at, status, ended_at FROM sessions WHERE id = ?",
                (session_id,),
            )
            row = cur.fetchone()
        return _session_from_row(row) if row else None

    def complete_session(self, session_id: str, ended_at: float) -> Session:
        try:
            with self.lock:
                cur = self.conn.cursor()
                cur.execute(
                    "UPDATE sessions SET status = ?, ended_at = ? WHERE id = ? AND status = ?",
                    (SessionStatus.COMPLETED.value, ended_at, session_id, SessionStatus.IN_PROGRESS.value),
                )
                self.conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not complete session {session_id}: {exc}") from exc
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list_sessions(self, exam_id: Optional[str] = None, status: Optional[str] = None) -> List[Session]:
        query = "SELECT id, exam_id, user_id, started_at, status, ended_at FROM sessions"
        clauses, params = [], []
        if exam_id:
            clauses.append("exam_id = ?")
            params.append(exam_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
        return [_session_from_row(row) for row in rows]

    def user_history(self, user_id: str) -> List[Session]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT id, exam_id, user_id, started_at, status, ended_at
                FROM sessions WHERE user_id = ? AND status = ? ORDER BY started_at DESC
                """,
                (user_id, SessionStatus.COMPLETED.value),
            )
            rows = cur.fetchall()
        return [_session_from_row(row) for row in rows]

    def insert_violation(self, event: ViolationEvent) -> Dict[str, Any]:
        try:
            with self.lock:
                cur = self.conn.cursor()
                cur.execute(
                    "INSERT INTO violations (session_id, type, severity, ts, metadata) VALUES (?, ?, ?, ?, ?)",
                    (
                        event.session_id,
                        event.type.value,
                        event.severity.value,
                        event.timestamp,
                        json.dumps(event.metadata or {}),
                    ),
                )
                self.conn.commit()
                violation_id = cur.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not store {event.type.value} for {event.session_id}: {exc}") from exc
        record = event.to_dict()
        record["id"] = violation_id
        return record

    def violations(self, session_id: str) -> List[Dict[str, Any]]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT id, session_id, type, severity, ts, metadata
                FROM violations WHERE session_id = ? ORDER BY ts ASC, id ASC
                """,
                (session_id,),
            )
            rows = cur.fetchall()
        return [_violation_from_row(row) for row in rows]

    def export_csv(self, session_id: str) -> Iterable[bytes]:
        headers = ["id", "session_id", "type", "severity", "timestamp", "metadata"]
        yield ",".join(headers).encode() + b"\n"
        for row in self.violations(session_id):
            row["metadata"] = json.dumps(row["metadata"])
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=headers)
            writer.writerow(row)
            yield buf.getvalue().encode()
