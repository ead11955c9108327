from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .utils import utc_now_iso


@dataclass(slots=True)
class PublishEvent:
    id: int
    target_name: str
    project: str
    build_number: int
    event_type: str
    timestamp: str
    details: dict[str, Any]


def _row_to_event(row: sqlite3.Row) -> PublishEvent:
    return PublishEvent(
        id=int(row["id"]),
        target_name=row["target_name"],
        project=row["project"],
        build_number=int(row["build_number"]),
        event_type=row["event_type"],
        timestamp=row["timestamp"],
        details=json.loads(row["details_json"]),
    )


class Store:
    """Publishing history and worker state, shared by every worker thread."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS publish_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    target_name TEXT NOT NULL,
                    project TEXT NOT NULL,
                    build_number INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS target_state (
                    target_name TEXT PRIMARY KEY,
                    updated_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_project TEXT,
                    current_build INTEGER,
                    retry_at REAL,
                    last_error TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_publish_events_build
                    ON publish_events(project, build_number, timestamp);
                CREATE INDEX IF NOT EXISTS idx_publish_events_target
                    ON publish_events(target_name, timestamp);
                """
            )
            self.conn.commit()

    def add_event(
        self,
        target_name: str,
        project: str,
        build_number: int,
        event_type: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO publish_events(target_name, project, build_number, event_type, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    target_name,
                    project,
                    build_number,
                    event_type,
                    utc_now_iso(),
                    json.dumps(details or {}, sort_keys=True, default=str),
                ),
            )
            self.conn.commit()

    def list_events(
        self,
        *,
        target_name: str | None = None,
        project: str | None = None,
        build_number: int | None = None,
        limit: int | None = None,
    ) -> list[PublishEvent]:
        clauses: list[str] = []
        values: list[object] = []
        if target_name is not None:
            clauses.append("target_name = ?")
            values.append(target_name)
        if project is not None:
            clauses.append("project = ?")
            values.append(project)
        if build_number is not None:
            clauses.append("build_number = ?")
            values.append(build_number)
        query = "SELECT * FROM publish_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        if limit is not None:
            query += " LIMIT ?"
            values.append(limit)
        with self._lock:
            rows = self.conn.execute(query, values).fetchall()
        return [_row_to_event(row) for row in rows]

    def update_target_state(
        self,
        target_name: str,
        *,
        status: str,
        current_project: str | None = None,
        current_build: int | None = None,
        retry_at: float | None = None,
        last_error: str | None = None,
    ) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO target_state(
                    target_name, updated_at, status, current_project, current_build, retry_at, last_error
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(target_name) DO UPDATE SET
                    updated_at = excluded.updated_at,
                    status = excluded.status,
                    current_project = excluded.current_project,
                    current_build = excluded.current_build,
                    retry_at = excluded.retry_at,
                    last_error = excluded.last_error
                """,
                (target_name, utc_now_iso(), status, current_project, current_build, retry_at, last_error),
            )
            self.conn.commit()

    def list_target_states(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT target_name, updated_at, status, current_project, current_build, retry_at, last_error
                FROM target_state
                ORDER BY target_name
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def event_counts(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT event_type, COUNT(*) AS count FROM publish_events GROUP BY event_type"
            ).fetchall()
        return {str(row["event_type"]): int(row["count"]) for row in rows}
