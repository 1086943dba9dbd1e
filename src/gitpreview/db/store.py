"""Persistence for project records and lifecycle events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from gitpreview.db.migrations import apply_migrations
from gitpreview.models.events import EventType, ProjectEvent
from gitpreview.models.project import ProjectRecord, ProjectStatus, StackProfile


class ProjectStore(Protocol):
    """Key-value contract the registry persists through."""

    async def save(self, record: ProjectRecord) -> None: ...

    async def find_by_id(self, project_id: str) -> ProjectRecord | None: ...

    async def find_all(self) -> list[ProjectRecord]: ...

    async def delete_by_id(self, project_id: str) -> None: ...

    async def append_event(self, event: ProjectEvent) -> None: ...

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ProjectEvent]: ...


class MemoryStore:
    """Process-local store; keeps copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._records: dict[str, ProjectRecord] = {}
        self._events: list[ProjectEvent] = []

    async def save(self, record: ProjectRecord) -> None:
        self._records[record.id] = record.model_copy(deep=True)

    async def find_by_id(self, project_id: str) -> ProjectRecord | None:
        record = self._records.get(project_id)
        return record.model_copy(deep=True) if record is not None else None

    async def find_all(self) -> list[ProjectRecord]:
        records = sorted(self._records.values(), key=lambda item: item.created_at)
        return [record.model_copy(deep=True) for record in records]

    async def delete_by_id(self, project_id: str) -> None:
        self._records.pop(project_id, None)

    async def append_event(self, event: ProjectEvent) -> None:
        self._events.append(event.model_copy(deep=True))

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ProjectEvent]:
        events = [
            event
            for event in self._events
            if (project_id is None or event.project_id == project_id)
            and (event_type is None or event.event_type is event_type)
            and (since is None or event.timestamp >= since)
            and (until is None or event.timestamp <= until)
        ]
        events.sort(key=lambda item: item.timestamp)
        return [event.model_copy(deep=True) for event in events]


class SQLiteStore:
    """Data access layer for projects and events."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        try:
            await apply_migrations(conn)
            yield conn
        finally:
            await conn.close()

    async def save(self, record: ProjectRecord) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO projects(
                    id,
                    source_path,
                    origin_url,
                    stack_profile,
                    status,
                    assigned_port,
                    preview_url,
                    last_error,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    source_path=excluded.source_path,
                    origin_url=excluded.origin_url,
                    status=excluded.status,
                    assigned_port=excluded.assigned_port,
                    preview_url=excluded.preview_url,
                    last_error=excluded.last_error,
                    updated_at=excluded.updated_at
                """,
                (
                    record.id,
                    str(record.source_path),
                    record.origin_url,
                    record.stack_profile.model_dump_json(),
                    record.status.value,
                    record.assigned_port,
                    record.preview_url,
                    record.last_error,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
            await conn.commit()

    async def find_all(self) -> list[ProjectRecord]:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM projects ORDER BY created_at ASC")
            rows = await cursor.fetchall()
        return [self._record_from_row(row) for row in rows]

    async def find_by_id(self, project_id: str) -> ProjectRecord | None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._record_from_row(row)

    async def delete_by_id(self, project_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            await conn.commit()

    async def append_event(self, event: ProjectEvent) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO project_events(id, project_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.project_id,
                    event.event_type.value,
                    json.dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ProjectEvent]:
        query = "SELECT * FROM project_events WHERE 1 = 1"
        params: list[str] = []

        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        if until:
            query += " AND timestamp <= ?"
            params.append(until.isoformat())

        query += " ORDER BY timestamp ASC"

        async with self.connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()

        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _record_from_row(row: aiosqlite.Row) -> ProjectRecord:
        return ProjectRecord(
            id=str(row["id"]),
            source_path=Path(str(row["source_path"])),
            origin_url=str(row["origin_url"]),
            stack_profile=StackProfile.model_validate_json(str(row["stack_profile"])),
            status=ProjectStatus(str(row["status"])),
            assigned_port=int(row["assigned_port"]),
            preview_url=str(row["preview_url"]),
            last_error=str(row["last_error"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
        )

    @staticmethod
    def _event_from_row(row: aiosqlite.Row) -> ProjectEvent:
        return ProjectEvent(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            event_type=EventType(str(row["event_type"])),
            payload=json.loads(str(row["payload"])),
            timestamp=datetime.fromisoformat(str(row["timestamp"])),
        )
