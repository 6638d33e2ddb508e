from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from agent_turn_loop.errors import StoreError
from agent_turn_loop.messages import Message, Role, Session, utc_now

_PREVIEW_CHARS = 60


def _estimate_tokens(message: Message) -> int:
    # Rough chars/4 heuristic; good enough for listings and pruning decisions.
    size = len(message.content) + sum(len(json.dumps(tc.to_dict())) for tc in message.tool_calls)
    return max(0, size // 4)


class SqliteSessionStore:
    """SQLite-backed session store: one row per session, one row per message.

    Message order is the ``seq`` column, assigned at append time and never
    rewritten.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._initialize_schema()
        except sqlite3.Error as ex:
            raise StoreError(f"Cannot open session database {self._db_path}: {ex}") from ex

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as ex:
            self._conn.rollback()
            raise StoreError(str(ex)) from ex

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'tool', 'system')),
                message_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                token_estimate INTEGER NOT NULL DEFAULT 0,
                UNIQUE(session_id, seq)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_sessions_updated
                ON sessions(updated_at);
            """
        )
        self._conn.commit()

    # -- sessions --

    def create_session(
        self,
        provider: str,
        model: str,
        *,
        session_id: str | None = None,
        title: str | None = None,
    ) -> Session:
        sid = session_id or str(uuid4())
        now = utc_now()
        metadata = {"title": title.strip()} if title and title.strip() else {}
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, provider, model, created_at, updated_at, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (sid, provider, model, now, now, json.dumps(metadata, ensure_ascii=True)),
            )
        logger.debug(f"Created session {sid} ({provider}/{model})")
        return Session(id=sid, provider=provider, model=model, created_at=now, updated_at=now)

    def get_session(self, session_id: str) -> dict | None:
        try:
            row = self._conn.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        except sqlite3.Error as ex:
            raise StoreError(str(ex)) from ex
        if row is None:
            return None
        session = dict(row)
        session["title"] = self._parse_metadata(session["metadata_json"]).get("title") or ""
        return session

    def open_session(self, session_id: str) -> Session:
        row = self.get_session(session_id)
        if row is None:
            raise StoreError(f"Session does not exist: {session_id}")
        messages = self.load(session_id)
        return Session(
            id=row["id"],
            provider=row["provider"],
            model=row["model"],
            messages=messages,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            persisted_count=len(messages),
        )

    def set_session_title(self, session_id: str, title: str) -> None:
        row = self.get_session(session_id)
        if row is None:
            raise StoreError(f"Session does not exist: {session_id}")
        metadata = self._parse_metadata(row["metadata_json"])
        metadata["title"] = title.strip()
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sessions SET metadata_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata, ensure_ascii=True), utc_now(), session_id),
            )

    def list_sessions(self, *, limit: int = 50) -> list[dict]:
        try:
            rows = self._conn.execute(
                """
                SELECT s.id, s.provider, s.model, s.created_at, s.updated_at, s.metadata_json,
                       (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) AS message_count,
                       (SELECT m.message_json FROM messages m
                         WHERE m.session_id = s.id AND m.role = 'user'
                         ORDER BY m.seq ASC LIMIT 1) AS first_user_json
                FROM sessions s
                ORDER BY s.updated_at DESC, s.created_at DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        except sqlite3.Error as ex:
            raise StoreError(str(ex)) from ex

        results: list[dict] = []
        for row in rows:
            session = dict(row)
            first_user_json = session.pop("first_user_json")
            session["title"] = self._parse_metadata(session.pop("metadata_json")).get("title") or ""
            session["preview"] = self._preview(first_user_json)
            results.append(session)
        return results

    def delete_session(self, session_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cursor.rowcount > 0

    def prune(self, *, max_sessions: int, retention_days: int) -> int:
        """Drop sessions idle longer than the retention window, then the oldest beyond ``max_sessions``."""
        cutoff = (datetime.now(UTC) - timedelta(days=max(1, retention_days))).isoformat(timespec="seconds")
        removed = 0
        with self._transaction() as conn:
            removed += conn.execute("DELETE FROM sessions WHERE updated_at < ?", (cutoff,)).rowcount
            if max_sessions > 0:
                overflow = conn.execute(
                    "SELECT id FROM sessions ORDER BY updated_at DESC, created_at DESC LIMIT -1 OFFSET ?",
                    (max_sessions,),
                ).fetchall()
                if overflow:
                    conn.executemany("DELETE FROM sessions WHERE id = ?", [(row["id"],) for row in overflow])
                    removed += len(overflow)
        if removed:
            logger.info(f"Pruned {removed} stored session(s)")
        return removed

    # -- messages --

    def append(self, session_id: str, message: Message) -> None:
        now = utc_now()
        with self._transaction() as conn:
            exists = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if exists is None:
                raise StoreError(f"Session does not exist: {session_id}")
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, message_json, created_at, token_estimate)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    session_id,
                    int(row["max_seq"]) + 1,
                    message.role.value,
                    json.dumps(message.to_dict(), ensure_ascii=True),
                    now,
                    _estimate_tokens(message),
                ),
            )
            conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))

    def load(self, session_id: str) -> list[Message]:
        try:
            rows = self._conn.execute(
                "SELECT message_json FROM messages WHERE session_id = ? ORDER BY seq ASC",
                (session_id,),
            ).fetchall()
        except sqlite3.Error as ex:
            raise StoreError(str(ex)) from ex
        return [Message.from_dict(json.loads(row["message_json"])) for row in rows]

    def _parse_metadata(self, metadata_json: str) -> dict[str, Any]:
        try:
            parsed = json.loads(metadata_json)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _preview(self, message_json: str | None) -> str:
        if not message_json:
            return ""
        try:
            message = Message.from_dict(json.loads(message_json))
        except (KeyError, ValueError):
            return ""
        if message.role is not Role.USER:
            return ""
        text = " ".join(message.content.split())
        if len(text) <= _PREVIEW_CHARS:
            return text
        return text[:_PREVIEW_CHARS] + "..."
