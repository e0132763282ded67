from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from core.paths import THREADS_DB_PATH


@dataclass(frozen=True)
class ConversationThread:
    id: str
    title: str
    created_utc: str
    updated_utc: str


@dataclass(frozen=True)
class ConversationMessage:
    id: int
    thread_id: str
    role: str
    content: str
    created_utc: str


class ThreadsRepository:
    def __init__(self, path: Path | str | None = None) -> None:
        self._lock = threading.Lock()
        self._path = Path(path) if path is not None else THREADS_DB_PATH
        self._conn: sqlite3.Connection | None = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ThreadsRepository connection is closed")
        return self._conn

    def initialize(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS threads(
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    created_utc TEXT NOT NULL,
                    updated_utc TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_utc TEXT NOT NULL,
                    FOREIGN KEY(thread_id) REFERENCES threads(id) ON DELETE CASCADE
                );
                CREATE INDEX IF NOT EXISTS ix_messages_thread_id ON messages(thread_id);
                """
            )
            conn.commit()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def list_threads(self) -> list[ConversationThread]:
        with self._lock:
            cur = self._get_conn().execute(
                "SELECT id, title, created_utc, updated_utc FROM threads ORDER BY updated_utc DESC, rowid DESC"
            )
            rows = cur.fetchall()
        return [ConversationThread(**dict(row)) for row in rows]

    def list_messages(self, thread_id: str) -> list[ConversationMessage]:
        with self._lock:
            cur = self._get_conn().execute(
                "SELECT id, thread_id, role, content, created_utc FROM messages WHERE thread_id = ? ORDER BY id",
                (str(thread_id),),
            )
            rows = cur.fetchall()
        return [ConversationMessage(**dict(row)) for row in rows]

    def create_thread(self, title: str) -> str:
        thread_id = str(uuid4())
        now = self._now()
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO threads(id, title, created_utc, updated_utc) VALUES(?, ?, ?, ?)",
                (thread_id, title or "New Chat", now, now),
            )
            conn.commit()
        return thread_id

    def update_thread_title(self, thread_id: str, title: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "UPDATE threads SET title = ?, updated_utc = ? WHERE id = ?",
                (title, self._now(), str(thread_id)),
            )
            conn.commit()

    def touch_thread(self, thread_id: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute("UPDATE threads SET updated_utc = ? WHERE id = ?", (self._now(), str(thread_id)))
            conn.commit()

    def add_message(self, thread_id: str, role: str, content: str) -> int:
        now = self._now()
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute(
                "INSERT INTO messages(thread_id, role, content, created_utc) VALUES(?, ?, ?, ?)",
                (str(thread_id), role, content, now),
            )
            conn.execute("UPDATE threads SET updated_utc = ? WHERE id = ?", (now, str(thread_id)))
            conn.commit()
            return int(cur.lastrowid)

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
