import json
import logging
import os
import sqlite3
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from polychat.schemas.chat import ChatSession, Message
from polychat.services.credential_store import get_data_dir

logger = logging.getLogger("polychat.chat_store")

DB_FILE_NAME = "chat.db"
MAX_SESSIONS = 50
DEFAULT_TITLE = "New chat"
TITLE_LENGTH = 30

_active_db_path: Path | None = None


def _default_db_path() -> Path:
    custom_path = os.getenv("POLYCHAT_CHAT_DB_PATH", "").strip()
    if custom_path:
        return Path(custom_path)
    return get_data_dir() / DB_FILE_NAME


def _fallback_db_path() -> Path:
    return Path(tempfile.gettempdir()) / "polychat" / DB_FILE_NAME


def _get_active_db_path() -> Path:
    global _active_db_path
    if _active_db_path is not None:
        return _active_db_path
    _active_db_path = _default_db_path()
    return _active_db_path


def _set_fallback_db_path() -> Path:
    global _active_db_path
    _active_db_path = _fallback_db_path()
    return _active_db_path


def reset_db_path() -> None:
    """Forget the resolved database path so the next call re-reads the environment."""
    global _active_db_path
    _active_db_path = None


def _is_disk_io_error(exc: sqlite3.OperationalError) -> bool:
    return "disk i/o error" in str(exc).lower()


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _create_tables(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                session_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                provider TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                message_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload_json TEXT NOT NULL,
                PRIMARY KEY(session_id, position),
                FOREIGN KEY(session_id) REFERENCES chat_sessions(session_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_sessions_updated ON chat_sessions(updated_at)")
        conn.commit()


def init_db() -> None:
    db_path = _get_active_db_path()
    try:
        _create_tables(db_path)
    except sqlite3.OperationalError as exc:
        if not _is_disk_io_error(exc):
            raise
        fallback = _set_fallback_db_path()
        logger.warning("History database path not writable, using temp dir: %s", fallback)
        _create_tables(fallback)


def _execute(write: bool, fn) -> Any:
    """Run ``fn(conn)`` against the active database, retrying once on the temp-dir fallback."""
    init_db()
    db_path = _get_active_db_path()
    try:
        with sqlite3.connect(db_path) as conn:
            conn.row_factory = sqlite3.Row
            result = fn(conn)
            if write:
                conn.commit()
            return result
    except sqlite3.OperationalError as exc:
        if not _is_disk_io_error(exc):
            raise
        fallback = _set_fallback_db_path()
        logger.warning("History database I/O failed, using temp dir: %s", fallback)
        _create_tables(fallback)
        with sqlite3.connect(fallback) as conn:
            conn.row_factory = sqlite3.Row
            result = fn(conn)
            if write:
                conn.commit()
            return result


def generate_title(content: str) -> str:
    """Session title from the first user message: newlines flattened, 30 chars max."""
    trimmed = content.strip().replace("\n", " ")
    if len(trimmed) <= TITLE_LENGTH:
        return trimmed
    return trimmed[:TITLE_LENGTH] + "..."


def create_session(provider: str) -> ChatSession:
    """Create an empty session, make it current, and trim to the newest MAX_SESSIONS."""

    session_id = f"session_{uuid.uuid4().hex}"
    now = _now()

    def _insert(conn: sqlite3.Connection) -> None:
        conn.execute(
            "INSERT INTO chat_sessions (session_id, title, provider, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (session_id, DEFAULT_TITLE, provider, now, now),
        )
        stale = conn.execute(
            "SELECT session_id FROM chat_sessions ORDER BY updated_at DESC LIMIT -1 OFFSET ?",
            (MAX_SESSIONS,),
        ).fetchall()
        for row in stale:
            conn.execute("DELETE FROM chat_messages WHERE session_id=?", (row["session_id"],))
            conn.execute("DELETE FROM chat_sessions WHERE session_id=?", (row["session_id"],))

    _execute(True, _insert)
    set_current_session_id(session_id)

    created = datetime.strptime(now, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
    return ChatSession(id=session_id, title=DEFAULT_TITLE, provider=provider, created_at=created, updated_at=created)


def update_session(session_id: str, messages: list[Message]) -> bool:
    """Replace the stored messages of a session; names it after the first user message."""

    def _update(conn: sqlite3.Connection) -> bool:
        row = conn.execute("SELECT title FROM chat_sessions WHERE session_id=?", (session_id,)).fetchone()
        if row is None:
            return False

        title = row["title"]
        if title == DEFAULT_TITLE:
            first_user = next((m for m in messages if m.role == "user"), None)
            if first_user is not None:
                title = generate_title(first_user.content)

        conn.execute("DELETE FROM chat_messages WHERE session_id=?", (session_id,))
        conn.executemany(
            "INSERT INTO chat_messages (message_id, session_id, position, payload_json) VALUES (?, ?, ?, ?)",
            [(m.id, session_id, i, m.model_dump_json()) for i, m in enumerate(messages)],
        )
        conn.execute(
            "UPDATE chat_sessions SET title=?, updated_at=? WHERE session_id=?",
            (title, _now(), session_id),
        )
        return True

    return _execute(True, _update)


def append_message(session_id: str, message: Message) -> bool:
    """Append one committed message to a session."""

    def _append(conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) AS next_pos FROM chat_messages WHERE session_id=?",
            (session_id,),
        ).fetchone()
        exists = conn.execute("SELECT title FROM chat_sessions WHERE session_id=?", (session_id,)).fetchone()
        if exists is None:
            return False

        conn.execute(
            "INSERT INTO chat_messages (message_id, session_id, position, payload_json) VALUES (?, ?, ?, ?)",
            (message.id, session_id, row["next_pos"], message.model_dump_json()),
        )
        title = exists["title"]
        if title == DEFAULT_TITLE and message.role == "user":
            title = generate_title(message.content)
        conn.execute(
            "UPDATE chat_sessions SET title=?, updated_at=? WHERE session_id=?",
            (title, _now(), session_id),
        )
        return True

    return _execute(True, _append)


def _row_to_session(row: sqlite3.Row, messages: list[Message]) -> ChatSession:
    return ChatSession(
        id=row["session_id"],
        title=row["title"],
        provider=row["provider"],
        messages=messages,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _load_messages(conn: sqlite3.Connection, session_id: str) -> list[Message]:
    rows = conn.execute(
        "SELECT payload_json FROM chat_messages WHERE session_id=? ORDER BY position ASC",
        (session_id,),
    ).fetchall()
    return [Message.model_validate(json.loads(row["payload_json"])) for row in rows]


def list_sessions(limit: int = MAX_SESSIONS) -> list[ChatSession]:
    """Sessions newest first, without their messages."""

    def _list(conn: sqlite3.Connection) -> list[ChatSession]:
        rows = conn.execute(
            """
            SELECT session_id, title, provider, created_at, updated_at
            FROM chat_sessions
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_row_to_session(row, []) for row in rows]

    return _execute(False, _list)


def get_session(session_id: str) -> ChatSession | None:
    def _get(conn: sqlite3.Connection) -> ChatSession | None:
        row = conn.execute(
            "SELECT session_id, title, provider, created_at, updated_at FROM chat_sessions WHERE session_id=?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_session(row, _load_messages(conn, session_id))

    return _execute(False, _get)


def delete_session(session_id: str) -> bool:
    """Delete a session; if it was current, the newest remaining one becomes current."""

    def _delete(conn: sqlite3.Connection) -> bool:
        conn.execute("DELETE FROM chat_messages WHERE session_id=?", (session_id,))
        cur = conn.execute("DELETE FROM chat_sessions WHERE session_id=?", (session_id,))
        return cur.rowcount > 0

    deleted = _execute(True, _delete)
    if get_current_session_id() == session_id:
        remaining = list_sessions(limit=1)
        set_current_session_id(remaining[0].id if remaining else None)
    return deleted


def get_current_session_id() -> str | None:
    def _get(conn: sqlite3.Connection) -> str | None:
        row = conn.execute("SELECT value FROM app_state WHERE key='current_session_id'").fetchone()
        return row["value"] if row and row["value"] else None

    return _execute(False, _get)


def set_current_session_id(session_id: str | None) -> None:
    def _set(conn: sqlite3.Connection) -> None:
        if session_id:
            conn.execute(
                "INSERT INTO app_state (key, value) VALUES ('current_session_id', ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (session_id,),
            )
        else:
            conn.execute("DELETE FROM app_state WHERE key='current_session_id'")

    _execute(True, _set)
