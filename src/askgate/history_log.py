# /askgate/history_log.py
"""
Append-only store of question/answer exchanges.
Every assistant invocation writes exactly one row; admin views read them back per user.
"""
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .config import DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .observability import get_logger

logger = get_logger(__name__)


class HistoryLog:
    """SQLite-backed `chat_logs` table, safe to share between concurrent requests."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("history log connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_chat_logs_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS chat_logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        username TEXT NOT NULL,
                        question TEXT NOT NULL,
                        answer TEXT,
                        duration_seconds INTEGER,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_chat_logs_username ON chat_logs(username, created_at)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="history_log", migrations=migrations)

    def append(self, username: str, question: str, answer: str, duration_seconds: int) -> int:
        """Inserts one exchange and returns its row id."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO chat_logs (username, question, answer, duration_seconds)
                VALUES (?, ?, ?, ?)
                """,
                (str(username), str(question), str(answer), int(duration_seconds)),
            )
            row_id = int(cursor.lastrowid)
        logger.info("history_saved", log_id=row_id, username=username, duration_seconds=int(duration_seconds))
        return row_id

    def list_users(self) -> list[dict[str, Any]]:
        """Every user with their latest exchange time and exchange count, most recent first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    username,
                    MAX(created_at) AS last_chat_time,
                    COUNT(*) AS chat_count
                FROM chat_logs
                GROUP BY username
                ORDER BY last_chat_time DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def list_chats(self, username: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, question, answer, duration_seconds, created_at
                FROM chat_logs
                WHERE username = ?
                ORDER BY created_at DESC, id DESC
                """,
                (str(username),),
            ).fetchall()
        return [dict(row) for row in rows]

    def count(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) FROM chat_logs").fetchone()
        return int(row[0]) if row else 0
