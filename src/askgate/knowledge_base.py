# /askgate/knowledge_base.py
"""
Knowledge base of uploaded reference documents (PDF / Markdown / text).

Uploads are stored as-is, converted to Markdown text, and tracked in SQLite with a
processing status. Completed documents can be concatenated into a context block and
prepended to a question before it is handed to the assistant.
"""
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from .config import KB_DB_PATH, KB_PROMPT_MODE, STORAGE_DIR
from .db_migrations import SqliteMigration, apply_sqlite_migrations
from .observability import get_logger
from .pdf_markdown import pdf_to_markdown
from .storage_provider import FileStorageProvider, LocalFileStorageProvider

logger = get_logger(__name__)

SUPPORTED_SUFFIXES = {".pdf", ".md", ".markdown", ".txt"}
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

KB_BEGIN_BANNER = "===== KNOWLEDGE BASE BEGIN ====="
KB_END_BANNER = "===== KNOWLEDGE BASE END ====="
KB_FULL_INSTRUCTION = (
    "Use the reference documents from the knowledge base below as additional context "
    "when answering the question that follows them."
)
KB_SHORT_INSTRUCTION = (
    "Reference documents are available in the knowledge base directory {directory}; "
    "consult them when they are relevant to the question."
)


class UnsupportedDocumentError(ValueError):
    """The uploaded file type cannot be ingested."""


class DocumentProcessingError(RuntimeError):
    """Text extraction failed; the document row is left in the failed state."""


class KnowledgeBase:
    """Stores uploads, extracts their text, and builds prompt context from completed documents."""

    def __init__(
        self,
        storage_dir: Path = STORAGE_DIR,
        db_path: Path | None = None,
        storage_provider: FileStorageProvider | None = None,
    ):
        self.storage: FileStorageProvider = storage_provider or LocalFileStorageProvider(Path(storage_dir))
        self.storage.ensure_ready()
        self.storage_dir = Path(self.storage.root)
        self.db_path = Path(db_path) if db_path else Path(KB_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("knowledge base connection is closed")
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
                name="create_kb_documents_table",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS kb_documents (
                        doc_id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        stored_file TEXT NOT NULL,
                        text_file TEXT,
                        file_type TEXT NOT NULL,
                        size INTEGER NOT NULL DEFAULT 0,
                        upload_date TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        error TEXT
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_kb_documents_status ON kb_documents(status)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="knowledge_base", migrations=migrations)

    @staticmethod
    def _row_to_doc_info(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "doc_id": str(row["doc_id"]),
            "title": str(row["title"]),
            "stored_file": str(row["stored_file"]),
            "text_file": str(row["text_file"] or ""),
            "file_type": str(row["file_type"]),
            "size": int(row["size"] or 0),
            "upload_date": str(row["upload_date"]),
            "status": str(row["status"]),
            "error": row["error"],
        }

    def _set_status(self, doc_id: str, status: str, *, text_file: str | None = None, error: str | None = None):
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE kb_documents
                SET status = ?, text_file = COALESCE(?, text_file), error = ?
                WHERE doc_id = ?
                """,
                (status, text_file, error, doc_id),
            )

    @staticmethod
    def _extract_text(stored_path: Path, suffix: str) -> str:
        if suffix == ".pdf":
            return pdf_to_markdown(stored_path)
        return stored_path.read_text(encoding="utf-8")

    def add_document(self, filename: str, data: bytes, title: str | None = None) -> dict[str, Any]:
        """Stores an upload, converts it to Markdown text, and returns its metadata."""
        original = Path(str(filename or "")).name
        suffix = Path(original).suffix.lower()
        if suffix not in SUPPORTED_SUFFIXES:
            raise UnsupportedDocumentError(
                f"Unsupported file type {suffix or '(none)'}; expected one of {', '.join(sorted(SUPPORTED_SUFFIXES))}"
            )

        doc_id = f"doc_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"
        stored_path = self.storage.save_bytes(data, f"{doc_id}{suffix}")
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO kb_documents (doc_id, title, stored_file, file_type, size, upload_date, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    doc_id,
                    str(title or original),
                    str(stored_path),
                    suffix,
                    len(data),
                    datetime.now().isoformat(),
                    STATUS_PENDING,
                ),
            )
        logger.info("kb_document_uploaded", doc_id=doc_id, file_type=suffix, bytes=len(data))

        self._set_status(doc_id, STATUS_PROCESSING)
        try:
            text = self._extract_text(stored_path, suffix)
            text_path = self.storage.save_text(text, f"{doc_id}.extracted.md")
        except Exception as exc:
            self._set_status(doc_id, STATUS_FAILED, error=str(exc))
            logger.error("kb_document_processing_failed", doc_id=doc_id, error=str(exc))
            raise DocumentProcessingError(f"Failed to extract text from {original}: {exc}") from exc

        self._set_status(doc_id, STATUS_COMPLETED, text_file=str(text_path))
        logger.info("kb_document_completed", doc_id=doc_id, chars=len(text))
        return self.get_document(doc_id)

    def get_document(self, doc_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM kb_documents WHERE doc_id = ?", (str(doc_id),)).fetchone()
        return self._row_to_doc_info(row) if row else None

    def list_documents(self) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM kb_documents ORDER BY upload_date DESC, doc_id DESC"
            ).fetchall()
        return [self._row_to_doc_info(row) for row in rows]

    def completed_documents(self) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM kb_documents WHERE status = ? ORDER BY upload_date ASC, doc_id ASC",
                (STATUS_COMPLETED,),
            ).fetchall()
        return [self._row_to_doc_info(row) for row in rows]

    def delete_document(self, doc_id: str) -> bool:
        info = self.get_document(doc_id)
        if info is None:
            return False
        for stored in (info["stored_file"], info["text_file"]):
            if stored:
                self.storage.delete(stored)
        with self._connection() as conn:
            conn.execute("DELETE FROM kb_documents WHERE doc_id = ?", (str(doc_id),))
        logger.info("kb_document_deleted", doc_id=str(doc_id))
        return True

    def build_context(self) -> str:
        """Concatenates the text of every completed document between the begin/end banners."""
        sections: list[str] = []
        for info in self.completed_documents():
            try:
                text = Path(info["text_file"]).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("kb_document_read_failed", doc_id=info["doc_id"], error=str(exc))
                continue
            sections.append(f"--- {info['title']} ---\n{text.strip()}")

        if not sections:
            return ""
        body = "\n\n".join(sections)
        return f"{KB_BEGIN_BANNER}\n{body}\n{KB_END_BANNER}"

    def augment_prompt(self, question: str, mode: str | None = None) -> str:
        """Prefixes `question` with knowledge-base context according to `mode` ("full" or "instruction")."""
        mode = (mode or KB_PROMPT_MODE).strip().lower()
        context = self.build_context()
        if not context:
            return question
        if mode == "instruction":
            instruction = KB_SHORT_INSTRUCTION.format(directory=self.storage_dir)
            return f"{instruction}\n\n{question}"
        return f"{KB_FULL_INSTRUCTION}\n\n{context}\n\nQuestion:\n{question}"
