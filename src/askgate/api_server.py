"""
FastAPI service layer for AskGate.

Cookie-authenticated users ask questions that are answered by the external
assistant process, either as one JSON response (/api/ask) or as a server-sent
event stream (/api/ask/stream). Admin routes expose the question history and
manage knowledge-base documents.

Run with:
    uvicorn askgate.api_server:app --host 127.0.0.1 --port 3000
"""
from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing, asynccontextmanager
from typing import Any, Callable
from urllib.parse import quote, unquote

from fastapi import Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import (
    ASSISTANT_CMD,
    ASSISTANT_PROMPT_FLAG,
    ASSISTANT_STREAM_ARGS,
    AUTH_COOKIE_NAME,
    DB_PATH,
    INVOCATION_TIMEOUT_S,
    KB_DB_PATH,
    MAX_UPLOAD_BYTES,
    PROJECT_ROOT,
    REMEMBER_ME_DAYS,
    STORAGE_DIR,
)
from .history_log import HistoryLog
from .invocation import EmptyQuestionError, Invocation, InvocationError, InvocationManager
from .knowledge_base import DocumentProcessingError, KnowledgeBase, UnsupportedDocumentError
from .metrics import metrics_collector
from .observability import get_logger

logger = get_logger(__name__)

_THREAD_POOL_WORKERS = 4       # history / knowledge-base sqlite work
UPLOAD_CHUNK_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    username: str = ""
    remember: bool = False


class AskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = ""
    use_knowledge_base: bool = Field(default=False, alias="useKnowledgeBase")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ApiError(Exception):
    """Rendered as {"error": ..., **extra} with the given status code."""

    def __init__(self, status_code: int, error: str, **extra: Any):
        super().__init__(error)
        self.status_code = int(status_code)
        self.error = error
        self.extra = extra


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}

# Thread pool for running synchronous sqlite / file work off the event loop.
_executor = ThreadPoolExecutor(max_workers=_THREAD_POOL_WORKERS)


def build_services() -> dict[str, Any]:
    history = HistoryLog(DB_PATH)
    knowledge_base = KnowledgeBase(STORAGE_DIR, KB_DB_PATH)
    manager = InvocationManager(
        ASSISTANT_CMD,
        PROJECT_ROOT,
        history,
        timeout_s=INVOCATION_TIMEOUT_S,
        prompt_flag=ASSISTANT_PROMPT_FLAG,
        stream_args=ASSISTANT_STREAM_ARGS,
        metrics=metrics_collector,
    )
    return {"history": history, "knowledge_base": knowledge_base, "manager": manager}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the stores and the invocation manager once; services injected beforehand are kept."""
    owned = not _state
    if owned:
        _state.update(build_services())
    manager: InvocationManager = _state["manager"]
    logger.info(
        "server_started",
        project_root=str(manager.working_dir),
        cmd=list(manager.command),
        timeout_s=manager.timeout_s,
    )

    yield  # Application is running.

    if owned:
        _state["history"].close()
        _state["knowledge_base"].close()
        _state.clear()
    logger.info("server_stopped")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AskGate API",
    description="Web front-end for a command-line AI assistant",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ApiError)
async def _api_error_handler(_request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.error, **exc.extra})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _service(name: str) -> Any:
    service = _state.get(name)
    if service is None:
        raise ApiError(503, "Service is not initialized")
    return service


async def _run_blocking(fn: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, fn, *args)


def require_user(request: Request) -> str:
    """Resolves the logged-in user from the auth cookie."""
    raw = request.cookies.get(AUTH_COOKIE_NAME) or ""
    username = unquote(raw).strip()
    if not username:
        raise ApiError(401, "Not logged in", needLogin=True)
    return username


async def _prepare_invocation(body: AskRequest, username: str) -> Invocation:
    manager: InvocationManager = _service("manager")
    try:
        inv = manager.open_invocation(username, body.question)
    except EmptyQuestionError as exc:
        raise ApiError(400, str(exc)) from exc
    if body.use_knowledge_base:
        knowledge_base: KnowledgeBase = _service("knowledge_base")
        inv.prompt = await _run_blocking(knowledge_base.augment_prompt, body.question)
    return inv


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health_endpoint():
    manager: InvocationManager = _service("manager")
    return {"ok": True, "projectRoot": str(manager.working_dir), "cmd": " ".join(manager.command)}


@app.post("/api/login")
async def login_endpoint(body: LoginRequest, response: Response):
    username = body.username.strip()
    if not username:
        raise ApiError(400, "Username must not be empty")
    response.set_cookie(
        AUTH_COOKIE_NAME,
        quote(username, safe=""),
        max_age=REMEMBER_ME_DAYS * 24 * 60 * 60 if body.remember else None,
        httponly=False,  # the page reads it to show the user name
        samesite="lax",
    )
    logger.info("user_logged_in", username=username, remember=body.remember)
    return {"success": True, "username": username}


@app.post("/api/logout")
async def logout_endpoint(response: Response):
    response.delete_cookie(AUTH_COOKIE_NAME)
    return {"success": True}


@app.get("/api/current-user")
async def current_user_endpoint(username: str = Depends(require_user)):
    return {"username": username}


# ---------------------------------------------------------------------------
# Question endpoints
# ---------------------------------------------------------------------------

@app.post("/api/ask")
async def ask_endpoint(body: AskRequest, username: str = Depends(require_user)):
    """Runs the assistant and returns its complete answer."""
    inv = await _prepare_invocation(body, username)
    manager: InvocationManager = _service("manager")
    try:
        result = await manager.run_buffered(inv)
    except InvocationError as exc:
        return JSONResponse(status_code=500, content=exc.to_payload())
    return result.to_payload()


@app.post("/api/ask/stream")
async def ask_stream_endpoint(body: AskRequest, request: Request, username: str = Depends(require_user)):
    """Streams answer fragments as server-sent events, ending with one done/error event."""
    inv = await _prepare_invocation(body, username)
    manager: InvocationManager = _service("manager")

    async def _events():
        async with aclosing(manager.stream(inv)) as events:
            async for event in events:
                yield event.to_sse()
                if not event.terminal and await request.is_disconnected():
                    logger.info("stream_client_disconnected", username=username, pid=inv.pid)
                    break

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.get("/api/admin/users")
async def admin_users_endpoint():
    history: HistoryLog = _service("history")
    users = await _run_blocking(history.list_users)
    return {"users": users}


@app.get("/api/admin/chats/{username}")
async def admin_chats_endpoint(username: str):
    history: HistoryLog = _service("history")
    chats = await _run_blocking(history.list_chats, username)
    return {"chats": chats, "username": username}


@app.get("/api/admin/kb/documents")
async def kb_documents_endpoint():
    knowledge_base: KnowledgeBase = _service("knowledge_base")
    documents = await _run_blocking(knowledge_base.list_documents)
    return {"documents": documents}


@app.post("/api/admin/kb/upload")
async def kb_upload_endpoint(file: UploadFile = File(...), title: str | None = Form(None)):
    knowledge_base: KnowledgeBase = _service("knowledge_base")
    data = bytearray()
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > MAX_UPLOAD_BYTES:
            raise ApiError(413, "File too large", maxBytes=MAX_UPLOAD_BYTES)
    try:
        document = await _run_blocking(knowledge_base.add_document, file.filename or "", bytes(data), title)
    except UnsupportedDocumentError as exc:
        raise ApiError(400, str(exc)) from exc
    except DocumentProcessingError as exc:
        raise ApiError(500, "Document processing failed", detail=str(exc)) from exc
    return {"document": document}


@app.delete("/api/admin/kb/documents/{doc_id}")
async def kb_delete_endpoint(doc_id: str):
    knowledge_base: KnowledgeBase = _service("knowledge_base")
    deleted = await _run_blocking(knowledge_base.delete_document, doc_id)
    if not deleted:
        raise ApiError(404, "Document not found")
    return {"success": True}


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated invocation metrics."""
    return metrics_collector.get_summary()
