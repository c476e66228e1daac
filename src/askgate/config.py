# /askgate/config.py
"""
Centralized configuration for the AskGate web front-end.
Includes the assistant command line, paths, timeouts, and auth cookie settings.
"""
import os
import shlex
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_argv(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        raw = default
    return tuple(shlex.split(raw))


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- External Assistant ---
ASSISTANT_CMD = _env_argv("ASSISTANT_CMD", "claude")           # argv prefix, e.g. "/opt/homebrew/bin/claude"
ASSISTANT_PROMPT_FLAG = os.getenv("ASSISTANT_PROMPT_FLAG", "-p")  # non-interactive prompt flag
ASSISTANT_STREAM_ARGS = _env_argv(
    "ASSISTANT_STREAM_ARGS",
    "--output-format stream-json --verbose --include-partial-messages",
)
PROJECT_ROOT = Path(os.getenv("PROJECT_ROOT", os.getcwd()))    # working directory of every invocation
INVOCATION_TIMEOUT_S = _env_float("INVOCATION_TIMEOUT_S", 5 * 60, minimum=0.1)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/askgate/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "chat_history.sqlite")))
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(DATA_DIR / "knowledge_base")))
KB_DB_PATH = Path(os.getenv("KB_DB_PATH", str(DATA_DIR / "knowledge_base.sqlite")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "logs")))

# --- Knowledge Base ---
# "full" sends the concatenated documents, "instruction" only the short pointer line.
KB_PROMPT_MODE = os.getenv("KB_PROMPT_MODE", "full").strip().lower()
if KB_PROMPT_MODE not in {"full", "instruction"}:
    KB_PROMPT_MODE = "full"
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 20 * 1024 * 1024, minimum=1024)

# --- HTTP / Auth ---
HOST = os.getenv("HOST", "127.0.0.1")
PORT = _env_int("PORT", 3000, minimum=1)
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "username")
REMEMBER_ME_DAYS = _env_int("REMEMBER_ME_DAYS", 30, minimum=1)

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
STORAGE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "askgate.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
LOG_TO_CONSOLE = _env_bool("LOG_TO_CONSOLE", True)
configure_logging(LOG_PATH, console=LOG_TO_CONSOLE)
