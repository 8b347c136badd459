"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() == "true"


def _int_in_range(name: str, default: int, low: int, high: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return min(max(value, low), high)


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Provider access. Env keys win over the key stored in settings.
OPENAI_API_KEY_ENV: str = (
    os.getenv("AI_OPENAI_API_KEY", "").strip() or os.getenv("OPENAI_API_KEY", "").strip()
)
ALLOW_PRIVATE_BASE_URL_HOST: bool = _flag("AI_ALLOW_PRIVATE_BASE_URL_HOST")
ALLOW_INSECURE_HTTP_BASE_URL: bool = _flag("AI_ALLOW_INSECURE_HTTP_BASE_URL")

# Timeouts (milliseconds)
EMBEDDING_TIMEOUT_MS: int = _int_in_range("AI_EMBEDDING_TIMEOUT_MS", 20000, 1000, 120000)
MODELS_TIMEOUT_MS: int = 10000
CHAT_TIMEOUT_MS: int = _int_in_range("AI_CHAT_TIMEOUT_MS", 120000, 5000, 600000)

# Index task queue
INDEX_HISTORY_LIMIT: int = 80
INDEX_MAX_PENDING_TASKS: int = 200
# Posts embedded in parallel during a full rebuild
INDEX_REBUILD_CONCURRENCY: int = _int_in_range("AI_INDEX_REBUILD_CONCURRENCY", 1, 1, 2)

# Derived paths
SQLITE_PATH: Path = DATA_DIR / "papergrid.db"
LANCEDB_PATH: Path = DATA_DIR / "lancedb"
