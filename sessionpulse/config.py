"""sessionpulse configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value or not value.strip():
        return default
    return Path(value.strip()).expanduser()


CLAUDE_DIR = Path.home() / ".claude"

# Watched locations
PROJECTS_DIR = _env_path("SESSIONPULSE_PROJECTS_DIR", CLAUDE_DIR / "projects")
SIGNALS_DIR = _env_path("SESSIONPULSE_SIGNALS_DIR", CLAUDE_DIR / "session-signals")

# Watcher tuning
DEBOUNCE_MS = _env_int("SESSIONPULSE_DEBOUNCE_MS", 200)
STALE_CHECK_SECONDS = _env_float("SESSIONPULSE_STALE_CHECK_SECONDS", 10.0)
WATCH_STEP_MS = _env_int("SESSIONPULSE_WATCH_STEP_MS", 50)
WATCH_ROOT_RETRY_SECONDS = _env_float("SESSIONPULSE_WATCH_ROOT_RETRY_SECONDS", 5.0)

# Status timeouts
IDLE_TIMEOUT_SECONDS = _env_float("SESSIONPULSE_IDLE_TIMEOUT_SECONDS", 5 * 60.0)
APPROVAL_TIMEOUT_SECONDS = _env_float("SESSIONPULSE_APPROVAL_TIMEOUT_SECONDS", 5.0)
STALE_TIMEOUT_SECONDS = _env_float("SESSIONPULSE_STALE_TIMEOUT_SECONDS", 60.0)

# Repository lookups
REPO_INFO_TTL_SECONDS = _env_float("SESSIONPULSE_REPO_INFO_TTL_SECONDS", 30.0)
GIT_TIMEOUT_SECONDS = _env_float("SESSIONPULSE_GIT_TIMEOUT_SECONDS", 3.0)

# Logging
LOG_LEVEL = os.getenv("SESSIONPULSE_LOG_LEVEL", "INFO").upper()

# Observability
OTEL_ENABLED = _env_bool("SESSIONPULSE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SESSIONPULSE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SESSIONPULSE_OTEL_SERVICE_NAME", "sessionpulse")
PROM_PORT = _env_int("SESSIONPULSE_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("SESSIONPULSE_HOST", "127.0.0.1")
PORT = _env_int("SESSIONPULSE_PORT", 4450)
