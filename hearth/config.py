"""
Application settings helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from hearth import __version__

MAIN_GROUP_FOLDER = "main"


def _parse_list(env_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Split comma-separated values from the environment."""
    raw = os.getenv(env_name, "")
    if not raw:
        return default
    values = tuple(
        value.strip()
        for value in raw.split(",")
        if value.strip()
    )
    return values or default


def _parse_bool(env_name: str, default: bool) -> bool:
    raw = os.getenv(env_name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Centralized configuration values."""

    app_version: str
    host: str
    port: int
    log_file: str
    log_level: str
    assistant_name: str
    data_dir: str
    groups_dir: str
    tasks_db_path: str
    timezone: str
    scheduler_poll_interval: float
    ipc_poll_interval: float
    ipc_debounce_ms: int
    ipc_fallback_polling_multiplier: int
    sandbox_runtime: tuple[str, ...]
    sandbox_image: str
    sandbox_timeout: float
    sandbox_max_output_size: int
    sandbox_grace_period: float
    sandbox_env_allowlist: tuple[str, ...]
    retry_backoff_seconds: float
    enable_fast_path: bool
    fast_path_model: str
    fast_path_timeout: float
    streaming_interval: float
    openai_api_key: str | None
    telegram_bot_token: str | None
    edit_min_interval: float
    edit_max_per_minute: int

    @property
    def ipc_dir(self) -> str:
        """Base directory holding one control-plane inbox per tenant."""
        return os.path.join(self.data_dir, "ipc")

    @property
    def sessions_dir(self) -> str:
        return os.path.join(self.data_dir, "sessions")

    @property
    def trigger_word(self) -> str:
        return f"@{self.assistant_name}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings derived from the environment."""
    data_dir = os.path.abspath(os.getenv("HEARTH_DATA_DIR", "./data"))
    return Settings(
        app_version=os.getenv("APP_VERSION", __version__),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_file=os.getenv("LOG_FILE", "logs/hearth.log"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        assistant_name=os.getenv("ASSISTANT_NAME", "Andy"),
        data_dir=data_dir,
        groups_dir=os.path.abspath(os.getenv("HEARTH_GROUPS_DIR", "./groups")),
        tasks_db_path=os.getenv(
            "HEARTH_TASKS_DB",
            os.path.join(data_dir, "tasks.db"),
        ),
        timezone=os.getenv("HEARTH_TIMEZONE") or os.getenv("TZ") or "UTC",
        scheduler_poll_interval=float(os.getenv("SCHEDULER_POLL_INTERVAL", "60")),
        ipc_poll_interval=float(os.getenv("IPC_POLL_INTERVAL", "1")),
        ipc_debounce_ms=int(os.getenv("IPC_DEBOUNCE_MS", "100")),
        ipc_fallback_polling_multiplier=int(
            os.getenv("IPC_FALLBACK_POLLING_MULTIPLIER", "5")
        ),
        sandbox_runtime=tuple(os.getenv("SANDBOX_RUNTIME", "docker").split()),
        sandbox_image=os.getenv("SANDBOX_IMAGE", "hearth-agent:latest"),
        sandbox_timeout=float(os.getenv("SANDBOX_TIMEOUT", "300")),
        sandbox_max_output_size=int(
            os.getenv("SANDBOX_MAX_OUTPUT_SIZE", str(10 * 1024 * 1024))
        ),
        sandbox_grace_period=float(os.getenv("SANDBOX_GRACE_PERIOD", "5")),
        sandbox_env_allowlist=_parse_list(
            "SANDBOX_ENV_ALLOWLIST",
            ("OPENAI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY", "TZ", "LOG_LEVEL"),
        ),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "2")),
        enable_fast_path=_parse_bool("ENABLE_FAST_PATH", True),
        fast_path_model=os.getenv("FAST_PATH_MODEL", "gpt-4o-mini"),
        fast_path_timeout=float(os.getenv("FAST_PATH_TIMEOUT", "180")),
        streaming_interval=float(os.getenv("STREAMING_INTERVAL", "0.5")),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
        edit_min_interval=float(os.getenv("EDIT_MIN_INTERVAL", "2")),
        edit_max_per_minute=int(os.getenv("EDIT_MAX_PER_MINUTE", "30")),
    )
