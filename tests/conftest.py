"""
Pytest configuration and fixtures.
"""

from __future__ import annotations

import os
from typing import Any

import pytest

from hearth.config import Settings
from hearth.services.notifier import NotificationResult
from hearth.services.state_store import JsonStateStore
from hearth.services.task_store import TaskStore
from hearth.services.tenant_registry import Tenant, TenantRegistry


class RecordingNotifier:
    """Notifier that keeps everything it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, Any]] = []
        self.progress: list[tuple[str, str]] = []

    async def send_message(self, destination, text, *, buttons=None):
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append((destination, text, buttons))
        return NotificationResult(success=True, message_id=len(self.sent))

    async def update_progress(self, destination, text):
        self.progress.append((destination, text))
        return NotificationResult(success=True, message_id=1)

    def texts_for(self, destination: str) -> list[str]:
        return [text for dest, text, _ in self.sent if dest == destination]


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings rooted in the test's temporary directory."""

    def factory(**overrides: Any) -> Settings:
        data_dir = str(tmp_path / "data")
        values: dict[str, Any] = dict(
            app_version="test",
            host="127.0.0.1",
            port=8000,
            log_file=str(tmp_path / "logs" / "hearth.log"),
            log_level="DEBUG",
            assistant_name="Andy",
            data_dir=data_dir,
            groups_dir=str(tmp_path / "groups"),
            tasks_db_path=os.path.join(data_dir, "tasks.db"),
            timezone="UTC",
            scheduler_poll_interval=60.0,
            ipc_poll_interval=1.0,
            ipc_debounce_ms=100,
            ipc_fallback_polling_multiplier=5,
            sandbox_runtime=("docker",),
            sandbox_image="hearth-agent:test",
            sandbox_timeout=30.0,
            sandbox_max_output_size=1024 * 1024,
            sandbox_grace_period=1.0,
            sandbox_env_allowlist=("OPENAI_API_KEY", "TZ"),
            retry_backoff_seconds=0.0,
            enable_fast_path=True,
            fast_path_model="gpt-4o-mini",
            fast_path_timeout=30.0,
            streaming_interval=0.0,
            openai_api_key=None,
            telegram_bot_token=None,
            edit_min_interval=2.0,
            edit_max_per_minute=30,
        )
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def state_store(tmp_path):
    return JsonStateStore(str(tmp_path / "data"))


@pytest.fixture
def registry(state_store, tmp_path):
    return TenantRegistry(state_store, str(tmp_path / "groups"))


@pytest.fixture
def task_store(tmp_path):
    return TaskStore(str(tmp_path / "data" / "tasks.db"))


@pytest.fixture
def main_tenant(registry):
    return registry.register(
        Tenant(jid="main@g.us", folder="main", name="Main", trigger="@Andy")
    )


@pytest.fixture
def acme_tenant(registry):
    return registry.register(
        Tenant(jid="acme@g.us", folder="acme", name="Acme", trigger="@Andy")
    )


@pytest.fixture
def beta_tenant(registry):
    return registry.register(
        Tenant(jid="beta@g.us", folder="beta", name="Beta", trigger="@Andy")
    )
