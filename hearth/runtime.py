"""
Process-wide wiring of the orchestration services.

``HearthRuntime`` builds every component from ``Settings`` once, owns their
start/stop order, and is the entry point for live chat messages.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

import openai

from hearth.config import Settings
from hearth.models import ExecutionRequest
from hearth.services.consolidator import ConsolidatedMessage, MessageConsolidator
from hearth.services.control_plane import ControlDispatcher
from hearth.services.fast_path import FastPathExecutor
from hearth.services.ipc_watcher import ControlPlaneWatcher
from hearth.services.maintenance import MaintenanceMode
from hearth.services.notifier import LogNotifier, Notifier, TelegramNotifier
from hearth.services.orchestrator import HandleOutcome, Orchestrator, RetryPolicy
from hearth.services.outbound import OutboundLimiter, ProgressChannel
from hearth.services.sandbox_runner import SandboxRunner
from hearth.services.snapshots import SnapshotWriter
from hearth.services.state_store import JsonStateStore, StateStore
from hearth.services.task_scheduler import TaskScheduler
from hearth.services.task_store import TaskStore
from hearth.services.tenant_registry import Tenant, TenantRegistry

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 30.0
MAX_RETRYABLE_INVOCATIONS = 100


class HearthRuntime:
    """Owns the long-lived services and their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: StateStore | None = None,
        notifier: Notifier | None = None,
        openai_client: openai.AsyncOpenAI | None = None,
        consolidate_ms: int = 2000,
    ):
        self.settings = settings
        self.store = store or JsonStateStore(settings.data_dir)
        self.registry = TenantRegistry(self.store, settings.groups_dir)
        self.maintenance = MaintenanceMode(self.store)
        self.task_store = TaskStore(settings.tasks_db_path)

        if notifier is None:
            if settings.telegram_bot_token:
                notifier = TelegramNotifier(settings.telegram_bot_token)
            else:
                logger.warning("TELEGRAM_BOT_TOKEN not set; replies are only logged")
                notifier = LogNotifier()
        self.notifier = notifier

        self.limiter = OutboundLimiter(
            notifier,
            min_interval=settings.edit_min_interval,
            max_per_minute=settings.edit_max_per_minute,
        )
        self.progress = ProgressChannel()
        self.dispatcher = ControlDispatcher(
            self.registry,
            self.task_store,
            notifier,
            assistant_name=settings.assistant_name,
            timezone_name=settings.timezone,
        )
        self.watcher = ControlPlaneWatcher(
            settings.ipc_dir,
            self.dispatcher,
            poll_interval=settings.ipc_poll_interval,
            debounce_ms=settings.ipc_debounce_ms,
            fallback_multiplier=settings.ipc_fallback_polling_multiplier,
        )
        self.runner = SandboxRunner(settings)
        self.fast_path = FastPathExecutor(
            settings, self.dispatcher, self.task_store, client=openai_client
        )
        self.orchestrator = Orchestrator(
            self.registry,
            SnapshotWriter(settings.ipc_dir, self.registry, self.task_store),
            self.runner,
            self.fast_path,
            self.limiter,
            self.maintenance,
            retry_policy=RetryPolicy.default(settings.retry_backoff_seconds),
            progress=self.progress,
        )
        self.scheduler = TaskScheduler(
            self.task_store,
            self.registry,
            self.orchestrator,
            self.maintenance,
            timezone_name=settings.timezone,
            poll_interval=settings.scheduler_poll_interval,
        )
        self.consolidator = MessageConsolidator(
            self._on_consolidated,
            debounce_ms=consolidate_ms,
            is_streaming=self.limiter.is_streaming,
        )

        self._trigger_pattern = re.compile(
            rf"(^|\s){re.escape(settings.trigger_word)}\b", re.IGNORECASE
        )
        self._failed: dict[str, tuple[str, ExecutionRequest]] = {}
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        logger.info("Starting hearth %s", self.settings.app_version)
        self.registry.load()
        await self.limiter.start()
        await self.watcher.start()
        await self.scheduler.start()
        self._started = True
        if self.maintenance.is_active():
            logger.warning("Starting in maintenance mode")

    async def stop(self, drain_timeout: float = SHUTDOWN_DRAIN_SECONDS) -> None:
        """Stop accepting work, let in-flight invocations finish, then stop services."""
        if not self._started:
            return
        self._started = False
        logger.info("Shutting down")

        self.orchestrator.close()
        # Buffered messages are answered with the restart notice.
        await self.consolidator.flush_all()
        self.consolidator.destroy()
        await self.orchestrator.drain(drain_timeout)
        await self.watcher.stop()
        await self.scheduler.stop(timeout=drain_timeout)
        await self.limiter.destroy()
        self.registry.save()
        logger.info("Shutdown complete")

    # Live chat

    def should_respond(self, tenant: Tenant, text: str) -> bool:
        """Main always responds; other tenants may require the trigger word."""
        if tenant.is_main or not tenant.require_trigger:
            return True
        return bool(self._trigger_pattern.search(text))

    async def submit_message(
        self,
        chat_jid: str,
        text: str,
        *,
        sender_name: str | None = None,
        chat_name: str | None = None,
        media_path: str | None = None,
        timestamp: str | None = None,
    ) -> HandleOutcome | None:
        """
        Handle an incoming chat message.

        Returns the outcome when the message was executed right away, or None
        when it was ignored or buffered for consolidation.
        """
        when = timestamp or datetime.now(timezone.utc).isoformat()
        self.registry.touch(chat_jid, chat_name, when)

        tenant = self.registry.get_by_jid(chat_jid)
        if tenant is None:
            logger.debug("Ignoring message from unregistered chat %s", chat_jid)
            return None
        if not self.should_respond(tenant, text):
            logger.debug("No trigger in message for %s, ignoring", tenant.folder)
            return None

        prompt = f"{sender_name}: {text}" if sender_name else text
        if self.consolidator.add(
            chat_jid,
            prompt,
            sender_name=sender_name,
            has_media=bool(media_path),
            timestamp=when,
        ):
            return None
        return await self._execute(
            tenant, ExecutionRequest(prompt=prompt, chat_jid=chat_jid, media_path=media_path)
        )

    async def _on_consolidated(self, message: ConsolidatedMessage) -> None:
        tenant = self.registry.get_by_jid(message.chat_jid)
        if tenant is None:
            logger.info("Chat %s was unregistered before its messages ran", message.chat_jid)
            return
        await self._execute(
            tenant, ExecutionRequest(prompt=message.content, chat_jid=message.chat_jid)
        )

    async def _execute(self, tenant: Tenant, request: ExecutionRequest) -> HandleOutcome:
        outcome = await self.orchestrator.handle(tenant, request)
        if not outcome.ok and outcome.path not in ("maintenance", "rejected"):
            self._failed[outcome.invocation_id] = (tenant.jid, request)
            while len(self._failed) > MAX_RETRYABLE_INVOCATIONS:
                del self._failed[next(iter(self._failed))]
        return outcome

    async def retry(self, callback_data: str) -> HandleOutcome | None:
        """Re-run a failed invocation from its ``retry:<invocation id>`` button."""
        prefix, _, invocation_id = callback_data.partition(":")
        if prefix != "retry" or invocation_id not in self._failed:
            logger.info("Nothing to retry for %r", callback_data)
            return None
        jid, request = self._failed.pop(invocation_id)
        tenant = self.registry.get_by_jid(jid)
        if tenant is None:
            return None
        logger.info("Retrying invocation %s for %s", invocation_id, tenant.folder)
        return await self._execute(tenant, request)

    def get_status(self) -> dict[str, Any]:
        return {
            "version": self.settings.app_version,
            "running": self._started,
            "maintenance": self.maintenance.is_active(),
            "tenants": len(self.registry.tenants()),
            "fast_path_available": self.fast_path.available,
            "orchestrator": self.orchestrator.get_status(),
            "scheduler": self.scheduler.get_status(),
            "watcher": self.watcher.get_status(),
            "outbound": self.limiter.get_status(),
            "progress_dropped": self.progress.dropped_count,
        }
