"""
Orchestration manager: the single entry point for executing a prompt.

Live chat messages and scheduled tasks both call ``Orchestrator.handle``.
Per invocation it:

1. short-circuits while maintenance mode is on
2. waits for the tenant's serialization slot (FIFO per folder)
3. tries the fast path when the tenant is eligible
4. falls back to the sandbox, retrying classified failures per RetryPolicy
5. persists the new session token and delivers the final text exactly once

The slot is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable

from hearth.errors import (
    ExecutionError,
    HearthError,
    SandboxTimeoutError,
    SessionStaleError,
)
from hearth.models import (
    ContextMode,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    ProgressEvent,
    ProgressType,
)
from hearth.personas import effective_system_prompt
from hearth.services.fast_path import FastPathExecutor
from hearth.services.maintenance import UNAVAILABLE_MESSAGE, MaintenanceMode
from hearth.services.outbound import OutboundLimiter, ProgressChannel, ProgressUpdate
from hearth.services.sandbox_runner import SandboxRunner
from hearth.services.snapshots import SnapshotWriter
from hearth.services.tenant_registry import Tenant, TenantRegistry

logger = logging.getLogger(__name__)

SHUTTING_DOWN_MESSAGE = "⏳ The assistant is restarting. Please send your message again shortly."
RETRYING_MESSAGE = "⚠️ Hit a snag, retrying..."
RETRY_BUTTON_LABEL = "🔄 Retry"


def failure_message(result: ExecutionResult) -> str:
    reason = result.error.value if result.error else "unknown error"
    return f"❌ Sorry, I couldn't complete that ({reason}). Tap retry or send it again."


class TenantLockManager:
    """FIFO serialization slots keyed by tenant folder."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, folder: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(folder, asyncio.Lock())
        self._holders[folder] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[folder] -= 1
            if self._holders[folder] <= 0:
                del self._holders[folder]
                self._locks.pop(folder, None)

    def has_pending(self, folder: str) -> bool:
        """True while an invocation for the folder runs or waits."""
        return self._holders.get(folder, 0) > 0

    def active_folders(self) -> list[str]:
        return sorted(self._holders)


@dataclass(frozen=True)
class RetryRule:
    backoff_seconds: float = 0.0
    clear_session: bool = True
    notify: bool = False


@dataclass
class RetryPolicy:
    """Maps failure classes to a retry rule; at most N retries per class."""

    rules: dict[type[HearthError], RetryRule]
    max_retries_per_class: int = 1

    @classmethod
    def default(cls, backoff_seconds: float = 2.0) -> RetryPolicy:
        transient = RetryRule(backoff_seconds=backoff_seconds, clear_session=True, notify=True)
        return cls(
            rules={
                SessionStaleError: RetryRule(clear_session=True),
                SandboxTimeoutError: transient,
                ExecutionError: transient,
            }
        )

    def match(self, result: ExecutionResult) -> tuple[type[HearthError], RetryRule] | None:
        """Return the failure class and rule for a failed result, if retryable."""
        if result.ok or result.error is None:
            return None
        error = result.error.to_exception(result.error_detail)
        for error_class, rule in self.rules.items():
            if isinstance(error, error_class):
                return error_class, rule
        return None


@dataclass
class HandleOutcome:
    """What Handle returns to the chat path and the scheduler."""

    text: str | None
    error: str | None
    result: ExecutionResult | None = None
    path: str = "sandbox"
    attempts: int = 0
    invocation_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


class Orchestrator:
    """Per-invocation state machine shared by the chat path and the scheduler."""

    def __init__(
        self,
        registry: TenantRegistry,
        snapshots: SnapshotWriter,
        runner: SandboxRunner,
        fast_path: FastPathExecutor | None,
        limiter: OutboundLimiter,
        maintenance: MaintenanceMode,
        *,
        retry_policy: RetryPolicy | None = None,
        progress: ProgressChannel | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._registry = registry
        self._snapshots = snapshots
        self._runner = runner
        self._fast_path = fast_path
        self._limiter = limiter
        self._maintenance = maintenance
        self._retry_policy = retry_policy or RetryPolicy.default()
        self._progress = progress or ProgressChannel()
        self._sleep = sleep
        self._locks = TenantLockManager()
        self._accepting = True
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def progress(self) -> ProgressChannel:
        return self._progress

    @property
    def locks(self) -> TenantLockManager:
        return self._locks

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def close(self) -> None:
        """Stop accepting new invocations."""
        self._accepting = False

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight invocations. Returns False if the timeout expired."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%d invocation(s) still running at shutdown", self._in_flight)
            return False
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "accepting": self._accepting,
            "in_flight": self._in_flight,
            "active_folders": self._locks.active_folders(),
        }

    async def handle(self, tenant: Tenant, request: ExecutionRequest) -> HandleOutcome:
        """Execute one request for a tenant and deliver its outcome."""
        invocation_id = uuid.uuid4().hex

        if not self._accepting:
            if request.is_scheduled_task:
                logger.info("Shutting down: dropping scheduled run for %s", tenant.folder)
            else:
                await self._deliver(request, invocation_id, SHUTTING_DOWN_MESSAGE)
            return HandleOutcome(None, "shutting down", path="rejected", invocation_id=invocation_id)

        if self._maintenance.is_active():
            logger.info("Maintenance mode: not running request for %s", tenant.folder)
            await self._deliver(request, invocation_id, UNAVAILABLE_MESSAGE)
            return HandleOutcome(
                UNAVAILABLE_MESSAGE,
                ErrorKind.MAINTENANCE.value,
                path="maintenance",
                invocation_id=invocation_id,
            )

        self._in_flight += 1
        self._idle.clear()
        try:
            async with self._locks.hold(tenant.folder):
                return await self._handle_locked(tenant, request, invocation_id)
        except Exception:
            logger.exception("Unexpected error handling request for %s", tenant.folder)
            failed = ExecutionResult.failure(ErrorKind.INTERNAL)
            await self._deliver_failure(request, invocation_id, failed)
            return HandleOutcome(
                None, ErrorKind.INTERNAL.value, result=failed, invocation_id=invocation_id
            )
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _handle_locked(
        self,
        tenant: Tenant,
        request: ExecutionRequest,
        invocation_id: str,
    ) -> HandleOutcome:
        destination = request.chat_jid
        request = replace(
            request,
            system_prompt=request.system_prompt
            or effective_system_prompt(tenant.system_prompt, tenant.persona),
            enable_web_search=tenant.enable_web_search,
        )

        await self._snapshots.write(tenant)
        # Only replies sent during this invocation count.
        self._registry.consume_out_of_band_reply(destination)

        sink = self._progress_sink(tenant, destination, invocation_id)
        self._limiter.start_streaming(destination)
        path = "sandbox"
        attempts = 0
        try:
            result: ExecutionResult | None = None
            if self._fast_path is not None and self._fast_path.eligible(
                tenant, request.has_attachment
            ):
                attempts += 1
                try:
                    fast = await self._fast_path.run(tenant, request, sink)
                except Exception as e:
                    logger.exception("Fast path raised for %s", tenant.folder)
                    fast = ExecutionResult.failure(
                        ErrorKind.FAST_PATH, f"{type(e).__name__}: {e}"
                    )
                if fast.ok:
                    result = fast
                    path = "fast_path"
                else:
                    logger.warning(
                        "Fast path failed for %s (%s), falling back to sandbox",
                        tenant.folder,
                        fast.error_detail,
                    )

            if result is None:
                result, sandbox_attempts = await self._run_sandbox(tenant, request, sink)
                attempts += sandbox_attempts
        finally:
            self._limiter.stop_streaming(destination)
            self._progress.publish(
                ProgressUpdate(
                    tenant.folder,
                    invocation_id,
                    ProgressEvent(type=ProgressType.MESSAGE, is_complete=True),
                )
            )

        if not result.ok:
            await self._deliver_failure(request, invocation_id, result)
            return HandleOutcome(
                None,
                result.error.value if result.error else ErrorKind.INTERNAL.value,
                result=result,
                path=path,
                attempts=attempts,
                invocation_id=invocation_id,
            )

        if result.new_session_token and request.context_mode is ContextMode.GROUP:
            self._registry.set_session(tenant.folder, result.new_session_token)

        text = result.result or ""
        replied_out_of_band = self._registry.consume_out_of_band_reply(destination)
        if text.strip() and not replied_out_of_band:
            await self._deliver(request, invocation_id, text)

        return HandleOutcome(
            text,
            None,
            result=result,
            path=path,
            attempts=attempts,
            invocation_id=invocation_id,
        )

    async def _run_sandbox(
        self,
        tenant: Tenant,
        request: ExecutionRequest,
        sink: Callable[[ProgressEvent], Awaitable[None]],
    ) -> tuple[ExecutionResult, int]:
        """Run the sandbox with the bounded, classified retry loop."""
        use_session = request.context_mode is ContextMode.GROUP
        token = self._registry.get_session(tenant.folder) if use_session else None
        retries: dict[type[HearthError], int] = defaultdict(int)
        attempts = 0

        while True:
            attempts += 1
            result = await self._runner.run(
                tenant, replace(request, session_token=token), sink
            )
            if result.ok:
                return result, attempts

            match = self._retry_policy.match(result)
            if match is None:
                logger.error(
                    "Terminal sandbox failure for %s: %s",
                    tenant.folder,
                    result.error_detail,
                )
                return result, attempts

            error_class, rule = match
            if retries[error_class] >= self._retry_policy.max_retries_per_class:
                logger.error(
                    "Sandbox for %s failed again with %s, giving up",
                    tenant.folder,
                    error_class.__name__,
                )
                return result, attempts
            retries[error_class] += 1

            logger.warning(
                "Sandbox for %s failed with %s, retrying (%s)",
                tenant.folder,
                error_class.__name__,
                result.error_detail,
            )
            if rule.notify and request.deliver:
                await self._limiter.push_progress(request.chat_jid, RETRYING_MESSAGE)
            if rule.backoff_seconds:
                await self._sleep(rule.backoff_seconds)
            if rule.clear_session:
                if use_session:
                    self._registry.clear_session(tenant.folder)
                token = None

    def _progress_sink(
        self,
        tenant: Tenant,
        destination: str,
        invocation_id: str,
    ) -> Callable[[ProgressEvent], Awaitable[None]]:
        async def sink(event: ProgressEvent) -> None:
            self._progress.publish(ProgressUpdate(tenant.folder, invocation_id, event))
            if event.is_complete:
                return
            if event.type is ProgressType.TOOL_USE:
                text = f"🔧 Using {event.tool_name or 'a tool'}..."
            elif event.content_snapshot:
                text = f"{event.content_snapshot} ▌"
            else:
                return
            await self._limiter.push_progress(destination, text)

        return sink

    async def _deliver(self, request: ExecutionRequest, invocation_id: str, text: str) -> None:
        if not request.deliver:
            return
        if not await self._limiter.deliver_final(request.chat_jid, invocation_id, text):
            logger.error(
                "Final result for %s was not delivered to %s", invocation_id, request.chat_jid
            )

    async def _deliver_failure(
        self,
        request: ExecutionRequest,
        invocation_id: str,
        result: ExecutionResult,
    ) -> None:
        if not request.deliver:
            return
        try:
            delivered = await self._limiter.deliver_final(
                request.chat_jid,
                invocation_id,
                failure_message(result),
                buttons=[(RETRY_BUTTON_LABEL, f"retry:{invocation_id}")],
            )
        except Exception:
            logger.exception("Could not deliver failure notice to %s", request.chat_jid)
            return
        if not delivered:
            logger.error(
                "Failure notice for %s was not delivered to %s", invocation_id, request.chat_jid
            )
