"""
Task scheduler: runs due scheduled tasks through the orchestrator.

Every tick re-reads due tasks from the task store; nothing about schedule
state is cached between ticks. Tasks whose tenant is no longer registered are
flagged (once, with a run-log entry) and skipped until the tenant returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from hearth.errors import ScheduleParseError
from hearth.models import ExecutionRequest
from hearth.services.maintenance import MaintenanceMode
from hearth.services.orchestrator import Orchestrator
from hearth.services.schedule import next_run_after_execution, to_iso
from hearth.services.task_store import ScheduledTask, TaskRunLog, TaskStatus, TaskStore
from hearth.services.tenant_registry import TenantRegistry

logger = logging.getLogger(__name__)

# Outcomes that mean the task did not actually run and should stay due
_NOT_RUN_PATHS = frozenset({"maintenance", "rejected"})


class TaskScheduler:
    """Fixed-interval poll loop over the persisted task store."""

    def __init__(
        self,
        task_store: TaskStore,
        registry: TenantRegistry,
        orchestrator: Orchestrator,
        maintenance: MaintenanceMode,
        *,
        timezone_name: str,
        poll_interval: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self._task_store = task_store
        self._registry = registry
        self._orchestrator = orchestrator
        self._maintenance = maintenance
        self._timezone_name = timezone_name
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._active_task_ids: set[str] = set()
        self._last_tick_at: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "poll_interval": self._poll_interval,
            "last_tick_at": self._last_tick_at,
            "active_tasks": sorted(self._active_task_ids),
        }

    async def start(self) -> None:
        if self._running:
            logger.warning("Task scheduler already running")
            return
        self._running = True
        self._shutdown_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._poll_loop(), name="task-scheduler")
        logger.info("Task scheduler started, interval=%.0fs", self._poll_interval)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop polling; a tick in progress is allowed to finish within timeout."""
        if not self._running:
            return
        self._running = False
        if self._shutdown_event:
            self._shutdown_event.set()

        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Task scheduler loop cancelled")
        logger.info("Task scheduler stopped")

    async def _poll_loop(self) -> None:
        assert self._shutdown_event is not None
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Error in scheduler tick: %s", e, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._poll_interval
                )
                break
            except asyncio.TimeoutError:
                pass

        logger.info("Task scheduler loop stopped")

    async def tick(self) -> int:
        """
        Run every due task once.

        Returns:
            Number of tasks handed to the orchestrator
        """
        now = self._clock()
        self._last_tick_at = to_iso(now)

        if self._maintenance.is_active():
            logger.debug("Maintenance mode active, skipping scheduler tick")
            return 0

        due = await self._task_store.get_due_tasks(to_iso(now))
        if due:
            logger.info("Found %d due task(s)", len(due))

        runnable: list[ScheduledTask] = []
        for task in due:
            if task.id in self._active_task_ids:
                continue
            # Paused or cancelled since it was selected
            current = await self._task_store.get_task(task.id)
            if current is None or current.status is not TaskStatus.ACTIVE:
                continue
            runnable.append(current)

        results = await asyncio.gather(
            *(self.run_task(task) for task in runnable),
            return_exceptions=True,
        )
        ran = 0
        for task, outcome in zip(runnable, results):
            if isinstance(outcome, BaseException):
                logger.error("Task %s failed: %s", task.id, outcome, exc_info=outcome)
            elif outcome:
                ran += 1
        return ran

    async def run_task(self, task: ScheduledTask) -> bool:
        """Execute one task and advance its schedule. Returns False if skipped."""
        tenant = self._registry.get_by_folder(task.group_folder)
        if tenant is None:
            await self._flag_orphan(task)
            return False
        if task.flagged_reason:
            logger.info("Tenant %s is back, unflagging task %s", task.group_folder, task.id)
            await self._task_store.update_task(task.id, flagged_reason=None)

        self._active_task_ids.add(task.id)
        try:
            started_at = self._clock()
            started = time.monotonic()
            logger.info("Running scheduled task %s for %s", task.id, task.group_folder)

            outcome = await self._orchestrator.handle(
                tenant,
                ExecutionRequest(
                    prompt=task.prompt,
                    chat_jid=task.chat_jid,
                    context_mode=task.context_mode,
                    is_scheduled_task=True,
                ),
            )
            if outcome.path in _NOT_RUN_PATHS:
                logger.info("Task %s not run (%s), leaving it due", task.id, outcome.path)
                return False

            duration_ms = int((time.monotonic() - started) * 1000)
            error_detail = None
            if not outcome.ok:
                error_detail = (
                    outcome.result.error_detail if outcome.result and outcome.result.error_detail
                    else outcome.error
                )
            await self._task_store.log_run(
                TaskRunLog(
                    task_id=task.id,
                    run_at=to_iso(started_at),
                    duration_ms=duration_ms,
                    status="success" if outcome.ok else "error",
                    result=outcome.text,
                    error=error_detail,
                )
            )

            await self._advance(task, started_at, outcome.text if outcome.ok else f"Error: {error_detail}")
            logger.info(
                "Task %s completed in %dms (%s)",
                task.id,
                duration_ms,
                "success" if outcome.ok else "error",
            )
            return True
        finally:
            self._active_task_ids.discard(task.id)

    async def _advance(self, task: ScheduledTask, started_at: datetime, last_result: str | None) -> None:
        now = self._clock()
        try:
            next_run = next_run_after_execution(
                task.schedule_type,
                task.schedule_value,
                now=now,
                tz_name=self._timezone_name,
            )
        except ScheduleParseError as e:
            # Only reachable if the store was edited by hand.
            logger.error("Task %s has an unusable schedule, pausing: %s", task.id, e)
            await self._task_store.update_task(
                task.id,
                status=TaskStatus.PAUSED,
                last_run=to_iso(started_at),
                flagged_reason=str(e),
            )
            return

        await self._task_store.update_after_run(
            task.id,
            next_run=to_iso(next_run) if next_run else None,
            last_run=to_iso(started_at),
            last_result=last_result,
        )

    async def _flag_orphan(self, task: ScheduledTask) -> None:
        if task.flagged_reason:
            logger.debug("Skipping orphaned task %s", task.id)
            return
        reason = f"Tenant {task.group_folder} is not registered"
        logger.error("Skipping task %s: %s", task.id, reason)
        await self._task_store.update_task(task.id, flagged_reason=reason)
        await self._task_store.log_run(
            TaskRunLog(
                task_id=task.id,
                run_at=to_iso(self._clock()),
                duration_ms=0,
                status="error",
                error=reason,
            )
        )
