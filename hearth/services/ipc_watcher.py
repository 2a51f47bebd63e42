"""
Control-plane watcher for per-tenant inbox directories.

Layout under the base directory::

    <base>/<folder>/messages/*.json   chat replies from a sandbox
    <base>/<folder>/tasks/*.json      task and tenant operations
    <base>/errors/                    quarantined files

Filesystem notifications (watchfiles) schedule a debounced sweep; a slower
poll loop sweeps as well in case a notification is missed. A file is deleted
only after its request was handled, so a crash between the two can redeliver
that request once on restart (at-least-once). Rejected files are moved into
``errors/<folder>-<name>`` and never block the rest of the sweep.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from watchfiles import Change, awatch

from hearth.config import MAIN_GROUP_FOLDER
from hearth.errors import HearthError, QuarantineError, ValidationError
from hearth.services.control_plane import (
    ControlDispatcher,
    ControlEnvelope,
    SendMessage,
    parse_control_message,
)
from hearth.services.tenant_registry import FOLDER_PATTERN

logger = logging.getLogger(__name__)

ERRORS_DIR = "errors"
MESSAGES_CHANNEL = "messages"
TASKS_CHANNEL = "tasks"
CHANNELS = (MESSAGES_CHANNEL, TASKS_CHANNEL)


@dataclass
class SweepStats:
    processed: int = 0
    quarantined: int = 0
    failed_quarantine: int = 0
    errors: list[str] = field(default_factory=list)


class ControlPlaneWatcher:
    """Watches tenant inboxes and dispatches control messages."""

    def __init__(
        self,
        base_dir: str,
        dispatcher: ControlDispatcher,
        *,
        main_folder: str = MAIN_GROUP_FOLDER,
        poll_interval: float = 1.0,
        debounce_ms: int = 100,
        fallback_multiplier: int = 5,
        use_notifications: bool = True,
    ):
        self._base_dir = base_dir
        self._dispatcher = dispatcher
        self._main_folder = main_folder
        self._fallback_interval = poll_interval * fallback_multiplier
        self._debounce_seconds = debounce_ms / 1000
        self._use_notifications = use_notifications

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._sweep_lock = asyncio.Lock()
        self._sweep_tasks: set[asyncio.Task[Any]] = set()
        self._total_processed = 0
        self._total_quarantined = 0
        self._last_sweep_at: float | None = None

    @property
    def errors_dir(self) -> str:
        return os.path.join(self._base_dir, ERRORS_DIR)

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "notifications": self._watch_task is not None and not self._watch_task.done(),
            "processed": self._total_processed,
            "quarantined": self._total_quarantined,
            "last_sweep_at": self._last_sweep_at,
        }

    # Lifecycle

    async def start(self) -> None:
        """Create the inbox base, sweep once, then start watching and polling."""
        if self._running:
            logger.warning("Control-plane watcher already running")
            return

        os.makedirs(self.errors_dir, exist_ok=True)
        self._running = True
        self._stop_event = asyncio.Event()

        await self.sweep()

        if self._use_notifications:
            self._watch_task = asyncio.create_task(
                self._watch_loop(), name="ipc-watch"
            )
        self._poll_task = asyncio.create_task(self._poll_loop(), name="ipc-poll")
        logger.info(
            "Control-plane watcher started on %s (fallback poll every %.1fs)",
            self._base_dir,
            self._fallback_interval,
        )

    async def stop(self) -> None:
        """Stop watchers and timers; wait for an in-progress sweep to finish."""
        if not self._running:
            return

        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        await self._cancel_task(self._watch_task, "ipc-watch")
        await self._cancel_task(self._poll_task, "ipc-poll")
        self._watch_task = None
        self._poll_task = None

        if self._sweep_tasks:
            await asyncio.gather(*self._sweep_tasks, return_exceptions=True)
        logger.info("Control-plane watcher stopped")

    async def _cancel_task(self, task: asyncio.Task[None] | None, name: str) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("%s task cancelled", name)

    async def _watch_loop(self) -> None:
        def relevant(change: Change, path: str) -> bool:
            if change == Change.deleted or not path.endswith(".json"):
                return False
            parent = os.path.basename(os.path.dirname(path))
            return parent in CHANNELS

        try:
            async for _changes in awatch(
                self._base_dir,
                watch_filter=relevant,
                stop_event=self._stop_event,
                debounce=max(1, int(self._debounce_seconds * 1000)),
                step=50,
                recursive=True,
            ):
                self.schedule_sweep()
        except asyncio.CancelledError:
            raise
        except Exception:
            # Polling keeps the control plane working without notifications.
            logger.exception("Filesystem notifications failed; relying on polling")

    async def _poll_loop(self) -> None:
        assert self._stop_event is not None
        while self._running:
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._fallback_interval
                )
                break
            except asyncio.TimeoutError:
                pass
            await self.sweep()

    def schedule_sweep(self) -> None:
        """Coalesce a burst of notifications into one sweep."""
        if not self._running:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._debounce_seconds, self._launch_sweep)

    def _launch_sweep(self) -> None:
        self._debounce_handle = None
        if not self._running:
            return
        task = asyncio.create_task(self.sweep(), name="ipc-sweep")
        self._sweep_tasks.add(task)
        task.add_done_callback(self._sweep_tasks.discard)

    # Sweep

    async def sweep(self) -> SweepStats:
        """Process every pending inbox file once."""
        async with self._sweep_lock:
            stats = SweepStats()
            try:
                folders = sorted(
                    entry for entry in os.listdir(self._base_dir)
                    if entry != ERRORS_DIR
                    and os.path.isdir(os.path.join(self._base_dir, entry))
                )
            except FileNotFoundError:
                return stats

            for folder in folders:
                if not FOLDER_PATTERN.match(folder):
                    logger.warning("Ignoring inbox with invalid folder name %r", folder)
                    continue
                for channel in CHANNELS:
                    await self._sweep_channel(folder, channel, stats)

            self._total_processed += stats.processed
            self._total_quarantined += stats.quarantined
            self._last_sweep_at = time.time()
            if stats.processed or stats.quarantined:
                logger.info(
                    "Control-plane sweep: %d processed, %d quarantined",
                    stats.processed,
                    stats.quarantined,
                )
            return stats

    async def _sweep_channel(self, folder: str, channel: str, stats: SweepStats) -> None:
        directory = os.path.join(self._base_dir, folder, channel)
        try:
            names = sorted(n for n in os.listdir(directory) if n.endswith(".json"))
        except FileNotFoundError:
            return

        for name in names:
            path = os.path.join(directory, name)
            error = await self._process_file(folder, channel, path)
            if error is None:
                stats.processed += 1
                continue
            stats.errors.append(f"{folder}/{channel}/{name}: {error}")
            try:
                self._quarantine(folder, path)
                stats.quarantined += 1
            except QuarantineError as e:
                stats.failed_quarantine += 1
                logger.error("%s", e)

    async def _process_file(self, folder: str, channel: str, path: str) -> str | None:
        """Handle one file. Returns None on success, otherwise the rejection reason."""
        is_main = folder == self._main_folder
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            payload = parse_control_message(data)
            if (channel == MESSAGES_CHANNEL) != isinstance(payload, SendMessage):
                raise ValidationError(
                    f"{payload.type} is not accepted on the {channel} channel"
                )
            await self._dispatcher.dispatch(
                ControlEnvelope(source_group=folder, is_main=is_main, payload=payload)
            )
        except FileNotFoundError:
            # Removed by a concurrent sweep.
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            reason = f"unparsable JSON: {e}"
            logger.warning("Rejected %s from %s: %s", os.path.basename(path), folder, reason)
            return reason
        except HearthError as e:
            logger.warning(
                "Rejected %s from %s (%s): %s",
                os.path.basename(path),
                folder,
                type(e).__name__,
                e,
            )
            return str(e)
        except Exception as e:
            logger.exception("Error handling %s from %s", os.path.basename(path), folder)
            return f"{type(e).__name__}: {e}"

        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        return None

    def _quarantine(self, folder: str, path: str) -> str:
        """Move a rejected file to errors/<folder>-<name>."""
        name = os.path.basename(path)
        destination = os.path.join(self.errors_dir, f"{folder}-{name}")
        if os.path.exists(destination):
            stem, ext = os.path.splitext(name)
            destination = os.path.join(
                self.errors_dir, f"{folder}-{stem}-{int(time.time() * 1000)}{ext}"
            )
        try:
            os.makedirs(self.errors_dir, exist_ok=True)
            os.replace(path, destination)
        except OSError as e:
            raise QuarantineError(f"Could not quarantine {path}: {e}") from e
        logger.info("Quarantined %s as %s", path, os.path.basename(destination))
        return destination
