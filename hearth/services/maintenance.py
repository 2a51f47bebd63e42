"""
Global maintenance-mode flag, persisted across restarts.
"""

from __future__ import annotations

import logging
import threading

from hearth.services.state_store import StateStore

logger = logging.getLogger(__name__)

_RECORD = "dashboard_config"

UNAVAILABLE_MESSAGE = (
    "🔧 The assistant is under maintenance right now. Please try again later."
)


class MaintenanceMode:
    """Flag provider consulted by the orchestrator and the scheduler."""

    def __init__(self, store: StateStore):
        self._store = store
        self._lock = threading.Lock()
        config = store.load(_RECORD, {})
        self._active = bool(config.get("maintenanceMode", False))

    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def set_active(self, active: bool) -> None:
        with self._lock:
            if self._active == active:
                return
            self._active = active
            config = self._store.load(_RECORD, {})
            config["maintenanceMode"] = active
            self._store.save(_RECORD, config)
        logger.warning("Maintenance mode %s", "enabled" if active else "disabled")
