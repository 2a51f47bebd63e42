"""
Tenant-scoped snapshots handed to a sandbox before each invocation.

The main tenant sees every tenant and task; any other tenant sees only itself.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from hearth.services.schedule import to_iso
from hearth.services.task_store import TaskStore
from hearth.services.tenant_registry import Tenant, TenantRegistry

logger = logging.getLogger(__name__)

TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"


def _write_json(path: str, payload: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp_path, path)


class SnapshotWriter:
    """Writes GroupsSnapshot and TasksSnapshot into a tenant's inbox directory."""

    def __init__(self, ipc_dir: str, registry: TenantRegistry, task_store: TaskStore):
        self._ipc_dir = ipc_dir
        self._registry = registry
        self._task_store = task_store

    def tenant_ipc_dir(self, folder: str) -> str:
        return os.path.join(self._ipc_dir, folder)

    async def write(self, tenant: Tenant) -> None:
        """Regenerate both snapshots for the invoking tenant."""
        directory = self.tenant_ipc_dir(tenant.folder)
        os.makedirs(directory, exist_ok=True)

        if tenant.is_main:
            tasks = await self._task_store.list_tasks()
        else:
            tasks = await self._task_store.list_tasks(group_folder=tenant.folder)
        _write_json(
            os.path.join(directory, TASKS_SNAPSHOT),
            [task.to_snapshot() for task in tasks],
        )

        groups = self._registry.available_groups()
        if not tenant.is_main:
            groups = [g for g in groups if g["jid"] == tenant.jid]
        _write_json(
            os.path.join(directory, GROUPS_SNAPSHOT),
            {
                "groups": groups,
                "lastSync": to_iso(datetime.now(timezone.utc)),
            },
        )
        logger.debug(
            "Wrote snapshots for %s (%d tasks, %d groups)",
            tenant.folder,
            len(tasks),
            len(groups),
        )
