"""
Service layer: tenant state, execution, control plane, scheduling and delivery.
"""

__all__ = [
    "consolidator",
    "control_plane",
    "fast_path",
    "ipc_watcher",
    "maintenance",
    "notifier",
    "orchestrator",
    "outbound",
    "sandbox_runner",
    "schedule",
    "snapshots",
    "state_store",
    "task_scheduler",
    "task_store",
    "tenant_registry",
]
