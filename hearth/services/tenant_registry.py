"""
Tenant registry: registered chat groups, their sessions and recent activity.

All shared tenant state lives behind this component. Callers never touch the
underlying maps directly; every read returns a copy and every write is
persisted through the injected StateStore.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from hearth.config import MAIN_GROUP_FOLDER
from hearth.errors import ValidationError
from hearth.services.state_store import StateStore

logger = logging.getLogger(__name__)

FOLDER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Names that collide with directories the host owns inside the IPC base.
RESERVED_FOLDERS = frozenset({"errors"})

TENANT_SUBDIRS = ("logs", "media", "knowledge")

_TENANTS_RECORD = "registered_groups"
_SESSIONS_RECORD = "sessions"
_ROUTER_RECORD = "router_state"


def validate_folder(folder: str) -> str:
    """Return the folder if it is a safe tenant id, raise ValidationError otherwise."""
    if not isinstance(folder, str) or not FOLDER_PATTERN.match(folder):
        raise ValidationError(f"Invalid tenant folder: {folder!r}")
    if folder in RESERVED_FOLDERS:
        raise ValidationError(f"Tenant folder {folder!r} is reserved")
    return folder


@dataclass
class SandboxConfig:
    """Per-tenant overrides for sandbox execution."""

    timeout_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.timeout_seconds is not None:
            result["timeoutSeconds"] = self.timeout_seconds
        if self.env:
            result["env"] = dict(self.env)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SandboxConfig | None:
        if not data:
            return None
        return cls(
            timeout_seconds=data.get("timeoutSeconds"),
            env=dict(data.get("env") or {}),
        )


@dataclass
class Tenant:
    """A registered chat group with its own folder and settings."""

    jid: str
    folder: str
    name: str
    trigger: str = ""
    added_at: str = ""
    require_trigger: bool = True
    enable_web_search: bool = True
    enable_fast_path: bool = True
    persona: str | None = None
    system_prompt: str | None = None
    sandbox_config: SandboxConfig | None = None

    @property
    def is_main(self) -> bool:
        return self.folder == MAIN_GROUP_FOLDER

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "name": self.name,
            "folder": self.folder,
            "trigger": self.trigger,
            "added_at": self.added_at,
            "requireTrigger": self.require_trigger,
            "enableWebSearch": self.enable_web_search,
            "enableFastPath": self.enable_fast_path,
        }
        if self.persona:
            result["persona"] = self.persona
        if self.system_prompt:
            result["systemPrompt"] = self.system_prompt
        if self.sandbox_config:
            result["containerConfig"] = self.sandbox_config.to_dict()
        return result

    @classmethod
    def from_dict(cls, jid: str, data: dict[str, Any]) -> Tenant:
        """Create from a persisted record keyed by chat jid."""
        return cls(
            jid=jid,
            folder=data["folder"],
            name=data.get("name", data["folder"]),
            trigger=data.get("trigger", ""),
            added_at=data.get("added_at", ""),
            require_trigger=data.get("requireTrigger", True),
            enable_web_search=data.get("enableWebSearch", True),
            enable_fast_path=data.get("enableFastPath", True),
            persona=data.get("persona"),
            system_prompt=data.get("systemPrompt"),
            sandbox_config=SandboxConfig.from_dict(data.get("containerConfig")),
        )


class TenantRegistry:
    """
    Synchronized store for tenants, sessions and chat activity.

    Accessors take an internal lock so the registry can be shared between the
    orchestrator, the control plane and the scheduler.
    """

    def __init__(self, store: StateStore, groups_dir: str):
        self._store = store
        self._groups_dir = groups_dir
        self._lock = threading.RLock()
        self._tenants: dict[str, Tenant] = {}
        self._sessions: dict[str, str] = {}
        self._last_activity: dict[str, str] = {}
        self._chat_names: dict[str, str] = {}
        self._out_of_band: set[str] = set()

    @property
    def groups_dir(self) -> str:
        return self._groups_dir

    def tenant_dir(self, folder: str) -> str:
        return os.path.join(self._groups_dir, validate_folder(folder))

    # Persistence

    def load(self) -> None:
        """Load tenants, sessions and activity from the state store."""
        raw_tenants = self._store.load(_TENANTS_RECORD, {})
        raw_sessions = self._store.load(_SESSIONS_RECORD, {})
        raw_router = self._store.load(_ROUTER_RECORD, {})

        tenants: dict[str, Tenant] = {}
        for jid, data in raw_tenants.items():
            try:
                tenant = Tenant.from_dict(jid, data)
                validate_folder(tenant.folder)
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning("Skipping invalid tenant record %s: %s", jid, e)
                continue
            tenants[jid] = tenant

        with self._lock:
            self._tenants = tenants
            self._sessions = {
                k: v for k, v in raw_sessions.items() if isinstance(v, str)
            }
            self._last_activity = dict(raw_router.get("last_activity", {}))
            self._chat_names = dict(raw_router.get("chat_names", {}))

        logger.info(
            "Loaded %d tenants and %d sessions", len(tenants), len(self._sessions)
        )

    def save(self) -> None:
        """Persist tenants, sessions and activity."""
        with self._lock:
            tenants = {jid: t.to_dict() for jid, t in self._tenants.items()}
            sessions = dict(self._sessions)
            router = {
                "last_activity": dict(self._last_activity),
                "chat_names": dict(self._chat_names),
            }
        self._store.save(_TENANTS_RECORD, tenants)
        self._store.save(_SESSIONS_RECORD, sessions)
        self._store.save(_ROUTER_RECORD, router)

    # Tenants

    def register(self, tenant: Tenant) -> Tenant:
        """
        Register (or re-register) a tenant and create its working area.

        Raises:
            ValidationError: bad folder, empty jid, the folder already
                belongs to a different chat, or the chat is already
                registered under another folder.
        """
        validate_folder(tenant.folder)
        if not tenant.jid:
            raise ValidationError("Tenant jid is required")

        if not tenant.added_at:
            tenant = replace(
                tenant, added_at=datetime.now(timezone.utc).isoformat()
            )

        with self._lock:
            current = self._tenants.get(tenant.jid)
            if current is not None:
                if current.folder != tenant.folder:
                    raise ValidationError(
                        f"{tenant.jid} is already registered as {current.folder!r}"
                    )
                tenant = replace(tenant, added_at=current.added_at)
            for jid, existing in self._tenants.items():
                if existing.folder == tenant.folder and jid != tenant.jid:
                    raise ValidationError(
                        f"Folder {tenant.folder!r} is already used by {jid}"
                    )
            self._tenants[tenant.jid] = tenant
            self._chat_names.setdefault(tenant.jid, tenant.name)

        base = self.tenant_dir(tenant.folder)
        for sub in TENANT_SUBDIRS:
            os.makedirs(os.path.join(base, sub), exist_ok=True)

        self._store.save(
            _TENANTS_RECORD,
            {jid: t.to_dict() for jid, t in self.tenants_by_jid().items()},
        )
        logger.info("Registered tenant %s (%s)", tenant.folder, tenant.jid)
        return replace(tenant)

    def update_tenant(self, jid: str, **changes: Any) -> Tenant:
        """Apply settings changes to a tenant. The folder is immutable."""
        if "folder" in changes or "jid" in changes:
            raise ValidationError("Tenant folder and jid cannot be changed")
        with self._lock:
            current = self._tenants.get(jid)
            if current is None:
                raise ValidationError(f"Unknown tenant {jid}")
            updated = replace(current, **changes)
            self._tenants[jid] = updated
        self.save()
        return replace(updated)

    def get_by_jid(self, jid: str) -> Tenant | None:
        with self._lock:
            tenant = self._tenants.get(jid)
            return replace(tenant) if tenant else None

    def get_by_folder(self, folder: str) -> Tenant | None:
        with self._lock:
            for tenant in self._tenants.values():
                if tenant.folder == folder:
                    return replace(tenant)
        return None

    def tenants(self) -> list[Tenant]:
        with self._lock:
            return [replace(t) for t in self._tenants.values()]

    def tenants_by_jid(self) -> dict[str, Tenant]:
        with self._lock:
            return {jid: replace(t) for jid, t in self._tenants.items()}

    # Sessions

    def get_session(self, folder: str) -> str | None:
        with self._lock:
            return self._sessions.get(folder)

    def set_session(self, folder: str, token: str) -> None:
        with self._lock:
            self._sessions[folder] = token
            sessions = dict(self._sessions)
        self._store.save(_SESSIONS_RECORD, sessions)

    def clear_session(self, folder: str) -> None:
        with self._lock:
            if self._sessions.pop(folder, None) is None:
                return
            sessions = dict(self._sessions)
        self._store.save(_SESSIONS_RECORD, sessions)
        logger.info("Cleared session for %s", folder)

    # Activity

    def touch(self, jid: str, name: str | None = None, when: str | None = None) -> None:
        """Record activity in a chat, registered or not."""
        with self._lock:
            self._last_activity[jid] = when or datetime.now(timezone.utc).isoformat()
            if name:
                self._chat_names[jid] = name

    def available_groups(self) -> list[dict[str, Any]]:
        """All known chats, most recently active first."""
        with self._lock:
            jids = set(self._chat_names) | set(self._tenants) | set(self._last_activity)
            groups = [
                {
                    "jid": jid,
                    "name": self._chat_names.get(jid)
                    or (self._tenants[jid].name if jid in self._tenants else jid),
                    "lastActivity": self._last_activity.get(jid),
                    "isRegistered": jid in self._tenants,
                }
                for jid in jids
            ]
        groups.sort(key=lambda g: g["lastActivity"] or "", reverse=True)
        return groups

    # Replies delivered through the control plane mid-invocation

    def note_out_of_band_reply(self, jid: str) -> None:
        with self._lock:
            self._out_of_band.add(jid)

    def consume_out_of_band_reply(self, jid: str) -> bool:
        """Return True (once) if a control-plane reply reached this chat."""
        with self._lock:
            if jid in self._out_of_band:
                self._out_of_band.discard(jid)
                return True
            return False
