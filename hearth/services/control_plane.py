"""
Control-plane messages and their dispatcher.

Sandboxes (through inbox files) and the fast path (through tool calls) ask the
host to act on their behalf. Every request is parsed into a strict tagged
variant, wrapped in a ControlEnvelope carrying the host-derived source tenant,
authorized, and then handled. Nothing in the payload can claim a different
source tenant or main privileges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from hearth.errors import AuthorizationError, DeliveryError, ValidationError
from hearth.models import ContextMode
from hearth.services.notifier import Notifier
from hearth.services.schedule import ScheduleType, first_run, to_iso
from hearth.services.task_store import ScheduledTask, TaskStatus, TaskStore, new_task_id
from hearth.services.tenant_registry import Tenant, TenantRegistry, validate_folder

logger = logging.getLogger(__name__)

PREFERENCE_KEYS = frozenset({
    "language",
    "nickname",
    "response_style",
    "interests",
    "timezone",
    "custom_instructions",
})


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class SendMessage(_Payload):
    type: Literal["message"]
    chatJid: str = Field(min_length=1)
    text: str = Field(min_length=1)


class ScheduleTask(_Payload):
    type: Literal["schedule_task"]
    prompt: str = Field(min_length=1)
    schedule_type: ScheduleType
    schedule_value: str = Field(min_length=1)
    context_mode: ContextMode = ContextMode.ISOLATED
    groupFolder: str | None = None


class PauseTask(_Payload):
    type: Literal["pause_task"]
    taskId: str = Field(min_length=1)


class ResumeTask(_Payload):
    type: Literal["resume_task"]
    taskId: str = Field(min_length=1)


class CancelTask(_Payload):
    type: Literal["cancel_task"]
    taskId: str = Field(min_length=1)


class RegisterGroup(_Payload):
    type: Literal["register_group"]
    jid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    folder: str = Field(min_length=1)
    trigger: str | None = None
    requireTrigger: bool = True


class SetPreference(_Payload):
    type: Literal["set_preference"]
    key: str = Field(min_length=1)
    value: str
    groupFolder: str | None = None


ControlMessage = Annotated[
    Union[
        SendMessage,
        ScheduleTask,
        PauseTask,
        ResumeTask,
        CancelTask,
        RegisterGroup,
        SetPreference,
    ],
    Field(discriminator="type"),
]

_CONTROL_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(ControlMessage)


def parse_control_message(data: Any) -> ControlMessage:
    """
    Parse a decoded JSON document into a control message variant.

    Raises:
        ValidationError: unknown type, missing fields or wrong field types
    """
    if not isinstance(data, dict):
        raise ValidationError("Control message must be a JSON object")
    try:
        return _CONTROL_MESSAGE_ADAPTER.validate_python(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid control message: {problems}") from e


@dataclass(frozen=True)
class ControlEnvelope:
    """A parsed control message plus the host-attested source tenant."""

    source_group: str
    is_main: bool
    payload: ControlMessage


class ControlDispatcher:
    """Authorizes control messages and applies them."""

    def __init__(
        self,
        registry: TenantRegistry,
        task_store: TaskStore,
        notifier: Notifier,
        *,
        assistant_name: str,
        timezone_name: str,
        clock: Callable[[], datetime] | None = None,
    ):
        self._registry = registry
        self._task_store = task_store
        self._notifier = notifier
        self._assistant_name = assistant_name
        self._timezone_name = timezone_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def dispatch(self, envelope: ControlEnvelope) -> dict[str, Any]:
        """
        Authorize and handle one control message.

        Returns:
            A small result document (used as the fast path's tool response)

        Raises:
            ValidationError: the request references something that does not exist
                or carries an unusable value
            AuthorizationError: the source tenant may not perform the request
        """
        payload = envelope.payload
        if isinstance(payload, SendMessage):
            return await self._send_message(envelope, payload)
        if isinstance(payload, ScheduleTask):
            return await self._schedule_task(envelope, payload)
        if isinstance(payload, (PauseTask, ResumeTask, CancelTask)):
            return await self._change_task(envelope, payload)
        if isinstance(payload, RegisterGroup):
            return await self._register_group(envelope, payload)
        if isinstance(payload, SetPreference):
            return await self._set_preference(envelope, payload)
        raise ValidationError(f"Unhandled control message {type(payload).__name__}")

    def _authorize_folder(self, envelope: ControlEnvelope, target_folder: str, action: str) -> None:
        if envelope.is_main or target_folder == envelope.source_group:
            return
        logger.warning(
            "Unauthorized %s from %s targeting %s",
            action,
            envelope.source_group,
            target_folder,
        )
        raise AuthorizationError(
            f"{envelope.source_group} may not {action} for {target_folder}"
        )

    async def _send_message(self, envelope: ControlEnvelope, payload: SendMessage) -> dict[str, Any]:
        target = self._registry.get_by_jid(payload.chatJid)
        if not envelope.is_main:
            if target is None:
                raise AuthorizationError(
                    f"{envelope.source_group} may not message unregistered chat {payload.chatJid}"
                )
            self._authorize_folder(envelope, target.folder, "send a message")

        text = f"{self._assistant_name}: {payload.text}"
        result = await self._notifier.send_message(payload.chatJid, text)
        if not result.success:
            logger.error(
                "Delivery of control-plane message to %s failed: %s",
                payload.chatJid,
                result.error,
            )
            raise DeliveryError(f"Could not deliver to {payload.chatJid}: {result.error}")

        self._registry.note_out_of_band_reply(payload.chatJid)
        logger.info("Control-plane message sent to %s from %s", payload.chatJid, envelope.source_group)
        return {"success": True, "chatJid": payload.chatJid}

    async def _schedule_task(self, envelope: ControlEnvelope, payload: ScheduleTask) -> dict[str, Any]:
        target_folder = payload.groupFolder or envelope.source_group
        validate_folder(target_folder)
        self._authorize_folder(envelope, target_folder, "schedule a task")

        target = self._registry.get_by_folder(target_folder)
        if target is None:
            raise ValidationError(f"Target tenant {target_folder} is not registered")

        now = self._clock()
        next_run = first_run(
            payload.schedule_type,
            payload.schedule_value,
            now=now,
            tz_name=self._timezone_name,
        )
        task = ScheduledTask(
            id=new_task_id(int(now.timestamp() * 1000)),
            group_folder=target_folder,
            chat_jid=target.jid,
            prompt=payload.prompt,
            schedule_type=payload.schedule_type,
            schedule_value=payload.schedule_value,
            context_mode=payload.context_mode,
            status=TaskStatus.ACTIVE,
            next_run=to_iso(next_run),
            created_at=to_iso(now),
        )
        await self._task_store.create_task(task)
        return {"success": True, "task_id": task.id, "next_run": task.next_run}

    async def _change_task(
        self,
        envelope: ControlEnvelope,
        payload: PauseTask | ResumeTask | CancelTask,
    ) -> dict[str, Any]:
        task = await self._task_store.get_task(payload.taskId)
        if task is None:
            raise ValidationError(f"Task {payload.taskId} not found")
        self._authorize_folder(envelope, task.group_folder, payload.type.replace("_", " "))

        if isinstance(payload, CancelTask):
            await self._task_store.delete_task(task.id)
            logger.info("Task %s cancelled by %s", task.id, envelope.source_group)
            return {"success": True, "task_id": task.id, "deleted": True}

        if task.status is TaskStatus.COMPLETED:
            raise ValidationError(f"Task {task.id} is already completed")

        status = TaskStatus.PAUSED if isinstance(payload, PauseTask) else TaskStatus.ACTIVE
        await self._task_store.update_task(task.id, status=status)
        logger.info("Task %s %s by %s", task.id, status.value, envelope.source_group)
        return {"success": True, "task_id": task.id, "status": status.value}

    async def _register_group(self, envelope: ControlEnvelope, payload: RegisterGroup) -> dict[str, Any]:
        if not envelope.is_main:
            logger.warning("Unauthorized register_group from %s", envelope.source_group)
            raise AuthorizationError("Only the main tenant may register tenants")

        folder = validate_folder(payload.folder)
        existing = self._registry.get_by_jid(payload.jid)
        if existing is None:
            tenant = self._registry.register(
                Tenant(
                    jid=payload.jid,
                    folder=folder,
                    name=payload.name,
                    trigger=payload.trigger or f"@{self._assistant_name}",
                    require_trigger=payload.requireTrigger,
                )
            )
            return {"success": True, "jid": tenant.jid, "folder": tenant.folder}

        if existing.folder != folder:
            raise ValidationError(
                f"{payload.jid} is already registered as {existing.folder!r}"
            )
        # Persona, prompt and feature flags are kept on re-registration.
        changes: dict[str, Any] = {"name": payload.name}
        if payload.trigger:
            changes["trigger"] = payload.trigger
        if "requireTrigger" in payload.model_fields_set:
            changes["require_trigger"] = payload.requireTrigger
        tenant = self._registry.update_tenant(payload.jid, **changes)
        logger.info("Updated registration of %s (%s)", tenant.folder, tenant.jid)
        return {"success": True, "jid": tenant.jid, "folder": tenant.folder}

    async def _set_preference(self, envelope: ControlEnvelope, payload: SetPreference) -> dict[str, Any]:
        if payload.key not in PREFERENCE_KEYS:
            raise ValidationError(f"Invalid preference key: {payload.key}")
        target_folder = payload.groupFolder or envelope.source_group
        self._authorize_folder(envelope, target_folder, "set preferences")
        await self._task_store.set_preference(target_folder, payload.key, payload.value)
        return {"success": True, "key": payload.key}
