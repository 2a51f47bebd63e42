"""
Fast path: answer directly with a streamed chat completion instead of a sandbox.

Only a fixed allowlist of tools is offered. Side-effecting tools are turned
into control messages from the invoking tenant and go through the same
dispatcher (and authorization) as sandbox inbox files. Any failure before an
action was taken is reported as an error result and the orchestrator falls
back to the sandbox. Once an action ran, the run succeeds with a confirmation
if the model gives no final answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import openai

from hearth.config import Settings
from hearth.errors import HearthError
from hearth.models import (
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    ProgressEvent,
    ProgressSink,
    ProgressType,
)
from hearth.personas import effective_system_prompt
from hearth.services.control_plane import (
    ControlDispatcher,
    ControlEnvelope,
    parse_control_message,
)
from hearth.services.task_store import TaskStore
from hearth.services.tenant_registry import Tenant

logger = logging.getLogger(__name__)

KNOWLEDGE_EXTENSIONS = (".md", ".txt")
MAX_KNOWLEDGE_HITS = 5

_TASK_ID_PARAM = {
    "type": "object",
    "properties": {"taskId": {"type": "string", "description": "Task id"}},
    "required": ["taskId"],
}

TOOL_DECLARATIONS: dict[str, dict[str, Any]] = {
    "search_knowledge": {
        "description": "Search this group's knowledge documents for a phrase.",
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    },
    "schedule_task": {
        "description": (
            "Schedule a prompt to run later. schedule_type is cron (5-field "
            "expression), interval (milliseconds) or once (ISO timestamp)."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "schedule_type": {"type": "string", "enum": ["cron", "interval", "once"]},
                "schedule_value": {"type": "string"},
                "context_mode": {"type": "string", "enum": ["isolated", "group"]},
            },
            "required": ["prompt", "schedule_type", "schedule_value"],
        },
    },
    "pause_task": {"description": "Pause a scheduled task.", "parameters": _TASK_ID_PARAM},
    "resume_task": {"description": "Resume a paused task.", "parameters": _TASK_ID_PARAM},
    "cancel_task": {"description": "Delete a scheduled task.", "parameters": _TASK_ID_PARAM},
    "set_preference": {
        "description": (
            "Remember a preference for this group. key is one of language, "
            "nickname, response_style, interests, timezone, custom_instructions."
        ),
        "parameters": {
            "type": "object",
            "properties": {"key": {"type": "string"}, "value": {"type": "string"}},
            "required": ["key", "value"],
        },
    },
    "register_group": {
        "description": "Register a new chat group with the assistant.",
        "parameters": {
            "type": "object",
            "properties": {
                "jid": {"type": "string"},
                "name": {"type": "string"},
                "folder": {"type": "string"},
            },
            "required": ["jid", "name", "folder"],
        },
    },
}

# Offered to the main tenant only
MAIN_ONLY_TOOLS = frozenset({"register_group"})
READ_ONLY_TOOLS = frozenset({"search_knowledge"})


def allowed_tools(is_main: bool) -> list[str]:
    return [
        name for name in TOOL_DECLARATIONS
        if is_main or name not in MAIN_ONLY_TOOLS
    ]


def tool_schemas(is_main: bool) -> list[dict[str, Any]]:
    return [
        {"type": "function", "function": {"name": name, **TOOL_DECLARATIONS[name]}}
        for name in allowed_tools(is_main)
    ]


def confirmation_text(outcomes: list[tuple[str, dict[str, Any]]]) -> str:
    """Summarize executed tool calls when the model gave no final answer."""
    lines = []
    for name, outcome in outcomes:
        action = name.replace("_", " ")
        if not outcome.get("success"):
            lines.append(f"❌ {action} failed: {outcome.get('error', 'unknown error')}")
        elif name == "schedule_task":
            lines.append(
                f"✅ Scheduled task {outcome.get('task_id')} (next run {outcome.get('next_run')})"
            )
        elif outcome.get("task_id"):
            lines.append(f"✅ {action}: {outcome['task_id']}")
        else:
            lines.append(f"✅ {action} done")
    return "\n".join(lines)


@dataclass
class _ToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class _Completion:
    text: str = ""
    tool_calls: list[_ToolCall] = field(default_factory=list)
    prompt_tokens: int = 0
    response_tokens: int = 0


class FastPathExecutor:
    """Direct model execution with streaming progress and allowlisted tools."""

    def __init__(
        self,
        settings: Settings,
        dispatcher: ControlDispatcher,
        task_store: TaskStore,
        client: openai.AsyncOpenAI | None = None,
    ):
        self._settings = settings
        self._dispatcher = dispatcher
        self._task_store = task_store
        if client is None and settings.openai_api_key:
            client = openai.AsyncOpenAI(api_key=settings.openai_api_key)
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None

    def eligible(self, tenant: Tenant, has_attachment: bool) -> bool:
        return (
            self._settings.enable_fast_path
            and tenant.enable_fast_path
            and not has_attachment
            and self.available
        )

    async def run(
        self,
        tenant: Tenant,
        request: ExecutionRequest,
        progress_sink: ProgressSink | None = None,
    ) -> ExecutionResult:
        """Answer the request directly. Never raises for model or tool errors."""
        if self._client is None:
            return ExecutionResult.failure(ErrorKind.FAST_PATH, "Fast path not configured")

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._run(tenant, request, progress_sink),
                timeout=self._settings.fast_path_timeout,
            )
        except asyncio.TimeoutError:
            result = ExecutionResult.failure(
                ErrorKind.FAST_PATH,
                f"Fast path timed out after {self._settings.fast_path_timeout:.0f}s",
            )
        except openai.OpenAIError as e:
            logger.error("Fast path error for %s: %s", tenant.folder, e)
            result = ExecutionResult.failure(ErrorKind.FAST_PATH, f"Fast path error: {e}")
        except Exception as e:
            logger.exception("Unexpected fast path error for %s", tenant.folder)
            result = ExecutionResult.failure(
                ErrorKind.FAST_PATH, f"Fast path error: {type(e).__name__}: {e}"
            )
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _run(
        self,
        tenant: Tenant,
        request: ExecutionRequest,
        progress_sink: ProgressSink | None,
    ) -> ExecutionResult:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": await self._system_prompt(tenant, request)},
            {"role": "user", "content": request.prompt},
        ]

        first = await self._complete(messages, tool_schemas(tenant.is_main), progress_sink)
        prompt_tokens = first.prompt_tokens
        response_tokens = first.response_tokens
        text = first.text
        side_effects: list[tuple[str, dict[str, Any]]] = []

        if first.tool_calls:
            messages.append({
                "role": "assistant",
                "content": first.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in first.tool_calls
                ],
            })
            for call in first.tool_calls:
                if progress_sink is not None:
                    await progress_sink(
                        ProgressEvent(type=ProgressType.TOOL_USE, tool_name=call.name)
                    )
                outcome = await self._execute_tool(tenant, call)
                if call.name not in READ_ONLY_TOOLS:
                    side_effects.append((call.name, outcome))
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(outcome),
                })

            try:
                follow_up = await self._complete(messages, None, progress_sink)
            except Exception:
                if not side_effects:
                    raise
                # Falling back now would repeat the actions already taken.
                logger.exception(
                    "Fast path follow-up failed for %s after %d action(s)",
                    tenant.folder,
                    len(side_effects),
                )
                follow_up = _Completion()
            prompt_tokens += follow_up.prompt_tokens
            response_tokens += follow_up.response_tokens
            text = follow_up.text

        if not text.strip() and side_effects:
            text = confirmation_text(side_effects)

        if not text.strip():
            return ExecutionResult.failure(
                ErrorKind.FAST_PATH,
                "Fast path produced no text",
                prompt_tokens=prompt_tokens,
                response_tokens=response_tokens,
            )

        logger.info(
            "Fast path answered for %s (%d prompt / %d response tokens)",
            tenant.folder,
            prompt_tokens,
            response_tokens,
        )
        return ExecutionResult.success(
            text,
            prompt_tokens=prompt_tokens,
            response_tokens=response_tokens,
        )

    async def _system_prompt(self, tenant: Tenant, request: ExecutionRequest) -> str:
        prompt = request.system_prompt or effective_system_prompt(
            tenant.system_prompt, tenant.persona
        )
        preferences = await self._task_store.get_preferences(tenant.folder)
        if preferences:
            lines = "\n".join(f"- {k}: {v}" for k, v in preferences.items())
            prompt = f"{prompt}\n\nUser preferences:\n{lines}"
        return prompt

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        progress_sink: ProgressSink | None,
    ) -> _Completion:
        """Run one streamed completion, forwarding throttled text snapshots."""
        kwargs: dict[str, Any] = {
            "model": self._settings.fast_path_model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools

        assert self._client is not None
        stream = await self._client.chat.completions.create(**kwargs)

        completion = _Completion()
        calls: dict[int, _ToolCall] = {}
        last_emit = 0.0
        async for chunk in stream:
            if chunk.usage:
                completion.prompt_tokens = chunk.usage.prompt_tokens or 0
                completion.response_tokens = chunk.usage.completion_tokens or 0
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                completion.text += delta.content
                now = time.monotonic()
                if progress_sink is not None and now - last_emit >= self._settings.streaming_interval:
                    last_emit = now
                    await progress_sink(
                        ProgressEvent(
                            type=ProgressType.MESSAGE,
                            content_snapshot=completion.text,
                        )
                    )
            for tool_delta in delta.tool_calls or []:
                call = calls.setdefault(tool_delta.index, _ToolCall())
                if tool_delta.id:
                    call.id = tool_delta.id
                if tool_delta.function is not None:
                    call.name += tool_delta.function.name or ""
                    call.arguments += tool_delta.function.arguments or ""

        completion.tool_calls = [calls[i] for i in sorted(calls)]
        return completion

    async def _execute_tool(self, tenant: Tenant, call: _ToolCall) -> dict[str, Any]:
        if call.name not in allowed_tools(tenant.is_main):
            logger.warning("Fast path for %s requested disallowed tool %s", tenant.folder, call.name)
            return {"success": False, "error": f"Tool not available: {call.name}"}

        try:
            arguments = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            return {"success": False, "error": "Arguments were not valid JSON"}
        if not isinstance(arguments, dict):
            return {"success": False, "error": "Arguments must be an object"}

        if call.name in READ_ONLY_TOOLS:
            return self._search_knowledge(tenant, str(arguments.get("query", "")))

        try:
            payload = parse_control_message({**arguments, "type": call.name})
            return await self._dispatcher.dispatch(
                ControlEnvelope(
                    source_group=tenant.folder,
                    is_main=tenant.is_main,
                    payload=payload,
                )
            )
        except HearthError as e:
            logger.warning("Fast path tool %s rejected for %s: %s", call.name, tenant.folder, e)
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception("Fast path tool %s failed for %s", call.name, tenant.folder)
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

    def _search_knowledge(self, tenant: Tenant, query: str) -> dict[str, Any]:
        """Case-insensitive line search over the tenant's knowledge documents."""
        query = query.strip()
        if not query:
            return {"success": False, "error": "Empty query"}

        knowledge_dir = os.path.join(self._settings.groups_dir, tenant.folder, "knowledge")
        needle = query.lower()
        hits: list[dict[str, str]] = []
        if os.path.isdir(knowledge_dir):
            for name in sorted(os.listdir(knowledge_dir)):
                if not name.endswith(KNOWLEDGE_EXTENSIONS):
                    continue
                path = os.path.join(knowledge_dir, name)
                try:
                    with open(path, encoding="utf-8") as f:
                        for line in f:
                            if needle in line.lower():
                                hits.append({"document": name, "excerpt": line.strip()[:300]})
                                if len(hits) >= MAX_KNOWLEDGE_HITS:
                                    break
                except (OSError, UnicodeDecodeError) as e:
                    logger.debug("Skipping knowledge file %s: %s", path, e)
                if len(hits) >= MAX_KNOWLEDGE_HITS:
                    break
        return {"success": True, "results": hits}
