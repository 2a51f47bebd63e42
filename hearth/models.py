"""
Execution request/result types shared by the runners and the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from hearth.errors import (
    ExecutionError,
    HearthError,
    SandboxTimeoutError,
    SessionStaleError,
)


class ContextMode(str, Enum):
    ISOLATED = "isolated"
    GROUP = "group"


class ErrorKind(str, Enum):
    """Classified failure reported by an execution attempt."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non-zero exit"
    STALE_SESSION = "stale session"
    OUTPUT_TRUNCATED = "output truncated"
    SPAWN_FAILED = "spawn failed"
    INVALID_OUTPUT = "invalid output"
    AGENT_ERROR = "agent error"
    FAST_PATH = "fast path"
    MAINTENANCE = "maintenance"
    INTERNAL = "internal error"

    def to_exception(self, detail: str | None = None) -> HearthError:
        """Return the taxonomy exception matching this classification."""
        message = detail or self.value
        if self is ErrorKind.TIMEOUT:
            return SandboxTimeoutError(message)
        if self is ErrorKind.NON_ZERO_EXIT:
            return ExecutionError(message)
        if self is ErrorKind.STALE_SESSION:
            return SessionStaleError(message)
        return HearthError(message)


class ProgressType(str, Enum):
    TOOL_USE = "tool_use"
    MESSAGE = "message"


@dataclass
class ProgressEvent:
    """Transient progress notification emitted while an invocation runs."""

    type: ProgressType
    tool_name: str | None = None
    content_snapshot: str | None = None
    is_complete: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressEvent:
        """Create from the camelCase dictionary the sandbox emits."""
        return cls(
            type=ProgressType(data.get("type", "message")),
            tool_name=data.get("toolName"),
            content_snapshot=data.get("contentSnapshot"),
            is_complete=bool(data.get("isComplete", False)),
        )


ProgressSink = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class ExecutionRequest:
    """A single prompt execution for one tenant."""

    prompt: str
    chat_jid: str
    session_token: str | None = None
    media_path: str | None = None
    system_prompt: str | None = None
    context_mode: ContextMode = ContextMode.GROUP
    is_scheduled_task: bool = False
    enable_web_search: bool = False
    deliver: bool = True

    @property
    def has_attachment(self) -> bool:
        return bool(self.media_path)

    def to_sandbox_input(self, group_folder: str, is_main: bool) -> dict[str, Any]:
        """Serialize the JSON document written to the sandbox's stdin."""
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "groupFolder": group_folder,
            "chatJid": self.chat_jid,
            "isMain": is_main,
            "isScheduledTask": self.is_scheduled_task,
            "enableWebSearch": self.enable_web_search,
        }
        if self.session_token:
            payload["sessionId"] = self.session_token
        if self.system_prompt:
            payload["systemPrompt"] = self.system_prompt
        if self.media_path:
            payload["mediaPath"] = self.media_path
        return payload


@dataclass
class ExecutionResult:
    """Outcome of one execution attempt."""

    status: str
    result: str | None = None
    new_session_token: str | None = None
    prompt_tokens: int = 0
    response_tokens: int = 0
    error: ErrorKind | None = None
    error_detail: str | None = None
    duration_ms: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(
        cls,
        result: str | None,
        new_session_token: str | None = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        return cls(
            status="success",
            result=result,
            new_session_token=new_session_token,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        detail: str | None = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        return cls(status="error", error=error, error_detail=detail, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "result": self.result,
            "newSessionToken": self.new_session_token,
            "promptTokens": self.prompt_tokens,
            "responseTokens": self.response_tokens,
            "error": self.error.value if self.error else None,
            "errorDetail": self.error_detail,
            "durationMs": self.duration_ms,
        }
