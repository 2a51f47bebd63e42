"""
Sandbox runner: one isolated agent execution per call.

The sandbox is spawned through a container runtime CLI (docker by default).
The request is written as JSON to the sandbox's stdin; the sandbox writes
marker-delimited JSON documents to stdout. A document with
``"type": "progress"`` is a progress event, anything else is the result.

Only tenant-scoped directories are mounted and only allowlisted environment
keys are forwarded. The runner never touches the tenant registry: the caller
applies ``new_session_token`` from the returned result.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from hearth.config import Settings
from hearth.models import (
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    ProgressEvent,
    ProgressSink,
)
from hearth.services.tenant_registry import TENANT_SUBDIRS, Tenant, validate_folder

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---HEARTH_OUTPUT_START---"
OUTPUT_END_MARKER = "---HEARTH_OUTPUT_END---"

# Errors the agent reports when asked to resume a session it no longer has
STALE_SESSION_MARKERS = (
    "No previous sessions found",
    "No conversation found with session ID",
)

READ_CHUNK_SIZE = 8192


@dataclass(frozen=True)
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


def is_stale_session_error(text: str | None) -> bool:
    return bool(text) and any(marker in text for marker in STALE_SESSION_MARKERS)


class _Capture:
    """Accumulates one output stream up to a byte budget."""

    def __init__(self, limit: int):
        self._limit = limit
        self._parts: list[str] = []
        self._size = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if self.truncated:
            return
        remaining = self._limit - self._size
        if len(chunk) > remaining:
            chunk = chunk[:remaining]
            self.truncated = True
        # Characters split across reads are held back until complete.
        self._parts.append(self._decoder.decode(chunk, final=self.truncated))
        self._size += len(chunk)

    @property
    def text(self) -> str:
        return "".join(self._parts)


class _MarkerParser:
    """Incrementally extracts marker-delimited JSON documents from stdout."""

    def __init__(self, limit: int):
        self._buffer = ""
        self._limit = limit

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        documents: list[str] = []
        while True:
            start = self._buffer.find(OUTPUT_START_MARKER)
            if start == -1:
                # Keep enough tail to catch a marker split across chunks.
                self._buffer = self._buffer[-len(OUTPUT_START_MARKER):]
                break
            end = self._buffer.find(OUTPUT_END_MARKER, start)
            if end == -1:
                self._buffer = self._buffer[start:]
                if len(self._buffer) > self._limit:
                    logger.warning("Discarding oversized unterminated output block")
                    self._buffer = ""
                break
            documents.append(
                self._buffer[start + len(OUTPUT_START_MARKER):end].strip()
            )
            self._buffer = self._buffer[end + len(OUTPUT_END_MARKER):]
        return documents


def _last_json_line(stdout: str) -> dict[str, Any] | None:
    """Fallback for agents that print a bare JSON result as the last line."""
    lines = [line for line in stdout.strip().splitlines() if line.strip()]
    if not lines:
        return None
    try:
        parsed = json.loads(lines[-1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class SandboxRunner:
    """Spawns sandboxed agent executions for tenants."""

    def __init__(
        self,
        settings: Settings,
        environ: Mapping[str, str] | None = None,
    ):
        self._settings = settings
        self._environ = environ if environ is not None else os.environ

    # Mounts and arguments

    def build_mounts(self, tenant: Tenant) -> list[VolumeMount]:
        """Tenant-scoped mounts: working area, control-plane inbox, session state."""
        folder = validate_folder(tenant.folder)
        group_dir = os.path.join(self._settings.groups_dir, folder)
        for sub in TENANT_SUBDIRS:
            os.makedirs(os.path.join(group_dir, sub), exist_ok=True)

        ipc_dir = os.path.join(self._settings.ipc_dir, folder)
        for sub in ("messages", "tasks"):
            os.makedirs(os.path.join(ipc_dir, sub), exist_ok=True)

        session_dir = os.path.join(self._settings.sessions_dir, folder)
        os.makedirs(session_dir, exist_ok=True)

        return [
            VolumeMount(group_dir, "/workspace/group"),
            VolumeMount(ipc_dir, "/workspace/ipc"),
            VolumeMount(session_dir, "/home/agent/.sessions"),
        ]

    def build_env(self, tenant: Tenant) -> dict[str, str]:
        """Allowlisted environment for the sandbox; tenant overrides win."""
        allowed = set(self._settings.sandbox_env_allowlist)
        env = {
            key: value
            for key, value in self._environ.items()
            if key in allowed
        }
        if tenant.sandbox_config:
            for key, value in tenant.sandbox_config.env.items():
                if key in allowed:
                    env[key] = str(value)
                else:
                    logger.warning(
                        "Ignoring non-allowlisted env key %s for %s", key, tenant.folder
                    )
        return env

    def build_args(
        self,
        mounts: list[VolumeMount],
        name: str,
        env_keys: list[str],
    ) -> list[str]:
        """CLI args for `<runtime> run`. Env values travel via the process env."""
        args = ["run", "-i", "--rm", "--name", name]
        for mount in mounts:
            if mount.readonly:
                args.extend([
                    "--mount",
                    f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
                ])
            else:
                args.extend(["-v", f"{mount.host_path}:{mount.container_path}"])
        for key in sorted(env_keys):
            args.extend(["-e", key])
        args.append(self._settings.sandbox_image)
        return args

    def timeout_for(self, tenant: Tenant) -> float:
        if tenant.sandbox_config and tenant.sandbox_config.timeout_seconds:
            return float(tenant.sandbox_config.timeout_seconds)
        return self._settings.sandbox_timeout

    # Execution

    async def run(
        self,
        tenant: Tenant,
        request: ExecutionRequest,
        progress_sink: ProgressSink | None = None,
    ) -> ExecutionResult:
        """
        Execute one request in a fresh sandbox.

        Args:
            tenant: The tenant the sandbox is scoped to
            request: Prompt, session token and flags
            progress_sink: Awaited for each progress event while running

        Returns:
            A success result or a classified failure; never raises for
            sandbox-level problems.
        """
        started = time.monotonic()
        mounts = self.build_mounts(tenant)
        env = self.build_env(tenant)
        name = f"hearth-{tenant.folder}-{int(time.time() * 1000)}"
        args = self.build_args(mounts, name, list(env))
        timeout = self.timeout_for(tenant)
        max_output = self._settings.sandbox_max_output_size

        process_env = dict(self._environ)
        process_env.update(env)

        logger.info(
            "Spawning sandbox %s for %s (session=%s, timeout=%.0fs)",
            name,
            tenant.folder,
            "resume" if request.session_token else "new",
            timeout,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._settings.sandbox_runtime,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as e:
            logger.error("Failed to spawn sandbox for %s: %s", tenant.folder, e)
            return ExecutionResult.failure(ErrorKind.SPAWN_FAILED, f"Spawn failed: {e}")

        stdout = _Capture(max_output)
        stderr = _Capture(max_output)
        parser = _MarkerParser(max_output)
        documents: list[dict[str, Any]] = []

        payload = json.dumps(request.to_sandbox_input(tenant.folder, tenant.is_main))
        assert proc.stdin is not None
        try:
            proc.stdin.write(payload.encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Sandbox %s closed stdin early: %s", name, e)
        finally:
            proc.stdin.close()

        async def read_stdout() -> None:
            assert proc.stdout is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                stdout.append(chunk)
                for raw in parser.feed(decoder.decode(chunk)):
                    await self._handle_document(raw, documents, progress_sink, name)

        async def read_stderr() -> None:
            assert proc.stderr is not None
            while True:
                chunk = await proc.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                stderr.append(chunk)
                for line in chunk.decode(errors="replace").splitlines():
                    if line.strip():
                        logger.debug("[%s] %s", tenant.folder, line)

        async def communicate() -> int:
            await asyncio.gather(read_stdout(), read_stderr())
            return await proc.wait()

        timed_out = False
        try:
            exit_code: int | None = await asyncio.wait_for(communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error("Sandbox %s timed out after %.0fs, stopping", name, timeout)
            exit_code = await self._terminate(proc, name)

        duration_ms = int((time.monotonic() - started) * 1000)
        self._write_run_log(
            tenant=tenant,
            name=name,
            request=request,
            mounts=mounts,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            exit_code=exit_code,
            timed_out=timed_out,
        )

        result = self._classify(
            name=name,
            timeout=timeout,
            timed_out=timed_out,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            documents=documents,
        )
        result.duration_ms = duration_ms
        if result.ok:
            logger.info("Sandbox %s completed in %dms", name, duration_ms)
        else:
            logger.warning(
                "Sandbox %s failed (%s): %s",
                name,
                result.error.value if result.error else "unknown",
                result.error_detail,
            )
        return result

    async def _handle_document(
        self,
        raw: str,
        documents: list[dict[str, Any]],
        progress_sink: ProgressSink | None,
        name: str,
    ) -> None:
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Unparsable output block from %s: %s", name, e)
            return
        if not isinstance(document, dict):
            logger.warning("Ignoring non-object output block from %s", name)
            return

        if document.get("type") == "progress":
            if progress_sink is None:
                return
            try:
                event = ProgressEvent.from_dict(document.get("event") or document)
                await progress_sink(event)
            except Exception:
                logger.exception("Progress sink failed for %s", name)
            return

        documents.append(document)

    async def _terminate(self, proc: asyncio.subprocess.Process, name: str) -> int | None:
        """Graceful stop, then force-kill after the grace period."""
        try:
            proc.terminate()
        except ProcessLookupError:
            return proc.returncode
        try:
            return await asyncio.wait_for(
                proc.wait(), timeout=self._settings.sandbox_grace_period
            )
        except asyncio.TimeoutError:
            logger.warning("Sandbox %s ignored stop signal, killing", name)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            return await proc.wait()

    def _classify(
        self,
        *,
        name: str,
        timeout: float,
        timed_out: bool,
        exit_code: int | None,
        stdout: _Capture,
        stderr: _Capture,
        documents: list[dict[str, Any]],
    ) -> ExecutionResult:
        if timed_out:
            return ExecutionResult.failure(
                ErrorKind.TIMEOUT, f"Sandbox timed out after {timeout:.0f}s"
            )

        document = documents[-1] if documents else _last_json_line(stdout.text)
        reported_error = document.get("error") if document else None

        if is_stale_session_error(reported_error) or (
            exit_code != 0 and is_stale_session_error(stderr.text[-2000:])
        ):
            return ExecutionResult.failure(
                ErrorKind.STALE_SESSION, reported_error or stderr.text[-200:]
            )

        if exit_code != 0:
            return ExecutionResult.failure(
                ErrorKind.NON_ZERO_EXIT,
                f"Sandbox exited with code {exit_code}: {stderr.text[-200:]}",
            )

        if stdout.truncated:
            return ExecutionResult.failure(
                ErrorKind.OUTPUT_TRUNCATED,
                f"Sandbox output exceeded {self._settings.sandbox_max_output_size} bytes",
            )

        if document is None:
            return ExecutionResult.failure(
                ErrorKind.INVALID_OUTPUT, f"No result document from {name}"
            )

        usage = document.get("usage") or {}
        counters = {
            "prompt_tokens": int(usage.get("promptTokens", 0) or 0),
            "response_tokens": int(usage.get("responseTokens", 0) or 0),
        }
        if document.get("status") != "success":
            return ExecutionResult.failure(
                ErrorKind.AGENT_ERROR,
                str(reported_error or "Agent reported an error"),
                new_session_token=document.get("newSessionId"),
                **counters,
            )
        return ExecutionResult.success(
            document.get("result"),
            document.get("newSessionId"),
            **counters,
        )

    def _write_run_log(
        self,
        *,
        tenant: Tenant,
        name: str,
        request: ExecutionRequest,
        mounts: list[VolumeMount],
        stdout: _Capture,
        stderr: _Capture,
        duration_ms: int,
        exit_code: int | None,
        timed_out: bool,
    ) -> None:
        """Write a timestamped log file for a sandbox run into the tenant's logs/."""
        now = datetime.now(timezone.utc)
        stamp = now.isoformat().replace(":", "-").replace(".", "-")
        logs_dir = os.path.join(self._settings.groups_dir, tenant.folder, "logs")
        log_file = os.path.join(logs_dir, f"run-{stamp}.log")

        lines = [
            "=== Sandbox Run Log%s ===" % (" (TIMEOUT)" if timed_out else ""),
            f"Timestamp: {now.isoformat()}",
            f"Tenant: {tenant.folder}",
            f"Sandbox: {name}",
            f"IsMain: {tenant.is_main}",
            f"Scheduled: {request.is_scheduled_task}",
            f"Session: {'resume' if request.session_token else 'new'}",
            f"Duration: {duration_ms}ms",
            f"Exit Code: {exit_code}",
            f"Stdout Truncated: {stdout.truncated}",
            f"Stderr Truncated: {stderr.truncated}",
            "",
            "=== Mounts ===",
            "\n".join(
                f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                for m in mounts
            ),
            "",
        ]

        verbose = logger.isEnabledFor(logging.DEBUG)
        if verbose or timed_out or exit_code != 0:
            lines.extend([
                f"=== Stderr{' (TRUNCATED)' if stderr.truncated else ''} ===",
                stderr.text,
                "",
                f"=== Stdout{' (TRUNCATED)' if stdout.truncated else ''} ===",
                stdout.text,
            ])

        try:
            os.makedirs(logs_dir, exist_ok=True)
            with open(log_file, "w", encoding="utf-8") as f:
                f.write("\n".join(lines))
        except OSError as e:
            logger.warning("Could not write run log %s: %s", log_file, e)
