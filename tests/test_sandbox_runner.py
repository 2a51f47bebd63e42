"""
Tests for the sandbox runner.

The container runtime is replaced by the current Python interpreter running
a small script, so the real spawn/stdin/stdout/timeout machinery is exercised.
"""

import os
import sys
import textwrap

import pytest

from hearth.models import ErrorKind, ExecutionRequest, ProgressType
from hearth.services.sandbox_runner import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    SandboxRunner,
    _Capture,
    is_stale_session_error,
)
from hearth.services.tenant_registry import SandboxConfig, Tenant

PRELUDE = f"""
import json, sys, time
request = json.load(sys.stdin)

def emit(doc):
    print({OUTPUT_START_MARKER!r})
    print(json.dumps(doc))
    print({OUTPUT_END_MARKER!r}, flush=True)
"""


@pytest.fixture
def tenant():
    return Tenant(jid="acme@g.us", folder="acme", name="Acme")


@pytest.fixture
def make_runner(make_settings, tmp_path):
    def factory(body: str, **overrides):
        script = tmp_path / "agent.py"
        script.write_text(PRELUDE + textwrap.dedent(body))
        settings = make_settings(
            sandbox_runtime=(sys.executable, str(script)),
            **overrides,
        )
        return SandboxRunner(settings, environ=dict(os.environ))

    return factory


class TestSuccessfulRuns:
    """Tests for sandboxes that produce a result."""

    async def test_result_and_session(self, make_runner, tenant):
        runner = make_runner("""
            emit({
                "status": "success",
                "result": "echo: " + request["prompt"] + " / " + str(request.get("sessionId")),
                "newSessionId": "sess-2",
                "usage": {"promptTokens": 12, "responseTokens": 3},
            })
        """)

        result = await runner.run(
            tenant, ExecutionRequest(prompt="hi", chat_jid="acme@g.us", session_token="sess-1")
        )

        assert result.ok
        assert result.result == "echo: hi / sess-1"
        assert result.new_session_token == "sess-2"
        assert result.prompt_tokens == 12
        assert result.response_tokens == 3

    async def test_request_document(self, make_runner, tenant):
        runner = make_runner("""
            emit({"status": "success", "result": json.dumps(request)})
        """)
        result = await runner.run(
            tenant,
            ExecutionRequest(prompt="p", chat_jid="acme@g.us", is_scheduled_task=True),
        )
        assert '"groupFolder": "acme"' in result.result
        assert '"isMain": false' in result.result
        assert '"isScheduledTask": true' in result.result
        assert "sessionId" not in result.result

    async def test_progress_events_forwarded(self, make_runner, tenant):
        runner = make_runner("""
            emit({"type": "progress", "event": {"type": "tool_use", "toolName": "web_search"}})
            emit({"type": "progress", "event": {"type": "message", "contentSnapshot": "Work"}})
            emit({"status": "success", "result": "Working"})
        """)
        events = []

        async def sink(event):
            events.append(event)

        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"), sink)

        assert result.result == "Working"
        assert [e.type for e in events] == [ProgressType.TOOL_USE, ProgressType.MESSAGE]
        assert events[0].tool_name == "web_search"

    async def test_failing_sink_does_not_fail_run(self, make_runner, tenant):
        runner = make_runner("""
            emit({"type": "progress", "event": {"type": "message", "contentSnapshot": "x"}})
            emit({"status": "success", "result": "ok"})
        """)

        async def sink(event):
            raise RuntimeError("ui gone")

        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"), sink)
        assert result.ok

    async def test_bare_json_last_line(self, make_runner, tenant):
        runner = make_runner("""
            print("starting up")
            print(json.dumps({"status": "success", "result": "plain"}))
        """)
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.result == "plain"

    async def test_run_log_written(self, make_runner, tenant, tmp_path):
        runner = make_runner("""
            emit({"status": "success", "result": "ok"})
        """)
        await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))

        logs = os.listdir(tmp_path / "groups" / "acme" / "logs")
        assert len(logs) == 1
        assert logs[0].startswith("run-")


class TestFailures:
    """Tests for failure classification."""

    async def test_timeout(self, make_runner, tenant):
        runner = make_runner(
            """
            time.sleep(30)
            """,
            sandbox_timeout=0.5,
            sandbox_grace_period=2.0,
        )
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.TIMEOUT

    async def test_tenant_timeout_override(self, make_runner, tenant):
        runner = make_runner("time.sleep(30)\n", sandbox_timeout=300)
        tenant.sandbox_config = SandboxConfig(timeout_seconds=0.5)
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.TIMEOUT

    async def test_non_zero_exit(self, make_runner, tenant):
        runner = make_runner("""
            sys.stderr.write("boom\\n")
            sys.exit(3)
        """)
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.NON_ZERO_EXIT
        assert "code 3" in result.error_detail
        assert "boom" in result.error_detail

    async def test_stale_session(self, make_runner, tenant):
        runner = make_runner("""
            emit({"status": "error", "error": "No conversation found with session ID abc"})
            sys.exit(1)
        """)
        result = await runner.run(
            tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us", session_token="abc")
        )
        assert result.error is ErrorKind.STALE_SESSION

    async def test_output_truncated(self, make_runner, tenant):
        runner = make_runner(
            """
            print("x" * 5000)
            emit({"status": "success", "result": "late"})
            """,
            sandbox_max_output_size=1000,
        )
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.OUTPUT_TRUNCATED

    async def test_no_result_document(self, make_runner, tenant):
        runner = make_runner("""
            print("just chatting")
        """)
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.INVALID_OUTPUT

    async def test_agent_error(self, make_runner, tenant):
        runner = make_runner("""
            emit({"status": "error", "error": "model overloaded"})
        """)
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.AGENT_ERROR
        assert result.error_detail == "model overloaded"

    async def test_spawn_failure(self, make_settings, tenant, tmp_path):
        settings = make_settings(sandbox_runtime=(str(tmp_path / "no-such-runtime"),))
        runner = SandboxRunner(settings, environ={})
        result = await runner.run(tenant, ExecutionRequest(prompt="p", chat_jid="acme@g.us"))
        assert result.error is ErrorKind.SPAWN_FAILED


class TestIsolation:
    """Tests for mounts and environment forwarding."""

    def test_mounts_are_tenant_scoped(self, settings, tenant):
        runner = SandboxRunner(settings, environ={})
        mounts = runner.build_mounts(tenant)

        assert {m.container_path for m in mounts} == {
            "/workspace/group",
            "/workspace/ipc",
            "/home/agent/.sessions",
        }
        for mount in mounts:
            assert mount.host_path.endswith(os.sep + "acme")
            assert os.path.isdir(mount.host_path)
        assert os.path.isdir(os.path.join(settings.ipc_dir, "acme", "tasks"))

    def test_env_allowlist(self, settings, tenant):
        runner = SandboxRunner(
            settings,
            environ={"OPENAI_API_KEY": "sk-test", "AWS_SECRET_ACCESS_KEY": "nope", "TZ": "UTC"},
        )
        tenant.sandbox_config = SandboxConfig(env={"TZ": "Europe/Paris", "HOME": "/tmp"})

        env = runner.build_env(tenant)

        assert env == {"OPENAI_API_KEY": "sk-test", "TZ": "Europe/Paris"}

    def test_args_carry_only_env_keys(self, settings, tenant):
        runner = SandboxRunner(settings, environ={"OPENAI_API_KEY": "sk-test"})
        mounts = runner.build_mounts(tenant)
        args = runner.build_args(mounts, "hearth-acme-1", list(runner.build_env(tenant)))

        assert args[:5] == ["run", "-i", "--rm", "--name", "hearth-acme-1"]
        assert args[-1] == "hearth-agent:test"
        assert "-e" in args and "OPENAI_API_KEY" in args
        assert not any("sk-test" in arg for arg in args)

    def test_stale_markers(self):
        assert is_stale_session_error("Error: No previous sessions found")
        assert not is_stale_session_error("rate limited")
        assert not is_stale_session_error(None)


class TestOutputCapture:
    """Tests for the byte-limited output buffer."""

    def test_character_split_across_reads(self):
        capture = _Capture(1024)
        encoded = "grüße 👋".encode()
        for i in range(len(encoded)):
            capture.append(encoded[i:i + 1])
        assert capture.text == "grüße 👋"

    def test_truncated_mid_character(self):
        capture = _Capture(4)
        capture.append("abcé".encode())
        assert capture.truncated is True
        assert capture.text == "abc�"
        capture.append(b"more")
        assert capture.text == "abc�"
