"""
Tests for runtime wiring, live chat handling and the HTTP surface.
"""

import asyncio
import sys
import textwrap

import pytest
from starlette.testclient import TestClient

from hearth.http_app import create_starlette_app
from hearth.runtime import HearthRuntime
from hearth.services.orchestrator import RETRY_BUTTON_LABEL, SHUTTING_DOWN_MESSAGE
from hearth.services.sandbox_runner import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from hearth.services.tenant_registry import Tenant

ECHO_AGENT = f"""
import json, os, sys
request = json.load(sys.stdin)
marker = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fail-once")
if os.path.exists(marker):
    os.remove(marker)
    sys.stderr.write("crashed\\n")
    sys.exit(2)
print({OUTPUT_START_MARKER!r})
print(json.dumps({{"status": "success", "result": "echo: " + request["prompt"], "newSessionId": "s1"}}))
print({OUTPUT_END_MARKER!r})
"""


@pytest.fixture
def agent_script(tmp_path):
    script = tmp_path / "agent" / "echo.py"
    script.parent.mkdir()
    script.write_text(textwrap.dedent(ECHO_AGENT))
    return script


@pytest.fixture
def runtime(make_settings, agent_script, notifier):
    settings = make_settings(
        sandbox_runtime=(sys.executable, str(agent_script)),
        retry_backoff_seconds=0.0,
        scheduler_poll_interval=3600.0,
    )
    instance = HearthRuntime(settings, notifier=notifier, consolidate_ms=20)
    instance.registry.register(Tenant(jid="main@g.us", folder="main", name="Main"))
    instance.registry.register(Tenant(jid="acme@g.us", folder="acme", name="Acme"))
    return instance


async def wait_for_messages(notifier, destination, count=1):
    for _ in range(200):
        if len(notifier.texts_for(destination)) >= count:
            return
        await asyncio.sleep(0.02)


class TestLiveMessages:
    """Tests for submit_message."""

    async def test_unregistered_chat_ignored(self, runtime, notifier):
        assert await runtime.submit_message("stranger@g.us", "@Andy hi") is None
        assert notifier.sent == []
        groups = runtime.registry.available_groups()
        assert "stranger@g.us" in {g["jid"] for g in groups}

    def test_trigger_required_for_non_main(self, runtime):
        acme = runtime.registry.get_by_jid("acme@g.us")
        main = runtime.registry.get_by_jid("main@g.us")

        assert runtime.should_respond(acme, "hello there") is False
        assert runtime.should_respond(acme, "hey @Andy what's up") is True
        assert runtime.should_respond(acme, "@andy lowercase works") is True
        assert runtime.should_respond(main, "no trigger needed") is True

    def test_trigger_optional_when_disabled(self, runtime):
        tenant = runtime.registry.update_tenant("acme@g.us", require_trigger=False)
        assert runtime.should_respond(tenant, "hello") is True

    async def test_untriggered_message_not_run(self, runtime, notifier):
        assert await runtime.submit_message("acme@g.us", "just chatting") is None
        await asyncio.sleep(0.1)
        assert notifier.sent == []

    async def test_messages_consolidated(self, runtime, notifier):
        await runtime.submit_message("main@g.us", "first", sender_name="Sam")
        await runtime.submit_message("main@g.us", "second", sender_name="Sam")

        await wait_for_messages(notifier, "main@g.us")

        assert notifier.texts_for("main@g.us") == ["echo: Sam: first\nSam: second"]
        assert runtime.registry.get_session("main") == "s1"

    async def test_media_runs_immediately(self, runtime, notifier, tmp_path):
        photo = tmp_path / "photo.jpg"
        photo.write_bytes(b"\xff\xd8")

        outcome = await runtime.submit_message("main@g.us", "look", media_path=str(photo))

        assert outcome.ok
        assert outcome.text == "echo: look"

    async def test_retry_button(self, runtime, notifier, agent_script):
        (agent_script.parent / "fail-once").write_text("")
        # No automatic retry, so the failure reaches the chat.
        runtime.orchestrator._retry_policy.max_retries_per_class = 0

        outcome = await runtime.submit_message("main@g.us", "try", media_path="/dev/null")
        assert outcome.error == "non-zero exit"
        (_, _, buttons) = notifier.sent[-1]
        assert buttons[0][0] == RETRY_BUTTON_LABEL

        retried = await runtime.retry(buttons[0][1])
        assert retried.text == "echo: try"
        assert await runtime.retry(buttons[0][1]) is None


class TestLifecycle:
    async def test_start_and_stop(self, runtime, state_store):
        await runtime.start()
        assert runtime.is_running
        assert runtime.get_status()["scheduler"]["running"] is True

        await runtime.stop(drain_timeout=1)
        assert runtime.is_running is False
        assert runtime.get_status()["watcher"]["running"] is False
        assert "main@g.us" in runtime.store.load("registered_groups", {})

    async def test_submit_after_stop_is_rejected(self, runtime, notifier):
        await runtime.start()
        await runtime.stop(drain_timeout=1)

        outcome = await runtime.submit_message("main@g.us", "late", media_path="/dev/null")
        assert outcome.path == "rejected"

    async def test_buffered_messages_answered_on_stop(self, make_settings, agent_script, notifier):
        settings = make_settings(sandbox_runtime=(sys.executable, str(agent_script)))
        runtime = HearthRuntime(settings, notifier=notifier, consolidate_ms=60_000)
        runtime.registry.register(Tenant(jid="main@g.us", folder="main", name="Main"))
        await runtime.start()

        assert await runtime.submit_message("main@g.us", "pending") is None
        await runtime.stop(drain_timeout=1)

        assert notifier.texts_for("main@g.us") == [SHUTTING_DOWN_MESSAGE]


class TestHttpApp:
    def test_health_and_status(self, runtime):
        app = create_starlette_app(runtime.settings, runtime)
        with TestClient(app) as client:
            health = client.get("/health")
            assert health.status_code == 200
            assert health.json()["status"] == "healthy"

            status = client.get("/status").json()
            assert status["maintenance"] is False
            assert status["tenants"] == 2
            assert status["orchestrator"]["accepting"] is True

            assert client.get("/nope").status_code == 404

        assert runtime.is_running is False
