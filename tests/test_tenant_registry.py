"""
Tests for the tenant registry, the JSON state store and maintenance mode.
"""

import json
import os

import pytest

from hearth.errors import ValidationError
from hearth.services.maintenance import MaintenanceMode
from hearth.services.state_store import JsonStateStore
from hearth.services.tenant_registry import (
    SandboxConfig,
    Tenant,
    TenantRegistry,
    validate_folder,
)


class TestFolderValidation:
    @pytest.mark.parametrize("folder", ["main", "acme", "team_2", "a-b"])
    def test_valid(self, folder):
        assert validate_folder(folder) == folder

    @pytest.mark.parametrize("folder", ["", "../etc", "a/b", "with space", "errors"])
    def test_invalid(self, folder):
        with pytest.raises(ValidationError):
            validate_folder(folder)


class TestRegistration:
    """Tests for registering tenants."""

    def test_register_creates_working_area(self, registry, tmp_path):
        registry.register(Tenant(jid="acme@g.us", folder="acme", name="Acme"))

        for sub in ("logs", "media", "knowledge"):
            assert os.path.isdir(tmp_path / "groups" / "acme" / sub)

    def test_folder_must_be_unique(self, registry, acme_tenant):
        with pytest.raises(ValidationError):
            registry.register(Tenant(jid="other@g.us", folder="acme", name="Other"))

    def test_reregister_same_jid(self, registry, acme_tenant):
        registry.register(Tenant(jid="acme@g.us", folder="acme", name="Acme Renamed"))
        assert registry.get_by_jid("acme@g.us").name == "Acme Renamed"

    def test_jid_cannot_move_folder(self, registry, acme_tenant):
        with pytest.raises(ValidationError):
            registry.register(Tenant(jid="acme@g.us", folder="elsewhere", name="Acme"))
        assert registry.get_by_jid("acme@g.us").folder == "acme"

    def test_reregister_keeps_added_at(self, registry, acme_tenant):
        tenant = registry.register(Tenant(jid="acme@g.us", folder="acme", name="Acme", added_at="2030-01-01"))
        assert tenant.added_at == acme_tenant.added_at

    def test_jid_required(self, registry):
        with pytest.raises(ValidationError):
            registry.register(Tenant(jid="", folder="acme", name="Acme"))

    def test_lookup(self, registry, main_tenant, acme_tenant):
        assert registry.get_by_folder("acme").jid == "acme@g.us"
        assert registry.get_by_jid("main@g.us").is_main
        assert registry.get_by_folder("missing") is None

    def test_returned_tenants_are_copies(self, registry, acme_tenant):
        tenant = registry.get_by_jid("acme@g.us")
        tenant.name = "Mutated"
        assert registry.get_by_jid("acme@g.us").name == "Acme"

    def test_update_tenant(self, registry, acme_tenant):
        updated = registry.update_tenant("acme@g.us", persona="coder", enable_fast_path=False)
        assert updated.persona == "coder"
        assert registry.get_by_jid("acme@g.us").enable_fast_path is False

    def test_folder_is_immutable(self, registry, acme_tenant):
        with pytest.raises(ValidationError):
            registry.update_tenant("acme@g.us", folder="other")


class TestPersistence:
    """Tests for loading and saving registry state."""

    def test_round_trip(self, state_store, tmp_path):
        registry = TenantRegistry(state_store, str(tmp_path / "groups"))
        registry.register(
            Tenant(
                jid="acme@g.us",
                folder="acme",
                name="Acme",
                require_trigger=False,
                sandbox_config=SandboxConfig(timeout_seconds=60, env={"TZ": "UTC"}),
            )
        )
        registry.set_session("acme", "session-1")
        registry.touch("acme@g.us", "Acme Chat", "2024-01-01T00:00:00+00:00")
        registry.save()

        reloaded = TenantRegistry(JsonStateStore(state_store.directory), str(tmp_path / "groups"))
        reloaded.load()

        tenant = reloaded.get_by_jid("acme@g.us")
        assert tenant.require_trigger is False
        assert tenant.sandbox_config.timeout_seconds == 60
        assert reloaded.get_session("acme") == "session-1"
        assert reloaded.available_groups()[0]["name"] == "Acme Chat"

    def test_persisted_record_uses_camel_case(self, registry, acme_tenant, state_store):
        record = state_store.load("registered_groups", {})
        assert record["acme@g.us"]["requireTrigger"] is True
        assert record["acme@g.us"]["folder"] == "acme"

    def test_invalid_records_skipped(self, state_store, tmp_path):
        state_store.save(
            "registered_groups",
            {
                "good@g.us": {"folder": "good", "name": "Good"},
                "bad@g.us": {"folder": "../bad", "name": "Bad"},
            },
        )
        registry = TenantRegistry(state_store, str(tmp_path / "groups"))
        registry.load()
        assert [t.folder for t in registry.tenants()] == ["good"]

    def test_corrupt_file_returns_default(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "state"))
        os.makedirs(store.directory, exist_ok=True)
        with open(os.path.join(store.directory, "sessions.json"), "w") as f:
            f.write("{not json")
        assert store.load("sessions", {}) == {}

    def test_save_is_valid_json(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "state"))
        store.save("sessions", {"acme": "token"})
        with open(os.path.join(store.directory, "sessions.json")) as f:
            assert json.load(f) == {"acme": "token"}


class TestSessions:
    def test_set_and_clear(self, registry, acme_tenant, state_store):
        registry.set_session("acme", "abc")
        assert state_store.load("sessions", {}) == {"acme": "abc"}

        registry.clear_session("acme")
        assert registry.get_session("acme") is None
        assert state_store.load("sessions", {}) == {}


class TestActivity:
    def test_available_groups_most_recent_first(self, registry, acme_tenant):
        registry.touch("acme@g.us", when="2024-01-01T00:00:00+00:00")
        registry.touch("random@g.us", "Random", "2024-01-02T00:00:00+00:00")

        groups = registry.available_groups()
        assert [g["jid"] for g in groups] == ["random@g.us", "acme@g.us"]
        assert groups[0]["isRegistered"] is False
        assert groups[1]["isRegistered"] is True

    def test_out_of_band_flag_consumed_once(self, registry):
        registry.note_out_of_band_reply("acme@g.us")
        assert registry.consume_out_of_band_reply("acme@g.us") is True
        assert registry.consume_out_of_band_reply("acme@g.us") is False


class TestMaintenanceMode:
    def test_persists(self, state_store):
        mode = MaintenanceMode(state_store)
        assert mode.is_active() is False

        mode.set_active(True)
        assert MaintenanceMode(JsonStateStore(state_store.directory)).is_active() is True
