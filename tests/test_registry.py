"""
Unit tests for the target registry.
"""

import pytest

from remediation_tool.core.errors import (
    DuplicateTargetError, RegistryFrozenError, UnknownTargetError
)
from remediation_tool.core.registry import TargetRegistry

from conftest import make_target


@pytest.fixture
def registry(fleet):
    return TargetRegistry(fleet)


class TestTargetRegistry:
    """Test TargetRegistry functionality."""

    def test_list_keeps_registration_order(self, registry):
        assert [t.id for t in registry.list()] == ["web-01", "web-02", "db-01"]

    def test_list_by_tag(self, registry):
        assert [t.id for t in registry.list(tag="web")] == ["web-01", "web-02"]
        assert registry.list(tag="nothing") == []

    def test_duplicate_registration(self, registry):
        with pytest.raises(DuplicateTargetError) as excinfo:
            registry.register(make_target("web-01"))

        assert excinfo.value.target_id == "web-01"
        assert len(registry) == 3

    def test_deregister(self, registry):
        removed = registry.deregister("web-02")

        assert removed.id == "web-02"
        assert "web-02" not in registry
        assert [t.id for t in registry.list()] == ["web-01", "db-01"]

    def test_deregister_unknown(self, registry):
        with pytest.raises(UnknownTargetError):
            registry.deregister("mail-01")

        # usable wherever a KeyError is expected
        with pytest.raises(KeyError):
            registry.deregister("mail-01")

    def test_get(self, registry):
        assert registry.get("db-01").address == "db-01.example.test"
        with pytest.raises(UnknownTargetError):
            registry.get("mail-01")

    def test_select_by_id_and_tag(self, registry):
        assert [t.id for t in registry.select("db-01")] == ["db-01"]
        assert [t.id for t in registry.select("web")] == ["web-01", "web-02"]
        # registration order wins over selector order, duplicates collapse
        assert [t.id for t in registry.select("db-01, web-01,tag:web")] == ["web-01", "web-02", "db-01"]

    def test_select_forced_tag(self, registry):
        registry.register(make_target("prod", "canary"))

        assert [t.id for t in registry.select("prod")] == ["prod"]
        assert [t.id for t in registry.select("tag:prod")] == ["web-01", "web-02", "db-01"]

    def test_select_unknown_token(self, registry):
        with pytest.raises(UnknownTargetError) as excinfo:
            registry.select("web,mail")

        assert excinfo.value.target_id == "mail"

    def test_frozen_registry_rejects_changes(self, registry):
        with registry.frozen():
            assert registry.is_frozen
            with pytest.raises(RegistryFrozenError):
                registry.register(make_target("mail-01"))
            with pytest.raises(RegistryFrozenError):
                registry.deregister("web-01")
            # reads still work
            assert len(registry.list()) == 3

        assert not registry.is_frozen
        registry.register(make_target("mail-01"))
        assert "mail-01" in registry
