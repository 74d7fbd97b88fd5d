"""Tests for staff override groups."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from ordergate.database.service import get_database, init_database, reset_database
from ordergate.services.staff_override import StaffOverrideRegistry

OWNER = "owner-1"
GROUP = "120363041234567890@g.us"


@pytest.fixture
def registry():
    with tempfile.TemporaryDirectory() as tmpdir:
        init_database(str(Path(tmpdir) / "test.db"))
        yield StaffOverrideRegistry(get_database())
        reset_database()


class TestIsOverrideGroup:
    def test_disabled_by_default(self, registry):
        registry.add_group(OWNER, GROUP)

        assert registry.is_override_group(OWNER, GROUP) is False

    def test_enabled_and_listed(self, registry):
        registry.add_group(OWNER, GROUP)
        registry.set_enabled(OWNER, True)

        assert registry.is_override_group(OWNER, GROUP) is True
        assert registry.is_override_group(OWNER, "other@g.us") is False
        assert registry.is_override_group("owner-2", GROUP) is False

    def test_empty_group_id(self, registry):
        registry.set_enabled(OWNER, True)

        assert registry.is_override_group(OWNER, "") is False
        assert registry.is_override_group(OWNER, None) is False

    def test_lookup_error_is_not_override(self):
        db = MagicMock()
        db.get_security_settings.side_effect = RuntimeError("db gone")

        assert StaffOverrideRegistry(db).is_override_group(OWNER, GROUP) is False


class TestGroupList:
    def test_add_is_deduplicated(self, registry):
        registry.add_group(OWNER, GROUP)
        groups = registry.add_group(OWNER, GROUP)

        assert groups == [GROUP]

    def test_remove(self, registry):
        registry.set_groups(OWNER, [GROUP, "b@g.us"])

        assert registry.remove_group(OWNER, GROUP) == ["b@g.us"]
        assert registry.remove_group(OWNER, "missing@g.us") == ["b@g.us"]

    def test_set_groups_dedupes(self, registry):
        assert registry.set_groups(OWNER, ["a@g.us", "a@g.us", "b@g.us"]) == ["a@g.us", "b@g.us"]

    def test_blank_group_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.add_group(OWNER, "   ")

    def test_get_config(self, registry):
        registry.set_enabled(OWNER, True)
        registry.add_group(OWNER, GROUP)

        config = registry.get_config(OWNER)

        assert config.enabled is True
        assert config.groups == [GROUP]
