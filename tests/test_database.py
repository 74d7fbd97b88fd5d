import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ordergate.database.models import (
    CommandCooldown,
    ConversationState,
    Order,
    Panel,
    UserPanelMapping,
    as_utc,
)
from ordergate.database.service import (
    DatabaseService,
    get_database,
    init_database,
    reset_database,
)
from ordergate.errors import DuplicateMappingError, MappingNotFoundError
from ordergate.security_settings import SecuritySettingsUpdate

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def temp_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        init_database(str(db_path))
        yield db_path
        reset_database()


@pytest.fixture
def db_service(temp_db) -> DatabaseService:
    return get_database()


@pytest.fixture
def order(db_service) -> Order:
    return db_service.add_order(
        Order(owner_user_id="owner-1", external_order_id="1001", customer_username="john123")
    )


def make_mapping(username: str, numbers: list[str], owner: str = "owner-1") -> UserPanelMapping:
    return UserPanelMapping(
        owner_user_id=owner,
        panel_username=username,
        panel_username_key=username.lower(),
        whatsapp_numbers=numbers,
    )


class TestDatabaseService:
    def test_creates_database_file(self, temp_db):
        assert temp_db.exists()

    def test_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nested" / "path" / "test.db"
            init_database(str(db_path))
            assert db_path.exists()
            reset_database()

    def test_get_database_before_init_raises(self):
        reset_database()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_database()


class TestSecuritySettings:
    def test_created_with_defaults_on_first_access(self, db_service):
        settings = db_service.get_security_settings("owner-1")

        assert settings.claim_mode == "disabled"
        assert settings.group_security_mode == "none"
        assert settings.username_validation_mode == "disabled"
        assert settings.max_commands_per_minute == 10
        assert settings.command_cooldown_secs == 300
        assert settings.staff_override_enabled is False
        assert settings.staff_override_groups == []

    def test_returns_existing_record(self, db_service):
        first = db_service.get_security_settings("owner-1")
        second = db_service.get_security_settings("owner-1")

        assert first.id == second.id

    def test_update_writes_only_set_fields(self, db_service):
        db_service.update_security_settings("owner-1", SecuritySettingsUpdate(claim_mode="auto"))
        updated = db_service.update_security_settings(
            "owner-1", SecuritySettingsUpdate(staff_override_groups=["g1@g.us"])
        )

        assert updated.claim_mode == "auto"
        assert updated.staff_override_groups == ["g1@g.us"]
        assert updated.max_commands_per_minute == 10


class TestOrders:
    def test_get_order_by_external_id(self, db_service, order):
        found = db_service.get_order_by_external_id("owner-1", "1001")

        assert found.id == order.id
        assert db_service.get_order_by_external_id("owner-2", "1001") is None

    def test_set_customer_username(self, db_service):
        order = db_service.add_order(Order(owner_user_id="owner-1", external_order_id="1002"))

        db_service.set_order_customer_username(order.id, "jane")

        assert db_service.get_order(order.id).customer_username == "jane"

    def test_set_customer_username_missing_order(self, db_service):
        with pytest.raises(ValueError):
            db_service.set_order_customer_username(999, "jane")

    def test_claim_unclaimed_order(self, db_service, order):
        assert db_service.claim_order(order.id, "15551230000", NOW) is True

        claimed = db_service.get_order(order.id)
        assert claimed.claimed_by_phone == "15551230000"
        assert claimed.is_verified is True
        assert as_utc(claimed.claimed_at) == NOW

    def test_second_claim_loses(self, db_service, order):
        assert db_service.claim_order(order.id, "15551230000") is True
        assert db_service.claim_order(order.id, "15559990000") is False

        assert db_service.get_order(order.id).claimed_by_phone == "15551230000"

    def test_panels_for_owner(self, db_service):
        db_service.add_panel(Panel(owner_user_id="owner-1", name="Main"))
        db_service.add_panel(Panel(owner_user_id="owner-2", name="Other"))

        panels = db_service.get_panels_for_owner("owner-1")

        assert [p.name for p in panels] == ["Main"]


class TestCooldowns:
    def test_active_cooldown_found_until_expiry(self, db_service):
        db_service.add_cooldown(
            CommandCooldown(
                order_id=1,
                command="REFILL",
                sender_phone="1555",
                owner_user_id="owner-1",
                expires_at=NOW + timedelta(minutes=5),
            )
        )

        assert db_service.get_active_cooldown(1, "REFILL", NOW) is not None
        assert db_service.get_active_cooldown(1, "CANCEL", NOW) is None
        assert db_service.get_active_cooldown(1, "REFILL", NOW + timedelta(minutes=5)) is None

    def test_delete_expired(self, db_service):
        for minutes in (-10, -1, 5):
            db_service.add_cooldown(
                CommandCooldown(
                    order_id=1,
                    command="REFILL",
                    sender_phone="1555",
                    owner_user_id="owner-1",
                    expires_at=NOW + timedelta(minutes=minutes),
                )
            )

        assert db_service.delete_expired_cooldowns(NOW) == 2
        assert db_service.get_active_cooldown(1, "REFILL", NOW) is not None


class TestMappings:
    def test_save_and_find_by_username_case_insensitive(self, db_service):
        saved = db_service.save_mapping(make_mapping("John123", ["15551230000"]))

        found = db_service.find_mapping_by_username("owner-1", "JOHN123")

        assert found.id == saved.id
        assert found.panel_username == "John123"
        assert found.whatsapp_numbers == ["15551230000"]

    def test_duplicate_username_rejected(self, db_service):
        db_service.save_mapping(make_mapping("john123", ["1"]))

        with pytest.raises(DuplicateMappingError):
            db_service.save_mapping(make_mapping("JOHN123", ["2"]))

    def test_same_username_for_other_owner_allowed(self, db_service):
        db_service.save_mapping(make_mapping("john123", ["1"]))
        db_service.save_mapping(make_mapping("john123", ["1"], owner="owner-2"))

        assert db_service.count_mappings("owner-1") == 1
        assert db_service.count_mappings("owner-2") == 1

    def test_find_by_phone_is_exact(self, db_service):
        db_service.save_mapping(make_mapping("john123", ["15551230000"]))

        assert len(db_service.find_mappings_with_phone("owner-1", "15551230000")) == 1
        assert db_service.find_mappings_with_phone("owner-1", "5551230000") == []

    def test_find_by_group(self, db_service):
        mapping = make_mapping("john123", [])
        mapping.group_ids = ["120363@g.us"]
        db_service.save_mapping(mapping)

        assert len(db_service.find_mappings_with_group("owner-1", "120363@g.us")) == 1
        assert db_service.find_mappings_with_group("owner-1", "999@g.us") == []

    def test_list_with_search_and_filters(self, db_service):
        db_service.save_mapping(make_mapping("john123", ["15551230000"]))
        verified = make_mapping("alice", ["15550001111"])
        verified.is_verified = True
        db_service.save_mapping(verified)

        assert [m.panel_username for m in db_service.list_mappings("owner-1", search="JOH")] == ["john123"]
        assert [m.panel_username for m in db_service.list_mappings("owner-1", search="0001111")] == ["alice"]
        assert [m.panel_username for m in db_service.list_mappings("owner-1", is_verified=True)] == ["alice"]
        assert db_service.count_mappings("owner-1", is_verified=False) == 1

    def test_record_activity_increments(self, db_service):
        mapping = db_service.save_mapping(make_mapping("john123", ["1"]))

        db_service.record_mapping_activity(mapping.id, NOW)
        db_service.record_mapping_activity(mapping.id, NOW)

        stored = db_service.get_mapping(mapping.id)
        assert stored.total_messages == 2
        assert as_utc(stored.last_message_at) == NOW

    def test_get_mapping_scoped_to_owner(self, db_service):
        mapping = db_service.save_mapping(make_mapping("john123", ["1"]))

        assert db_service.get_mapping(mapping.id, "owner-1") is not None
        assert db_service.get_mapping(mapping.id, "owner-2") is None

    def test_delete_mapping(self, db_service):
        mapping = db_service.save_mapping(make_mapping("john123", ["1"]))

        db_service.delete_mapping(mapping.id, "owner-1")

        assert db_service.get_mapping(mapping.id) is None
        with pytest.raises(MappingNotFoundError):
            db_service.delete_mapping(mapping.id, "owner-1")


class TestConversations:
    def make_state(self, expires_at: datetime, step: str = "AWAITING_USERNAME") -> ConversationState:
        return ConversationState(
            sender_phone="15551230000",
            owner_user_id="owner-1",
            state_type="USERNAME_VERIFICATION",
            current_step=step,
            context_data={"attempts": 0},
            created_at=NOW,
            expires_at=expires_at,
        )

    def test_replace_keeps_single_row(self, db_service):
        db_service.replace_conversation(self.make_state(NOW + timedelta(minutes=5)))
        second = db_service.replace_conversation(
            self.make_state(NOW + timedelta(minutes=5), step="AWAITING_CONFIRMATION")
        )

        active = db_service.get_active_conversation("15551230000", "owner-1", now=NOW)

        assert active.id == second.id
        assert active.current_step == "AWAITING_CONFIRMATION"
        assert db_service.delete_conversations("15551230000", "owner-1") == 1

    def test_expired_state_not_active(self, db_service):
        db_service.replace_conversation(self.make_state(NOW - timedelta(seconds=1)))

        assert db_service.get_active_conversation("15551230000", "owner-1", now=NOW) is None
        assert db_service.delete_expired_conversations(NOW) == 1

    def test_update_conversation(self, db_service):
        state = db_service.replace_conversation(self.make_state(NOW + timedelta(minutes=5)))

        updated = db_service.update_conversation(
            state.id, context_data={"attempts": 1}, expires_at=NOW + timedelta(minutes=10)
        )

        assert updated.context_data == {"attempts": 1}
        assert as_utc(updated.expires_at) == NOW + timedelta(minutes=10)

    def test_update_missing_conversation(self, db_service):
        with pytest.raises(ValueError):
            db_service.update_conversation(999, current_step="AWAITING_USERNAME")
