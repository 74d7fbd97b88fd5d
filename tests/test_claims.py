"""Tests for order claims and group security."""

import tempfile
from pathlib import Path

import pytest

from ordergate.constants import (
    CLAIM_VIA_DM_MESSAGE,
    CLAIMED_BY_ANOTHER_MESSAGE,
    EMAIL_CLAIM_PROMPT_MESSAGE,
    EMAIL_MISMATCH_MESSAGE,
    EMAIL_NOT_AVAILABLE_MESSAGE,
    GROUP_COMMANDS_DISABLED_MESSAGE,
    GROUP_ORDER_NOT_VERIFIED_MESSAGE,
    ORDER_ALREADY_CLAIMED_MESSAGE,
)
from ordergate.database.models import Order
from ordergate.database.service import get_database, init_database, reset_database
from ordergate.services.claims import ClaimRegistry

SENDER = "15551230000"
OTHER = "15559990000"


@pytest.fixture
def db_service():
    with tempfile.TemporaryDirectory() as tmpdir:
        init_database(str(Path(tmpdir) / "test.db"))
        yield get_database()
        reset_database()


@pytest.fixture
def registry(db_service) -> ClaimRegistry:
    return ClaimRegistry(db_service)


@pytest.fixture
def order(db_service) -> Order:
    return db_service.add_order(
        Order(owner_user_id="owner-1", external_order_id="1001", customer_email="John@Example.com")
    )


class TestCheckGroupSecurity:
    def test_dm_always_allowed(self):
        registry = ClaimRegistry(db=None)
        order = Order(owner_user_id="o", external_order_id="1")

        assert registry.check_group_security(order, False, "disabled").allowed is True

    def test_disabled_redirects_to_dm(self):
        result = ClaimRegistry(db=None).check_group_security(
            Order(owner_user_id="o", external_order_id="1"), True, "disabled"
        )

        assert result.allowed is False
        assert result.message == GROUP_COMMANDS_DISABLED_MESSAGE

    def test_verified_requires_claim(self):
        registry = ClaimRegistry(db=None)
        unclaimed = Order(owner_user_id="o", external_order_id="1")
        claimed = Order(owner_user_id="o", external_order_id="2", claimed_by_phone=SENDER)

        denied = registry.check_group_security(unclaimed, True, "verified")

        assert denied.allowed is False
        assert denied.message == GROUP_ORDER_NOT_VERIFIED_MESSAGE
        assert registry.check_group_security(claimed, True, "verified").allowed is True

    def test_none_allows(self):
        result = ClaimRegistry(db=None).check_group_security(
            Order(owner_user_id="o", external_order_id="1"), True, "none"
        )
        assert result.allowed is True


class TestCheckClaimStatus:
    @pytest.mark.parametrize(
        "mode, claimed_by, is_group, allowed, should_claim, message",
        [
            ("disabled", OTHER, True, True, False, None),
            ("auto", SENDER, True, True, False, None),
            ("email", OTHER, False, False, False, CLAIMED_BY_ANOTHER_MESSAGE),
            ("auto", None, True, False, False, CLAIM_VIA_DM_MESSAGE),
            ("auto", None, False, True, True, None),
            ("email", None, False, False, False, EMAIL_CLAIM_PROMPT_MESSAGE),
        ],
    )
    def test_decision_table(self, mode, claimed_by, is_group, allowed, should_claim, message):
        order = Order(owner_user_id="o", external_order_id="1", claimed_by_phone=claimed_by)

        result = ClaimRegistry(db=None).check_claim_status(order, SENDER, is_group, mode)

        assert result.allowed is allowed
        assert result.should_claim is should_claim
        assert result.message == message

    def test_email_mode_requests_email_dialog(self):
        order = Order(owner_user_id="o", external_order_id="1")

        result = ClaimRegistry(db=None).check_claim_status(order, SENDER, False, "email")

        assert result.needs_email_verification is True


class TestClaimOrder:
    def test_claims_unclaimed_order(self, registry, db_service, order):
        assert registry.claim_order(order, SENDER) is True
        assert db_service.get_order(order.id).claimed_by_phone == SENDER

    def test_reclaim_by_same_phone_succeeds(self, registry, order):
        registry.claim_order(order, SENDER)

        assert registry.claim_order(order, SENDER) is True

    def test_claim_by_other_phone_fails(self, registry, db_service, order):
        registry.claim_order(order, SENDER)

        assert registry.claim_order(order, OTHER) is False
        assert db_service.get_order(order.id).claimed_by_phone == SENDER


class TestVerifyEmailClaim:
    def test_matching_email_claims(self, registry, db_service, order):
        result = registry.verify_email_claim(order, SENDER, "  john@example.COM ")

        assert result.success is True
        assert db_service.get_order(order.id).claimed_by_phone == SENDER

    def test_mismatch(self, registry, order):
        result = registry.verify_email_claim(order, SENDER, "other@example.com")

        assert result.success is False
        assert result.message == EMAIL_MISMATCH_MESSAGE

    def test_no_email_on_order(self, registry, db_service):
        order = db_service.add_order(Order(owner_user_id="owner-1", external_order_id="1002"))

        result = registry.verify_email_claim(order, SENDER, "john@example.com")

        assert result.message == EMAIL_NOT_AVAILABLE_MESSAGE

    def test_claimed_in_between(self, registry, db_service, order):
        db_service.claim_order(order.id, OTHER)

        result = registry.verify_email_claim(order, SENDER, "john@example.com")

        assert result.success is False
        assert result.message == ORDER_ALREADY_CLAIMED_MESSAGE
