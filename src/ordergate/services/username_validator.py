"""
Username validation against the order record.

Decides whether a sender must prove the order's panel username before a
command runs, and compares a claimed username with the recorded one.
"""

import logging
from dataclasses import dataclass

from ordergate.constants import (
    USERNAME_DM_FIRST_MESSAGE,
    USERNAME_MATCH_MESSAGE,
    USERNAME_MISMATCH_MESSAGE,
    USERNAME_NOT_AVAILABLE_MESSAGE,
)
from ordergate.database.models import Order, UsernameValidationMode

logger = logging.getLogger(__name__)


def normalize_username(username: str | None) -> str:
    return (username or "").strip().lower()


@dataclass
class UsernameCheck:
    """
    Attributes:
        required: Validation applies to this sender and order.
        verified: The requirement is already satisfied.
        needs_verification: Start a username verification dialog (DM only).
        message: Denial message when the requirement cannot be met in place.
        order_username: Username the sender must reproduce.
    """

    required: bool
    verified: bool
    needs_verification: bool = False
    message: str | None = None
    order_username: str | None = None


@dataclass
class UsernameMatch:
    success: bool
    message: str


class UsernameValidator:
    def check_username_validation(
        self, order: Order, sender_phone: str, is_group: bool, mode: str
    ) -> UsernameCheck:
        """
        Decide whether a username proof is needed before the command runs.

        No proof is needed when validation is disabled, when the order has no
        customer username, or when this sender already claimed the order.
        In a group the proof cannot happen in place, so the sender is sent to
        DM. In a DM under ``ask`` or ``strict`` a verification dialog is
        requested.
        """
        if mode == UsernameValidationMode.DISABLED:
            return UsernameCheck(required=False, verified=True)

        if not order.customer_username:
            logger.info(f"Order {order.external_order_id} has no customer username, skipping validation")
            return UsernameCheck(required=False, verified=True)

        if order.claimed_by_phone == sender_phone:
            return UsernameCheck(required=False, verified=True)

        if mode not in (UsernameValidationMode.ASK, UsernameValidationMode.STRICT):
            return UsernameCheck(required=False, verified=True)

        if is_group:
            return UsernameCheck(
                required=True,
                verified=False,
                needs_verification=False,
                message=USERNAME_DM_FIRST_MESSAGE,
            )

        return UsernameCheck(
            required=True,
            verified=False,
            needs_verification=True,
            order_username=order.customer_username,
        )

    def verify_username(self, order: Order, provided_username: str) -> UsernameMatch:
        """Compare a provided username with the order's, ignoring case and surrounding space."""
        if not order.customer_username:
            return UsernameMatch(success=False, message=USERNAME_NOT_AVAILABLE_MESSAGE)

        if normalize_username(order.customer_username) == normalize_username(provided_username):
            return UsernameMatch(success=True, message=USERNAME_MATCH_MESSAGE)

        return UsernameMatch(success=False, message=USERNAME_MISMATCH_MESSAGE)
