"""
Order claim registry.

A claim binds an order to the phone number that first verified it. This
module gates group usage on claims, decides whether a sender may act on an
order under the owner's claim mode, and performs the claim itself.
"""

import logging
from dataclasses import dataclass

from ordergate.constants import (
    CLAIM_VIA_DM_MESSAGE,
    CLAIMED_BY_ANOTHER_MESSAGE,
    EMAIL_CLAIM_PROMPT_MESSAGE,
    EMAIL_CLAIM_SUCCESS_MESSAGE,
    EMAIL_MISMATCH_MESSAGE,
    EMAIL_NOT_AVAILABLE_MESSAGE,
    GROUP_COMMANDS_DISABLED_MESSAGE,
    GROUP_ORDER_NOT_VERIFIED_MESSAGE,
    ORDER_ALREADY_CLAIMED_MESSAGE,
)
from ordergate.database.models import ClaimMode, GroupSecurityMode, Order
from ordergate.database.service import DatabaseService

logger = logging.getLogger(__name__)


@dataclass
class ClaimCheck:
    """
    Result of a group-security or claim-status check.

    Attributes:
        allowed: True if the sender may proceed.
        message: User-facing reason when denied.
        should_claim: The caller should claim the order after the command
            succeeds.
        needs_email_verification: The sender must prove the customer email
            in an email verification dialog.
    """

    allowed: bool
    message: str | None = None
    should_claim: bool = False
    needs_email_verification: bool = False


@dataclass
class EmailClaimResult:
    success: bool
    message: str


class ClaimRegistry:
    """Order-to-phone ownership claims and group-security gating."""

    def __init__(self, db: DatabaseService) -> None:
        self._db = db

    def check_group_security(self, order: Order, is_group: bool, mode: str) -> ClaimCheck:
        """
        Decide whether a command on ``order`` may run in a group chat.

        DMs are always allowed. In groups: ``disabled`` redirects to DM,
        ``verified`` requires the order to be claimed already, ``none``
        allows everything.
        """
        if not is_group:
            return ClaimCheck(allowed=True)

        if mode == GroupSecurityMode.DISABLED:
            return ClaimCheck(allowed=False, message=GROUP_COMMANDS_DISABLED_MESSAGE)

        if mode == GroupSecurityMode.VERIFIED and not order.claimed_by_phone:
            return ClaimCheck(allowed=False, message=GROUP_ORDER_NOT_VERIFIED_MESSAGE)

        return ClaimCheck(allowed=True)

    def check_claim_status(self, order: Order, sender_phone: str, is_group: bool, mode: str) -> ClaimCheck:
        """
        Decide whether the sender may act on the order under the claim mode.

        | claim mode | claimed by   | location | result                       |
        |------------|--------------|----------|------------------------------|
        | disabled   | any          | any      | allow                        |
        | any        | this phone   | any      | allow                        |
        | any        | other phone  | any      | deny, claimed by another     |
        | any        | unclaimed    | group    | deny, DM to verify           |
        | auto       | unclaimed    | DM       | allow, should_claim          |
        | email      | unclaimed    | DM       | deny, prompt for email       |
        """
        if mode == ClaimMode.DISABLED:
            return ClaimCheck(allowed=True)

        if order.claimed_by_phone:
            if order.claimed_by_phone == sender_phone:
                return ClaimCheck(allowed=True)
            return ClaimCheck(allowed=False, message=CLAIMED_BY_ANOTHER_MESSAGE)

        if is_group:
            return ClaimCheck(allowed=False, message=CLAIM_VIA_DM_MESSAGE)

        if mode == ClaimMode.AUTO:
            return ClaimCheck(allowed=True, should_claim=True)

        if mode == ClaimMode.EMAIL:
            return ClaimCheck(allowed=False, message=EMAIL_CLAIM_PROMPT_MESSAGE, needs_email_verification=True)

        return ClaimCheck(allowed=True)

    def claim_order(self, order: Order, phone: str) -> bool:
        """
        Claim an order for a phone number.

        Only an unclaimed order can be claimed. Re-claiming an order already
        held by the same phone is a no-op success.

        Returns:
            bool: True if the order is now claimed by ``phone``.
        """
        if self._db.claim_order(order.id, phone):
            logger.info(f"Order {order.external_order_id} claimed by {phone}")
            return True

        current = self._db.get_order(order.id)
        if current and current.claimed_by_phone == phone:
            return True

        logger.warning(
            f"Claim of order {order.external_order_id} by {phone} lost: "
            f"already claimed by {current.claimed_by_phone if current else 'unknown'}"
        )
        return False

    def verify_email_claim(self, order: Order, phone: str, email: str) -> EmailClaimResult:
        """
        Claim an order after the sender proves the customer email.

        The comparison is case-insensitive.
        """
        if not order.customer_email:
            return EmailClaimResult(success=False, message=EMAIL_NOT_AVAILABLE_MESSAGE)

        if order.customer_email.strip().lower() != (email or "").strip().lower():
            return EmailClaimResult(success=False, message=EMAIL_MISMATCH_MESSAGE)

        if not self.claim_order(order, phone):
            return EmailClaimResult(success=False, message=ORDER_ALREADY_CLAIMED_MESSAGE)

        return EmailClaimResult(success=True, message=EMAIL_CLAIM_SUCCESS_MESSAGE)
