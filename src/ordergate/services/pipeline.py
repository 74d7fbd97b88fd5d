"""
Authorization pipeline.

``AuthorizationPipeline.evaluate`` runs the checks in a fixed order and
stops at the first denial:

0. staff override: allow, skip everything else
1. per-sender rate limit
2. per-(order, command) cooldown
3. group security
4. mapping ownership; an allowed sender skips steps 5 and 6
5. claim status
6. username validation, which may hand off to a verification dialog

The result is a ``Decision`` value. Unexpected errors are turned into a
generic denial at this boundary.
"""

import logging
from dataclasses import dataclass
from enum import StrEnum

from ordergate.constants import COOLDOWN_MESSAGE, RATE_LIMITED_MESSAGE, format_wait_display
from ordergate.database.models import Order
from ordergate.database.service import DatabaseService
from ordergate.errors import OwnershipDenied, ThrottleError, sanitize_error_message
from ordergate.services.claims import ClaimRegistry
from ordergate.services.cooldown import CooldownStore
from ordergate.services.mapping_resolver import MappingResolver, OwnershipCase
from ordergate.services.rate_limiter import RateLimiter
from ordergate.services.username_validator import UsernameValidator

logger = logging.getLogger(__name__)

class DenialKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    COOLDOWN = "cooldown"
    GROUP_SECURITY = "group_security"
    OWNERSHIP = "ownership"
    CLAIM = "claim"
    USERNAME = "username"
    ERROR = "error"


@dataclass
class Decision:
    """
    Outcome of one authorization pass.

    Attributes:
        allowed: The command may run.
        message: Reply for the sender when not allowed.
        should_claim: Claim the order for the sender once the command succeeds.
        needs_username_verification: Start a username verification dialog
            and hold the command until it succeeds.
        needs_email_verification: Start an email verification dialog to
            claim the order.
        order_username: Username the dialog must check against.
        ownership_case: Mapping resolution outcome, if it ran.
        is_staff_override: Allowed by a staff override group.
        denied_by: Which check denied the command.
        remaining_seconds: Wait time for throttling denials.
    """

    allowed: bool
    message: str | None = None
    should_claim: bool = False
    needs_username_verification: bool = False
    needs_email_verification: bool = False
    order_username: str | None = None
    ownership_case: OwnershipCase | None = None
    is_staff_override: bool = False
    denied_by: DenialKind | None = None
    remaining_seconds: int | None = None

    def raise_if_denied(self) -> None:
        """
        Raise the error matching a denial, for callers that prefer exceptions.

        A pending username verification is not a denial and does not raise.

        Raises:
            ThrottleError: Rate limit or cooldown denial.
            OwnershipDenied: Any other denial.
        """
        if self.allowed or self.needs_username_verification:
            return
        message = self.message or sanitize_error_message("auth")
        if self.denied_by in (DenialKind.RATE_LIMITED, DenialKind.COOLDOWN):
            raise ThrottleError(message, self.remaining_seconds or 0)
        raise OwnershipDenied(message, case=self.ownership_case)


def _deny(kind: DenialKind, message: str | None, **kwargs) -> Decision:
    return Decision(allowed=False, message=message, denied_by=kind, **kwargs)


class AuthorizationPipeline:
    def __init__(
        self,
        db: DatabaseService,
        rate_limiter: RateLimiter,
        cooldowns: CooldownStore,
        claims: ClaimRegistry,
        username_validator: UsernameValidator,
        resolver: MappingResolver,
        user_mapping_enabled: bool = True,
    ) -> None:
        self._db = db
        self._rate_limiter = rate_limiter
        self._cooldowns = cooldowns
        self._claims = claims
        self._username_validator = username_validator
        self._resolver = resolver
        self._user_mapping_enabled = user_mapping_enabled

    async def evaluate(
        self,
        order: Order,
        sender_phone: str,
        is_group: bool,
        owner_user_id: str,
        command: str,
        is_staff_override: bool = False,
        username_verified: bool = False,
    ) -> Decision:
        """
        Decide whether ``sender_phone`` may run ``command`` on ``order``.

        Args:
            order: Order the command targets.
            sender_phone: Sender's phone number.
            is_group: The command was sent in a group chat.
            owner_user_id: Panel owner whose settings apply.
            command: Command name.
            is_staff_override: The message came from a staff override group.
            username_verified: The sender already proved the order username in
                a verification dialog; username validation is skipped.

        Returns:
            Decision: Never raises; internal failures deny with a generic message.
        """
        if is_staff_override:
            logger.info(f"Staff override: bypassing all checks for {sender_phone} on order {order.external_order_id}")
            return Decision(allowed=True, is_staff_override=True)

        try:
            decision = await self._evaluate(
                order, sender_phone, is_group, owner_user_id, command, username_verified
            )
        except Exception:
            logger.error(
                f"Authorization of {command} on order {order.external_order_id} failed", exc_info=True
            )
            return _deny(DenialKind.ERROR, sanitize_error_message("api"))

        if decision.allowed:
            logger.info(
                f"Allowed {command} on order {order.external_order_id} for {sender_phone}"
                f" (case: {decision.ownership_case or 'n/a'}, claim: {decision.should_claim})"
            )
        elif decision.needs_username_verification:
            logger.info(f"Username verification needed for {sender_phone} on order {order.external_order_id}")
        else:
            logger.info(
                f"Denied {command} on order {order.external_order_id} for {sender_phone}: {decision.denied_by}"
            )
        return decision

    async def _evaluate(
        self,
        order: Order,
        sender_phone: str,
        is_group: bool,
        owner_user_id: str,
        command: str,
        username_verified: bool,
    ) -> Decision:
        settings = self._db.get_security_settings(owner_user_id)

        rate = self._rate_limiter.consume(owner_user_id, sender_phone, settings.max_commands_per_minute)
        if rate.limited:
            return _deny(
                DenialKind.RATE_LIMITED,
                RATE_LIMITED_MESSAGE.format(remaining_seconds=rate.remaining_seconds),
                remaining_seconds=rate.remaining_seconds,
            )

        cooldown = self._cooldowns.check(order.id, command)
        if cooldown.blocked:
            return _deny(
                DenialKind.COOLDOWN,
                COOLDOWN_MESSAGE.format(
                    command=command.upper(), remaining_display=format_wait_display(cooldown.remaining_seconds)
                ),
                remaining_seconds=cooldown.remaining_seconds,
            )

        group = self._claims.check_group_security(order, is_group, settings.group_security_mode)
        if not group.allowed:
            return _deny(DenialKind.GROUP_SECURITY, group.message)

        if self._user_mapping_enabled:
            ownership = await self._resolver.resolve_ownership(order, sender_phone, owner_user_id, is_group)
            if not ownership.allowed:
                return _deny(DenialKind.OWNERSHIP, ownership.message, ownership_case=ownership.case)
            # Any mapping allow is authoritative, the no-username fallback included
            return Decision(allowed=True, ownership_case=ownership.case)

        claim = self._claims.check_claim_status(order, sender_phone, is_group, settings.claim_mode)
        if not claim.allowed:
            return _deny(DenialKind.CLAIM, claim.message, needs_email_verification=claim.needs_email_verification)

        if username_verified:
            return Decision(allowed=True, should_claim=claim.should_claim)

        username = self._username_validator.check_username_validation(
            order, sender_phone, is_group, settings.username_validation_mode
        )
        if username.required and not username.verified:
            if username.needs_verification:
                return Decision(
                    allowed=False,
                    needs_username_verification=True,
                    order_username=username.order_username,
                )
            return _deny(DenialKind.USERNAME, username.message)

        return Decision(allowed=True, should_claim=claim.should_claim)
