"""
Command gate for message dispatchers.

Wraps the authorization pipeline with the caller side of the protocol:
starting verification dialogs, running the command, and recording the
claim and cooldown only after the command succeeded.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from ordergate.constants import READ_ONLY_COMMANDS
from ordergate.database.models import Order, StateType
from ordergate.database.service import DatabaseService
from ordergate.errors import sanitize_error_message
from ordergate.services.claims import ClaimRegistry
from ordergate.services.conversation import ConversationStateMachine, is_verification_response
from ordergate.services.cooldown import CooldownStore
from ordergate.services.mapping_resolver import MappingResolver
from ordergate.services.pipeline import AuthorizationPipeline, Decision
from ordergate.services.staff_override import StaffOverrideRegistry

logger = logging.getLogger(__name__)

# Runs the command on the order and reports whether it succeeded
CommandExecutor = Callable[[Order, str], Awaitable[bool]]


@dataclass
class CommandRequest:
    owner_user_id: str
    sender_phone: str
    external_order_id: str
    command: str
    is_group: bool = False
    group_id: str | None = None


@dataclass
class GateResponse:
    """
    Attributes:
        messages: Replies for the sender, in order.
        executed: The executor ran.
        success: The executor reported success.
        decision: Pipeline decision, when the pipeline ran.
    """

    messages: list[str] = field(default_factory=list)
    executed: bool = False
    success: bool = False
    decision: Decision | None = None


class CommandGate:
    def __init__(
        self,
        db: DatabaseService,
        pipeline: AuthorizationPipeline,
        conversations: ConversationStateMachine,
        claims: ClaimRegistry,
        cooldowns: CooldownStore,
        resolver: MappingResolver,
        staff_overrides: StaffOverrideRegistry,
    ) -> None:
        self._db = db
        self._pipeline = pipeline
        self._conversations = conversations
        self._claims = claims
        self._cooldowns = cooldowns
        self._resolver = resolver
        self._staff_overrides = staff_overrides

    async def run_command(
        self, request: CommandRequest, executor: CommandExecutor, username_verified: bool = False
    ) -> GateResponse:
        """
        Authorize and run one command.

        Args:
            request: Who sent which command for which order, and where.
            executor: Coroutine function running the command; returns
                True on success.
            username_verified: The sender just proved the order username,
                so username validation is not asked for again.

        Returns:
            GateResponse: Replies for the sender plus the execution outcome.
        """
        order = self._db.get_order_by_external_id(request.owner_user_id, request.external_order_id)
        if order is None:
            return GateResponse(messages=[sanitize_error_message("order")])

        is_override = request.is_group and self._staff_overrides.is_override_group(
            request.owner_user_id, request.group_id
        )
        decision = await self._pipeline.evaluate(
            order,
            request.sender_phone,
            request.is_group,
            request.owner_user_id,
            request.command,
            is_staff_override=is_override,
            username_verified=username_verified,
        )

        if decision.needs_username_verification:
            start = self._conversations.start_username_verification(
                request.sender_phone, request.owner_user_id, order, request.command
            )
            return GateResponse(messages=[start.message], decision=decision)

        if decision.needs_email_verification:
            start = self._conversations.start_email_verification(
                request.sender_phone, request.owner_user_id, order, request.command
            )
            return GateResponse(messages=[start.message], decision=decision)

        if not decision.allowed:
            return GateResponse(messages=[decision.message or sanitize_error_message("auth")], decision=decision)

        success = await executor(order, request.command)
        if success:
            self._after_success(order, request, decision)
        return GateResponse(executed=True, success=success, decision=decision)

    def _after_success(self, order: Order, request: CommandRequest, decision: Decision) -> None:
        # The command already ran; bookkeeping failures are logged only
        if decision.should_claim:
            try:
                self._claims.claim_order(order, request.sender_phone)
            except Exception:
                logger.error(f"Failed to claim order {order.external_order_id} after {request.command}", exc_info=True)

        if request.command.strip().upper() in READ_ONLY_COMMANDS:
            return
        try:
            settings = self._db.get_security_settings(request.owner_user_id)
            self._cooldowns.create(
                order.id,
                request.command,
                request.sender_phone,
                request.owner_user_id,
                settings.command_cooldown_secs,
            )
        except Exception:
            logger.error(
                f"Failed to create {request.command} cooldown for order {order.external_order_id}", exc_info=True
            )

    async def handle_reply(
        self,
        owner_user_id: str,
        sender_phone: str,
        text: str,
        executor: CommandExecutor,
        is_group: bool = False,
        group_id: str | None = None,
    ) -> GateResponse | None:
        """
        Route a free-text reply to the sender's pending dialog.

        Returns:
            GateResponse | None: None when the text is not a dialog answer or
                no dialog is pending, so the dispatcher handles it normally.
        """
        if not is_verification_response(text):
            return None

        state = self._conversations.get_active(sender_phone, owner_user_id)
        if state is None:
            return None

        if state.state_type == StateType.REGISTRATION:
            if is_group:
                return None
            result = await self._conversations.process_registration(state, text)
            return GateResponse(messages=[result.message], success=result.can_proceed)

        if state.state_type == StateType.USERNAME_VERIFICATION:
            result = self._conversations.process_username_verification(state, text)
        elif state.state_type == StateType.EMAIL_VERIFICATION:
            result = self._conversations.process_email_verification(state, text)
        else:
            logger.warning(f"Unknown dialog type {state.state_type} for {sender_phone}")
            return None

        if not result.can_proceed:
            return GateResponse(messages=[result.message])

        order = self._db.get_order(result.order_id) if result.order_id is not None else None
        if order is None or not result.command:
            return GateResponse(messages=[result.message], success=True)

        username_verified = state.state_type == StateType.USERNAME_VERIFICATION
        if username_verified and not self._claims.claim_order(order, sender_phone):
            logger.info(f"Order {order.external_order_id} held by another phone; running verified command unclaimed")

        rerun = await self.run_command(
            CommandRequest(
                owner_user_id=owner_user_id,
                sender_phone=sender_phone,
                external_order_id=order.external_order_id,
                command=result.command,
                is_group=is_group,
                group_id=group_id,
            ),
            executor,
            username_verified=username_verified,
        )
        rerun.messages.insert(0, result.message)
        return rerun

    async def start_registration_if_unmapped(
        self,
        owner_user_id: str,
        sender_phone: str,
        is_group: bool = False,
        group_id: str | None = None,
        sender_name: str | None = None,
    ) -> GateResponse | None:
        """
        Offer registration to a DM sender that no mapping knows.

        Returns:
            GateResponse | None: The registration prompt, or None when the
                sender is known, writes from a group, or already has a
                registration dialog open.
        """
        check = await self._resolver.check_sender_allowed(
            owner_user_id, sender_phone, is_group, group_id, sender_name
        )
        if is_group or not check.is_unregistered:
            return None

        if self._conversations.get_active(sender_phone, owner_user_id, StateType.REGISTRATION):
            return None

        start = self._conversations.start_registration(sender_phone, owner_user_id)
        return GateResponse(messages=[start.message])
