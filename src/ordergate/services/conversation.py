"""
Multi-step verification dialogs.

A dialog is a ``ConversationState`` row: at most one per
(sender, owner, state type), expiring ``expiry`` after its last step. Expiry
is checked at read time; the scheduler sweeps stale rows.

Three dialogs exist:

- USERNAME_VERIFICATION: the sender proves the order's panel username
  before a command runs.
- EMAIL_VERIFICATION: the sender proves the order's customer email to claim
  it.
- REGISTRATION: an unmapped sender links a panel username to their number.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ordergate.constants import (
    EMAIL_CLAIM_PROMPT_MESSAGE,
    EMAIL_EXHAUSTED_MESSAGE,
    EMAIL_MISMATCH_MESSAGE,
    EMAIL_RETRY_MESSAGE,
    REGISTRATION_ALREADY_LINKED_MESSAGE,
    REGISTRATION_EXHAUSTED_MESSAGE,
    REGISTRATION_FAILED_MESSAGE,
    REGISTRATION_INVALID_MESSAGE,
    REGISTRATION_NOT_FOUND_MESSAGE,
    REGISTRATION_OTHER_NUMBER_MESSAGE,
    REGISTRATION_PROMPT_MESSAGE,
    REGISTRATION_SUCCESS_MESSAGE,
    SELF_REGISTERED_NOTE,
    SUPPORT_CONTACT_MESSAGE,
    SUPPORT_GENERIC_MESSAGE,
    USERNAME_EXHAUSTED_MESSAGE,
    USERNAME_PROMPT_MESSAGE,
    USERNAME_RETRY_MESSAGE,
    USERNAME_VERIFIED_MESSAGE,
)
from ordergate.database.models import (
    ConversationState,
    ConversationStep,
    Order,
    StateType,
    UserPanelMapping,
    utcnow,
)
from ordergate.database.service import DatabaseService
from ordergate.errors import DuplicateMappingError
from ordergate.services.admin_api import AdminApiClient
from ordergate.services.claims import ClaimRegistry
from ordergate.services.mapping_resolver import MappingResolver, normalize_phone
from ordergate.services.username_validator import normalize_username

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(minutes=5)
DEFAULT_MAX_ATTEMPTS = 3
MAX_REPLY_LENGTH = 50

# Replies shaped like "<order id> <command>" are commands, not answers
_COMMAND_PATTERNS = (
    re.compile(r"^\d+[\s,]+\w+", re.IGNORECASE),
    re.compile(r"^\d+\s+(refill|cancel|status|speed)", re.IGNORECASE),
)


def is_verification_response(text: str | None) -> bool:
    """
    Heuristically decide whether a message answers a pending dialog.

    Best-effort only: a short single-line message that does not look like
    an "<order id> <command>" request is treated as an answer.
    """
    if not text:
        return False
    stripped = text.strip()
    if not stripped:
        return False
    if any(pattern.match(stripped) for pattern in _COMMAND_PATTERNS):
        return False
    return len(stripped) <= MAX_REPLY_LENGTH and "\n" not in stripped


@dataclass
class DialogResult:
    """
    Outcome of one dialog step.

    Attributes:
        can_proceed: The dialog succeeded and the caller may continue
            (run the pending command, accept the sender).
        message: Reply for the sender.
        finished: The dialog state was removed.
        order_id: Internal order ID the dialog was about, if any.
        command: Pending command to re-run after success, if any.
        mapping: Mapping linked by a registration dialog.
    """

    can_proceed: bool
    message: str
    finished: bool = True
    order_id: int | None = None
    command: str | None = None
    mapping: UserPanelMapping | None = None


@dataclass
class DialogStart:
    state: ConversationState
    message: str
    context: dict[str, Any] = field(default_factory=dict)


class ConversationStateMachine:
    """Ephemeral verification and registration dialogs backed by ConversationState rows."""

    def __init__(
        self,
        db: DatabaseService,
        claims: ClaimRegistry,
        resolver: MappingResolver,
        admin_api: AdminApiClient | None = None,
        expiry: timedelta = DEFAULT_EXPIRY,
        username_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        registration_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        support_contact: str | None = None,
    ) -> None:
        self._db = db
        self._claims = claims
        self._resolver = resolver
        self._admin_api = admin_api
        self._expiry = expiry
        self._username_max_attempts = username_max_attempts
        self._registration_max_attempts = registration_max_attempts
        self._support_contact = support_contact

    @property
    def expiry_minutes(self) -> int:
        return max(1, int(self._expiry.total_seconds() // 60))

    # ==================== STATE STORE ====================

    def create_state(
        self,
        sender_phone: str,
        owner_user_id: str,
        state_type: StateType,
        current_step: ConversationStep,
        context_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ConversationState:
        """Start a dialog, replacing any prior one of the same type for this sender."""
        now = now or utcnow()
        state = ConversationState(
            sender_phone=sender_phone,
            owner_user_id=owner_user_id,
            state_type=state_type,
            current_step=current_step,
            context_data=dict(context_data or {}),
            created_at=now,
            expires_at=now + self._expiry,
        )
        state = self._db.replace_conversation(state)
        logger.info(f"Started {state_type} dialog for {sender_phone} (owner {owner_user_id})")
        return state

    def get_active(
        self,
        sender_phone: str,
        owner_user_id: str,
        state_type: StateType | None = None,
        now: datetime | None = None,
    ) -> ConversationState | None:
        return self._db.get_active_conversation(sender_phone, owner_user_id, state_type, now)

    def update_state(
        self,
        state: ConversationState,
        *,
        current_step: ConversationStep | None = None,
        context_data: dict[str, Any] | None = None,
        extend: bool = True,
        now: datetime | None = None,
    ) -> ConversationState:
        """Persist a step change; by default the expiry is pushed back by a full window."""
        expires_at = (now or utcnow()) + self._expiry if extend else None
        return self._db.update_conversation(
            state.id, current_step=current_step, context_data=context_data, expires_at=expires_at
        )

    def complete(self, state: ConversationState) -> None:
        self._db.delete_conversation(state.id)

    def clear(self, sender_phone: str, owner_user_id: str, state_type: StateType | None = None) -> int:
        return self._db.delete_conversations(sender_phone, owner_user_id, state_type)

    def sweep_expired(self, now: datetime | None = None) -> int:
        count = self._db.delete_expired_conversations(now)
        if count:
            logger.info(f"Swept {count} expired conversation states")
        return count

    # ==================== USERNAME VERIFICATION ====================

    def start_username_verification(
        self, sender_phone: str, owner_user_id: str, order: Order, command: str, now: datetime | None = None
    ) -> DialogStart:
        context = {
            "order_id": order.id,
            "external_order_id": order.external_order_id,
            "command": command,
            "order_username": order.customer_username,
            "attempts": 0,
            "max_attempts": self._username_max_attempts,
        }
        state = self.create_state(
            sender_phone,
            owner_user_id,
            StateType.USERNAME_VERIFICATION,
            ConversationStep.AWAITING_USERNAME,
            context,
            now,
        )
        message = USERNAME_PROMPT_MESSAGE.format(
            order_id=order.external_order_id, expiry_minutes=self.expiry_minutes
        )
        return DialogStart(state=state, message=message, context=context)

    def process_username_verification(
        self, state: ConversationState, reply: str, now: datetime | None = None
    ) -> DialogResult:
        """
        Check a username reply against the order's username.

        Success removes the dialog and lets the pending command run. A
        mismatch consumes an attempt and extends the dialog; the last
        allowed mismatch removes it.
        """
        context = dict(state.context_data or {})
        order_id = context.get("order_id")
        command = context.get("command")

        if normalize_username(reply) == normalize_username(context.get("order_username")):
            self.complete(state)
            logger.info(f"Username verified for {state.sender_phone} on order {context.get('external_order_id')}")
            return DialogResult(
                can_proceed=True, message=USERNAME_VERIFIED_MESSAGE, order_id=order_id, command=command
            )

        attempts = context.get("attempts", 0) + 1
        max_attempts = context.get("max_attempts", self._username_max_attempts)
        if attempts >= max_attempts:
            self.complete(state)
            logger.warning(
                f"Username verification exhausted for {state.sender_phone} on order {context.get('external_order_id')}"
            )
            return DialogResult(
                can_proceed=False,
                message=USERNAME_EXHAUSTED_MESSAGE.format(
                    max_attempts=max_attempts, order_id=context.get("external_order_id")
                ),
                order_id=order_id,
                command=command,
            )

        context["attempts"] = attempts
        self.update_state(state, context_data=context, now=now)
        return DialogResult(
            can_proceed=False,
            message=USERNAME_RETRY_MESSAGE.format(remaining=max_attempts - attempts),
            finished=False,
            order_id=order_id,
            command=command,
        )

    # ==================== EMAIL VERIFICATION ====================

    def start_email_verification(
        self, sender_phone: str, owner_user_id: str, order: Order, command: str, now: datetime | None = None
    ) -> DialogStart:
        context = {
            "order_id": order.id,
            "external_order_id": order.external_order_id,
            "command": command,
            "attempts": 0,
            "max_attempts": self._username_max_attempts,
        }
        state = self.create_state(
            sender_phone,
            owner_user_id,
            StateType.EMAIL_VERIFICATION,
            ConversationStep.AWAITING_EMAIL,
            context,
            now,
        )
        return DialogStart(state=state, message=EMAIL_CLAIM_PROMPT_MESSAGE, context=context)

    def process_email_verification(
        self, state: ConversationState, reply: str, now: datetime | None = None
    ) -> DialogResult:
        """
        Claim the order if the reply matches its customer email.

        Only a mismatch is retried; a missing email or a lost claim ends
        the dialog.
        """
        context = dict(state.context_data or {})
        order_id = context.get("order_id")
        command = context.get("command")

        order = self._db.get_order(order_id) if order_id is not None else None
        if order is None:
            self.complete(state)
            return DialogResult(can_proceed=False, message=EMAIL_MISMATCH_MESSAGE, order_id=order_id)

        result = self._claims.verify_email_claim(order, state.sender_phone, reply)
        if result.success:
            self.complete(state)
            return DialogResult(can_proceed=True, message=result.message, order_id=order_id, command=command)

        if result.message != EMAIL_MISMATCH_MESSAGE:
            self.complete(state)
            return DialogResult(can_proceed=False, message=result.message, order_id=order_id, command=command)

        attempts = context.get("attempts", 0) + 1
        max_attempts = context.get("max_attempts", self._username_max_attempts)
        if attempts >= max_attempts:
            self.complete(state)
            return DialogResult(
                can_proceed=False,
                message=EMAIL_EXHAUSTED_MESSAGE.format(
                    max_attempts=max_attempts, order_id=context.get("external_order_id")
                ),
                order_id=order_id,
                command=command,
            )

        context["attempts"] = attempts
        self.update_state(state, context_data=context, now=now)
        return DialogResult(
            can_proceed=False,
            message=EMAIL_RETRY_MESSAGE.format(remaining=max_attempts - attempts),
            finished=False,
            order_id=order_id,
            command=command,
        )

    # ==================== REGISTRATION ====================

    def start_registration(
        self, sender_phone: str, owner_user_id: str, now: datetime | None = None
    ) -> DialogStart:
        context = {"attempts": 0, "max_attempts": self._registration_max_attempts}
        state = self.create_state(
            sender_phone,
            owner_user_id,
            StateType.REGISTRATION,
            ConversationStep.AWAITING_USERNAME,
            context,
            now,
        )
        message = REGISTRATION_PROMPT_MESSAGE.format(expiry_minutes=self.expiry_minutes)
        return DialogStart(state=state, message=message, context=context)

    async def process_registration(
        self, state: ConversationState, reply: str, now: datetime | None = None
    ) -> DialogResult:
        """
        Link the replied panel username to the sender's number.

        A username already linked to this number succeeds immediately; one
        linked to another number is refused with a pointer to support. The
        username's existence is checked on the owner's panels, and an
        unreachable admin API counts as "exists" so registration keeps
        working while panels are down.
        """
        username = (reply or "").strip()
        owner_user_id = state.owner_user_id
        sender = normalize_phone(state.sender_phone)

        if len(username) < 2 or any(ch.isspace() for ch in username):
            return DialogResult(can_proceed=False, message=REGISTRATION_INVALID_MESSAGE, finished=False)

        existing = self._resolver.find_by_username(owner_user_id, username)
        if existing is not None:
            return self._finish_with_existing(state, existing, sender)

        username_valid, panel_id = await self._validate_on_panels(owner_user_id, username)
        if not username_valid:
            context = dict(state.context_data or {})
            attempts = context.get("attempts", 0) + 1
            max_attempts = context.get("max_attempts", self._registration_max_attempts)
            if attempts >= max_attempts:
                self.complete(state)
                return DialogResult(
                    can_proceed=False, message=REGISTRATION_EXHAUSTED_MESSAGE.format(max_attempts=max_attempts)
                )
            context["attempts"] = attempts
            self.update_state(state, context_data=context, now=now)
            return DialogResult(
                can_proceed=False,
                message=REGISTRATION_NOT_FOUND_MESSAGE.format(username=username, remaining=max_attempts - attempts),
                finished=False,
            )

        try:
            mapping = self._resolver.create_mapping(
                owner_user_id,
                username,
                whatsapp_numbers=[sender],
                panel_id=panel_id,
                admin_notes=SELF_REGISTERED_NOTE,
            )
        except DuplicateMappingError:
            existing = self._resolver.find_by_username(owner_user_id, username)
            if existing is not None:
                return self._finish_with_existing(state, existing, sender)
            self.complete(state)
            return DialogResult(can_proceed=False, message=REGISTRATION_FAILED_MESSAGE)
        except Exception:
            logger.error(f"Registration of '{username}' for {sender} failed", exc_info=True)
            self.complete(state)
            return DialogResult(can_proceed=False, message=REGISTRATION_FAILED_MESSAGE)

        self.complete(state)
        logger.info(f"Registered {sender} as '{username}' (mapping {mapping.id}, owner {owner_user_id})")
        return DialogResult(
            can_proceed=True,
            message=REGISTRATION_SUCCESS_MESSAGE.format(username=username),
            mapping=mapping,
        )

    def _finish_with_existing(
        self, state: ConversationState, mapping: UserPanelMapping, sender: str
    ) -> DialogResult:
        self.complete(state)
        if sender in {normalize_phone(n) for n in mapping.whatsapp_numbers or []}:
            return DialogResult(can_proceed=True, message=REGISTRATION_ALREADY_LINKED_MESSAGE, mapping=mapping)

        logger.info(f"Registration refused: '{mapping.panel_username}' is linked to another number")
        return DialogResult(
            can_proceed=False,
            message=REGISTRATION_OTHER_NUMBER_MESSAGE.format(support_message=self._support_message()),
        )

    def _support_message(self) -> str:
        if self._support_contact:
            return SUPPORT_CONTACT_MESSAGE.format(support_contact=self._support_contact)
        return SUPPORT_GENERIC_MESSAGE

    async def _validate_on_panels(self, owner_user_id: str, username: str) -> tuple[bool, int | None]:
        """
        Check the username on the owner's panels that have an admin API key.

        Returns:
            tuple[bool, int | None]: Whether the username is accepted, and
                the panel that confirmed it (if one did).
        """
        panels = [p for p in self._db.get_panels_for_owner(owner_user_id) if p.admin_api_key]
        if self._admin_api is None or not panels:
            return True, None

        for panel in panels:
            try:
                if await self._admin_api.validate_username(panel, username):
                    return True, panel.id
            except Exception as e:
                logger.warning(
                    f"Admin API unavailable while validating '{username}' on panel {panel.name}, accepting: {e}"
                )
                return True, None
        return False, None
