"""
Username-to-phone mapping directory and ownership resolution.

A mapping binds one panel username (unique per owner, case-insensitive) to
the WhatsApp numbers and groups allowed to act on that user's orders.

``MappingResolver.resolve_ownership`` decides whether a sender owns an order
by following order -> customer username -> mapping -> numbers. It fails
closed on unexpected errors, with one deliberate exception: an order whose
customer username cannot be determined is allowed (``FALLBACK_NO_USERNAME``).
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from ordergate.constants import (
    AUTO_CREATED_NOTE,
    BOT_DISABLED_MESSAGE,
    OWNERSHIP_ERROR_MESSAGE,
    SUSPENDED_MESSAGE,
    USER_NOT_REGISTERED_MESSAGE,
    WA_NOT_MATCH_MESSAGE,
    WHATSAPP_VALIDATION_NOTE,
)
from ordergate.database.models import Order, UserPanelMapping, VerifiedBy, utcnow
from ordergate.database.service import DatabaseService
from ordergate.errors import DataIntegrityError, DuplicateMappingError, MappingNotFoundError
from ordergate.services.admin_api import AdminApiClient
from ordergate.services.background import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_AUTO_SUSPEND_THRESHOLD = 50

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | int | None) -> str:
    """
    Normalize a phone number into the mapping key form.

    Strips every non-digit, then leading zeros. This is intentionally not
    country-code aware: it only has to produce a stable key for the same
    number as the chat platform reports it.

    Args:
        phone: Raw phone number or JID-like string.

    Returns:
        str: Digits without leading zeros (empty for empty input).
    """
    if phone is None:
        return ""
    return _NON_DIGITS.sub("", str(phone)).lstrip("0")


class OwnershipCase(StrEnum):
    VERIFIED = "VERIFIED"
    AUTO_CREATED = "AUTO_CREATED"
    FALLBACK_NO_USERNAME = "FALLBACK_NO_USERNAME"
    USER_NOT_REGISTERED = "USER_NOT_REGISTERED"
    BOT_DISABLED = "BOT_DISABLED"
    SUSPENDED = "SUSPENDED"
    WA_NOT_MATCH = "WA_NOT_MATCH"
    ERROR = "ERROR"


@dataclass
class OwnershipResult:
    """
    Attributes:
        allowed: The sender may act on the order.
        case: Which resolution branch produced the result.
        message: User-facing denial message.
        mapping: The mapping that decided the result, if any.
        warning: Set on the fail-open fallback.
    """

    allowed: bool
    case: OwnershipCase
    message: str | None = None
    mapping: UserPanelMapping | None = None
    warning: str | None = None


@dataclass
class SenderCheck:
    allowed: bool
    reason: str
    mapping: UserPanelMapping | None = None
    is_unregistered: bool = False


@dataclass
class MappingStats:
    total: int
    verified: int
    unverified: int
    bot_enabled: int
    bot_disabled: int
    suspended: int


@dataclass
class BulkImportResult:
    success: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


class MappingResolver:
    """Mapping directory plus order ownership resolution."""

    def __init__(
        self,
        db: DatabaseService,
        admin_api: AdminApiClient | None = None,
        background: BackgroundTasks | None = None,
        auto_suspend_threshold: int = DEFAULT_AUTO_SUSPEND_THRESHOLD,
    ) -> None:
        self._db = db
        self._admin_api = admin_api
        self._background = background if background is not None else BackgroundTasks()
        self._auto_suspend_threshold = auto_suspend_threshold

    # ==================== OWNERSHIP RESOLUTION ====================

    async def resolve_ownership(
        self, order: Order, sender_phone: str, owner_user_id: str, is_group: bool
    ) -> OwnershipResult:
        """
        Resolve whether ``sender_phone`` owns ``order`` through the mapping directory.

        1. Use the order's customer username, fetching it from the panel
           admin API if missing. Still missing -> allow (FALLBACK_NO_USERNAME).
        2. No mapping for the username -> create one bound to the sender
           (AUTO_CREATED). Lost creation race -> continue with the winner's
           mapping; nothing found -> deny (USER_NOT_REGISTERED).
        3. Mapping disabled -> BOT_DISABLED; suspended -> SUSPENDED; sender
           not among its numbers -> WA_NOT_MATCH; otherwise VERIFIED.

        Any unexpected error denies (ERROR).
        """
        try:
            normalized_sender = normalize_phone(sender_phone)
            chat_kind = "group" if is_group else "DM"
            logger.info(
                f"Resolving ownership of order {order.external_order_id} for {normalized_sender} ({chat_kind})"
            )

            order_username = order.customer_username or await self._fetch_customer_username(order)
            if not order_username:
                logger.warning(
                    f"Order {order.external_order_id} has no customer username, "
                    f"allowing without mapping validation"
                )
                return OwnershipResult(
                    allowed=True,
                    case=OwnershipCase.FALLBACK_NO_USERNAME,
                    warning="customer username not available for validation",
                )

            mapping = self._db.find_mapping_by_username(owner_user_id, order_username)
            if mapping is None:
                try:
                    mapping = self.create_mapping(
                        owner_user_id,
                        order_username,
                        whatsapp_numbers=[normalized_sender],
                        panel_id=order.panel_id,
                        admin_notes=AUTO_CREATED_NOTE.format(external_order_id=order.external_order_id),
                    )
                except DataIntegrityError as e:
                    logger.warning(f"Auto-create of mapping for '{order_username}' failed: {e}")
                    mapping = self._db.find_mapping_by_username(owner_user_id, order_username)
                    if mapping is None:
                        return OwnershipResult(
                            allowed=False,
                            case=OwnershipCase.USER_NOT_REGISTERED,
                            message=USER_NOT_REGISTERED_MESSAGE,
                        )
                    logger.info(f"Found mapping {mapping.id} for '{order_username}' on retry")
                else:
                    logger.info(
                        f"Auto-created mapping {mapping.id} for username '{order_username}' + {normalized_sender}"
                    )
                    self.record_activity(mapping.id)
                    return OwnershipResult(allowed=True, case=OwnershipCase.AUTO_CREATED, mapping=mapping)

            return self._check_mapping(mapping, normalized_sender, owner_user_id)
        except Exception:
            logger.error(
                f"Ownership resolution failed for order {order.external_order_id}", exc_info=True
            )
            return OwnershipResult(allowed=False, case=OwnershipCase.ERROR, message=OWNERSHIP_ERROR_MESSAGE)

    def _check_mapping(self, mapping: UserPanelMapping, normalized_sender: str, owner_user_id: str) -> OwnershipResult:
        if not mapping.is_bot_enabled:
            return OwnershipResult(
                allowed=False, case=OwnershipCase.BOT_DISABLED, message=BOT_DISABLED_MESSAGE, mapping=mapping
            )

        if mapping.is_auto_suspended:
            return OwnershipResult(
                allowed=False, case=OwnershipCase.SUSPENDED, message=SUSPENDED_MESSAGE, mapping=mapping
            )

        mapped_numbers = {normalize_phone(n) for n in mapping.whatsapp_numbers or []}
        if normalized_sender not in mapped_numbers:
            logger.info(f"Sender {normalized_sender} is not among the numbers of mapping {mapping.id}")
            return OwnershipResult(
                allowed=False, case=OwnershipCase.WA_NOT_MATCH, message=WA_NOT_MATCH_MESSAGE, mapping=mapping
            )

        if not mapping.is_verified:
            try:
                mapping = self.verify_mapping(mapping.id, owner_user_id, VerifiedBy.WHATSAPP)
                logger.info(f"Auto-verified mapping {mapping.id} via WhatsApp")
            except Exception:
                logger.error(f"Auto-verify of mapping {mapping.id} failed", exc_info=True)

        self.record_activity(mapping.id)
        logger.info(f"Ownership verified: mapping {mapping.id}, sender {normalized_sender}")
        return OwnershipResult(allowed=True, case=OwnershipCase.VERIFIED, mapping=mapping)

    async def _fetch_customer_username(self, order: Order) -> str | None:
        """
        Fetch a missing customer username from the panel admin API and persist it.

        Failures are logged and reported as "no username".
        """
        if self._admin_api is None or order.panel_id is None:
            return None

        panel = self._db.get_panel(order.panel_id)
        if panel is None or not panel.admin_api_key:
            logger.info(f"Panel of order {order.external_order_id} has no admin API key, cannot fetch username")
            return None

        try:
            info = await self._admin_api.get_order_with_provider(panel, order.external_order_id)
        except Exception as e:
            logger.error(f"Failed to fetch customer username for order {order.external_order_id}: {e}")
            return None

        if info is None or not info.customer_username:
            logger.info(f"Admin API returned no customer username for order {order.external_order_id}")
            return None

        self._db.set_order_customer_username(order.id, info.customer_username)
        order.customer_username = info.customer_username
        logger.info(f"Fetched and saved customer username for order {order.external_order_id}")
        return info.customer_username

    # ==================== DIRECTORY ====================

    def create_mapping(
        self,
        owner_user_id: str,
        panel_username: str,
        *,
        whatsapp_numbers: list[str] | None = None,
        group_ids: list[str] | None = None,
        panel_id: int | None = None,
        panel_email: str | None = None,
        display_name: str | None = None,
        is_bot_enabled: bool = True,
        is_verified: bool = False,
        admin_notes: str | None = None,
    ) -> UserPanelMapping:
        """
        Create a mapping for a panel username.

        Raises:
            ValueError: If the username is blank.
            DuplicateMappingError: If the owner already has a mapping for
                this username (case-insensitive).
        """
        if not panel_username or not panel_username.strip():
            raise ValueError("Panel username is required")

        numbers = list(dict.fromkeys(normalize_phone(n) for n in whatsapp_numbers or [] if normalize_phone(n)))
        now = utcnow()
        mapping = UserPanelMapping(
            owner_user_id=owner_user_id,
            panel_id=panel_id,
            panel_username=panel_username.strip(),
            panel_username_key=panel_username.strip().lower(),
            panel_email=panel_email,
            whatsapp_numbers=numbers,
            group_ids=list(dict.fromkeys(group_ids or [])),
            display_name=display_name,
            is_bot_enabled=is_bot_enabled,
            is_verified=is_verified,
            verified_by=VerifiedBy.ADMIN if is_verified else None,
            verified_at=now if is_verified else None,
            admin_notes=admin_notes,
        )
        return self._db.save_mapping(mapping)

    def get_mapping(self, mapping_id: int, owner_user_id: str) -> UserPanelMapping:
        """
        Raises:
            MappingNotFoundError: If the owner has no mapping with this id.
        """
        mapping = self._db.get_mapping(mapping_id, owner_user_id)
        if mapping is None:
            raise MappingNotFoundError(f"Mapping {mapping_id} not found")
        return mapping

    def find_by_username(self, owner_user_id: str, panel_username: str) -> UserPanelMapping | None:
        return self._db.find_mapping_by_username(owner_user_id, panel_username)

    def find_by_phone(self, owner_user_id: str, phone: str) -> UserPanelMapping | None:
        matches = self.find_all_by_phone(owner_user_id, phone)
        return matches[0] if matches else None

    def find_all_by_phone(self, owner_user_id: str, phone: str) -> list[UserPanelMapping]:
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        return self._db.find_mappings_with_phone(owner_user_id, normalized)

    def find_by_group(self, owner_user_id: str, group_id: str) -> UserPanelMapping | None:
        matches = self._db.find_mappings_with_group(owner_user_id, group_id)
        return matches[0] if matches else None

    def list_mappings(self, owner_user_id: str, **filters: Any) -> list[UserPanelMapping]:
        return self._db.list_mappings(owner_user_id, **filters)

    def add_phone(self, mapping_id: int, owner_user_id: str, phone: str) -> UserPanelMapping:
        """
        Raises:
            ValueError: If the number is already part of the mapping.
        """
        mapping = self.get_mapping(mapping_id, owner_user_id)
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValueError("Phone number is required")
        if normalized in mapping.whatsapp_numbers:
            raise ValueError("Phone number already exists in this mapping")
        mapping.whatsapp_numbers = [*mapping.whatsapp_numbers, normalized]
        return self._db.save_mapping(mapping)

    def remove_phone(self, mapping_id: int, owner_user_id: str, phone: str) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        normalized = normalize_phone(phone)
        mapping.whatsapp_numbers = [n for n in mapping.whatsapp_numbers if n != normalized]
        return self._db.save_mapping(mapping)

    def add_group(self, mapping_id: int, owner_user_id: str, group_id: str) -> UserPanelMapping:
        """
        Raises:
            ValueError: If the group is already part of the mapping.
        """
        mapping = self.get_mapping(mapping_id, owner_user_id)
        if group_id in mapping.group_ids:
            raise ValueError("Group already exists in this mapping")
        mapping.group_ids = [*mapping.group_ids, group_id]
        return self._db.save_mapping(mapping)

    def remove_group(self, mapping_id: int, owner_user_id: str, group_id: str) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        mapping.group_ids = [g for g in mapping.group_ids if g != group_id]
        return self._db.save_mapping(mapping)

    def delete_mapping(self, mapping_id: int, owner_user_id: str) -> None:
        self._db.delete_mapping(mapping_id, owner_user_id)
        logger.info(f"Deleted mapping {mapping_id} of owner {owner_user_id}")

    def verify_mapping(
        self, mapping_id: int, owner_user_id: str, verified_by: VerifiedBy = VerifiedBy.ADMIN
    ) -> UserPanelMapping:
        """
        Mark a mapping verified.

        Verification through WhatsApp appends a dated audit note to the
        mapping's admin notes.
        """
        mapping = self.get_mapping(mapping_id, owner_user_id)
        now = utcnow()
        mapping.is_verified = True
        mapping.verified_at = now
        mapping.verified_by = verified_by
        if verified_by == VerifiedBy.WHATSAPP:
            note = WHATSAPP_VALIDATION_NOTE.format(date=now.astimezone(UTC).date().isoformat())
            mapping.admin_notes = f"{mapping.admin_notes}\n{note}" if mapping.admin_notes else note
        return self._db.save_mapping(mapping)

    def unverify_mapping(self, mapping_id: int, owner_user_id: str) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        mapping.is_verified = False
        mapping.verified_at = None
        mapping.verified_by = None
        return self._db.save_mapping(mapping)

    def toggle_bot(self, mapping_id: int, owner_user_id: str) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        mapping.is_bot_enabled = not mapping.is_bot_enabled
        return self._db.save_mapping(mapping)

    def suspend_mapping(self, mapping_id: int, owner_user_id: str, reason: str | None = None) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        mapping.is_auto_suspended = True
        mapping.suspended_at = utcnow()
        mapping.suspend_reason = reason or "Manually suspended"
        return self._db.save_mapping(mapping)

    def unsuspend_mapping(self, mapping_id: int, owner_user_id: str) -> UserPanelMapping:
        mapping = self.get_mapping(mapping_id, owner_user_id)
        mapping.is_auto_suspended = False
        mapping.suspended_at = None
        mapping.suspend_reason = None
        mapping.spam_count = 0
        return self._db.save_mapping(mapping)

    def record_activity(self, mapping_id: int, now: datetime | None = None) -> None:
        self._db.record_mapping_activity(mapping_id, now)

    def record_spam(self, mapping_id: int) -> UserPanelMapping | None:
        """
        Count a spam incident, suspending the mapping once the threshold is reached.

        Returns:
            UserPanelMapping | None: Updated mapping, or None if it does not exist.
        """
        mapping = self._db.get_mapping(mapping_id)
        if mapping is None:
            return None

        now = utcnow()
        mapping.spam_count = (mapping.spam_count or 0) + 1
        mapping.last_spam_at = now
        if mapping.spam_count >= self._auto_suspend_threshold and not mapping.is_auto_suspended:
            mapping.is_auto_suspended = True
            mapping.suspended_at = now
            mapping.suspend_reason = "Auto-suspended due to spam"
            logger.warning(f"Mapping {mapping_id} auto-suspended after {mapping.spam_count} spam incidents")
        return self._db.save_mapping(mapping)

    def update_display_name(self, mapping_id: int, display_name: str) -> None:
        mapping = self._db.get_mapping(mapping_id)
        if mapping is None or mapping.display_name == display_name:
            return
        mapping.display_name = display_name
        self._db.save_mapping(mapping)

    async def check_sender_allowed(
        self,
        owner_user_id: str,
        sender_phone: str | None,
        is_group: bool = False,
        group_id: str | None = None,
        sender_name: str | None = None,
    ) -> SenderCheck:
        """
        Look up the sender's mapping by phone, then by group.

        A sender without a mapping is allowed but flagged as unregistered so
        the caller can offer registration. A changed display name is captured
        in the background.
        """
        mapping = self.find_by_phone(owner_user_id, sender_phone) if sender_phone else None
        if mapping is None and is_group and group_id:
            mapping = self.find_by_group(owner_user_id, group_id)

        if mapping is None:
            return SenderCheck(allowed=True, reason="NO_MAPPING", is_unregistered=True)

        if sender_name and mapping.display_name != sender_name:
            self._background.spawn(
                asyncio.to_thread(self.update_display_name, mapping.id, sender_name),
                f"display name capture for mapping {mapping.id}",
            )

        if not mapping.is_bot_enabled:
            return SenderCheck(allowed=False, reason=OwnershipCase.BOT_DISABLED, mapping=mapping)

        if mapping.is_auto_suspended:
            return SenderCheck(allowed=False, reason=OwnershipCase.SUSPENDED, mapping=mapping)

        self.record_activity(mapping.id)
        return SenderCheck(allowed=True, reason="OK", mapping=mapping)

    def get_stats(self, owner_user_id: str) -> MappingStats:
        total = self._db.count_mappings(owner_user_id)
        verified = self._db.count_mappings(owner_user_id, is_verified=True)
        bot_enabled = self._db.count_mappings(owner_user_id, is_bot_enabled=True)
        suspended = self._db.count_mappings(owner_user_id, is_auto_suspended=True)
        return MappingStats(
            total=total,
            verified=verified,
            unverified=total - verified,
            bot_enabled=bot_enabled,
            bot_disabled=total - bot_enabled,
            suspended=suspended,
        )

    def bulk_import(self, owner_user_id: str, rows: list[dict[str, Any]]) -> BulkImportResult:
        """
        Create many mappings, collecting per-row failures instead of stopping.

        Each row takes the keyword arguments of ``create_mapping`` plus
        ``panel_username``.
        """
        result = BulkImportResult()
        for row in rows:
            data = dict(row)
            username = data.pop("panel_username", None) or ""
            try:
                self.create_mapping(owner_user_id, username, **data)
                result.success += 1
            except (ValueError, TypeError, DuplicateMappingError) as e:
                result.failed += 1
                result.errors.append({"username": username, "error": str(e)})
        logger.info(f"Bulk import for owner {owner_user_id}: {result.success} created, {result.failed} failed")
        return result
