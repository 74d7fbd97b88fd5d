"""
Database service for ordergate.

This module wraps the SQLite engine and exposes the persistence operations
used by the authorization components. Writes that must not race (order
claims, mapping creation, conversation replacement, activity counters) are
expressed as single conditional statements or guarded by unique constraints.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import String, cast, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from ordergate.database.models import (
    BotSecuritySettings,
    CommandCooldown,
    ConversationState,
    Order,
    Panel,
    UserPanelMapping,
    utcnow,
)
from ordergate.errors import DuplicateMappingError, MappingNotFoundError

if TYPE_CHECKING:
    from ordergate.security_settings import SecuritySettingsUpdate

logger = logging.getLogger(__name__)


class DatabaseService:
    """
    Persistence operations for settings, orders, cooldowns, mappings and
    conversation states.

    Every method opens its own short-lived session; returned model instances
    are detached and safe to read after the call.
    """

    def __init__(self, database_path: str) -> None:
        """
        Create the engine and ensure all tables exist.

        Args:
            database_path: Path to the SQLite database file. Parent
                directories are created if missing.
        """
        Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(f"sqlite:///{database_path}")
        SQLModel.metadata.create_all(self._engine)
        logger.info(f"Database initialized at {database_path}")

    # ==================== SECURITY SETTINGS ====================

    def get_security_settings(self, owner_user_id: str) -> BotSecuritySettings:
        """
        Get an owner's security settings, creating defaults on first access.

        Args:
            owner_user_id: Panel owner ID.

        Returns:
            BotSecuritySettings: Existing or newly created settings.
        """
        with Session(self._engine) as session:
            stmt = select(BotSecuritySettings).where(
                BotSecuritySettings.owner_user_id == owner_user_id
            )
            record = session.exec(stmt).first()
            if record:
                return record

            record = BotSecuritySettings(owner_user_id=owner_user_id)
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently by another caller
                session.rollback()
                return session.exec(stmt).one()
            session.refresh(record)
            logger.info(f"Created default security settings for owner {owner_user_id}")
            return record

    def update_security_settings(
        self, owner_user_id: str, changes: "SecuritySettingsUpdate"
    ) -> BotSecuritySettings:
        """
        Apply a validated partial update to an owner's security settings.

        Only fields explicitly set on ``changes`` are written.
        """
        self.get_security_settings(owner_user_id)
        with Session(self._engine) as session:
            stmt = select(BotSecuritySettings).where(
                BotSecuritySettings.owner_user_id == owner_user_id
            )
            record = session.exec(stmt).one()
            for field, value in changes.model_dump(exclude_unset=True).items():
                setattr(record, field, value)
            record.updated_at = utcnow()
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    # ==================== PANELS & ORDERS ====================

    def add_panel(self, panel: Panel) -> Panel:
        with Session(self._engine) as session:
            session.add(panel)
            session.commit()
            session.refresh(panel)
            return panel

    def get_panel(self, panel_id: int) -> Panel | None:
        with Session(self._engine) as session:
            return session.get(Panel, panel_id)

    def get_panels_for_owner(self, owner_user_id: str) -> list[Panel]:
        with Session(self._engine) as session:
            stmt = select(Panel).where(Panel.owner_user_id == owner_user_id)
            return list(session.exec(stmt).all())

    def add_order(self, order: Order) -> Order:
        with Session(self._engine) as session:
            session.add(order)
            session.commit()
            session.refresh(order)
            return order

    def get_order(self, order_id: int) -> Order | None:
        with Session(self._engine) as session:
            return session.get(Order, order_id)

    def get_order_by_external_id(self, owner_user_id: str, external_order_id: str) -> Order | None:
        with Session(self._engine) as session:
            stmt = select(Order).where(
                Order.owner_user_id == owner_user_id,
                Order.external_order_id == external_order_id,
            )
            return session.exec(stmt).first()

    def set_order_customer_username(self, order_id: int, customer_username: str) -> None:
        """
        Persist a customer username fetched from the panel admin API.

        Raises:
            ValueError: If the order does not exist.
        """
        with Session(self._engine) as session:
            record = session.get(Order, order_id)
            if not record:
                raise ValueError(f"No order with id={order_id}")
            record.customer_username = customer_username
            session.add(record)
            session.commit()

    def claim_order(self, order_id: int, phone: str, now: datetime | None = None) -> bool:
        """
        Claim an order for a phone number if it is still unclaimed.

        The claim is a single conditional UPDATE, so of two concurrent
        claimants exactly one succeeds.

        Args:
            order_id: Internal order ID.
            phone: Claiming phone number.
            now: Claim timestamp (defaults to current UTC time).

        Returns:
            bool: True if this call claimed the order, False if it was
                already claimed (by anyone) or does not exist.
        """
        now = now or utcnow()
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.claimed_by_phone.is_(None))
            .values(claimed_by_phone=phone, claimed_at=now, is_verified=True)
        )
        with Session(self._engine) as session:
            result = session.connection().execute(stmt)
            session.commit()
            return result.rowcount == 1

    # ==================== COMMAND COOLDOWNS ====================

    def get_active_cooldown(
        self, order_id: int, command: str, now: datetime | None = None
    ) -> CommandCooldown | None:
        """Get the latest-expiring unexpired cooldown for an (order, command) pair."""
        now = now or utcnow()
        with Session(self._engine) as session:
            stmt = (
                select(CommandCooldown)
                .where(
                    CommandCooldown.order_id == order_id,
                    CommandCooldown.command == command,
                    CommandCooldown.expires_at > now,
                )
                .order_by(CommandCooldown.expires_at.desc())
            )
            return session.exec(stmt).first()

    def add_cooldown(self, cooldown: CommandCooldown) -> CommandCooldown:
        with Session(self._engine) as session:
            session.add(cooldown)
            session.commit()
            session.refresh(cooldown)
            return cooldown

    def delete_expired_cooldowns(self, now: datetime | None = None) -> int:
        """
        Delete cooldowns whose expiry is in the past.

        Returns:
            int: Number of deleted rows.
        """
        now = now or utcnow()
        stmt = delete(CommandCooldown).where(CommandCooldown.expires_at < now)
        with Session(self._engine) as session:
            result = session.connection().execute(stmt)
            session.commit()
            return result.rowcount

    # ==================== USER PANEL MAPPINGS ====================

    def get_mapping(self, mapping_id: int, owner_user_id: str | None = None) -> UserPanelMapping | None:
        with Session(self._engine) as session:
            record = session.get(UserPanelMapping, mapping_id)
            if record and owner_user_id is not None and record.owner_user_id != owner_user_id:
                return None
            return record

    def find_mapping_by_username(self, owner_user_id: str, panel_username: str) -> UserPanelMapping | None:
        """Find a mapping by panel username, case-insensitively."""
        key = panel_username.strip().lower()
        with Session(self._engine) as session:
            stmt = select(UserPanelMapping).where(
                UserPanelMapping.owner_user_id == owner_user_id,
                UserPanelMapping.panel_username_key == key,
            )
            return session.exec(stmt).first()

    def find_mappings_with_phone(self, owner_user_id: str, phone: str) -> list[UserPanelMapping]:
        """
        Find mappings whose number list contains ``phone`` exactly.

        The JSON text match narrows candidates; membership is re-checked in
        Python so partial matches are discarded.
        """
        with Session(self._engine) as session:
            stmt = (
                select(UserPanelMapping)
                .where(
                    UserPanelMapping.owner_user_id == owner_user_id,
                    cast(UserPanelMapping.whatsapp_numbers, String).contains(f'"{phone}"'),
                )
                .order_by(UserPanelMapping.updated_at.desc())
            )
            return [m for m in session.exec(stmt).all() if phone in (m.whatsapp_numbers or [])]

    def find_mappings_with_group(self, owner_user_id: str, group_id: str) -> list[UserPanelMapping]:
        with Session(self._engine) as session:
            stmt = (
                select(UserPanelMapping)
                .where(
                    UserPanelMapping.owner_user_id == owner_user_id,
                    cast(UserPanelMapping.group_ids, String).contains(f'"{group_id}"'),
                )
                .order_by(UserPanelMapping.updated_at.desc())
            )
            return [m for m in session.exec(stmt).all() if group_id in (m.group_ids or [])]

    def list_mappings(
        self,
        owner_user_id: str,
        *,
        search: str | None = None,
        is_verified: bool | None = None,
        is_bot_enabled: bool | None = None,
        is_auto_suspended: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[UserPanelMapping]:
        with Session(self._engine) as session:
            stmt = select(UserPanelMapping).where(UserPanelMapping.owner_user_id == owner_user_id)
            if search:
                needle = search.strip().lower()
                stmt = stmt.where(
                    UserPanelMapping.panel_username_key.contains(needle)
                    | cast(UserPanelMapping.whatsapp_numbers, String).contains(needle)
                    | func.lower(UserPanelMapping.display_name).like(f"%{needle}%")
                    | func.lower(UserPanelMapping.panel_email).like(f"%{needle}%")
                )
            if is_verified is not None:
                stmt = stmt.where(UserPanelMapping.is_verified == is_verified)
            if is_bot_enabled is not None:
                stmt = stmt.where(UserPanelMapping.is_bot_enabled == is_bot_enabled)
            if is_auto_suspended is not None:
                stmt = stmt.where(UserPanelMapping.is_auto_suspended == is_auto_suspended)
            stmt = stmt.order_by(UserPanelMapping.created_at.desc()).offset(offset).limit(limit)
            return list(session.exec(stmt).all())

    def count_mappings(self, owner_user_id: str, **filters: bool) -> int:
        with Session(self._engine) as session:
            stmt = select(func.count()).select_from(UserPanelMapping).where(
                UserPanelMapping.owner_user_id == owner_user_id
            )
            for field, value in filters.items():
                stmt = stmt.where(getattr(UserPanelMapping, field) == value)
            return session.exec(stmt).one()

    def save_mapping(self, mapping: UserPanelMapping) -> UserPanelMapping:
        """
        Insert or update a mapping.

        Raises:
            DuplicateMappingError: If another mapping of the same owner
                already uses this panel username (case-insensitive).
        """
        mapping.panel_username_key = mapping.panel_username.strip().lower()
        mapping.updated_at = utcnow()
        with Session(self._engine) as session:
            merged = session.merge(mapping)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateMappingError(
                    f"Mapping for panel username '{mapping.panel_username}' already exists"
                ) from e
            session.refresh(merged)
            return merged

    def record_mapping_activity(self, mapping_id: int, now: datetime | None = None) -> None:
        """Atomically bump a mapping's message counter and last-seen time."""
        now = now or utcnow()
        stmt = (
            update(UserPanelMapping)
            .where(UserPanelMapping.id == mapping_id)
            .values(
                total_messages=UserPanelMapping.total_messages + 1,
                last_message_at=now,
            )
        )
        with Session(self._engine) as session:
            session.connection().execute(stmt)
            session.commit()

    def delete_mapping(self, mapping_id: int, owner_user_id: str) -> None:
        """
        Raises:
            MappingNotFoundError: If the mapping does not exist for this owner.
        """
        with Session(self._engine) as session:
            record = session.get(UserPanelMapping, mapping_id)
            if not record or record.owner_user_id != owner_user_id:
                raise MappingNotFoundError(f"Mapping {mapping_id} not found")
            session.delete(record)
            session.commit()

    # ==================== CONVERSATION STATES ====================

    def get_active_conversation(
        self,
        sender_phone: str,
        owner_user_id: str,
        state_type: str | None = None,
        now: datetime | None = None,
    ) -> ConversationState | None:
        """Get the newest unexpired conversation for a sender, optionally of one type."""
        now = now or utcnow()
        with Session(self._engine) as session:
            stmt = select(ConversationState).where(
                ConversationState.sender_phone == sender_phone,
                ConversationState.owner_user_id == owner_user_id,
                ConversationState.expires_at > now,
            )
            if state_type is not None:
                stmt = stmt.where(ConversationState.state_type == state_type)
            stmt = stmt.order_by(ConversationState.created_at.desc())
            return session.exec(stmt).first()

    def replace_conversation(self, state: ConversationState) -> ConversationState:
        """
        Store a conversation, deleting any prior one of the same
        (sender, owner, type) in the same transaction.
        """
        with Session(self._engine) as session:
            session.connection().execute(
                delete(ConversationState).where(
                    ConversationState.sender_phone == state.sender_phone,
                    ConversationState.owner_user_id == state.owner_user_id,
                    ConversationState.state_type == state.state_type,
                )
            )
            session.add(state)
            session.commit()
            session.refresh(state)
            return state

    def update_conversation(
        self,
        conversation_id: int,
        *,
        current_step: str | None = None,
        context_data: dict | None = None,
        expires_at: datetime | None = None,
    ) -> ConversationState:
        """
        Raises:
            ValueError: If the conversation no longer exists.
        """
        with Session(self._engine) as session:
            record = session.get(ConversationState, conversation_id)
            if not record:
                raise ValueError(f"No conversation with id={conversation_id}")
            if current_step is not None:
                record.current_step = current_step
            if context_data is not None:
                record.context_data = dict(context_data)
            if expires_at is not None:
                record.expires_at = expires_at
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def delete_conversation(self, conversation_id: int) -> None:
        with Session(self._engine) as session:
            session.connection().execute(
                delete(ConversationState).where(ConversationState.id == conversation_id)
            )
            session.commit()

    def delete_conversations(
        self, sender_phone: str, owner_user_id: str, state_type: str | None = None
    ) -> int:
        stmt = delete(ConversationState).where(
            ConversationState.sender_phone == sender_phone,
            ConversationState.owner_user_id == owner_user_id,
        )
        if state_type is not None:
            stmt = stmt.where(ConversationState.state_type == state_type)
        with Session(self._engine) as session:
            result = session.connection().execute(stmt)
            session.commit()
            return result.rowcount

    def delete_expired_conversations(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        stmt = delete(ConversationState).where(ConversationState.expires_at < now)
        with Session(self._engine) as session:
            result = session.connection().execute(stmt)
            session.commit()
            return result.rowcount


_database: DatabaseService | None = None


def init_database(database_path: str) -> DatabaseService:
    """
    Initialize the process-wide database service.

    Must be called once at application startup.
    """
    global _database
    _database = DatabaseService(database_path)
    return _database


def get_database() -> DatabaseService:
    """
    Get the process-wide database service.

    Raises:
        RuntimeError: If init_database() hasn't been called.
    """
    if _database is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _database


def reset_database() -> None:
    """Reset the database singleton (for testing)."""
    global _database
    if _database is not None:
        _database._engine.dispose()
    _database = None
