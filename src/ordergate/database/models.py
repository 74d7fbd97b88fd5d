"""
Database models for ordergate.

This module defines SQLModel schemas for the authorization engine: per-owner
security settings, the order view used for claims, command cooldowns,
username-to-phone mappings and ephemeral conversation states.

Collection fields are stored in JSON columns and exposed as plain Python
lists/dicts. Always assign a new list instead of mutating in place so that
SQLAlchemy notices the change.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class ClaimMode(StrEnum):
    DISABLED = "disabled"
    AUTO = "auto"
    EMAIL = "email"


class GroupSecurityMode(StrEnum):
    NONE = "none"
    VERIFIED = "verified"
    DISABLED = "disabled"


class UsernameValidationMode(StrEnum):
    DISABLED = "disabled"
    ASK = "ask"
    STRICT = "strict"


class VerifiedBy(StrEnum):
    ADMIN = "ADMIN"
    WHATSAPP = "WHATSAPP"
    SELF = "SELF"
    AUTO = "AUTO"


class StateType(StrEnum):
    USERNAME_VERIFICATION = "USERNAME_VERIFICATION"
    REGISTRATION = "REGISTRATION"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"


class ConversationStep(StrEnum):
    AWAITING_USERNAME = "AWAITING_USERNAME"
    AWAITING_EMAIL = "AWAITING_EMAIL"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"


class PanelType(StrEnum):
    STANDARD = "STANDARD"
    RENTAL = "RENTAL"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """
    Return a timezone-aware UTC datetime.

    SQLite returns naive datetimes; every stored value is UTC, so naive
    values get UTC attached rather than converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BotSecuritySettings(SQLModel, table=True):
    """
    Per-owner security settings for the command gate.

    Created lazily with defaults on first access.

    Attributes:
        owner_user_id: Panel owner the settings belong to (unique).
        claim_mode: Order claim policy (disabled, auto, email).
        group_security_mode: Whether and how commands are allowed in groups.
        username_validation_mode: Whether senders must prove the order username.
        max_commands_per_minute: Per-sender command ceiling (0 blocks everything).
        command_cooldown_secs: Suppression window after a successful command.
        staff_override_enabled: Master switch for staff override groups.
        staff_override_groups: Group ids that bypass every check.
    """

    __tablename__ = "bot_security_settings"

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: str = Field(index=True, unique=True)
    claim_mode: str = Field(default=ClaimMode.DISABLED)
    group_security_mode: str = Field(default=GroupSecurityMode.NONE)
    username_validation_mode: str = Field(default=UsernameValidationMode.DISABLED)
    max_commands_per_minute: int = Field(default=10)
    command_cooldown_secs: int = Field(default=300)
    staff_override_enabled: bool = Field(default=False)
    staff_override_groups: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)


class Panel(SQLModel, table=True):
    """
    An SMM panel connection with optional admin API credentials.

    Only the fields needed to look up order usernames and validate
    registrations are modelled here.
    """

    __tablename__ = "panels"

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: str = Field(index=True)
    name: str
    admin_api_base_url: str | None = Field(default=None)
    admin_api_key: str | None = Field(default=None)
    panel_type: str = Field(default=PanelType.STANDARD)


class Order(SQLModel, table=True):
    """
    View of an order as synced from the upstream panel.

    Ingestion owns most fields; the claim fields are written only through
    ``DatabaseService.claim_order``.
    """

    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: str = Field(index=True)
    panel_id: int | None = Field(default=None, foreign_key="panels.id")
    external_order_id: str = Field(index=True)
    customer_username: str | None = Field(default=None)
    customer_email: str | None = Field(default=None)
    claimed_by_phone: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None)
    is_verified: bool = Field(default=False)


class CommandCooldown(SQLModel, table=True):
    """
    Suppression window for a command on an order.

    Keyed by (order_id, command): while a row is unexpired it blocks every
    sender, not only the one who ran the command.
    """

    __tablename__ = "command_cooldowns"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(index=True)
    command: str = Field(index=True)
    sender_phone: str
    owner_user_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)


class UserPanelMapping(SQLModel, table=True):
    """
    Directory entry binding a panel username to WhatsApp numbers and groups.

    ``panel_username_key`` is the lower-cased username; the unique constraint
    on (owner_user_id, panel_username_key) makes usernames unique per owner
    regardless of case.
    """

    __tablename__ = "user_panel_mappings"
    __table_args__ = (
        UniqueConstraint("owner_user_id", "panel_username_key", name="uix_owner_username"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: str = Field(index=True)
    panel_id: int | None = Field(default=None)
    panel_username: str
    panel_username_key: str = Field(index=True)
    panel_email: str | None = Field(default=None)
    whatsapp_numbers: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    group_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    display_name: str | None = Field(default=None)
    is_bot_enabled: bool = Field(default=True)
    is_verified: bool = Field(default=False)
    verified_by: str | None = Field(default=None)
    verified_at: datetime | None = Field(default=None)
    admin_notes: str | None = Field(default=None)
    is_auto_suspended: bool = Field(default=False)
    suspended_at: datetime | None = Field(default=None)
    suspend_reason: str | None = Field(default=None)
    spam_count: int = Field(default=0)
    last_spam_at: datetime | None = Field(default=None)
    total_messages: int = Field(default=0)
    last_message_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationState(SQLModel, table=True):
    """
    Ephemeral multi-step dialog with a sender.

    At most one row exists per (sender_phone, owner_user_id, state_type).
    Expiry is checked at read time; a periodic sweep deletes stale rows.
    """

    __tablename__ = "conversation_states"
    __table_args__ = (
        UniqueConstraint("sender_phone", "owner_user_id", "state_type", name="uix_sender_owner_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    sender_phone: str = Field(index=True)
    owner_user_id: str = Field(index=True)
    state_type: str
    current_step: str
    context_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
