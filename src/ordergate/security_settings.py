"""
Per-owner security settings updates.

Owners change their gate configuration through ``SecuritySettingsUpdate``,
an explicit, validated partial update. Fields left unset are not touched.
"""

import logging

from pydantic import BaseModel, ConfigDict, field_validator

from ordergate.database.models import (
    BotSecuritySettings,
    ClaimMode,
    GroupSecurityMode,
    UsernameValidationMode,
)
from ordergate.database.service import DatabaseService

logger = logging.getLogger(__name__)

MAX_COOLDOWN_SECS = 86400


class SecuritySettingsUpdate(BaseModel):
    """
    Partial update of an owner's BotSecuritySettings.

    Unknown keys are rejected instead of being merged silently.
    """

    model_config = ConfigDict(extra="forbid")

    claim_mode: ClaimMode | None = None
    group_security_mode: GroupSecurityMode | None = None
    username_validation_mode: UsernameValidationMode | None = None
    max_commands_per_minute: int | None = None
    command_cooldown_secs: int | None = None
    staff_override_enabled: bool | None = None
    staff_override_groups: list[str] | None = None

    @field_validator("max_commands_per_minute")
    @classmethod
    def max_commands_must_be_non_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("max_commands_per_minute must be >= 0")
        return v

    @field_validator("command_cooldown_secs")
    @classmethod
    def cooldown_must_be_in_range(cls, v: int | None) -> int | None:
        if v is not None and not (0 <= v <= MAX_COOLDOWN_SECS):
            raise ValueError(f"command_cooldown_secs must be between 0 and {MAX_COOLDOWN_SECS}")
        return v

    @field_validator("staff_override_groups")
    @classmethod
    def groups_must_be_unique_non_blank(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        if any(not group.strip() for group in v):
            raise ValueError("staff_override_groups must not contain blank group ids")
        # Deduplicate, keeping first-seen order
        return list(dict.fromkeys(group.strip() for group in v))


def apply_security_settings_update(
    db: DatabaseService, owner_user_id: str, changes: SecuritySettingsUpdate
) -> BotSecuritySettings:
    """
    Validate-then-write entry point for settings changes.

    Args:
        db: Database service.
        owner_user_id: Panel owner ID.
        changes: Validated partial update.

    Returns:
        BotSecuritySettings: The stored settings after the update.
    """
    changed = sorted(changes.model_dump(exclude_unset=True))
    record = db.update_security_settings(owner_user_id, changes)
    logger.info(f"Updated security settings for owner {owner_user_id}: {', '.join(changed) or 'nothing'}")
    return record
