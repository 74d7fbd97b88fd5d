"""
Staff override groups.

Commands sent from an allow-listed group skip every authorization check.
The allow-list and its on/off switch live in the owner's security settings.
"""

import logging
from dataclasses import dataclass

from ordergate.database.service import DatabaseService
from ordergate.security_settings import SecuritySettingsUpdate, apply_security_settings_update

logger = logging.getLogger(__name__)


@dataclass
class StaffOverrideConfig:
    enabled: bool
    groups: list[str]


class StaffOverrideRegistry:
    def __init__(self, db: DatabaseService) -> None:
        self._db = db

    def is_override_group(self, owner_user_id: str, group_jid: str | None) -> bool:
        """
        Check whether ``group_jid`` bypasses authorization for this owner.

        Lookup failures count as "not an override group".
        """
        if not group_jid:
            return False
        try:
            settings = self._db.get_security_settings(owner_user_id)
        except Exception:
            logger.error(f"Failed to load staff override settings for owner {owner_user_id}", exc_info=True)
            return False
        return settings.staff_override_enabled and group_jid in (settings.staff_override_groups or [])

    def get_config(self, owner_user_id: str) -> StaffOverrideConfig:
        settings = self._db.get_security_settings(owner_user_id)
        return StaffOverrideConfig(
            enabled=settings.staff_override_enabled,
            groups=list(settings.staff_override_groups or []),
        )

    def list_groups(self, owner_user_id: str) -> list[str]:
        return self.get_config(owner_user_id).groups

    def set_enabled(self, owner_user_id: str, enabled: bool) -> StaffOverrideConfig:
        apply_security_settings_update(
            self._db, owner_user_id, SecuritySettingsUpdate(staff_override_enabled=enabled)
        )
        return self.get_config(owner_user_id)

    def set_groups(self, owner_user_id: str, groups: list[str]) -> list[str]:
        """
        Replace the allow-list.

        Raises:
            pydantic.ValidationError: If a group id is blank.
        """
        settings = apply_security_settings_update(
            self._db, owner_user_id, SecuritySettingsUpdate(staff_override_groups=groups)
        )
        return list(settings.staff_override_groups)

    def add_group(self, owner_user_id: str, group_jid: str) -> list[str]:
        groups = self.list_groups(owner_user_id)
        if group_jid.strip() in groups:
            return groups
        return self.set_groups(owner_user_id, [*groups, group_jid])

    def remove_group(self, owner_user_id: str, group_jid: str) -> list[str]:
        groups = self.list_groups(owner_user_id)
        if group_jid not in groups:
            return groups
        return self.set_groups(owner_user_id, [g for g in groups if g != group_jid])
