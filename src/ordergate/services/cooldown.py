"""
Per-(order, command) cooldowns.

After a command succeeds on an order, the same command is suppressed for the
owner's cooldown period for every sender, not only for the one who ran it.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from ordergate.database.models import CommandCooldown, as_utc, utcnow
from ordergate.database.service import DatabaseService

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECS = 300


@dataclass
class CooldownCheck:
    blocked: bool
    remaining_seconds: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)


class CooldownStore:
    """Durable cooldown records with expiry."""

    def __init__(self, db: DatabaseService) -> None:
        self._db = db

    @staticmethod
    def _normalize_command(command: str) -> str:
        return command.strip().upper()

    def check(self, order_id: int, command: str, now: datetime | None = None) -> CooldownCheck:
        """
        Check whether a command on an order is cooling down.

        Args:
            order_id: Internal order ID.
            command: Command name (case-insensitive).
            now: Reference time (defaults to current UTC time).

        Returns:
            CooldownCheck: blocked plus seconds left until the cooldown ends.
        """
        now = now or utcnow()
        cooldown = self._db.get_active_cooldown(order_id, self._normalize_command(command), now)
        if cooldown is None:
            return CooldownCheck(blocked=False)

        remaining = (as_utc(cooldown.expires_at) - as_utc(now)).total_seconds()
        return CooldownCheck(blocked=True, remaining_seconds=max(1, math.ceil(remaining)))

    def create(
        self,
        order_id: int,
        command: str,
        sender_phone: str,
        owner_user_id: str,
        duration_secs: int = DEFAULT_COOLDOWN_SECS,
        now: datetime | None = None,
    ) -> CommandCooldown | None:
        """
        Record a cooldown after a command succeeded.

        A zero duration records nothing.

        Returns:
            CommandCooldown | None: The stored cooldown, or None for zero duration.
        """
        if duration_secs <= 0:
            return None
        now = now or utcnow()
        cooldown = self._db.add_cooldown(
            CommandCooldown(
                order_id=order_id,
                command=self._normalize_command(command),
                sender_phone=sender_phone,
                owner_user_id=owner_user_id,
                created_at=now,
                expires_at=now + timedelta(seconds=duration_secs),
            )
        )
        logger.info(f"Cooldown created for {cooldown.command} on order {order_id} ({duration_secs}s)")
        return cooldown

    def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Delete expired cooldowns.

        Returns:
            int: Number of deleted cooldowns.
        """
        count = self._db.delete_expired_cooldowns(now)
        if count > 0:
            logger.info(f"Cleaned up {count} expired cooldowns")
        return count
