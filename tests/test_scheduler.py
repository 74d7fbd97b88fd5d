"""
Tests for the scheduler service.

Tests the expired-record sweep and scheduler initialization.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from ordergate.database.models import CommandCooldown, ConversationState
from ordergate.database.service import get_database, init_database, reset_database
from ordergate.services.scheduler import run_sweep_job, start_scheduler, sweep_expired_records

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_service():
    with tempfile.TemporaryDirectory() as tmpdir:
        init_database(str(Path(tmpdir) / "test.db"))
        yield get_database()
        reset_database()


class TestSweepExpiredRecords:
    def test_deletes_only_expired_rows(self, db_service):
        for minutes in (-5, 5):
            db_service.add_cooldown(
                CommandCooldown(
                    order_id=1,
                    command="REFILL",
                    sender_phone="1",
                    owner_user_id="owner-1",
                    expires_at=NOW + timedelta(minutes=minutes),
                )
            )
        db_service.replace_conversation(
            ConversationState(
                sender_phone="1",
                owner_user_id="owner-1",
                state_type="REGISTRATION",
                current_step="AWAITING_USERNAME",
                expires_at=NOW - timedelta(minutes=1),
            )
        )

        result = sweep_expired_records(db_service, NOW)

        assert result.cooldowns == 1
        assert result.conversations == 1
        assert db_service.get_active_cooldown(1, "REFILL", NOW) is not None

    def test_nothing_to_sweep(self, db_service):
        result = sweep_expired_records(db_service, NOW)

        assert result.cooldowns == 0
        assert result.conversations == 0


class TestRunSweepJob:
    def test_errors_are_logged_not_raised(self):
        mock_db = MagicMock()
        mock_db.delete_expired_cooldowns.side_effect = RuntimeError("database is locked")

        with patch("ordergate.services.scheduler.logger") as mock_logger:
            run_sweep_job(mock_db)

        mock_logger.error.assert_called_once()


class TestStartScheduler:
    def test_registers_sweep_job(self):
        mock_db = MagicMock()

        with patch.object(BackgroundScheduler, "start") as mock_start:
            scheduler = start_scheduler(mock_db, interval_seconds=60)

        mock_start.assert_called_once()
        job = scheduler.get_job("sweep_expired_job")
        assert job is not None
        assert job.func is run_sweep_job
        assert job.args == (mock_db,)
        assert job.trigger.interval == timedelta(seconds=60)
