"""
Main entry point for ordergate.

``build_gate`` is the composition root: hosts call it once and share the
returned components. ``main`` runs the standalone maintenance process that
sweeps expired cooldowns and conversation states.
"""

import logging
from dataclasses import dataclass

import logfire
from apscheduler.schedulers.blocking import BlockingScheduler

from ordergate.config import Settings, get_settings
from ordergate.database.service import DatabaseService, init_database
from ordergate.services.admin_api import AdminApiClient
from ordergate.services.background import BackgroundTasks
from ordergate.services.claims import ClaimRegistry
from ordergate.services.conversation import ConversationStateMachine
from ordergate.services.cooldown import CooldownStore
from ordergate.services.gate import CommandGate
from ordergate.services.mapping_resolver import MappingResolver
from ordergate.services.pipeline import AuthorizationPipeline
from ordergate.services.rate_limiter import RateLimiter
from ordergate.services.scheduler import run_sweep_job
from ordergate.services.staff_override import StaffOverrideRegistry
from ordergate.services.username_validator import UsernameValidator


def configure_logging() -> None:
    """
    Configure logging with Logfire integration.

    - Only logs INFO level and above
    - In local dev: console output only (send_to_logfire=False)
    - In production: sends to Logfire only if LOGFIRE_TOKEN is set
    - Suppresses per-request logs from httpx/httpcore used by the admin API client
    """
    # Configure basic logging FIRST to capture Settings initialization logs
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO,
        force=True,
    )

    settings = get_settings()
    send_to_logfire = settings.logfire_enabled and settings.logfire_token is not None

    logfire.configure(
        token=settings.logfire_token,
        service_name=settings.logfire_service_name,
        environment=settings.logfire_environment,
        send_to_logfire=send_to_logfire,
        console=logfire.ConsoleOptions(
            colors="auto",
            include_timestamps=True,
            min_log_level="info",
        ),
        inspect_arguments=False,
    )

    # Reconfigure logging with Logfire handler
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        handlers=[logfire.LogfireLoggingHandler()],
        force=True,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if send_to_logfire:
        logger.info(f"Logfire enabled - sending logs to {settings.logfire_environment}")
    else:
        logger.info("Logfire disabled - console output only")


logger = logging.getLogger(__name__)


@dataclass
class Components:
    gate: CommandGate
    pipeline: AuthorizationPipeline
    conversations: ConversationStateMachine
    resolver: MappingResolver
    claims: ClaimRegistry
    cooldowns: CooldownStore
    staff_overrides: StaffOverrideRegistry
    admin_api: AdminApiClient
    background: BackgroundTasks


def build_gate(settings: Settings, db: DatabaseService) -> Components:
    """
    Construct every authorization component once, wired together.

    Args:
        settings: Process settings.
        db: Initialized database service.

    Returns:
        Components: The command gate plus the components behind it.
    """
    admin_api = AdminApiClient(timeout_seconds=settings.admin_api_timeout_seconds)
    background = BackgroundTasks()
    claims = ClaimRegistry(db)
    cooldowns = CooldownStore(db)
    resolver = MappingResolver(
        db,
        admin_api=admin_api,
        background=background,
        auto_suspend_threshold=settings.spam_auto_suspend_threshold,
    )
    conversations = ConversationStateMachine(
        db,
        claims,
        resolver,
        admin_api=admin_api,
        expiry=settings.conversation_expiry_timedelta,
        username_max_attempts=settings.username_max_attempts,
        registration_max_attempts=settings.registration_max_attempts,
        support_contact=settings.support_contact,
    )
    staff_overrides = StaffOverrideRegistry(db)
    pipeline = AuthorizationPipeline(
        db,
        RateLimiter(),
        cooldowns,
        claims,
        UsernameValidator(),
        resolver,
        user_mapping_enabled=settings.user_mapping_enabled,
    )
    gate = CommandGate(db, pipeline, conversations, claims, cooldowns, resolver, staff_overrides)
    return Components(
        gate=gate,
        pipeline=pipeline,
        conversations=conversations,
        resolver=resolver,
        claims=claims,
        cooldowns=cooldowns,
        staff_overrides=staff_overrides,
        admin_api=admin_api,
        background=background,
    )


def main() -> None:
    """
    Run the maintenance process.

    This function:
    1. Configures logging with Logfire integration
    2. Loads configuration from environment
    3. Initializes the SQLite database
    4. Runs the expired-record sweep on a blocking scheduler
    """
    configure_logging()

    settings = get_settings()
    db = init_database(settings.database_path)

    scheduler = BlockingScheduler()
    scheduler.add_job(
        run_sweep_job,
        "interval",
        seconds=settings.sweep_interval_seconds,
        args=[db],
        id="sweep_expired_job",
        name="Delete expired cooldowns and conversation states",
    )

    logger.info(f"Maintenance started. Sweeping every {settings.sweep_interval_seconds} seconds")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Maintenance stopped")


if __name__ == "__main__":
    main()
