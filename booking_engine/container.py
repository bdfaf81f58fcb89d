"""
Explicit construction of repositories and services.

The FastAPI lifespan and the background worker both build one container per
process; everything below it receives its collaborators through constructors.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from booking_engine.config import Settings
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.repositories.availability_rule_repository import AvailabilityRuleRepository
from booking_engine.repositories.booking_settings_repository import BookingSettingsRepository
from booking_engine.repositories.calendar_event_repository import CalendarEventRepository
from booking_engine.repositories.calendar_provider_repository import CalendarProviderRepository
from booking_engine.repositories.sync_job_repository import SyncJobRepository
from booking_engine.repositories.user_repository import UserRepository
from booking_engine.services.calendar.availability_rule_service import AvailabilityRuleService
from booking_engine.services.calendar.availability_service import AvailabilityService
from booking_engine.services.calendar.booking_service import BookingService
from booking_engine.services.calendar.google_client import GoogleCalendarService
from booking_engine.services.calendar.provider_client import ProviderCalendarClient
from booking_engine.services.calendar.provider_service import CalendarProviderService
from booking_engine.services.calendar.sync_service import SyncService
from booking_engine.services.google_oauth_service import GoogleOAuthService
from booking_engine.services.infrastructure.redis_client import RedisClient
from booking_engine.services.token_service import TokenService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: DatabasePoolManager
    redis: RedisClient
    rules: AvailabilityRuleRepository
    events: CalendarEventRepository
    providers: CalendarProviderRepository
    booking_settings: BookingSettingsRepository
    users: UserRepository
    jobs: SyncJobRepository
    calendar_api: GoogleCalendarService
    token_service: TokenService
    availability: AvailabilityService
    availability_rules: AvailabilityRuleService
    booking: BookingService
    sync: SyncService
    provider_service: CalendarProviderService

    @classmethod
    def build(
        cls, settings: Settings, db: DatabasePoolManager, redis: RedisClient
    ) -> "ServiceContainer":
        rules = AvailabilityRuleRepository(db)
        events = CalendarEventRepository(db)
        providers = CalendarProviderRepository(db)
        booking_settings = BookingSettingsRepository(db)
        users = UserRepository(db)
        jobs = SyncJobRepository(db)

        oauth = GoogleOAuthService(settings)
        calendar_api = GoogleCalendarService()
        token_service = TokenService(
            providers, oauth, buffer_minutes=settings.TOKEN_EXPIRY_BUFFER_MINUTES
        )
        calendar_client = ProviderCalendarClient(calendar_api, token_service)

        availability = AvailabilityService(
            rules,
            events,
            booking_settings,
            users,
            strict_timezones=settings.STRICT_TIMEZONE_VALIDATION,
        )
        availability_rules = AvailabilityRuleService(rules)
        booking = BookingService(events, booking_settings, providers, jobs, users)
        sync = SyncService(
            providers,
            events,
            calendar_client,
            redis,
            past_days=settings.SYNC_PAST_DAYS,
            future_days=settings.SYNC_FUTURE_DAYS,
            page_size=settings.SYNC_PAGE_SIZE,
            lock_ttl_s=settings.SYNC_LOCK_TTL_SECONDS,
            max_concurrent=settings.SYNC_MAX_CONCURRENT_JOBS,
        )
        provider_service = CalendarProviderService(providers, events, jobs, oauth)

        return cls(
            settings=settings,
            db=db,
            redis=redis,
            rules=rules,
            events=events,
            providers=providers,
            booking_settings=booking_settings,
            users=users,
            jobs=jobs,
            calendar_api=calendar_api,
            token_service=token_service,
            availability=availability,
            availability_rules=availability_rules,
            booking=booking,
            sync=sync,
            provider_service=provider_service,
        )

    async def close(self) -> None:
        await self.calendar_api.close()


@asynccontextmanager
async def open_container(settings: Settings) -> AsyncGenerator[ServiceContainer, None]:
    """Open the DB pool and Redis, build the container, and tear both down on exit."""
    db = DatabasePoolManager(settings)
    redis = RedisClient(settings.REDIS_URL)

    await db.initialize()
    try:
        await redis.initialize()
        container = ServiceContainer.build(settings, db, redis)
        logger.info("Service container ready", environment=settings.environment)
        try:
            yield container
        finally:
            await container.close()
    finally:
        await redis.close()
        await db.close()
