from fastapi import Depends

from app.core.notifications import WhatsAppService
from app.db.session import AsyncSessionLocal
from app.services.cron_service import CronService
from app.services.dispatch_service import DispatchService
from app.services.followup_service import FollowupService
from app.services.lock_service import DistributedLockService, build_lock_service
from app.services.rate_limit_service import RateLimitService, build_rate_limit_service
from app.services.reminder_selector import ReminderSelector


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory():
    return AsyncSessionLocal


async def get_lock_service() -> DistributedLockService:
    return await build_lock_service()


async def get_rate_limit_service() -> RateLimitService:
    return await build_rate_limit_service()


def get_transport() -> WhatsAppService:
    return WhatsAppService()


async def get_cron_service(
    session_factory=Depends(get_session_factory),
    lock_service: DistributedLockService = Depends(get_lock_service),
    rate_limiter: RateLimitService = Depends(get_rate_limit_service),
    transport=Depends(get_transport),
) -> CronService:
    followup_service = FollowupService(session_factory=session_factory)
    dispatcher = DispatchService(
        lock_service=lock_service,
        transport=transport,
        session_factory=session_factory,
        rate_limiter=rate_limiter,
        followup_service=followup_service,
    )
    return CronService(
        lock_service=lock_service,
        rate_limiter=rate_limiter,
        selector=ReminderSelector(session_factory=session_factory),
        dispatcher=dispatcher,
        followup_service=followup_service,
    )
