"""
Distributed Lock Service

Time-bounded, mutually exclusive leases keyed by an arbitrary string.
Used to keep overlapping cron invocations (and overlapping per-item
processing) from doing the same work twice.

Acquisition is a single atomic operation against the backing store and
fails closed: if the store cannot confirm the lease, the caller's work is
not executed.
"""
import asyncio
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from app.config.config import settings
from app.core.cache import StoreUnavailableError, get_store
from app.core.utils import LoggerMixin, as_utc, utcnow
from app.db.session import AsyncSessionLocal
from app.models.lock_model import DistributedLock

T = TypeVar("T")

# Errors that mean "the backing store could not answer"
STORE_ERRORS = (StoreUnavailableError, SQLAlchemyError, OSError)


class DatabaseLockStore:
    """Lock rows in the ``distributed_locks`` table (PostgreSQL or SQLite)."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _insert_for(session):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise NotImplementedError(f"Unsupported lock dialect: {dialect}")

    async def acquire(self, key: str, token: str, ttl: float) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)

        async with self._session_factory() as session:
            insert = self._insert_for(session)
            stmt = insert(DistributedLock).values(
                lock_key=key,
                owner_token=token,
                expires_at=expires_at,
                created_at=now,
            )
            # Insert when absent; overwrite only a row that has already expired
            stmt = stmt.on_conflict_do_update(
                index_elements=[DistributedLock.lock_key],
                set_={
                    "owner_token": stmt.excluded.owner_token,
                    "expires_at": stmt.excluded.expires_at,
                    "created_at": stmt.excluded.created_at,
                },
                where=DistributedLock.expires_at <= now,
            ).returning(DistributedLock.owner_token)

            result = await session.execute(stmt)
            owner = result.scalar_one_or_none()
            await session.commit()

        return owner == token

    async def release(self, key: str, token: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.owner_token == token,
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def ttl(self, key: str) -> Optional[float]:
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(DistributedLock.expires_at).where(
                    DistributedLock.lock_key == key,
                    DistributedLock.expires_at > now,
                )
            )
            expires_at = result.scalar_one_or_none()
        if expires_at is None:
            return None
        return max(0.0, (as_utc(expires_at) - now).total_seconds())

    async def cleanup_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DistributedLock).where(DistributedLock.expires_at <= utcnow())
            )
            await session.commit()
            return result.rowcount or 0


class KeyValueLockStore:
    """Locks kept in the shared key/value store (Redis or in-memory)."""

    def __init__(self, store):
        self._store = store

    async def acquire(self, key: str, token: str, ttl: float) -> bool:
        return await self._store.set_if_absent(key, token, ttl)

    async def release(self, key: str, token: str) -> bool:
        return await self._store.delete_if_equals(key, token)

    async def ttl(self, key: str) -> Optional[float]:
        return await self._store.ttl(key)

    async def cleanup_expired(self) -> int:
        # Expiry is enforced by the store itself
        return 0


class DistributedLockService(LoggerMixin):
    """Acquire, release and scope distributed locks."""

    DEFAULT_TTL = 30.0
    DEFAULT_RETRY_DELAY = 0.1
    DEFAULT_MAX_RETRIES = 0
    KEY_PREFIX = "lock:"

    def __init__(self, store):
        super().__init__()
        self.store = store

    def _lock_key(self, resource_key: str) -> str:
        return f"{self.KEY_PREFIX}{resource_key}"

    async def acquire(
        self,
        resource_key: str,
        ttl: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> Optional[str]:
        """
        Try to take the lock for ``resource_key``.

        Makes one attempt plus up to ``max_retries`` retries. Returns the
        owner token on success, None otherwise (including store errors).
        """
        ttl = self.DEFAULT_TTL if ttl is None else ttl
        max_retries = self.DEFAULT_MAX_RETRIES if max_retries is None else max_retries
        retry_delay = self.DEFAULT_RETRY_DELAY if retry_delay is None else retry_delay

        if ttl <= 0:
            raise ValueError("Lock TTL must be positive")

        lock_key = self._lock_key(resource_key)
        token = uuid.uuid4().hex
        attempts = max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                if await self.store.acquire(lock_key, token, ttl):
                    self.log_debug(
                        {
                            "event": "lock_acquired",
                            "lock_key": lock_key,
                            "attempt": attempt,
                            "ttl": ttl,
                        }
                    )
                    return token
            except STORE_ERRORS as e:
                self.log_error(
                    {
                        "event": "lock_acquire_error",
                        "lock_key": lock_key,
                        "attempt": attempt,
                        "error": str(e),
                    }
                )

            if attempt < attempts:
                await asyncio.sleep(retry_delay)

        self.log_warning(
            {
                "event": "lock_not_acquired",
                "lock_key": lock_key,
                "attempts": attempts,
            }
        )
        return None

    async def release(self, resource_key: str, token: str) -> None:
        lock_key = self._lock_key(resource_key)
        try:
            released = await self.store.release(lock_key, token)
            if released:
                self.log_debug({"event": "lock_released", "lock_key": lock_key})
            else:
                # Expired and possibly taken over by another holder
                self.log_warning({"event": "lock_release_not_owner", "lock_key": lock_key})
        except STORE_ERRORS as e:
            self.log_error(
                {"event": "lock_release_error", "lock_key": lock_key, "error": str(e)}
            )

    async def with_lock(
        self,
        resource_key: str,
        fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> Optional[T]:
        """
        Run ``fn`` while holding the lock for ``resource_key``.

        Returns the result of ``fn``, or None when the lock could not be
        acquired (``fn`` is not called). The lock is released even if
        ``fn`` raises; the exception propagates.
        """
        token = await self.acquire(
            resource_key, ttl=ttl, max_retries=max_retries, retry_delay=retry_delay
        )
        if token is None:
            return None

        try:
            return await fn()
        finally:
            await self.release(resource_key, token)

    async def is_locked(self, resource_key: str) -> bool:
        return (await self.get_lock_ttl(resource_key)) > 0

    async def get_lock_ttl(self, resource_key: str) -> float:
        """Remaining seconds on a live lock, 0 when unlocked or unknown."""
        lock_key = self._lock_key(resource_key)
        try:
            remaining = await self.store.ttl(lock_key)
        except STORE_ERRORS as e:
            self.log_error(
                {"event": "lock_ttl_error", "lock_key": lock_key, "error": str(e)}
            )
            return 0.0
        return remaining or 0.0

    async def cleanup_expired_locks(self) -> int:
        try:
            cleaned = await self.store.cleanup_expired()
        except STORE_ERRORS as e:
            self.log_error({"event": "lock_cleanup_error", "error": str(e)})
            return 0
        if cleaned:
            self.log_info({"event": "expired_locks_cleaned", "count": cleaned})
        return cleaned


async def build_lock_service() -> DistributedLockService:
    """Lock service for the configured LOCK_BACKEND."""
    if settings.LOCK_BACKEND == "database":
        return DistributedLockService(DatabaseLockStore())
    return DistributedLockService(KeyValueLockStore(await get_store()))
