"""Per-batch mutual exclusion for read-modify-write operations.

With Redis configured the lock is shared by every API process; without it a
process-local ``asyncio.Lock`` per batch id serializes writers inside one
process and the repository's version check catches the rest.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from app.config import get_settings
from app.services.errors import ConcurrentUpdateError

logger = structlog.get_logger("cheese.locks")

_local_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()


class BatchLockTimeout(ConcurrentUpdateError):
	"""Another operation held the batch lock for longer than we were willing to wait."""


class BatchLocks:
	def __init__(
		self,
		redis_client: Redis | None = None,
		*,
		timeout_seconds: float | None = None,
		wait_seconds: float | None = None,
	):
		settings = get_settings()
		self.redis_client = redis_client
		self.timeout_seconds = timeout_seconds or settings.batch_lock_timeout_seconds
		self.wait_seconds = wait_seconds or settings.batch_lock_wait_seconds

	@asynccontextmanager
	async def hold(self, batch_id: uuid.UUID) -> AsyncIterator[None]:
		if self.redis_client is not None:
			async with self._hold_redis(batch_id):
				yield
			return

		lock = _local_locks.get(batch_id)
		if lock is None:
			lock = asyncio.Lock()
			_local_locks[batch_id] = lock
		try:
			await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
		except TimeoutError as exc:
			raise BatchLockTimeout(f"batch {batch_id} is locked by another operation") from exc
		try:
			yield
		finally:
			lock.release()

	@asynccontextmanager
	async def _hold_redis(self, batch_id: uuid.UUID) -> AsyncIterator[None]:
		assert self.redis_client is not None
		lock = self.redis_client.lock(
			f"cheese:batch-lock:{batch_id}",
			timeout=self.timeout_seconds,
			blocking_timeout=self.wait_seconds,
		)
		try:
			acquired = await lock.acquire()
		except RedisError as exc:
			logger.warning("batch_lock_unavailable", batch_id=str(batch_id), error=str(exc))
			raise BatchLockTimeout(f"batch {batch_id} lock unavailable") from exc
		if not acquired:
			raise BatchLockTimeout(f"batch {batch_id} is locked by another operation")
		try:
			yield
		finally:
			try:
				await lock.release()
			except LockError as exc:
				logger.warning("batch_lock_expired", batch_id=str(batch_id), error=str(exc))
