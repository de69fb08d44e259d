"""Redis client used for idempotency keys and readiness checks.

`redis_client` is a proxy: modules import it once, and the real client behind
it is created lazily from `REDIS_URL` or swapped with `set_redis_client`
(fakeredis in tests).
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)


class RedisProxy:
	def __init__(self, client: Optional[redis.Redis] = None) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(settings.redis_url, decode_responses=True)
		return self._client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self.client, item)


redis_client = RedisProxy()


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)


async def close_redis() -> None:
	client = redis_client._client
	if client is None:
		return
	redis_client.set_client(None)
	try:
		await client.aclose()
	except Exception:
		LOGGER.warning("redis_close_failed", exc_info=True)
