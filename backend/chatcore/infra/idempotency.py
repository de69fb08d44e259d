"""Redis-backed idempotency keys for message appends.

A key is reserved with the payload hash before the write runs and completed
with the id of the created record afterwards. Replays with the same payload
return that id; anything else is a `Conflict`.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Optional

from redis.exceptions import RedisError

from chatcore.domain.chat.errors import Conflict, Unavailable
from chatcore.infra.redis import redis_client
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

_PREFIX = "idem"


def hash_payload(s: str) -> str:
	return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _redis_key(handler: str, key: str) -> str:
	return f"{_PREFIX}:{handler}:{key}"


async def begin(
	key: str,
	handler: str,
	*,
	payload_hash: str,
	ttl_s: int | None = None,
) -> Optional[str]:
	"""Reserve `key` or replay it.

	Returns None when the caller owns a fresh reservation, or the stored result
	id when the same payload already completed. A fresh reservation only holds
	for the in-flight lease; `complete` extends it to the full replay window.
	"""
	ttl = ttl_s or settings.idempotency_lease_seconds
	name = _redis_key(handler, key)
	record = json.dumps({"hash": payload_hash, "result": None})
	try:
		reserved = await redis_client.set(name, record, nx=True, ex=ttl)
		if reserved:
			obs_metrics.inc_idempotency("miss")
			return None
		raw = await redis_client.get(name)
	except RedisError as exc:
		LOGGER.warning("idempotency_store_unavailable", exc_info=True)
		raise Unavailable("idempotency_unavailable") from exc
	if raw is None:
		# Expired between the two calls; the next attempt reserves it.
		raise Conflict("idempotency_in_progress")
	existing = json.loads(raw)
	if existing.get("hash") != payload_hash:
		obs_metrics.inc_idempotency("conflict")
		raise Conflict("idempotency_key_reused")
	result_id = existing.get("result")
	if not result_id:
		obs_metrics.inc_idempotency("conflict")
		raise Conflict("idempotency_in_progress")
	obs_metrics.inc_idempotency("hit")
	return str(result_id)


async def complete(key: str, handler: str, result_id: str, *, payload_hash: str, ttl_s: int | None = None) -> None:
	ttl = ttl_s or settings.idempotency_ttl_seconds
	record = json.dumps({"hash": payload_hash, "result": result_id})
	try:
		await redis_client.set(_redis_key(handler, key), record, ex=ttl)
	except RedisError:
		LOGGER.warning("idempotency_complete_failed", exc_info=True)


async def release(key: str, handler: str) -> None:
	"""Drop a reservation whose write failed so the client may retry."""
	try:
		await redis_client.delete(_redis_key(handler, key))
	except RedisError:
		LOGGER.warning("idempotency_release_failed", exc_info=True)
