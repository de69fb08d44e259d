"""Liveness and readiness probes.

Readiness needs Redis (idempotency keys), Postgres, and the chat tables.
Each check reports `{ok, ...}`; any failing check makes the probe 503.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Optional, Tuple

from chatcore.infra import postgres
from chatcore.infra.redis import redis_client
from chatcore.obs import metrics

LOGGER = logging.getLogger(__name__)

CHAT_TABLES = ("chat_conversations", "chat_messages")

REDIS_TIMEOUT = 0.2
POSTGRES_TIMEOUT = 0.3


async def _redis_status() -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=REDIS_TIMEOUT)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_redis(False)
		LOGGER.warning("readiness_redis_failed", exc_info=True)
		return {"ok": False, "error": str(exc) or type(exc).__name__}
	latency = perf_counter() - start
	metrics.mark_redis(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def _postgres_status() -> Tuple[Dict[str, Any], Dict[str, Any]]:
	"""Return `(postgres, schema)` check results from one pooled connection."""
	try:
		pool = await postgres.get_pool()
	except Exception as exc:
		metrics.mark_postgres(False)
		LOGGER.warning("readiness_postgres_unavailable", exc_info=True)
		error = str(exc) or "pool_unavailable"
		return {"ok": False, "error": error}, {"ok": False, "error": "pool_unavailable"}

	start = perf_counter()
	try:
		async with pool.acquire() as conn:
			found = await asyncio.wait_for(
				conn.fetch(
					"SELECT name, to_regclass('public.' || name) IS NOT NULL AS present FROM unnest($1::text[]) AS name",
					list(CHAT_TABLES),
				),
				timeout=POSTGRES_TIMEOUT,
			)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_postgres(False)
		LOGGER.warning("readiness_postgres_failed", exc_info=True)
		return {"ok": False, "error": str(exc) or type(exc).__name__}, {"ok": False, "error": "query_failed"}
	latency = perf_counter() - start
	metrics.mark_postgres(True, latency_seconds=latency)
	missing = sorted(row["name"] for row in found if not row["present"])
	schema: Dict[str, Any] = {"ok": not missing}
	if missing:
		schema["missing"] = missing
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}, schema


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	redis_state, (postgres_state, schema_state) = await asyncio.gather(_redis_status(), _postgres_status())
	checks: Dict[str, Dict[str, Any]] = {
		"redis": redis_state,
		"postgres": postgres_state,
		"schema": schema_state,
	}
	ok = all(check.get("ok") for check in checks.values())
	failing: Optional[list] = None if ok else sorted(name for name, check in checks.items() if not check.get("ok"))
	payload: Dict[str, Any] = {"status": "ok" if ok else "degraded", "checks": checks}
	if failing:
		payload["failing"] = failing
	return (200 if ok else 503), payload
