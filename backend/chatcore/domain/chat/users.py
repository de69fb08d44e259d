"""Read-only view of the user directory owned by account management."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set

import asyncpg

from chatcore.domain.chat.errors import Unavailable
from chatcore.domain.chat.models import UserProfile
from chatcore.infra.postgres import get_pool
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)


class UserDirectory:
	"""Profile lookups backed by the `users` table, with an in-memory fallback."""

	def __init__(self) -> None:
		self._profiles: Dict[str, UserProfile] = {}
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except Exception:
			pool = None
		self._pool = pool
		return pool

	def register(self, profile: UserProfile) -> None:
		"""Seed the in-memory fallback (tests and local tools)."""
		self._profiles[profile.id] = profile

	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
		wanted = sorted({str(user_id) for user_id in user_ids})
		if not wanted:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			if settings.is_dev():
				# Without a users table, local tools may address any id.
				for uid in wanted:
					self._profiles.setdefault(uid, UserProfile(id=uid, display_name=uid, avatar_url=None))
			return {uid: self._profiles[uid] for uid in wanted if uid in self._profiles}
		try:
			rows = await asyncio.wait_for(
				pool.fetch(
					"SELECT id, display_name, avatar_url FROM users WHERE id = ANY($1::text[])",
					wanted,
				),
				timeout=settings.storage_timeout_seconds,
			)
		except (asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			LOGGER.warning("user_directory_unavailable", exc_info=True)
			raise Unavailable("user_directory_unavailable") from exc
		return {
			str(row["id"]): UserProfile(
				id=str(row["id"]),
				display_name=row["display_name"],
				avatar_url=row["avatar_url"],
			)
			for row in rows
		}

	async def missing(self, user_ids: Iterable[str]) -> Set[str]:
		wanted = {str(user_id) for user_id in user_ids}
		found = await self.get_profiles(wanted)
		return wanted - set(found)
