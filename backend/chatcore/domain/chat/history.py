"""Paginated read access to a conversation's message log."""

from __future__ import annotations

from typing import Optional, Tuple

from chatcore.domain.chat.errors import InvalidArgument
from chatcore.domain.chat.models import HistoryPage
from chatcore.domain.chat.store import ConversationStore
from chatcore.settings import settings


def page_window(total: int, page: int, page_size: int) -> Tuple[int, int]:
	"""Zero-based `[start, end)` positions of a newest-first page over `total` entries."""
	start = max(0, total - page * page_size)
	end = max(0, total - (page - 1) * page_size)
	return start, end


def _ensure_positive_int(value: object, code: str) -> int:
	if isinstance(value, bool) or not isinstance(value, int) or value < 1:
		raise InvalidArgument(code)
	return value


class HistoryService:
	"""Serves pages newest-first, walking backwards from the tail of the log.

	Page boundaries are computed against the log length observed by each call.
	A log that grows between two calls may shift entries across page
	boundaries; callers that need a stable walk pass the `total` they saw on
	their first page as `as_of`.
	"""

	def __init__(self, store: ConversationStore) -> None:
		self._store = store

	async def get_history(
		self,
		conversation_id: str,
		requester_id: str,
		page: int = 1,
		page_size: Optional[int] = None,
		*,
		as_of: Optional[int] = None,
	) -> HistoryPage:
		page = _ensure_positive_int(page, "invalid_page")
		size = _ensure_positive_int(
			settings.history_default_page_size if page_size is None else page_size,
			"invalid_page_size",
		)
		if size > settings.history_max_page_size:
			raise InvalidArgument("invalid_page_size")
		conversation = await self._store.load_for_member(conversation_id, requester_id)
		total = conversation.last_seq
		if as_of is not None:
			if isinstance(as_of, bool) or not isinstance(as_of, int) or as_of < 0:
				raise InvalidArgument("invalid_as_of")
			total = min(as_of, total)
		start, end = page_window(total, page, size)
		window = await self._store.repository.slice_messages(conversation.id, start, end)
		return HistoryPage(
			messages=list(reversed(window)),
			page=page,
			page_size=size,
			total=total,
			has_more=start > 0,
		)
