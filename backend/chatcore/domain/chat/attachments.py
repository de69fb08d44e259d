"""Attachment helpers for chat messages."""

from __future__ import annotations

from typing import Iterable, List, Mapping

from chatcore.domain.chat.errors import InvalidArgument
from chatcore.domain.chat.models import Attachment
from chatcore.settings import settings

_KIND_BY_PREFIX = (
	("image/", "image"),
	("video/", "video"),
	("audio/", "audio"),
	("application/", "document"),
	("text/", "document"),
)


def kind_for(mime_type: str) -> str:
	lowered = mime_type.lower()
	for prefix, kind in _KIND_BY_PREFIX:
		if lowered.startswith(prefix):
			return kind
	raise InvalidArgument("unsupported_media_type")


def _field(entry: Mapping[str, object], *names: str) -> object | None:
	for name in names:
		value = entry.get(name)
		if value not in (None, ""):
			return value
	return None


def normalize_attachments(items: Iterable[Mapping[str, object]] | None) -> List[Attachment]:
	"""Validate and normalise attachment payloads sent by clients.

	Each attachment may include:
	- url (required, an already uploaded asset)
	- mimeType / mime_type (required)
	- filename (optional)
	- sizeBytes / size_bytes (optional, non-negative)
	"""

	normalized: List[Attachment] = []
	if not items:
		return normalized
	entries = list(items)
	if len(entries) > settings.message_max_attachments:
		raise InvalidArgument("too_many_attachments")
	for entry in entries:
		if not isinstance(entry, Mapping):
			raise InvalidArgument("invalid_attachment")
		url = str(_field(entry, "url") or "").strip()
		if not url:
			raise InvalidArgument("attachment_url_required")
		mime_type = str(_field(entry, "mimeType", "mime_type") or "").strip()
		if not mime_type:
			raise InvalidArgument("unsupported_media_type")
		size_raw = _field(entry, "sizeBytes", "size_bytes")
		size_bytes: int | None = None
		if size_raw is not None:
			try:
				size_bytes = int(size_raw)  # type: ignore[arg-type]
			except (TypeError, ValueError):
				raise InvalidArgument("invalid_attachment_size") from None
			if size_bytes < 0:
				raise InvalidArgument("invalid_attachment_size")
		filename = _field(entry, "filename")
		normalized.append(
			Attachment(
				url=url,
				filename=str(filename) if filename is not None else None,
				mime_type=mime_type,
				kind=kind_for(mime_type),
				size_bytes=size_bytes,
			)
		)
	return normalized
