"""Error taxonomy shared by the HTTP and live transports."""

from __future__ import annotations

from chatcore.settings import settings


class ChatError(Exception):
	"""Base class for chat core failures.

	`kind` is the transport-neutral vocabulary (rendered in HTTP error bodies and
	in `operation-error` socket events); `status_code` is the HTTP mapping.
	"""

	kind: str = "internal"
	status_code: int = 500
	default_detail: str = "internal_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.default_detail)
		self.detail = detail or self.default_detail

	def to_payload(self) -> dict[str, str]:
		return {"kind": self.kind, "message": self.detail}


class Unauthenticated(ChatError):
	kind = "unauthenticated"
	status_code = 401
	default_detail = "invalid_token"


class Forbidden(ChatError):
	kind = "forbidden"
	status_code = 403
	default_detail = "not_participant"


class NotFound(ChatError):
	kind = "not_found"
	status_code = 404
	default_detail = "conversation_not_found"


class InvalidArgument(ChatError):
	kind = "invalid_argument"
	status_code = 400
	default_detail = "invalid_argument"


class Conflict(ChatError):
	kind = "conflict"
	status_code = 409
	default_detail = "conflict"


class Unavailable(ChatError):
	kind = "unavailable"
	status_code = 503
	default_detail = "storage_unavailable"


def public_error(exc: ChatError) -> ChatError:
	"""Apply the membership concealment policy before an error leaves the process."""
	if isinstance(exc, Forbidden) and settings.conceal_membership:
		return NotFound("conversation_not_found")
	return exc
