"""Session authentication for HTTP requests and live connections.

Every failure surfaces as `Unauthenticated("invalid_token")`; the specific
reason (expired, malformed, bad signature, missing claims) is only logged
and counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import jwt
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatcore.domain.chat.errors import Unauthenticated
from chatcore.infra import jwt as jwt_helper
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None
	session_id: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def _failure_reason(exc: Exception) -> str:
	if isinstance(exc, jwt.ExpiredSignatureError):
		return "expired"
	if isinstance(exc, jwt.InvalidSignatureError):
		return "bad_signature"
	if isinstance(exc, (jwt.MissingRequiredClaimError, jwt_helper.MissingClaimError)):
		return "missing_claims"
	if isinstance(exc, (jwt.InvalidIssuerError, jwt.InvalidAudienceError, jwt.ImmatureSignatureError)):
		return "invalid_claims"
	return "malformed"


def _reject(reason: str, exc: Optional[Exception] = None) -> Unauthenticated:
	obs_metrics.inc_auth_failure(reason)
	LOGGER.info("auth_rejected", extra={"reason": reason, "error": type(exc).__name__ if exc else None})
	return Unauthenticated()


def authenticate_token(token: Optional[str]) -> AuthenticatedUser:
	"""Resolve a bearer credential to a user identity or raise `Unauthenticated`."""
	token = (token or "").strip()
	if not token:
		raise _reject("missing")
	try:
		payload = jwt_helper.decode_access(token)
	except jwt.InvalidTokenError as exc:
		raise _reject(_failure_reason(exc), exc) from None

	display_name = payload.get("name") or payload.get("display_name")
	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=str(payload["sub"]),
		display_name=str(display_name) if display_name is not None else None,
		session_id=str(session_id).strip() if session_id is not None else None,
	)


def _bearer_from_header(value: Optional[str]) -> Optional[str]:
	if not value:
		return None
	scheme, _, credential = value.partition(" ")
	if scheme.lower() != "bearer":
		return None
	return credential.strip() or None


def _scope_header(scope: Mapping[str, Any], name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def token_from_handshake(environ: Mapping[str, Any], auth: Any = None) -> Optional[str]:
	"""Extract the connection credential: `auth.token` first, then the Authorization header."""
	if isinstance(auth, Mapping):
		token = auth.get("token")
		if isinstance(token, str) and token.strip():
			return token.strip()
	header = environ.get("HTTP_AUTHORIZATION")
	if header is None:
		header = _scope_header(environ.get("asgi.scope") or {}, "authorization")
	return _bearer_from_header(header)


async def get_current_user(
	request: Request,
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development a bare `X-User-Id` header is accepted for local tools. In
	all other environments a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		user = authenticate_token(credentials.credentials)
	elif settings.is_dev() and x_user_id and x_user_id.strip():
		user = AuthenticatedUser(id=x_user_id.strip())
	else:
		raise _reject("missing")
	request.state.user_id = user.id
	return user
