"""Centralised JWT helpers for access tokens.

Uses HS256 with the application's secret key. Validates standard claims
and the configured issuer/audience values.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import jwt
from jwt import InvalidTokenError

from chatcore.settings import settings


class MissingClaimError(InvalidTokenError):
	"""Raised when a structurally valid token lacks an application claim."""


def encode_access(payload: dict[str, object], *, ttl_seconds: Optional[int] = None) -> str:
	"""Encode an access token; `exp` defaults to the configured access TTL."""
	now = int(time.time())
	body: Dict[str, Any] = {
		"iss": settings.jwt_issuer,
		"aud": settings.jwt_audience,
		"iat": now,
		"exp": now + (ttl_seconds if ttl_seconds is not None else settings.access_ttl_minutes * 60),
	}
	body.update(payload)
	return jwt.encode(body, settings.secret_key, algorithm="HS256")


def decode_access(token: str) -> dict[str, object]:
	"""Decode and validate an access token.

	Raises jwt.InvalidTokenError subclasses on failure.
	"""
	options = {"require": ["exp", "iss", "aud"]}
	payload = jwt.decode(
		token,
		settings.secret_key,
		algorithms=["HS256"],
		audience=settings.jwt_audience,
		issuer=settings.jwt_issuer,
		leeway=settings.jwt_leeway_seconds,
		options=options,
	)
	# Older clients carry the identity as `userId`.
	subject = payload.get("sub") or payload.get("userId")
	if not str(subject or "").strip():
		raise MissingClaimError("missing_claim:sub")
	payload["sub"] = str(subject).strip()
	return payload  # type: ignore[return-value]
