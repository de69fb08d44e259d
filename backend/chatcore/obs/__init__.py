"""Observability bootstrap: JSON logging plus the request metrics middleware."""

from __future__ import annotations

from fastapi import FastAPI

from chatcore.obs import logging as obs_logging
from chatcore.obs import middleware
from chatcore.settings import settings


def init(app: FastAPI) -> None:
	"""Configure logging and instrument `app`; safe to call more than once."""
	obs_logging.configure_logging()
	if not settings.obs_enabled or getattr(app.state, "obs_installed", False):
		return
	middleware.install(app)
	app.state.obs_installed = True


__all__ = ["init"]
