"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from relay.obs import logging as obs_logging
from relay.obs import middleware
from relay.settings import settings

_initialised = False


def init(app: FastAPI) -> None:
	global _initialised
	middleware.install(app, enabled=settings.obs_enabled)
	if _initialised or not settings.obs_enabled:
		return
	obs_logging.configure_logging()
	_initialised = True


__all__ = ["init"]
