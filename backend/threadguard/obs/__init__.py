"""Observability package bootstrap."""

from __future__ import annotations

from threadguard.obs import logging as obs_logging
from threadguard.obs import metrics

_initialised = False


def init() -> None:
	global _initialised
	if _initialised:
		return
	obs_logging.configure_logging()
	_initialised = True


__all__ = ["init", "metrics"]
