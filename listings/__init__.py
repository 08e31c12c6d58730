"""
Public API for the listings aggregation pipeline.

``SETTINGS`` and the default service are built lazily so ``.env`` loading in
``app.py`` runs before the environment is read.
"""
from __future__ import annotations

import threading
from typing import Optional

from listings.service import ListingsService
from listings.settings import ListingsSettings, load_settings

_lock = threading.Lock()
_settings: Optional[ListingsSettings] = None
_service: Optional[ListingsService] = None


def get_settings() -> ListingsSettings:
    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings()
        return _settings


def get_service(settings: Optional[ListingsSettings] = None) -> ListingsService:
    """
    Return the process-wide service, building it from the environment on first use.
    """
    global _service
    resolved = settings or get_settings()
    with _lock:
        if _service is None:
            _service = ListingsService.from_settings(resolved)
        return _service


def reset_service() -> None:
    global _service, _settings
    with _lock:
        if _service is not None:
            _service.close()
        _service = None
        _settings = None


def __getattr__(name: str):
    if name == "SETTINGS":
        return get_settings()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "SETTINGS",
    "ListingsService",
    "ListingsSettings",
    "get_service",
    "get_settings",
    "load_settings",
    "reset_service",
]
