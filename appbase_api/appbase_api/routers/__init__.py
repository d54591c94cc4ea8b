"""API router modules for the appbase service."""

from __future__ import annotations

from appbase_api.routers import apps, auth, billing, health, metrics

__all__ = [
    "apps",
    "auth",
    "billing",
    "health",
    "metrics",
]
