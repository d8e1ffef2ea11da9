"""API router modules for the metering service."""

from __future__ import annotations

from api.routers import health, runs, usage

__all__ = ["health", "runs", "usage"]
