from __future__ import annotations

from fastapi import Request

from services.cache_orchestrator import CacheOrchestrator

__all__ = ["get_orchestrator"]


def get_orchestrator(request: Request) -> CacheOrchestrator:
    """The orchestrator owned by the running app (set up in ``create_app``)."""
    return request.app.state.orchestrator
