"""API routers package."""

from .deps import OrchestratorDep, get_orchestrator
from .stream import router as stream_router
from .voice import router as voice_router

__all__ = ["OrchestratorDep", "get_orchestrator", "stream_router", "voice_router"]
