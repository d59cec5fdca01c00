from fastapi import Depends, Request

from ..orchestrator import StreamOrchestrator


def get_orchestrator(request: Request) -> StreamOrchestrator:
    """Return the orchestrator the app was created with."""
    return request.app.state.orchestrator


OrchestratorDep = Depends(get_orchestrator)
