"""FastAPI dependencies for the services built in the lifespan hook."""
from fastapi import Request

from quicksend.services.orchestrator import UploadOrchestrator


def get_orchestrator(request: Request) -> UploadOrchestrator:
    """The orchestrator lives on app.state so tests can install their own."""
    return request.app.state.orchestrator
