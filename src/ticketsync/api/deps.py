"""Request dependencies shared by the routers."""
from fastapi import FastAPI, HTTPException, Request

from ticketsync.db.engine import get_engine
from ticketsync.storage.ticket_storage import TicketStorageService
from ticketsync.sync.exceptions import CredentialsMissingError
from ticketsync.sync.orchestrator import SyncOrchestrator, build_orchestrator


def app_engine(app: FastAPI):
    if app.state.engine is None:
        app.state.engine = get_engine()
    return app.state.engine


def app_orchestrator(app: FastAPI) -> SyncOrchestrator:
    """The app's orchestrator, built from settings on first use."""
    if app.state.orchestrator is None:
        app.state.orchestrator = build_orchestrator(engine=app_engine(app))
    return app.state.orchestrator


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """FastAPI dependency returning the app's orchestrator."""
    try:
        return app_orchestrator(request.app)
    except CredentialsMissingError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


def get_storage(request: Request) -> TicketStorageService:
    """FastAPI dependency returning a storage service on the app's engine."""
    orchestrator = request.app.state.orchestrator
    if orchestrator is not None and isinstance(orchestrator.storage, TicketStorageService):
        return orchestrator.storage
    return TicketStorageService(app_engine(request.app))
