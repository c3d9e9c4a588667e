"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ticketsync.api.deps import app_engine, app_orchestrator
from ticketsync.api.routes import sync as sync_routes, tickets
from ticketsync.db.engine import init_db
from ticketsync.sync.exceptions import CredentialsMissingError
from ticketsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[SyncOrchestrator] = None,
    engine=None,
    with_scheduler: bool = False,
) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        orchestrator: Pre-built orchestrator (tests). Built lazily from settings otherwise.
        engine: Store engine; defaults to the module-level engine.
        with_scheduler: Run the APScheduler jobs for the app's lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        init_db(app_engine(app))
        scheduler = None
        if with_scheduler:
            from ticketsync.scheduler.jobs import build_scheduler
            try:
                scheduler = build_scheduler(app_orchestrator(app))
                scheduler.start()
            except CredentialsMissingError as exc:
                logger.warning("Scheduler not started: %s", exc)
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if app.state.owns_orchestrator and app.state.orchestrator is not None:
            await app.state.orchestrator.fetcher.client.aclose()

    app = FastAPI(
        title="Ticket Sync API",
        description="Jira to local store ticket sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.orchestrator = orchestrator
    app.state.owns_orchestrator = orchestrator is None

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(tickets.router, prefix="/tickets", tags=["tickets"])

    return app


# Module-level app instance for uvicorn
app = create_app(with_scheduler=True)
