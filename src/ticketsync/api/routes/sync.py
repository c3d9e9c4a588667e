"""Sync trigger, status and cancellation routes."""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from ticketsync.api.deps import get_orchestrator
from ticketsync.sync.exceptions import SyncNotFoundError
from ticketsync.sync.lock import LockHeldError
from ticketsync.sync.orchestrator import SyncOptions, SyncOrchestrator, new_sync_id

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncStartedResponse(BaseModel):
    message: str
    id: str
    kind: str


async def _run_sync(
    start: Callable[..., Awaitable[Dict[str, Any]]], options: SyncOptions, sync_id: str
) -> None:
    """Background task: run one session to completion."""
    try:
        await start(options, sync_id=sync_id)
    except LockHeldError as exc:
        logger.info("Sync %s not started: %s", sync_id, exc)
    except Exception as exc:
        logger.error("Sync %s failed: %s", sync_id, exc)


@router.post("/full", status_code=202, response_model=SyncStartedResponse)
async def trigger_full_sync(
    background_tasks: BackgroundTasks,
    options: Optional[SyncOptions] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Start a full sync of every project (or options.project_keys).
    Returns immediately; poll GET /sync/{id} for progress.
    """
    if orchestrator.is_full_sync_running():
        raise HTTPException(status_code=409, detail="Full sync already in progress")
    sync_id = new_sync_id("full")
    background_tasks.add_task(
        _run_sync, orchestrator.start_full_sync, options or SyncOptions(), sync_id
    )
    return SyncStartedResponse(message="Full sync started", id=sync_id, kind="full")


@router.post("/incremental", status_code=202, response_model=SyncStartedResponse)
async def trigger_incremental_sync(
    background_tasks: BackgroundTasks,
    options: Optional[SyncOptions] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Start an incremental sync of projects changed since the last one."""
    sync_id = new_sync_id("incremental")
    background_tasks.add_task(
        _run_sync, orchestrator.start_incremental_sync, options or SyncOptions(), sync_id
    )
    return SyncStartedResponse(message="Incremental sync started", id=sync_id, kind="incremental")


@router.get("/history")
def sync_history(limit: int = 20, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Most recent sessions, newest first."""
    return orchestrator.list_sync_history(limit=limit)


@router.get("/active")
def active_syncs(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    return [orchestrator.get_sync_status(sync_id) for sync_id in list(orchestrator.active_syncs)]


@router.get("/{sync_id}")
def sync_status(sync_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.get_sync_status(sync_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Sync not found")
    return status


@router.post("/{sync_id}/cancel")
def cancel_sync(sync_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.cancel_sync(sync_id)
    except SyncNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
