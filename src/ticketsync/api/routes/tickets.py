"""Ticket query routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ticketsync.api.deps import get_storage
from ticketsync.storage.ticket_storage import MAX_PAGE_LIMIT, TicketFilters, TicketStorageService

router = APIRouter()


@router.get("/")
def list_tickets(
    client_id: Optional[int] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assignee: Optional[str] = None,
    keys: Optional[List[str]] = Query(None),
    limit: int = Query(1000, ge=1),
    offset: int = Query(0, ge=0),
    storage: TicketStorageService = Depends(get_storage),
):
    """List tickets, most recently updated in Jira first. limit is capped at 10000."""
    filters = TicketFilters(
        client_id=client_id,
        status=status,
        priority=priority,
        assignee=assignee,
        keys=keys,
        limit=min(limit, MAX_PAGE_LIMIT),
        offset=offset,
    )
    return storage.get_tickets(filters)


@router.get("/stats")
def ticket_statistics(storage: TicketStorageService = Depends(get_storage)):
    return storage.get_statistics()


@router.delete("/")
def delete_old_tickets(before: datetime, storage: TicketStorageService = Depends(get_storage)):
    """Delete tickets last synced before `before`."""
    return {"deleted": storage.delete_old_tickets(before)}


@router.get("/{ticket_key}")
def get_ticket(ticket_key: str, storage: TicketStorageService = Depends(get_storage)):
    ticket = storage.get_ticket(ticket_key)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket
