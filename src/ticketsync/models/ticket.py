"""Ticket store models: owning clients (one per Jira project) and tickets."""
from datetime import datetime
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel

from ticketsync.models.sync import utcnow


class Client(SQLModel, table=True):
    """One row per Jira project whose tickets we mirror."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    jira_project_key: str = Field(unique=True, index=True)
    tier: int = 3
    is_ca: bool = False
    is_exception: bool = False
    last_synced: Optional[datetime] = None

    tickets: List["Ticket"] = Relationship(back_populates="client")


class Ticket(SQLModel, table=True):
    """
    Local mirror of one Jira issue.

    Only TicketStorageService writes these rows. Every non-key column is
    overwritten on each upsert so it always reflects the latest snapshot.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_key: str = Field(unique=True, index=True)  # e.g. "OPS-123"
    client_id: int = Field(foreign_key="client.id", index=True)

    summary: str = "No summary"
    description: Optional[str] = None
    status: Optional[str] = Field(default=None, index=True)
    priority: Optional[str] = None
    ticket_type: Optional[str] = None
    assignee: Optional[str] = None
    reporter: Optional[str] = None
    jira_created: Optional[datetime] = None
    jira_updated: Optional[datetime] = None

    # JSON text: attribute bag for customfield_* and mapped extras
    custom_fields: Optional[str] = None
    components: Optional[str] = None  # JSON list of component names
    labels: Optional[str] = None  # JSON list

    last_synced: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    client: Optional[Client] = Relationship(back_populates="tickets")


# Columns overwritten by an upsert, in staging-table order.
TICKET_COLUMNS = (
    "ticket_key",
    "client_id",
    "summary",
    "description",
    "status",
    "priority",
    "ticket_type",
    "assignee",
    "reporter",
    "jira_created",
    "jira_updated",
    "custom_fields",
    "components",
    "labels",
)
