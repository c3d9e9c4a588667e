"""Shared test fixtures."""
from typing import Any, Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from ticketsync.db.engine import create_store_engine, init_db
from ticketsync.models.ticket import Client


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite store. Tables recreated fresh for each test."""
    engine = create_store_engine("sqlite:///:memory:", poolclass=StaticPool)
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to the in-memory store."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="seeded_client")
def seeded_client_fixture(engine) -> Client:
    """A persisted Client for ticket storage tests.

    Created in its own session so no read transaction stays open on the
    shared in-memory connection while the code under test writes.
    """
    with Session(engine) as session:
        client = Client(name="Acme Corp", jira_project_key="ACME")
        session.add(client)
        session.commit()
        session.refresh(client)
    return client


def make_issue(
    key: str,
    summary: str = "Printer on fire",
    status: str = "Open",
    priority: Optional[str] = "High",
    updated: str = "2024-01-15T10:30:00.000+0000",
    **extra_fields: Any,
) -> Dict[str, Any]:
    """Raw issue shaped like an item of /rest/api/2/search "issues"."""
    fields: Dict[str, Any] = {
        "summary": summary,
        "description": "Smoke everywhere",
        "status": {"name": status},
        "priority": {"name": priority} if priority else None,
        "issuetype": {"name": "Bug"},
        "assignee": {"displayName": "Dana Scully", "emailAddress": "dana@example.com"},
        "reporter": {"displayName": "Fox Mulder"},
        "created": "2024-01-10T08:00:00.000+0000",
        "updated": updated,
        "components": [{"name": "Hardware"}],
        "labels": ["urgent"],
    }
    fields.update(extra_fields)
    return {"id": key.split("-")[-1], "key": key, "fields": fields}


def make_issues(project_key: str, count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [make_issue(f"{project_key}-{i}") for i in range(start, start + count)]


@pytest.fixture(name="issue_factory")
def issue_factory_fixture():
    """make_issue / make_issues helpers."""

    class _Factory:
        issue = staticmethod(make_issue)
        issues = staticmethod(make_issues)

    return _Factory
