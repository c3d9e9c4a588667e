"""
Integration tests for SyncOrchestrator.

A mocked JiraClient sits behind the real RemoteFetcher; tickets land in the
in-memory SQLite store through the real TicketStorageService.
"""
import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlmodel import Session, select

from ticketsync.jira.fetcher import RemoteFetcher
from ticketsync.models.sync import SyncSession, utcnow
from ticketsync.models.ticket import Client, Ticket
from ticketsync.storage.ticket_storage import BatchUpsertResult, TicketStorageService
from ticketsync.sync.exceptions import SyncNotFoundError
from ticketsync.sync.lock import LockHeldError
from ticketsync.sync.orchestrator import SyncConfig, SyncOptions, SyncOrchestrator
from ticketsync.sync.progress import (
    EntityProgress,
    SyncCancelled,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
)

FIXTURES = Path(__file__).parent.parent / "fixtures"
PROJECTS = json.loads((FIXTURES / "jira_projects.json").read_text())
ISSUE = json.loads((FIXTURES / "jira_issue.json").read_text())
REQUEST = httpx.Request("GET", "https://jira.example.com/rest/api/2/search")


def make_issues(project_key: str, count: int) -> List[dict]:
    issues = []
    for i in range(1, count + 1):
        issue = copy.deepcopy(ISSUE)
        issue["id"] = str(i)
        issue["key"] = f"{project_key}-{i}"
        issues.append(issue)
    return issues


def forbidden() -> httpx.HTTPStatusError:
    response = httpx.Response(403, json={"errorMessages": ["No browse permission"]}, request=REQUEST)
    return httpx.HTTPStatusError("HTTP 403", request=REQUEST, response=response)


def project_key(jql: str) -> str:
    return jql.split('"')[1]


def make_jira(issues_by_project: Dict[str, List[dict]], failing=()):
    """Mock JiraClient serving canned issues per project."""
    client = AsyncMock()
    client.get_projects = AsyncMock(return_value=[
        {"key": p["key"], "name": p["name"], "id": p["id"]}
        for p in PROJECTS
        if p["key"] in issues_by_project
    ])

    async def search(jql, start_at=0, max_results=100, fields="*all"):
        key = project_key(jql)
        if key in failing:
            raise forbidden()
        issues = issues_by_project[key]
        return {"issues": issues[start_at:start_at + max_results], "total": len(issues)}

    client.search = AsyncMock(side_effect=search)
    client.count_updated_since = AsyncMock(return_value=0)
    return client


def make_orchestrator(engine, client, page_size=100, storage=None, **config):
    fetcher = RemoteFetcher(client, page_size=page_size, retry_delay=0, sleep=AsyncMock())
    storage = storage or TicketStorageService(engine, retry_delay=0, sleep=AsyncMock())
    return SyncOrchestrator(engine, fetcher, storage, config=SyncConfig(**config))


def collect_events(orchestrator) -> list:
    events = []
    orchestrator.reporter.subscribe(events.append)
    return events


def stored_keys(engine) -> List[str]:
    with Session(engine) as s:
        return sorted(t.ticket_key for t in s.exec(select(Ticket)))


def session_row(engine, sync_id) -> SyncSession:
    with Session(engine) as s:
        return s.get(SyncSession, sync_id)


# ─── Full sync ────────────────────────────────────────────────────────────────

class TestFullSync:
    @pytest.mark.asyncio
    async def test_syncs_every_project(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 3), "ACME": make_issues("ACME", 2)})
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_full_sync()

        assert result["status"] == "completed"
        assert result["outcome"] == "completed"
        assert result["id"].startswith("full_")
        assert result["active"] is False
        assert result["progress"]["total_entities"] == 2
        assert result["progress"]["processed_entities"] == 2
        assert result["progress"]["processed_items"] == 5
        assert result["progress"]["total_items"] == 5
        assert stored_keys(engine) == ["ACME-1", "ACME-2", "OPS-1", "OPS-2", "OPS-3"]

    @pytest.mark.asyncio
    async def test_creates_clients_and_stamps_last_synced(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 1)})
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_full_sync()

        with Session(engine) as s:
            row = s.exec(select(Client).where(Client.jira_project_key == "OPS")).one()
            ticket = s.exec(select(Ticket)).one()
        assert row.name == "Operations"
        assert row.tier == 3
        assert row.last_synced is not None
        assert ticket.client_id == row.id

    @pytest.mark.asyncio
    async def test_session_persisted(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 2)})
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_full_sync()

        row = session_row(engine, result["id"])
        assert row.status == "completed"
        assert row.kind == "full"
        assert row.completed_at is not None
        assert json.loads(row.target_entities) == ["OPS"]
        assert json.loads(row.progress)["processed_items"] == 2
        assert orchestrator.active_syncs == {}

    @pytest.mark.asyncio
    async def test_project_keys_option(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 1), "ACME": make_issues("ACME", 1)})
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_full_sync(SyncOptions(project_keys=["ACME"]))

        assert result["target_entities"] == ["ACME"]
        assert stored_keys(engine) == ["ACME-1"]

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({"OPS": []}))
        await orchestrator.start_full_sync()
        assert not orchestrator.is_full_sync_running()
        assert orchestrator.lock.held_keys() == []

    @pytest.mark.asyncio
    async def test_second_full_sync_rejected_while_locked(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({"OPS": []}))
        release = orchestrator.lock.acquire("full_sync", timeout=3600)

        with pytest.raises(LockHeldError, match="Sync already in progress"):
            await orchestrator.start_full_sync()

        release()
        with Session(engine) as s:
            assert s.exec(select(SyncSession)).all() == []

    @pytest.mark.asyncio
    async def test_enumeration_failure_marks_session_failed(self, engine):
        client = make_jira({})
        client.get_projects = AsyncMock(side_effect=forbidden())
        orchestrator = make_orchestrator(engine, client)

        with pytest.raises(httpx.HTTPStatusError):
            await orchestrator.start_full_sync()

        history = orchestrator.list_sync_history()
        assert history[0]["status"] == "failed"
        assert "Permission denied" in history[0]["error"]
        assert not orchestrator.is_full_sync_running()
        assert orchestrator.active_syncs == {}


# ─── Entity isolation ─────────────────────────────────────────────────────────

class TestEntityFailures:
    @pytest.mark.asyncio
    async def test_failing_project_does_not_stop_siblings(self, engine):
        client = make_jira(
            {"OPS": make_issues("OPS", 2), "ACME": [], "GLOBEX": make_issues("GLOBEX", 1)},
            failing={"ACME"},
        )
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_full_sync()

        assert result["status"] == "completed"
        assert result["outcome"] == "completed_with_errors"
        errors = result["progress"]["errors"]
        assert [e["entity"] for e in errors] == ["ACME"]
        assert "Permission denied" in errors[0]["message"]
        assert result["progress"]["processed_entities"] == 2
        assert stored_keys(engine) == ["GLOBEX-1", "OPS-1", "OPS-2"]

    @pytest.mark.asyncio
    async def test_all_projects_failing_fails_session(self, engine):
        client = make_jira({"OPS": [], "ACME": []}, failing={"OPS", "ACME"})
        orchestrator = make_orchestrator(engine, client)
        events = collect_events(orchestrator)

        result = await orchestrator.start_full_sync()

        assert result["status"] == "failed"
        assert result["progress"]["processed_entities"] == 0
        assert len(result["progress"]["errors"]) == 2
        assert isinstance(events[-1], SyncFailed)
        assert session_row(engine, result["id"]).status == "failed"

    @pytest.mark.asyncio
    async def test_storage_failures_recorded_against_project(self, engine):
        storage = MagicMock()
        storage.batch_upsert = AsyncMock(
            return_value=BatchUpsertResult(total=3, processed=2, failed=1)
        )
        client = make_jira({"OPS": make_issues("OPS", 3)})
        orchestrator = make_orchestrator(engine, client, storage=storage)

        result = await orchestrator.start_full_sync()

        assert result["outcome"] == "completed_with_errors"
        assert result["progress"]["processed_items"] == 2
        assert result["progress"]["errors"][0]["entity"] == "OPS"
        assert "1 of 3" in result["progress"]["errors"][0]["message"]

    @pytest.mark.asyncio
    async def test_project_already_being_synced_is_skipped(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 1), "ACME": make_issues("ACME", 1)})
        orchestrator = make_orchestrator(engine, client)
        release = orchestrator.lock.acquire("entity:OPS", timeout=3600)

        result = await orchestrator.start_full_sync()
        release()

        assert result["status"] == "completed"
        assert result["progress"]["skipped_entities"] == 1
        assert result["progress"]["processed_entities"] == 1
        assert result["progress"]["errors"] == []
        assert stored_keys(engine) == ["ACME-1"]


# ─── Pagination and batching ──────────────────────────────────────────────────

class TestPagination:
    @pytest.mark.asyncio
    async def test_three_pages_then_one_batch_upsert(self, engine):
        storage = MagicMock()
        storage.batch_upsert = AsyncMock(
            return_value=BatchUpsertResult(total=120, processed=120)
        )
        client = make_jira({"OPS": make_issues("OPS", 120)})
        orchestrator = make_orchestrator(engine, client, page_size=50, storage=storage)

        result = await orchestrator.start_full_sync()

        assert client.search.await_count == 3
        assert [c.kwargs["start_at"] for c in client.search.await_args_list] == [0, 50, 100]
        assert [c.kwargs["max_results"] for c in client.search.await_args_list] == [50, 50, 50]
        storage.batch_upsert.assert_awaited_once()
        records = storage.batch_upsert.await_args.args[0]
        assert len(records) == 120
        assert records[0].issue["key"] == "OPS-1"
        assert records[-1].issue["key"] == "OPS-120"
        assert result["progress"]["processed_items"] == 120

    @pytest.mark.asyncio
    async def test_jql_scopes_project_and_filters(self, engine):
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_full_sync()

        jql = client.search.await_args.args[0]
        assert jql == 'project = "OPS" AND issuetype NOT IN ("Sub-task")'

    @pytest.mark.asyncio
    async def test_concurrency_chunks(self, engine):
        client = make_jira({p["key"]: [] for p in PROJECTS})
        orchestrator = make_orchestrator(engine, client, max_concurrency=2)

        result = await orchestrator.start_full_sync()

        assert result["progress"]["processed_entities"] == 3
        assert client.search.await_count == 3


# ─── Progress events ──────────────────────────────────────────────────────────

class TestProgressEvents:
    @pytest.mark.asyncio
    async def test_event_sequence(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 25)})
        orchestrator = make_orchestrator(engine, client)
        events = collect_events(orchestrator)

        result = await orchestrator.start_full_sync()

        assert isinstance(events[0], SyncStarted)
        assert events[0].entity_count == 1
        assert isinstance(events[-1], SyncCompleted)
        assert events[-1].sync_id == result["id"]
        fetched = [e.fetched for e in events if isinstance(e, EntityProgress)]
        # every 10 items, the page end, then the entity completion
        assert fetched == [10, 20, 25, 25]

    @pytest.mark.asyncio
    async def test_subscriber_failure_does_not_break_sync(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 2)})
        orchestrator = make_orchestrator(engine, client)
        orchestrator.reporter.subscribe(MagicMock(side_effect=RuntimeError("socket closed")))

        result = await orchestrator.start_full_sync()

        assert result["status"] == "completed"


# ─── Incremental sync ─────────────────────────────────────────────────────────

class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_no_changes_is_a_completed_no_op(self, engine):
        storage = MagicMock()
        storage.batch_upsert = AsyncMock()
        client = make_jira({"OPS": make_issues("OPS", 5), "ACME": make_issues("ACME", 5)})
        orchestrator = make_orchestrator(engine, client, storage=storage)
        events = collect_events(orchestrator)

        result = await orchestrator.start_incremental_sync()

        assert result["status"] == "completed"
        assert result["id"].startswith("incr_")
        assert client.count_updated_since.await_count == 2
        client.search.assert_not_awaited()
        storage.batch_upsert.assert_not_awaited()
        assert isinstance(events[-1], SyncCompleted)
        assert session_row(engine, result["id"]).status == "completed"

    @pytest.mark.asyncio
    async def test_only_changed_projects_synced(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 2), "ACME": make_issues("ACME", 2)})
        client.count_updated_since = AsyncMock(side_effect=lambda key, since: 4 if key == "ACME" else 0)
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_incremental_sync()

        assert result["target_entities"] == ["ACME"]
        assert stored_keys(engine) == ["ACME-1", "ACME-2"]
        jql = client.search.await_args.args[0]
        assert 'project = "ACME"' in jql
        assert "updated >= " in jql

    @pytest.mark.asyncio
    async def test_since_anchored_on_last_incremental_start(self, engine):
        run_start = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        with Session(engine) as s:
            s.add(SyncSession(id="incr_old", kind="incremental", status="completed",
                              started_at=run_start, completed_at=run_start + timedelta(minutes=30)))
            s.add(SyncSession(id="incr_failed", kind="incremental", status="failed",
                              started_at=run_start + timedelta(hours=1),
                              completed_at=run_start + timedelta(hours=1)))
            s.add(SyncSession(id="full_newer", kind="full", status="completed",
                              started_at=run_start + timedelta(hours=2),
                              completed_at=run_start + timedelta(hours=2)))
            s.commit()
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client, incremental_overlap=timedelta(0))

        await orchestrator.start_incremental_sync(
            SyncOptions(updated_since=datetime(2020, 1, 1, tzinfo=timezone.utc))
        )

        client.count_updated_since.assert_awaited_once_with("OPS", run_start)

    @pytest.mark.asyncio
    async def test_update_during_previous_run_falls_in_next_window(self, engine):
        run_start = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        changed_mid_run = run_start + timedelta(minutes=10)
        with Session(engine) as s:
            s.add(SyncSession(id="incr_prev", kind="incremental", status="completed",
                              started_at=run_start, completed_at=run_start + timedelta(minutes=30)))
            s.commit()
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_incremental_sync()

        since = client.count_updated_since.await_args.args[1]
        assert since <= changed_mid_run
        assert since == run_start - timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_window_widened_for_west_of_utc_users(self, engine):
        run_start = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        with Session(engine) as s:
            s.add(SyncSession(id="incr_prev", kind="incremental", status="completed",
                              started_at=run_start, completed_at=run_start))
            s.commit()
        client = make_jira({"OPS": make_issues("OPS", 1)})
        client.count_updated_since = AsyncMock(return_value=1)
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_incremental_sync()

        # read as UTC-8 wall time this is 08:00 UTC, still before the 12:00 UTC run start
        jql = client.search.await_args.args[0]
        assert 'updated >= "2024-06-01 00:00"' in jql

    @pytest.mark.asyncio
    async def test_since_falls_back_to_option(self, engine):
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client)
        since = datetime(2024, 3, 1, tzinfo=timezone.utc)

        await orchestrator.start_incremental_sync(SyncOptions(updated_since=since))

        client.count_updated_since.assert_awaited_once_with("OPS", since)

    @pytest.mark.asyncio
    async def test_naive_option_taken_as_utc(self, engine):
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_incremental_sync(SyncOptions(updated_since=datetime(2024, 3, 1)))

        client.count_updated_since.assert_awaited_once_with(
            "OPS", datetime(2024, 3, 1, tzinfo=timezone.utc)
        )

    @pytest.mark.asyncio
    async def test_since_defaults_to_last_day(self, engine):
        client = make_jira({"OPS": []})
        orchestrator = make_orchestrator(engine, client)

        await orchestrator.start_incremental_sync()

        since = client.count_updated_since.await_args.args[1]
        assert timedelta(hours=23, minutes=59) < utcnow() - since < timedelta(hours=24, minutes=1)

    @pytest.mark.asyncio
    async def test_failed_probe_skips_project(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 1), "ACME": make_issues("ACME", 1)})

        async def probe(key, since):
            if key == "OPS":
                raise forbidden()
            return 1

        client.count_updated_since = AsyncMock(side_effect=probe)
        orchestrator = make_orchestrator(engine, client)

        result = await orchestrator.start_incremental_sync()

        assert result["target_entities"] == ["ACME"]
        assert stored_keys(engine) == ["ACME-1"]

    @pytest.mark.asyncio
    async def test_incremental_does_not_take_full_sync_lock(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 1)})
        client.count_updated_since = AsyncMock(return_value=1)
        orchestrator = make_orchestrator(engine, client)
        release = orchestrator.lock.acquire("full_sync", timeout=3600)

        result = await orchestrator.start_incremental_sync()
        release()

        assert result["status"] == "completed"
        assert stored_keys(engine) == ["OPS-1"]


# ─── Cancellation ─────────────────────────────────────────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_fetch(self, engine):
        storage = MagicMock()
        storage.batch_upsert = AsyncMock()
        client = make_jira({"OPS": make_issues("OPS", 120)})
        orchestrator = make_orchestrator(engine, client, page_size=50, storage=storage)
        events = collect_events(orchestrator)
        serve_page = client.search.side_effect

        async def search_then_cancel(jql, **kwargs):
            page = await serve_page(jql, **kwargs)
            orchestrator.cancel_sync("full_test")
            return page

        client.search.side_effect = search_then_cancel

        result = await orchestrator.start_full_sync(sync_id="full_test")

        assert result["status"] == "cancelled"
        assert client.search.await_count == 1
        storage.batch_upsert.assert_not_awaited()
        assert orchestrator.active_syncs == {}
        assert not orchestrator.is_full_sync_running()
        assert any(isinstance(e, SyncCancelled) for e in events)
        assert not any(isinstance(e, SyncCompleted) for e in events)
        row = session_row(engine, "full_test")
        assert row.status == "cancelled"
        assert row.error == "User cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_session_is_not_overwritten(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 3), "ACME": make_issues("ACME", 3)})
        orchestrator = make_orchestrator(engine, client, max_concurrency=1)
        serve_page = client.search.side_effect

        async def search_then_cancel(jql, **kwargs):
            page = await serve_page(jql, **kwargs)
            if project_key(jql) == "OPS":
                orchestrator.cancel_sync("full_test")
            return page

        client.search.side_effect = search_then_cancel

        await orchestrator.start_full_sync(sync_id="full_test")

        row = session_row(engine, "full_test")
        assert row.status == "cancelled"
        assert json.loads(row.progress)["processed_entities"] == 0
        assert stored_keys(engine) == []

    @pytest.mark.asyncio
    async def test_cancelled_project_task_is_not_reported_completed(self, engine):
        client = make_jira({"OPS": make_issues("OPS", 2), "ACME": make_issues("ACME", 2)})
        serve_page = client.search.side_effect

        async def search(jql, **kwargs):
            if project_key(jql) == "ACME":
                raise asyncio.CancelledError()
            return await serve_page(jql, **kwargs)

        client.search.side_effect = search
        orchestrator = make_orchestrator(engine, client)
        events = collect_events(orchestrator)

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.start_full_sync(sync_id="full_test")

        row = session_row(engine, "full_test")
        assert row.status == "cancelled"
        assert row.error == "Sync task cancelled"
        assert isinstance(events[-1], SyncCancelled)
        assert not any(isinstance(e, SyncCompleted) for e in events)
        assert orchestrator.active_syncs == {}
        assert orchestrator.lock.held_keys() == []

    def test_cancel_unknown_sync(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({}))
        with pytest.raises(SyncNotFoundError, match="Sync not found or already completed"):
            orchestrator.cancel_sync("full_missing")


# ─── Status and history ───────────────────────────────────────────────────────

class TestStatus:
    @pytest.mark.asyncio
    async def test_status_of_finished_sync_read_from_store(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({"OPS": make_issues("OPS", 1)}))
        result = await orchestrator.start_full_sync()

        status = orchestrator.get_sync_status(result["id"])

        assert status["status"] == "completed"
        assert status["active"] is False
        assert status["progress"]["processed_items"] == 1

    def test_status_unknown(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({}))
        assert orchestrator.get_sync_status("full_missing") is None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({"OPS": []}))
        first = await orchestrator.start_full_sync()
        second = await orchestrator.start_incremental_sync()

        history = orchestrator.list_sync_history(limit=10)

        assert [h["id"] for h in history] == [second["id"], first["id"]]
        assert len(orchestrator.list_sync_history(limit=1)) == 1


class TestEnsureClient:
    def test_creates_once(self, engine):
        orchestrator = make_orchestrator(engine, make_jira({}))
        first = orchestrator.ensure_client({"key": "OPS", "name": "Operations"})
        second = orchestrator.ensure_client({"key": "OPS", "name": "Operations"})
        assert first == second

    def test_placeholder_name_replaced(self, engine):
        with Session(engine) as s:
            s.add(Client(name="OPS", jira_project_key="OPS"))
            s.commit()
        orchestrator = make_orchestrator(engine, make_jira({}))

        orchestrator.ensure_client({"key": "OPS", "name": "Operations"})

        with Session(engine) as s:
            assert s.exec(select(Client)).one().name == "Operations"

    def test_real_name_kept(self, engine, seeded_client):
        orchestrator = make_orchestrator(engine, make_jira({}))
        client_id = orchestrator.ensure_client({"key": "ACME", "name": "Acme Corp Support"})
        assert client_id == seeded_client.id
        with Session(engine) as s:
            assert s.get(Client, client_id).name == "Acme Corp"
