"""
SyncOrchestrator: drives full and incremental Jira -> local store syncs.

Flow for one run:
  1. (full only) take the "full_sync" lock
  2. create a SyncSession row (status="running") and register it as active
  3. enumerate projects; incremental runs keep only projects with changes
     since the last completed incremental run
  4. split projects into chunks of max_concurrency; chunks run strictly in
     sequence, projects inside a chunk run concurrently
  5. per project: ensure its Client row, page through the search in order,
     then one TicketStorageService.batch_upsert() with everything fetched
  6. mark the session completed / failed, emit the final event, release the lock

A failing project is recorded in progress.errors and never stops its
siblings. Cancellation is cooperative: the flag is checked before every
chunk, project and page; in-flight requests and transactions finish.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlmodel import Session, select

from ticketsync.config import FilterSettings, Settings
from ticketsync.jira.errors import ErrorClassifier, ErrorKind
from ticketsync.jira.jql import build_jql
from ticketsync.models.sync import (
    Progress,
    SyncErrorEntry,
    SyncSession,
    TERMINAL_STATUSES,
    as_utc,
    outcome_for,
    utcnow,
)
from ticketsync.models.ticket import Client
from ticketsync.storage.ticket_storage import TicketInput
from ticketsync.sync.exceptions import CredentialsMissingError, SyncCancelledError, SyncNotFoundError
from ticketsync.sync.lock import LockHeldError, SyncLock
from ticketsync.sync.progress import (
    EntityProgress,
    ProgressReporter,
    SyncCancelled,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
)

logger = logging.getLogger(__name__)

FULL_SYNC_LOCK = "full_sync"
PROGRESS_EVENT_EVERY = 10


def new_sync_id(kind: str) -> str:
    """Session id such as "full_1718000000000_a1b2c3"."""
    prefix = "full" if kind == "full" else "incr"
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class SyncConfig:
    max_concurrency: int = 3
    full_sync_lock_timeout: float = 3600.0  # seconds
    entity_lock_timeout: float = 3600.0
    incremental_fallback: timedelta = timedelta(hours=24)
    incremental_overlap: timedelta = timedelta(hours=12)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncConfig":
        return cls(
            max_concurrency=settings.max_concurrency,
            full_sync_lock_timeout=settings.full_sync_lock_timeout_seconds,
            entity_lock_timeout=settings.full_sync_lock_timeout_seconds,
            incremental_overlap=timedelta(minutes=settings.incremental_overlap_minutes),
        )


class SyncOptions(BaseModel):
    """Caller-supplied options for one run."""
    project_keys: Optional[List[str]] = None  # restrict to these projects
    updated_since: Optional[datetime] = None  # incremental fallback "since"
    filters: FilterSettings = Field(default_factory=FilterSettings)


@dataclass
class SyncState:
    """In-memory state of an active session. Owned by one orchestrator."""
    id: str
    kind: str
    options: SyncOptions
    progress: Progress = field(default_factory=Progress)
    projects: List[Dict[str, str]] = field(default_factory=list)
    status: str = "running"
    cancelled: bool = False
    since: Optional[datetime] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


class SyncOrchestrator:
    """Coordinates sync sessions. All collaborators are injected."""

    def __init__(
        self,
        engine,
        fetcher,
        storage,
        lock: Optional[SyncLock] = None,
        reporter: Optional[ProgressReporter] = None,
        config: Optional[SyncConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine for session and client rows.
            fetcher: RemoteFetcher (or AsyncMock in tests).
            storage: TicketStorageService (or AsyncMock in tests).
            lock: SyncLock shared by every run of this orchestrator.
            reporter: Progress event channel.
            config: Concurrency and lock tunables.
            classifier: Used to turn entity failures into user messages.
        """
        self.engine = engine
        self.fetcher = fetcher
        self.storage = storage
        self.lock = lock or SyncLock()
        self.reporter = reporter or ProgressReporter()
        self.config = config or SyncConfig()
        self.classifier = classifier or ErrorClassifier()
        self.active_syncs: Dict[str, SyncState] = {}

    # ─── Public API ───────────────────────────────────────────────────────────

    async def start_full_sync(
        self, options: Optional[SyncOptions] = None, sync_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Run a full sync of every project.

        Returns:
            Final status snapshot of the session.

        Raises:
            LockHeldError: if another full sync holds a non-stale lock.
            Any exception from project enumeration (after the session is marked failed).
        """
        options = options or SyncOptions()
        release_lock = self.lock.acquire(FULL_SYNC_LOCK, self.config.full_sync_lock_timeout)
        try:
            state = self._open_session("full", options, sync_id=sync_id)
        except Exception:
            release_lock()
            raise
        logger.info("Starting full sync %s", state.id)
        try:
            try:
                projects = await self._enumerate_projects(state)
            except Exception as exc:
                self._fail(state, exc)
                raise
            return await self._run(state, projects)
        finally:
            self.active_syncs.pop(state.id, None)
            release_lock()

    async def start_incremental_sync(
        self, options: Optional[SyncOptions] = None, sync_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Sync only projects with issues updated since the last completed
        incremental run. Does not take the full-sync lock.

        Returns:
            Final status snapshot of the session.
        """
        options = options or SyncOptions()
        since = self._resolve_since(options)
        state = self._open_session("incremental", options, since=since, sync_id=sync_id)
        logger.info("Starting incremental sync %s (since %s)", state.id, since.isoformat())
        try:
            try:
                projects = await self._enumerate_projects(state)
                changed = await self._projects_changed_since(state, projects, since)
            except Exception as exc:
                self._fail(state, exc)
                raise

            if state.cancelled:
                return self._snapshot(state)
            if not changed:
                logger.info("No projects with updates since %s", since.isoformat())
                self._finish(state, "completed")
                self.reporter.emit(
                    SyncCompleted(state.id, state.duration_ms(), state.progress.to_dict())
                )
                return self._snapshot(state)
            return await self._run(state, changed)
        finally:
            self.active_syncs.pop(state.id, None)

    async def sync_entity(self, state: SyncState, project: Dict[str, str]) -> None:
        """
        Fetch every matching issue of one project and store them.

        Never raises for project-level failures: they are appended to
        state.progress.errors so sibling projects keep going.
        """
        key = project["key"]
        if state.cancelled:
            return
        try:
            release = self.lock.acquire(f"entity:{key}", self.config.entity_lock_timeout)
        except LockHeldError:
            logger.info("Skipping %s in %s: already being synced by another session", key, state.id)
            state.progress.skipped_entities += 1
            return

        try:
            state.progress.current_entity = key
            client_id = self.ensure_client(project)
            jql = build_jql(
                key,
                updated_since=state.since if state.kind == "incremental" else None,
                filters=state.options.filters,
            )

            reported = {"total": 0, "emitted": 0}

            def on_page(batch: List[Dict[str, Any]], fetched: int, total: int) -> None:
                if reported["total"] == 0:
                    state.progress.total_items += total
                reported["total"] = total
                # at least one event per PROGRESS_EVENT_EVERY items, plus one per page
                mark = reported["emitted"] + PROGRESS_EVENT_EVERY
                while mark <= fetched:
                    self.reporter.emit(EntityProgress(state.id, key, mark, total))
                    reported["emitted"] = mark
                    mark += PROGRESS_EVENT_EVERY
                if reported["emitted"] != fetched:
                    self.reporter.emit(EntityProgress(state.id, key, fetched, total))

            issues = await self.fetcher.fetch_all(
                jql, on_page=on_page, is_cancelled=lambda: state.cancelled
            )
            if state.cancelled:
                return

            if issues:
                stats = await self.storage.batch_upsert(
                    [TicketInput(issue, client_id) for issue in issues]
                )
                state.progress.processed_items += stats.processed
                if stats.failed:
                    state.progress.errors.append(SyncErrorEntry(
                        entity=key,
                        message=f"{stats.failed} of {stats.total} tickets could not be stored",
                    ))
                logger.info(
                    "Project %s synced: %d tickets (%d stored, %d failed)",
                    key, len(issues), stats.processed, stats.failed,
                )

            state.progress.processed_entities += 1
            self._touch_client(key)
            self.reporter.emit(
                EntityProgress(state.id, key, len(issues), reported["total"] or len(issues))
            )
            self._checkpoint(state)

        except SyncCancelledError:
            logger.info("Project %s stopped: sync %s cancelled", key, state.id)
        except Exception as exc:
            message = self._describe(exc)
            logger.error("Failed to sync project %s in %s: %s", key, state.id, message)
            state.progress.errors.append(SyncErrorEntry(entity=key, message=message))
        finally:
            release()

    def cancel_sync(self, sync_id: str) -> Dict[str, Any]:
        """
        Cancel an active session. Its status flips to cancelled and it leaves
        the active set immediately; running work stops at its next check.

        Raises:
            SyncNotFoundError: if the session is not active.
        """
        state = self.active_syncs.pop(sync_id, None)
        if state is None:
            raise SyncNotFoundError("Sync not found or already completed")
        state.cancelled = True
        self._finish(state, "cancelled", error="User cancelled")
        logger.info("Sync %s cancelled", sync_id)
        self.reporter.emit(SyncCancelled(sync_id))
        return {"success": True, "id": sync_id}

    def get_sync_status(self, sync_id: str) -> Optional[Dict[str, Any]]:
        """Live snapshot for an active session, else the persisted record, else None."""
        state = self.active_syncs.get(sync_id)
        if state is not None:
            return self._snapshot(state)
        with Session(self.engine) as s:
            record = s.get(SyncSession, sync_id)
            return record.to_status() if record else None

    def list_sync_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        with Session(self.engine) as s:
            records = s.exec(
                select(SyncSession).order_by(SyncSession.started_at.desc()).limit(limit)
            ).all()
            return [r.to_status() for r in records]

    def is_full_sync_running(self) -> bool:
        return self.lock.is_locked(FULL_SYNC_LOCK)

    def ensure_client(self, project: Dict[str, str]) -> int:
        """Return the Client id for a project, creating the row on first sight."""
        key = project["key"]
        name = project.get("name") or key
        with Session(self.engine) as s:
            client = s.exec(select(Client).where(Client.jira_project_key == key)).first()
            if client is None:
                client = Client(name=name, jira_project_key=key)
                s.add(client)
                s.commit()
                s.refresh(client)
                logger.info("Created client %s for project %s", client.id, key)
            elif client.name == key and name != key:
                # Placeholder name from an earlier sync; take the real project name
                client.name = name
                s.add(client)
                s.commit()
                s.refresh(client)
            return client.id

    # ─── Run loop ─────────────────────────────────────────────────────────────

    async def _run(self, state: SyncState, projects: List[Dict[str, str]]) -> Dict[str, Any]:
        state.projects = projects
        state.progress.total_entities = len(projects)
        self._checkpoint(state)
        self.reporter.emit(SyncStarted(state.id, state.kind, len(projects)))

        size = max(1, self.config.max_concurrency)
        chunks = [projects[i:i + size] for i in range(0, len(projects), size)]
        try:
            for chunk in chunks:
                if state.cancelled:
                    break
                results = await asyncio.gather(
                    *(self.sync_entity(state, project) for project in chunk),
                    return_exceptions=True,
                )
                failures = [r for r in results if isinstance(r, BaseException)]
                for failure in failures:
                    if isinstance(failure, asyncio.CancelledError):
                        raise failure
                if failures:
                    raise failures[0]
                self._checkpoint(state)
        except asyncio.CancelledError:
            logger.warning("Sync %s interrupted: a project task was cancelled", state.id)
            state.cancelled = True
            self._finish(state, "cancelled", error="Sync task cancelled")
            self.reporter.emit(SyncCancelled(state.id))
            raise
        except Exception as exc:
            logger.exception("Sync %s failed while processing a chunk", state.id)
            self._fail(state, exc)
            return self._snapshot(state)

        if state.cancelled:
            return self._snapshot(state)

        progress = state.progress
        attempted = progress.total_entities - progress.skipped_entities
        if progress.errors and attempted > 0 and progress.processed_entities == 0:
            self._finish(state, "failed", error=f"All {attempted} projects failed to sync")
            self.reporter.emit(SyncFailed(state.id, state.error, progress.to_dict()))
        else:
            self._finish(state, "completed")
            self.reporter.emit(SyncCompleted(state.id, state.duration_ms(), progress.to_dict()))
        logger.info(
            "Sync %s %s: %d/%d projects, %d tickets, %d errors",
            state.id,
            state.status,
            progress.processed_entities,
            progress.total_entities,
            progress.processed_items,
            len(progress.errors),
        )
        return self._snapshot(state)

    async def _enumerate_projects(self, state: SyncState) -> List[Dict[str, str]]:
        projects = await self.fetcher.get_projects()
        wanted = state.options.project_keys
        if wanted:
            by_key = {p["key"]: p for p in projects}
            missing = [k for k in wanted if k not in by_key]
            if missing:
                logger.warning("Projects not visible in Jira: %s", ", ".join(missing))
            projects = [by_key[k] for k in wanted if k in by_key]
        return projects

    async def _projects_changed_since(
        self, state: SyncState, projects: List[Dict[str, str]], since: datetime
    ) -> List[Dict[str, str]]:
        """Probe each project; a failed probe skips that project."""

        async def probe(project: Dict[str, str]) -> bool:
            try:
                return await self.fetcher.count_updated_since(project["key"], since) > 0
            except Exception as exc:
                logger.warning("Failed to check %s for updates: %s", project["key"], exc)
                return False

        size = max(1, self.config.max_concurrency)
        changed: List[Dict[str, str]] = []
        for i in range(0, len(projects), size):
            if state.cancelled:
                break
            chunk = projects[i:i + size]
            flags = await asyncio.gather(*(probe(p) for p in chunk))
            changed.extend(p for p, has_changes in zip(chunk, flags) if has_changes)
        return changed

    def _resolve_since(self, options: SyncOptions) -> datetime:
        """
        Lower bound of the incremental window.

        Anchored on when the last completed incremental run *started*, so
        issues changed while it was running fall into the next window, and
        widened by config.incremental_overlap.
        """
        with Session(self.engine) as s:
            last = s.exec(
                select(SyncSession)
                .where(SyncSession.kind == "incremental", SyncSession.status == "completed")
                .order_by(SyncSession.started_at.desc())
            ).first()
            if last is not None:
                return as_utc(last.started_at) - self.config.incremental_overlap
        if options.updated_since is not None:
            return as_utc(options.updated_since)
        return utcnow() - self.config.incremental_fallback

    def _describe(self, exc: Exception) -> str:
        classified = self.classifier.classify(exc)
        if classified.kind == ErrorKind.UNKNOWN:
            return str(exc) or type(exc).__name__
        return f"{classified.user_message} ({classified.details})"

    # ─── Persistence ──────────────────────────────────────────────────────────

    def _open_session(
        self,
        kind: str,
        options: SyncOptions,
        since: Optional[datetime] = None,
        sync_id: Optional[str] = None,
    ) -> SyncState:
        sync_id = sync_id or new_sync_id(kind)
        state = SyncState(id=sync_id, kind=kind, options=options, since=since)

        stored_options = options.model_dump(mode="json")
        if since is not None:
            stored_options["updated_since"] = since.isoformat()
        with Session(self.engine) as s:
            s.add(SyncSession(
                id=sync_id,
                kind=kind,
                status="running",
                options=json.dumps(stored_options),
                progress=json.dumps(state.progress.to_dict()),
                error_log="[]",
                started_at=state.started_at,
                updated_at=state.started_at,
            ))
            s.commit()
        self.active_syncs[sync_id] = state
        return state

    def _checkpoint(self, state: SyncState) -> None:
        self._save(state)

    def _fail(self, state: SyncState, exc: Exception) -> None:
        message = self._describe(exc)
        state.progress.errors.append(
            SyncErrorEntry(entity=state.progress.current_entity, message=message)
        )
        self._finish(state, "failed", error=message)
        self.reporter.emit(SyncFailed(state.id, message, state.progress.to_dict()))

    def _finish(self, state: SyncState, status: str, error: Optional[str] = None) -> None:
        if state.is_terminal:
            return
        state.status = status
        state.error = error
        state.completed_at = utcnow()
        self._save(state)

    def _save(self, state: SyncState) -> None:
        """Write state to its row. Terminal rows are never modified again."""
        with Session(self.engine) as s:
            record = s.get(SyncSession, state.id)
            if record is None or record.is_terminal:
                return
            progress = state.progress.to_dict()
            record.status = state.status
            record.progress = json.dumps(progress)
            record.error_log = json.dumps(progress["errors"])
            record.target_entities = json.dumps([p["key"] for p in state.projects])
            record.error = state.error
            record.updated_at = utcnow()
            record.completed_at = state.completed_at
            s.add(record)
            s.commit()

    def _touch_client(self, project_key: str) -> None:
        with Session(self.engine) as s:
            client = s.exec(select(Client).where(Client.jira_project_key == project_key)).first()
            if client is not None:
                client.last_synced = utcnow()
                s.add(client)
                s.commit()

    def _snapshot(self, state: SyncState) -> Dict[str, Any]:
        progress = state.progress.to_dict()
        return {
            "id": state.id,
            "kind": state.kind,
            "status": state.status,
            "outcome": outcome_for(state.status, progress["errors"]),
            "progress": progress,
            "target_entities": [p["key"] for p in state.projects],
            "error": state.error,
            "started_at": state.started_at,
            "completed_at": state.completed_at,
            "duration_ms": state.duration_ms(),
            "active": not state.is_terminal and state.id in self.active_syncs,
        }


def build_orchestrator(settings: Optional[Settings] = None, engine=None, client=None) -> SyncOrchestrator:
    """
    Wire an orchestrator from settings.

    Args:
        settings: Defaults to get_settings().
        engine: Defaults to the module-level engine.
        client: JiraClient; built from the configured credentials if omitted.

    Raises:
        CredentialsMissingError: if no client is given and credentials are unset.
    """
    from ticketsync.config import get_settings
    from ticketsync.db.engine import get_engine
    from ticketsync.jira.client import JiraClient
    from ticketsync.jira.fetcher import RemoteFetcher
    from ticketsync.storage.ticket_storage import TicketStorageService

    settings = settings or get_settings()
    engine = engine if engine is not None else get_engine()
    if client is None:
        credentials = settings.credentials()
        if credentials is None:
            raise CredentialsMissingError(
                "Jira credentials not configured. Set JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN."
            )
        client = JiraClient(credentials)

    classifier = ErrorClassifier()
    fetcher = RemoteFetcher(
        client,
        classifier,
        page_size=settings.page_size,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
    )
    storage = TicketStorageService(
        engine,
        chunk_size=settings.storage_chunk_size,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
    )
    return SyncOrchestrator(
        engine,
        fetcher,
        storage,
        config=SyncConfig.from_settings(settings),
        classifier=classifier,
    )
