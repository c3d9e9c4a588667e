"""
TicketStorageService: transactional batch upsert of Jira issues.

Flow for one batch_upsert() call:
  1. Split the input into chunks of chunk_size (default 1000).
  2. For each chunk, inside ONE transaction:
       a. CREATE TEMPORARY TABLE staging_<uuid>
       b. bulk-insert the chunk's normalized rows into staging
       c. INSERT INTO ticket SELECT ... FROM staging
          ON CONFLICT(ticket_key) DO UPDATE SET <every non-key column>
       d. DROP the staging table
     Any failure rolls the whole chunk back; the ticket table is exactly as
     it was before the chunk started.
  3. A failed chunk is retried up to max_retries times (1s, 2s, 4s). If it
     still fails, every record in it is upserted on its own so one bad
     record only costs itself.

Idempotency: ticket_key is unique and every upsert overwrites all non-key
columns, so re-applying the same snapshot only refreshes last_synced.

Transactions run synchronously on the calling thread. Under asyncio this
means a chunk's transaction is never interleaved with another coroutine's;
batch_upsert yields to the event loop between chunks instead.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import Column, MetaData, Table, delete, func, true
from sqlalchemy import select as sa_select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from ticketsync.jira.field_mapping import DEFAULT_FIELD_MAPPINGS, FieldMapping
from ticketsync.jira.normalizer import normalize_issue
from ticketsync.models.sync import as_utc, utcnow
from ticketsync.models.ticket import TICKET_COLUMNS, Client, Ticket

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_PAGE_LIMIT = 1000
MAX_PAGE_LIMIT = 10000

_TICKET_TABLE = Ticket.__table__
_MERGE_COLUMNS = TICKET_COLUMNS + ("last_synced", "updated_at")
_JSON_DEFAULTS = {"custom_fields": dict, "components": list, "labels": list}


class TicketStorageError(Exception):
    """Raised when a ticket cannot be written or read."""


class TicketInput(NamedTuple):
    """One raw Jira issue and the Client row that owns it."""
    issue: Dict[str, Any]
    client_id: int


@dataclass
class BatchUpsertResult:
    total: int = 0
    processed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)  # one per failed chunk
    record_errors: List[Dict[str, Any]] = field(default_factory=list)  # one per failed record
    duration_ms: int = 0
    throughput: float = 0.0  # tickets per second

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TicketFilters(BaseModel):
    """Whitelisted filters for get_tickets()."""
    client_id: Optional[int] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    assignee: Optional[str] = None
    keys: Optional[List[str]] = None
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = Field(default=0, ge=0)


class TicketStorageService:
    """Owns every write to the ticket table."""

    def __init__(
        self,
        engine,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        mappings: Sequence[FieldMapping] = DEFAULT_FIELD_MAPPINGS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            engine: SQLAlchemy engine (see db.engine.create_store_engine).
            chunk_size: Records per transactional chunk.
            max_retries: Whole-chunk retries before per-record fallback.
            retry_delay: Base delay in seconds; retry n waits retry_delay * 2**(n-1).
            mappings: Field mappings feeding each ticket's attribute bag.
            sleep: Awaitable sleep, injectable for tests.
        """
        if engine is None:
            raise ValueError("Database engine required")
        self.engine = engine
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.mappings = list(mappings)
        self._sleep = sleep

    # ─── Writes ───────────────────────────────────────────────────────────────

    async def upsert_one(self, issue: Dict[str, Any], client_id: int) -> str:
        """
        Upsert a single issue in its own transaction.

        Returns:
            The ticket key.

        Raises:
            TicketStorageError: on validation or database failure.
        """
        key = issue.get("key") if isinstance(issue, dict) else None
        start = time.monotonic()
        try:
            row = normalize_issue(issue, client_id, self.mappings)
            now = utcnow()
            row["last_synced"] = now
            row["updated_at"] = now
            stmt = sqlite_insert(_TICKET_TABLE).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=["ticket_key"],
                set_={c: stmt.excluded[c] for c in _MERGE_COLUMNS if c != "ticket_key"},
            )
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except Exception as exc:
            logger.error("Failed to upsert ticket %s: %s", key, exc)
            raise TicketStorageError(f"Failed to upsert ticket {key}: {exc}") from exc

        logger.debug("Ticket %s upserted in %.1fms", key, (time.monotonic() - start) * 1000)
        return row["ticket_key"]

    async def batch_upsert(self, records: Iterable[TicketInput]) -> BatchUpsertResult:
        """
        Upsert many issues in transactional chunks with retry and per-record fallback.

        Args:
            records: TicketInput (or (issue, client_id) tuples).

        Returns:
            BatchUpsertResult with counts, chunk-level errors and per-record errors.
        """
        items = [TicketInput(*r) for r in records]
        result = BatchUpsertResult(total=len(items))
        started = time.monotonic()
        logger.info("Starting batch upsert of %d tickets", result.total)

        for chunk_start in range(0, len(items), self.chunk_size):
            chunk = items[chunk_start:chunk_start + self.chunk_size]
            try:
                await self._merge_chunk_with_retry(chunk, chunk_start)
                result.processed += len(chunk)
            except Exception as exc:
                logger.error(
                    "Chunk %d-%d failed after %d retries, falling back to single upserts: %s",
                    chunk_start,
                    chunk_start + len(chunk),
                    self.max_retries,
                    exc,
                )
                result.errors.append({
                    "chunk_start": chunk_start,
                    "chunk_end": chunk_start + len(chunk),
                    "error": str(exc),
                })
                await self._upsert_individually(chunk, result)
            # let other coroutines (page fetches of sibling projects) run between chunks
            await asyncio.sleep(0)

        elapsed = time.monotonic() - started
        result.duration_ms = int(elapsed * 1000)
        result.throughput = result.processed / elapsed if elapsed > 0 else float(result.processed)
        logger.info(
            "Batch upsert finished: %d/%d processed, %d failed in %dms",
            result.processed,
            result.total,
            result.failed,
            result.duration_ms,
        )
        return result

    async def _merge_chunk_with_retry(self, chunk: List[TicketInput], chunk_start: int) -> None:
        attempt = 0
        while True:
            try:
                self._merge_chunk(chunk)
                logger.debug("Chunk at %d merged (%d tickets)", chunk_start, len(chunk))
                return
            except Exception as exc:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Retrying chunk at %d (attempt %d/%d) in %.1fs: %s",
                    chunk_start,
                    attempt,
                    self.max_retries,
                    delay,
                    exc,
                )
                await self._sleep(delay)

    async def _upsert_individually(self, chunk: List[TicketInput], result: BatchUpsertResult) -> None:
        logger.info("Upserting %d tickets individually", len(chunk))
        for item in chunk:
            try:
                await self.upsert_one(item.issue, item.client_id)
                result.processed += 1
            except TicketStorageError as exc:
                result.failed += 1
                key = item.issue.get("key") if isinstance(item.issue, dict) else None
                result.record_errors.append({"ticket_key": key, "error": str(exc)})

    def _merge_chunk(self, chunk: List[TicketInput]) -> int:
        """Stage and merge one chunk in a single transaction. Returns rows merged."""
        now = utcnow()
        rows_by_key: Dict[str, Dict[str, Any]] = {}
        for item in chunk:
            row = normalize_issue(item.issue, item.client_id, self.mappings)
            row["last_synced"] = now
            row["updated_at"] = now
            rows_by_key[row["ticket_key"]] = row  # later snapshot of a key wins
        if not rows_by_key:
            return 0

        staging = _staging_table()
        with self.engine.begin() as conn:
            staging.create(conn)
            try:
                conn.execute(staging.insert(), list(rows_by_key.values()))
                conn.execute(self._merge_statement(staging))
            finally:
                staging.drop(conn)
        return len(rows_by_key)

    def _merge_statement(self, staging: Table):
        source = sa_select(*[staging.c[c] for c in _MERGE_COLUMNS]).where(true())
        stmt = sqlite_insert(_TICKET_TABLE).from_select(list(_MERGE_COLUMNS), source)
        return stmt.on_conflict_do_update(
            index_elements=["ticket_key"],
            set_={c: stmt.excluded[c] for c in _MERGE_COLUMNS if c != "ticket_key"},
        )

    def delete_old_tickets(self, before: datetime) -> int:
        """Delete tickets not synced since `before`. Returns rows deleted."""
        if not isinstance(before, datetime):
            raise ValueError("before must be a datetime")
        before = as_utc(before)
        with self.engine.begin() as conn:
            deleted = conn.execute(
                delete(_TICKET_TABLE).where(_TICKET_TABLE.c.last_synced < before)
            ).rowcount or 0
        logger.info("Deleted %d tickets last synced before %s", deleted, before.isoformat())
        return deleted

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get_tickets(self, filters: Optional[TicketFilters] = None) -> List[Dict[str, Any]]:
        """
        Return tickets matching the whitelisted filters, newest update first.

        Limit defaults to 1000 and is capped at 10000. JSON columns are
        decoded; undecodable values come back as an empty dict/list.
        """
        filters = filters or TicketFilters()
        stmt = select(Ticket)
        if filters.client_id is not None:
            stmt = stmt.where(Ticket.client_id == filters.client_id)
        if filters.status:
            stmt = stmt.where(Ticket.status == filters.status)
        if filters.priority:
            stmt = stmt.where(Ticket.priority == filters.priority)
        if filters.assignee:
            stmt = stmt.where(Ticket.assignee == filters.assignee)
        if filters.keys is not None:
            stmt = stmt.where(Ticket.ticket_key.in_(filters.keys))

        limit = min(filters.limit if filters.limit > 0 else DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT)
        stmt = (
            stmt.order_by(Ticket.jira_updated.desc(), Ticket.id)
            .limit(limit)
            .offset(filters.offset)
        )
        try:
            with Session(self.engine) as s:
                tickets = s.exec(stmt).all()
                return [_decode_row(t) for t in tickets]
        except Exception as exc:
            logger.error("Failed to fetch tickets: %s", exc)
            raise TicketStorageError(f"Failed to fetch tickets: {exc}") from exc

    def get_ticket(self, ticket_key: str) -> Optional[Dict[str, Any]]:
        if not ticket_key:
            raise ValueError("Ticket key is required")
        with Session(self.engine) as s:
            ticket = s.exec(select(Ticket).where(Ticket.ticket_key == ticket_key)).first()
            return _decode_row(ticket) if ticket else None

    def get_statistics(self) -> Dict[str, Any]:
        """Totals, status distribution and the ten busiest clients."""
        with Session(self.engine) as s:
            total, clients, statuses, oldest, latest = s.exec(
                select(
                    func.count(Ticket.id),
                    func.count(func.distinct(Ticket.client_id)),
                    func.count(func.distinct(Ticket.status)),
                    func.min(Ticket.jira_created),
                    func.max(Ticket.jira_updated),
                )
            ).one()
            status_rows = s.exec(
                select(Ticket.status, func.count(Ticket.id).label("count"))
                .group_by(Ticket.status)
                .order_by(func.count(Ticket.id).desc())
            ).all()
            top_rows = s.exec(
                select(Client.name, Client.tier, func.count(Ticket.id).label("ticket_count"))
                .join(Ticket, Ticket.client_id == Client.id)
                .group_by(Client.id, Client.name, Client.tier)
                .order_by(func.count(Ticket.id).desc())
                .limit(10)
            ).all()

        return {
            "total_tickets": total,
            "total_clients": clients,
            "unique_statuses": statuses,
            "oldest_ticket": oldest,
            "latest_update": latest,
            "status_distribution": [{"status": st, "count": n} for st, n in status_rows],
            "top_clients": [
                {"name": name, "tier": tier, "ticket_count": n} for name, tier, n in top_rows
            ],
        }


def _staging_table() -> Table:
    """A uniquely named TEMP table with the ticket merge columns."""
    name = f"staging_tickets_{uuid.uuid4().hex}"
    return Table(
        name,
        MetaData(),
        *[Column(c, _TICKET_TABLE.c[c].type) for c in _MERGE_COLUMNS],
        prefixes=["TEMPORARY"],
    )


def safe_json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Failed to decode JSON column value %.80r", value)
        return default


def _decode_row(ticket: Ticket) -> Dict[str, Any]:
    data = ticket.model_dump()
    for column, factory in _JSON_DEFAULTS.items():
        data[column] = safe_json_loads(data.get(column), factory())
    return data
