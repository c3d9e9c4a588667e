"""
Paged, retried fetch of Jira issues.

Retries are an explicit bounded loop: attempt 0 is the initial request and
attempts 1..max_retries are retries. Only failures the ErrorClassifier marks
retryable are retried; the delay before retry n is retry_delay * 2**(n-1),
raised to the server's Retry-After hint on 429, and capped at MAX_BACKOFF.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ticketsync.jira.errors import ErrorClassifier, ErrorKind
from ticketsync.sync.exceptions import SyncCancelledError

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0

PageCallback = Callable[[List[Dict[str, Any]], int, int], None]
CancelCheck = Callable[[], bool]


def backoff_delay(retry_delay: float, attempt: int, retry_after: Optional[int] = None) -> float:
    """Seconds to wait after failed attempt number `attempt` (0-based)."""
    delay = retry_delay * (2 ** attempt)
    if retry_after is not None:
        delay = max(delay, float(retry_after))
    return min(delay, MAX_BACKOFF_SECONDS)


class RemoteFetcher:
    """Fetches Jira search pages with classified retry/backoff."""

    def __init__(
        self,
        client,
        classifier: Optional[ErrorClassifier] = None,
        *,
        page_size: int = 100,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            client: JiraClient instance (or AsyncMock in tests).
            classifier: ErrorClassifier; a default one is created if omitted.
            page_size: maxResults per search request.
            max_retries: Retries after the initial attempt.
            retry_delay: Base backoff delay in seconds.
            sleep: Awaitable sleep, injectable for tests.
        """
        self.client = client
        self.classifier = classifier or ErrorClassifier()
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def get_projects(self) -> List[Dict[str, str]]:
        return await self._with_retry(self.client.get_projects, description="projects")

    async def count_updated_since(self, project_key: str, since) -> int:
        return await self._with_retry(
            lambda: self.client.count_updated_since(project_key, since),
            description=f"probe {project_key}",
        )

    async def fetch_page(
        self,
        jql: str,
        start_at: int,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> Dict[str, Any]:
        """Fetch one search page, retrying retryable failures."""
        return await self._with_retry(
            lambda: self.client.search(jql, start_at=start_at, max_results=self.page_size),
            description=f"search startAt={start_at}",
            is_cancelled=is_cancelled,
        )

    async def fetch_all(
        self,
        jql: str,
        on_page: Optional[PageCallback] = None,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of a search, strictly in order.

        Each request's startAt is the number of issues received so far, so
        page n is only requested once page n-1 has arrived. Stops on an empty
        page or once startAt reaches the reported total.

        Args:
            jql: Search expression.
            on_page: Called with (page_issues, fetched_so_far, total) after each page.
            is_cancelled: Checked before every page; raises SyncCancelledError when true.

        Returns:
            All issues in fetch order.
        """
        issues: List[Dict[str, Any]] = []
        start_at = 0
        while True:
            if is_cancelled and is_cancelled():
                raise SyncCancelledError("Sync cancelled")

            page = await self.fetch_page(jql, start_at, is_cancelled=is_cancelled)
            batch = page.get("issues") or []
            total = int(page.get("total", 0))
            if not batch:
                break

            issues.extend(batch)
            start_at += len(batch)
            if on_page is not None:
                on_page(batch, start_at, total)

            if start_at >= total:
                break
        return issues

    async def _with_retry(
        self,
        call: Callable[[], Awaitable[Any]],
        *,
        description: str,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> Any:
        attempt = 0
        while True:
            if is_cancelled and is_cancelled():
                raise SyncCancelledError("Sync cancelled")
            try:
                return await call()
            except Exception as exc:
                classified = self.classifier.classify(exc)
                if not classified.retryable or attempt >= self.max_retries:
                    raise

                retry_after = (
                    classified.retry_after_seconds
                    if classified.kind == ErrorKind.RATE_LIMIT
                    else None
                )
                delay = backoff_delay(self.retry_delay, attempt, retry_after)
                attempt += 1
                logger.warning(
                    "Retrying Jira request (%s), attempt %d/%d in %.1fs: %s",
                    description,
                    attempt,
                    self.max_retries,
                    delay,
                    classified.details,
                )
                await self._sleep(delay)
