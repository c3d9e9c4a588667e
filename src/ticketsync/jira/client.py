"""
Async Jira REST client.

Thin wrapper over httpx.AsyncClient with basic auth. Every method raises
httpx errors unchanged (via raise_for_status); classification and retry
live one layer up in RemoteFetcher.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ticketsync.config import JiraCredentials
from ticketsync.jira.jql import build_jql

API_PREFIX = "/rest/api/2"
DEFAULT_TIMEOUT_SECONDS = 30.0
PROJECTS_TIMEOUT_SECONDS = 10.0


class JiraClient:
    """
    Async client for the handful of Jira endpoints the sync engine needs.

    Usage:
        async with JiraClient(credentials) as client:
            projects = await client.get_projects()
    """

    def __init__(
        self,
        credentials: JiraCredentials,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            credentials: Base URL, account email and API token.
            timeout: Per-call timeout in seconds.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        self._credentials = credentials
        self._http = httpx.AsyncClient(
            base_url=credentials.base_url.rstrip("/") + API_PREFIX,
            auth=(credentials.email, credentials.api_token),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "JiraClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        resp = await self._http.get(path, params=params, **kwargs)
        resp.raise_for_status()
        return resp.json()

    async def get_projects(self) -> List[Dict[str, str]]:
        """Return every visible project as {"key", "name", "id"} dicts."""
        data = await self._get("/project", timeout=PROJECTS_TIMEOUT_SECONDS)
        return [
            {"key": p["key"], "name": p.get("name") or p["key"], "id": str(p.get("id", ""))}
            for p in data
        ]

    async def search(
        self,
        jql: str,
        start_at: int = 0,
        max_results: int = 100,
        fields: str = "*all",
    ) -> Dict[str, Any]:
        """Run one page of a JQL search.

        Returns:
            {"issues": [...], "total": int} as sent by Jira.
        """
        data = await self._get(
            "/search",
            params={
                "jql": jql,
                "startAt": start_at,
                "maxResults": max_results,
                "fields": fields,
            },
        )
        data.setdefault("issues", [])
        data.setdefault("total", len(data["issues"]))
        return data

    async def count_updated_since(self, project_key: str, since: datetime) -> int:
        """Cheap probe: how many issues in a project changed since `since`."""
        jql = build_jql(project_key, updated_since=since, excluded_types=[])
        data = await self.search(jql, start_at=0, max_results=1, fields="key")
        return int(data.get("total", 0))
