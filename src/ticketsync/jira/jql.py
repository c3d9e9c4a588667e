"""JQL builder for per-project ticket queries."""
from datetime import datetime
from typing import Iterable, List, Optional

from ticketsync.config import FilterSettings
from ticketsync.models.sync import as_utc


def quote(value: str) -> str:
    """Quote a JQL string literal."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _in_list(values: Iterable[str]) -> str:
    return ", ".join(quote(v) for v in values)


def build_jql(
    project_key: str,
    updated_since: Optional[datetime] = None,
    filters: Optional[FilterSettings] = None,
    excluded_types: Optional[List[str]] = None,
) -> str:
    """
    Build the JQL scoping a search to one project.

    Args:
        project_key: Jira project key.
        updated_since: Only issues updated on or after this instant (incremental),
            written as UTC wall-clock time at minute precision.
        filters: Date window, type/status/priority filters and custom JQL.
        excluded_types: Issue types to exclude. Defaults to the filter's
            excluded_types, or ["Sub-task"] when no filters are given.

    Returns:
        The JQL expression (no ORDER BY clause).
    """
    filters = filters or FilterSettings()
    parts = [f"project = {quote(project_key)}"]

    if updated_since is not None:
        since = as_utc(updated_since).strftime("%Y-%m-%d %H:%M")
        parts.append(f"updated >= {quote(since)}")

    window = filters.date_range
    if window.type == "days" and window.value > 0:
        parts.append(f"created >= -{window.value}d")
    elif window.type == "months" and window.value > 0:
        parts.append(f"created >= -{window.value * 30}d")
    elif window.type == "custom":
        if window.custom_start:
            parts.append(f"created >= {quote(window.custom_start)}")
        if window.custom_end:
            parts.append(f"created <= {quote(window.custom_end)}")

    if filters.ticket_types:
        parts.append(f"issuetype IN ({_in_list(filters.ticket_types)})")

    excluded = filters.excluded_types if excluded_types is None else excluded_types
    if excluded:
        parts.append(f"issuetype NOT IN ({_in_list(excluded)})")

    if filters.ticket_statuses:
        parts.append(f"status IN ({_in_list(filters.ticket_statuses)})")
    if filters.excluded_statuses:
        parts.append(f"status NOT IN ({_in_list(filters.excluded_statuses)})")
    if filters.priorities:
        parts.append(f"priority IN ({_in_list(filters.priorities)})")

    if filters.custom_jql:
        parts.append(f"({filters.custom_jql})")

    return " AND ".join(parts)
