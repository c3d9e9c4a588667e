"""
Jira issue normalizer.

Converts raw issue dicts from the search API into clean field dicts that map
directly onto Ticket columns. No DB access here; TicketStorageService handles
persistence.

Fixed columns (status, priority, assignee, ...) are lifted out of the nested
Jira shapes. Everything else we want to keep goes into the custom_fields bag
as JSON: every non-null customfield_* value plus the output of the
configured field mappings. New custom fields on the Jira side therefore land
in the bag without a schema migration.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from ticketsync.jira.field_mapping import DEFAULT_FIELD_MAPPINGS, FieldMapping, apply_field_mappings


class TicketValidationError(ValueError):
    """Raised when a raw issue cannot be turned into a ticket row."""


def sanitize_string(value: Any, default: Optional[str] = None) -> Optional[str]:
    """Strip NUL bytes and whitespace; empty results fall back to default."""
    if value is None:
        return default
    if not isinstance(value, str):
        # Jira Cloud may send Atlassian Document Format objects for rich text
        value = json.dumps(value)
    cleaned = value.replace("\0", "").strip()
    return cleaned or default


def parse_jira_datetime(value: Any) -> Optional[datetime]:
    """Parse Jira timestamps into aware UTC. Unparseable input returns None.

    Handles "2024-01-15T10:30:00.000+0000" (Jira's format), ISO 8601 with a
    colon offset or trailing Z, and plain dates.
    """
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    parsed = None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            parsed = datetime.strptime(s, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _name(obj: Any, *keys: str) -> Optional[str]:
    """First non-empty key of a Jira object ({"name": ...}, {"displayName": ...})."""
    if not isinstance(obj, dict):
        return None
    for key in keys:
        if obj.get(key):
            return str(obj[key])
    return None


def extract_custom_fields(
    fields: Dict[str, Any], mappings: Iterable[FieldMapping] = DEFAULT_FIELD_MAPPINGS
) -> Dict[str, Any]:
    """Collect the attribute bag: mapped extras plus every non-null customfield_*."""
    custom = apply_field_mappings(fields, mappings)
    for key, value in fields.items():
        if key.startswith("customfield_") and value is not None:
            custom[key] = value
    return custom


def normalize_issue(
    issue: Dict[str, Any],
    client_id: Any,
    mappings: Iterable[FieldMapping] = DEFAULT_FIELD_MAPPINGS,
) -> Dict[str, Any]:
    """
    Normalize one Jira issue into a Ticket column dict.

    Args:
        issue: Raw issue from /rest/api/2/search ({"key": ..., "fields": {...}}).
        client_id: Owning Client row id.
        mappings: Field mappings feeding the attribute bag.

    Returns:
        Dict keyed by the columns in TICKET_COLUMNS.

    Raises:
        TicketValidationError: if the key or client id is missing/invalid.
    """
    if not isinstance(issue, dict) or not issue.get("key"):
        raise TicketValidationError("Invalid ticket: missing key")
    try:
        owner = int(client_id)
    except (TypeError, ValueError):
        raise TicketValidationError(f"Invalid client id for {issue['key']}: {client_id!r}")

    fields = issue.get("fields") or {}
    if not isinstance(fields, dict):
        raise TicketValidationError(f"Invalid fields for {issue['key']}")

    components = [
        c.get("name") for c in fields.get("components") or [] if isinstance(c, dict)
    ]

    return {
        "ticket_key": str(issue["key"]),
        "client_id": owner,
        "summary": sanitize_string(fields.get("summary"), "No summary"),
        "description": sanitize_string(fields.get("description")),
        "status": _name(fields.get("status"), "name"),
        "priority": _name(fields.get("priority"), "name"),
        "ticket_type": _name(fields.get("issuetype"), "name"),
        "assignee": _name(fields.get("assignee"), "displayName", "emailAddress"),
        "reporter": _name(fields.get("reporter"), "displayName", "emailAddress"),
        "jira_created": parse_jira_datetime(fields.get("created")),
        "jira_updated": parse_jira_datetime(fields.get("updated")),
        "custom_fields": json.dumps(extract_custom_fields(fields, mappings), sort_keys=True, default=str),
        "components": json.dumps(components),
        "labels": json.dumps(list(fields.get("labels") or [])),
    }
