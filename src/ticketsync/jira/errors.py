"""
Classification of Jira transport and HTTP failures.

Every failure the fetch layer sees is mapped onto one ErrorKind with a
retryability flag. The fetch layer uses the flag to decide retry vs abort;
the orchestrator uses the user message when recording an entity failure.

    httpx.TimeoutException / asyncio.TimeoutError  -> timeout
    httpx.TransportError (connect, DNS, reset)     -> network
    HTTP 401 -> auth         HTTP 403 -> permission
    HTTP 404 -> not_found    HTTP 400 -> invalid_request
    HTTP 429 -> rate_limit   HTTP 5xx -> server_error
    anything else                                  -> unknown
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Optional

import httpx

DEFAULT_RETRY_AFTER_SECONDS = 60


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.SERVER_ERROR}
)

_USER_MESSAGES = {
    ErrorKind.NETWORK: "Unable to connect to Jira. Check your network connection and Jira URL.",
    ErrorKind.AUTH: "Authentication failed. Check your Jira email and API token.",
    ErrorKind.RATE_LIMIT: "Jira API rate limit exceeded. Please wait before retrying.",
    ErrorKind.PERMISSION: "Permission denied. Your Jira account may not have access to this resource.",
    ErrorKind.NOT_FOUND: "Resource not found. The Jira endpoint or resource may not exist.",
    ErrorKind.INVALID_REQUEST: "Invalid request to Jira API.",
    ErrorKind.SERVER_ERROR: "Jira server error. The service may be temporarily unavailable.",
    ErrorKind.TIMEOUT: "Request to Jira timed out. The server may be slow or unresponsive.",
    ErrorKind.UNKNOWN: "An unexpected error occurred while communicating with Jira.",
}

_SUGGESTED_ACTIONS = {
    ErrorKind.AUTH: "Verify the Jira credentials in the server configuration.",
    ErrorKind.NETWORK: "Check your internet connection and Jira URL configuration.",
    ErrorKind.PERMISSION: "Ask your Jira administrator for the necessary permissions.",
    ErrorKind.TIMEOUT: "Try again in a few moments or contact your Jira administrator.",
}


@dataclass
class ClassifiedError:
    """Structured view of one failure."""
    kind: ErrorKind
    retryable: bool
    user_message: str
    details: str
    retry_after_seconds: Optional[int] = None  # rate_limit only


class ErrorClassifier:
    """Maps exceptions onto ClassifiedError. Stateless."""

    def classify(self, error: BaseException) -> ClassifiedError:
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
            return self._build(ErrorKind.TIMEOUT, str(error) or "Request timed out")

        if isinstance(error, httpx.TransportError):
            return self._build(ErrorKind.NETWORK, str(error) or type(error).__name__)

        if isinstance(error, httpx.HTTPStatusError):
            return self._classify_response(error.response, error)

        # Non-httpx errors that still mention a timeout (e.g. wrapped driver errors)
        if "timeout" in str(error).lower():
            return self._build(ErrorKind.TIMEOUT, str(error))

        return self._build(ErrorKind.UNKNOWN, str(error) or "Unknown error")

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error).retryable

    def suggested_action(self, error: BaseException) -> str:
        classified = self.classify(error)
        if classified.kind == ErrorKind.RATE_LIMIT:
            return f"Wait {classified.retry_after_seconds} seconds before trying again."
        return _SUGGESTED_ACTIONS.get(
            classified.kind, "Please try again or contact support if the issue persists."
        )

    def to_response(self, error: BaseException) -> Dict[str, Any]:
        """User-facing error payload for API consumers."""
        classified = self.classify(error)
        return {
            "error": True,
            "type": classified.kind.value,
            "message": classified.user_message,
            "details": classified.details,
            "retryable": classified.retryable,
            "retry_after": classified.retry_after_seconds,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _classify_response(
        self, response: httpx.Response, error: BaseException
    ) -> ClassifiedError:
        status = response.status_code
        details = f"Status {status}: {_response_message(response) or error}"

        if status == 401:
            return self._build(ErrorKind.AUTH, details)
        if status == 403:
            return self._build(ErrorKind.PERMISSION, details)
        if status == 404:
            return self._build(ErrorKind.NOT_FOUND, details)
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            return self._build(
                ErrorKind.RATE_LIMIT,
                f"Retry after {retry_after} seconds",
                retry_after_seconds=retry_after,
            )
        if status == 400:
            return self._build(ErrorKind.INVALID_REQUEST, details)
        if status >= 500:
            return self._build(ErrorKind.SERVER_ERROR, details)
        return self._build(ErrorKind.UNKNOWN, details)

    @staticmethod
    def _build(
        kind: ErrorKind, details: str, retry_after_seconds: Optional[int] = None
    ) -> ClassifiedError:
        return ClassifiedError(
            kind=kind,
            retryable=kind in RETRYABLE_KINDS,
            user_message=_USER_MESSAGES[kind],
            details=details,
            retry_after_seconds=retry_after_seconds,
        )


def parse_retry_after(value: Optional[str]) -> int:
    """Parse a Retry-After header (delta-seconds or HTTP date) into seconds."""
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta))


def _response_message(response: httpx.Response) -> Optional[str]:
    """Pull Jira's error text out of a response body, if it has one."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if data.get("message"):
        return str(data["message"])
    messages = data.get("errorMessages") or []
    if messages:
        return "; ".join(str(m) for m in messages)
    if data.get("errors"):
        return str(data["errors"])
    return None
