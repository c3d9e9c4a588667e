from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class JiraCredentials(BaseModel):
    """Connection settings for the remote Jira instance."""

    base_url: str
    email: str
    api_token: str


class DateWindow(BaseModel):
    """Creation-date window applied to every project query.

    type is one of "all", "days", "months" or "custom".
    """

    type: str = "all"
    value: int = 0
    custom_start: Optional[str] = None
    custom_end: Optional[str] = None


class FilterSettings(BaseModel):
    """Which issues to pull for each project."""

    date_range: DateWindow = Field(default_factory=DateWindow)
    ticket_types: List[str] = Field(default_factory=list)
    excluded_types: List[str] = Field(default_factory=lambda: ["Sub-task"])
    ticket_statuses: List[str] = Field(default_factory=list)
    excluded_statuses: List[str] = Field(default_factory=list)
    priorities: List[str] = Field(default_factory=list)
    custom_jql: Optional[str] = None


class Settings(BaseSettings):
    jira_base_url: str = ""
    jira_email: str = ""
    jira_api_token: str = ""
    database_url: str = "sqlite:///./ticketsync.db"
    log_level: str = "INFO"

    # Sync tunables
    page_size: int = 100
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    max_concurrency: int = 3
    storage_chunk_size: int = 1000
    full_sync_lock_timeout_seconds: float = 3600.0
    # Incremental window starts this long before the previous run started.
    # Must cover the Jira user's UTC offset: JQL dates are read in their timezone.
    incremental_overlap_minutes: int = 720

    # Scheduler
    incremental_sync_minutes: int = 5
    full_sync_hour: int = 2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def credentials(self) -> Optional[JiraCredentials]:
        """Return Jira credentials, or None when any part is unset."""
        if not (self.jira_base_url and self.jira_email and self.jira_api_token):
            return None
        return JiraCredentials(
            base_url=self.jira_base_url.rstrip("/"),
            email=self.jira_email,
            api_token=self.jira_api_token,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
