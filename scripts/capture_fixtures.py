"""
Capture real Jira API responses and save them as test fixtures.

Run this script with JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN set:

    python scripts/capture_fixtures.py [--project KEY]

If no project key is given, the first visible project is used.

Outputs (overwrite tests/fixtures/):
    jira_projects.json   up to five items from get_projects()
    jira_issue.json      the most recently updated issue of the project

These fixtures are used by the normalizer and orchestrator tests to ensure
they handle real search response schemas, not hand-crafted guesses.
Scrub names and email addresses before committing.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ticketsync.config import get_settings
from ticketsync.jira.client import JiraClient
from ticketsync.jira.jql import build_jql

FIXTURES_DIR = Path(__file__).parent.parent / "tests" / "fixtures"


def _save(name: str, data: object) -> None:
    path = FIXTURES_DIR / name
    path.write_text(json.dumps(data, indent=2, default=str))
    print(f"  Saved {path} ({path.stat().st_size} bytes)")


async def _capture(project_key: str) -> None:
    credentials = get_settings().credentials()
    if credentials is None:
        print("Jira credentials not set. Export JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN.")
        sys.exit(1)

    async with JiraClient(credentials) as client:
        print(f"Connecting to {credentials.base_url}...")
        projects = await client.get_projects()
        if not projects:
            print("No projects visible to this account.")
            sys.exit(1)
        _save("jira_projects.json", projects[:5])

        key = project_key or projects[0]["key"]
        print(f"Fetching latest issue of {key}...")
        page = await client.search(build_jql(key) + " ORDER BY updated DESC", max_results=1)
        if not page["issues"]:
            print(f"No issues found in {key}.")
            sys.exit(1)
        _save("jira_issue.json", page["issues"][0])


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture real Jira API fixtures")
    parser.add_argument("--project", help="Jira project key (default: first visible project)")
    args = parser.parse_args()
    asyncio.run(_capture(args.project))
    print("Done.")


if __name__ == "__main__":
    main()
