"""
Command-line entrypoint.

Usage:
    python -m ticketsync full [--project KEY ...]          # one full sync, then exit
    python -m ticketsync incremental [--since 2024-06-01]  # one incremental sync
    python -m ticketsync serve [--host 0.0.0.0 --port 8000]  # API + scheduler
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

from ticketsync.config import get_settings

logger = logging.getLogger(__name__)


async def _run_once(kind: str, args: argparse.Namespace) -> int:
    from ticketsync.sync.exceptions import CredentialsMissingError
    from ticketsync.sync.lock import LockHeldError
    from ticketsync.sync.orchestrator import SyncOptions, build_orchestrator
    from ticketsync.sync.progress import LoggingSubscriber

    try:
        orchestrator = build_orchestrator()
    except CredentialsMissingError as exc:
        logger.error("%s", exc)
        return 2

    orchestrator.reporter.subscribe(LoggingSubscriber())
    options = SyncOptions(project_keys=args.project or None, updated_since=args.since)
    try:
        if kind == "full":
            result = await orchestrator.start_full_sync(options)
        else:
            result = await orchestrator.start_incremental_sync(options)
    except LockHeldError as exc:
        logger.error("%s", exc)
        return 2
    finally:
        await orchestrator.fetcher.client.aclose()

    print(json.dumps(result["progress"], indent=2, default=str))
    logger.info("Sync %s finished: %s", result["id"], result["outcome"])
    return 0 if result["status"] == "completed" else 1


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("ticketsync.api.main:app", host=args.host, port=args.port)


def _parse_since(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date/time: {value!r}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="ticketsync", description="Sync Jira tickets into the local store")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("full", "Run one full sync of every project"),
        ("incremental", "Sync projects changed since the last incremental run"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--project",
            action="append",
            metavar="KEY",
            help="Restrict to this project key (repeatable)",
        )
        cmd.add_argument(
            "--since",
            type=_parse_since,
            default=None,
            help="Fallback 'updated since' when no incremental run has completed yet",
        )

    serve = sub.add_parser("serve", help="Run the HTTP API with the background scheduler")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command == "serve":
        _serve(args)
    else:
        sys.exit(asyncio.run(_run_once(args.command, args)))


if __name__ == "__main__":
    main()
