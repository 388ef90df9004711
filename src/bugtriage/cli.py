#!/usr/bin/env python3
"""bugtriage CLI - Command-line interface for bugtriage tasks

Usage:
    python -m bugtriage.cli init-db
    python -m bugtriage.cli ingest REPORT.json [--repo-dir DIR]
    python -m bugtriage.cli serve [--host HOST] [--port PORT]
"""

import argparse
import json
import sys
from pathlib import Path

from .config import settings
from .database import init_db
from .exceptions import TriageError
from .logging_config import configure_logging


def run_init_db(args):
    """Create missing tables"""
    init_db()
    print("Database initialized")
    return 0


def run_ingest(args):
    """Run one report through the ingestion pipeline"""
    from .main import default_ingestor_factory

    report_path = Path(args.report)
    if not report_path.exists():
        print(f"Report not found: {report_path}", file=sys.stderr)
        return 1

    with open(report_path, encoding="utf-8") as f:
        report = json.load(f)

    if args.repo_dir:
        settings.repositories_dir = args.repo_dir

    try:
        occurrence = default_ingestor_factory().ingest(report)
    except TriageError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 2

    print(f"Stored occurrence {occurrence.id} under bug {occurrence.bug_id}")
    return 0


def run_serve(args):
    """Run the ingestion API"""
    import uvicorn

    from .logging_config import setup_structured_logging
    from .main import create_app

    setup_structured_logging(settings.log_level)
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="bugtriage CLI - exception triage tasks from the command line")
    parser.add_argument("--log-level", default=None, help="Log level (default: BUGTRIAGE_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create database tables")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest an error report from a JSON file")
    ingest_parser.add_argument("report", help="Path to the report JSON")
    ingest_parser.add_argument("--repo-dir", help="Directory holding repository mirrors")

    serve_parser = subparsers.add_parser("serve", help="Run the ingestion API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command != "serve":
        configure_logging(log_level=args.log_level or settings.log_level)

    handlers = {
        "init-db": run_init_db,
        "ingest": run_ingest,
        "serve": run_serve,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
