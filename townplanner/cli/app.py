"""Command-line entry point for the town-planner pipeline.

Usage::

    python -m townplanner.cli [--config config/config.yaml] <command> [options]

Commands:
    ingest        Register and ingest documents into a collection
    search        Semantic search over a collection
    ask           Answer a question with cited context
    report        Generate a report from a template
    retry-report  Re-run the failed sections of a report
    skip-section  Mark a section skipped
    templates     List report templates
    status        Show a report, or the documents and reports of a collection
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from townplanner.cli import ingest, report
from townplanner.config.loader import load_settings
from townplanner.main import Components, build_components
from townplanner.utils.errors import TownPlannerError
from townplanner.utils.logging import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m townplanner.cli",
        description="Ingest planning documents and generate grounded reports.",
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="YAML configuration file (default: config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")
    ingest.register(subparsers)
    report.register(subparsers)
    return parser


async def _run(args: argparse.Namespace, components: Components) -> int:
    await components.initialize()
    return await args.handler(args, components)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 1

    try:
        app_settings = load_settings(args.config)
        configure_logging(
            app_settings.log_level,
            json_output=app_settings.app_env == "production",
        )
        components = build_components(app_settings)
        return asyncio.run(_run(args, components))
    except TownPlannerError as exc:
        print(f"Error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
