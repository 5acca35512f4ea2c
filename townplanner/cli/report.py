"""Report commands: ``report``, ``retry-report``, ``skip-section``, ``templates``, ``status``.

Usage::

    python -m townplanner.cli templates
    python -m townplanner.cli report --collection smith-st \\
        --template heritage_impact_report --topic "Rear addition" \\
        --address "12 Smith St, Paddington"
    python -m townplanner.cli retry-report <report-id>
    python -m townplanner.cli status <report-id>
    python -m townplanner.cli status --collection smith-st
"""

from __future__ import annotations

import argparse
from typing import TYPE_CHECKING

from townplanner.models.reports import GenerationConfig, ReportGeneration, ReportRequest

if TYPE_CHECKING:
    from townplanner.main import Components


def register(subparsers: argparse._SubParsersAction) -> None:
    report_parser = subparsers.add_parser("report", help="Generate a report from a template")
    report_parser.add_argument("--collection", required=True, help="Collection id")
    report_parser.add_argument("--template", required=True, help="Template name")
    report_parser.add_argument("--topic", required=True, help="Report topic")
    report_parser.add_argument("--address", help="Site address")
    report_parser.add_argument("--context", help="Additional context for every section")
    report_parser.add_argument("--document", action="append", dest="documents", help="Restrict to document id")
    report_parser.add_argument("--model", help="Override the generation model")
    report_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    report_parser.add_argument("--max-tokens", type=int, dest="max_tokens", help="Max tokens per section")
    report_parser.set_defaults(handler=handle_report)

    retry_parser = subparsers.add_parser(
        "retry-report", help="Re-run failed sections, or resume an interrupted report"
    )
    retry_parser.add_argument("report_id", help="Report id")
    retry_parser.set_defaults(handler=handle_retry)

    skip_parser = subparsers.add_parser("skip-section", help="Mark a pending or failed section skipped")
    skip_parser.add_argument("section_id", help="Section id")
    skip_parser.set_defaults(handler=handle_skip)

    templates_parser = subparsers.add_parser("templates", help="List report templates")
    templates_parser.set_defaults(handler=handle_templates)

    status_parser = subparsers.add_parser("status", help="Show a report, or the documents of a collection")
    status_parser.add_argument("report_id", nargs="?", help="Report id")
    status_parser.add_argument("--collection", help="Collection id (document and report listing)")
    status_parser.set_defaults(handler=handle_status)


def _print_progress(report_id: str, progress: int, status: str) -> None:
    print(f"  progress {progress:3d}%  ({status})")


def _print_outcome(report: ReportGeneration) -> None:
    print(f"\nReport {report.id}: {report.status.value}")
    print(f"  Sections:  {report.completed_count} completed, {report.failed_count} failed of {report.section_count}")
    print(f"  Progress:  {report.progress}%")
    if report.output_path:
        print(f"  Output:    {report.output_path}")
    if report.error_message:
        print(f"  Error:     {report.error_message}")


async def handle_report(args: argparse.Namespace, components: Components) -> int:
    settings = components.settings
    generation = GenerationConfig(
        model=args.model,
        temperature=settings.report_temperature if args.temperature is None else args.temperature,
        max_tokens=args.max_tokens or settings.report_max_tokens,
    )
    request = ReportRequest(
        collection_id=args.collection,
        template_name=args.template,
        topic=args.topic,
        address=args.address,
        additional_context=args.context,
        document_ids=args.documents,
        generation=generation,
    )
    report = await components.orchestrator.initiate_report(request)
    print(f"Report {report.id}: {report.section_count} sections")

    components.tracker.register_listener(report.id, _print_progress)
    try:
        report = await components.orchestrator.process_report(report.id)
    finally:
        components.tracker.unregister_listener(report.id, _print_progress)
    await components.dispatch_events()

    _print_outcome(report)
    return 0 if report.failed_count == 0 else 1


async def handle_retry(args: argparse.Namespace, components: Components) -> int:
    components.tracker.register_listener(args.report_id, _print_progress)
    try:
        report = await components.orchestrator.retry_failed_sections(args.report_id)
    finally:
        components.tracker.unregister_listener(args.report_id, _print_progress)
    await components.dispatch_events()
    _print_outcome(report)
    return 0 if report.failed_count == 0 else 1


async def handle_skip(args: argparse.Namespace, components: Components) -> int:
    section = await components.orchestrator.skip_section(args.section_id)
    print(f"Section '{section.heading}' of report {section.report_id} skipped.")
    return 0


async def handle_templates(args: argparse.Namespace, components: Components) -> int:
    for template in components.catalog.list_templates():
        print(f"{template.name}  ({template.display_name or template.name}, {template.leaf_count} sections)")
        if template.description:
            print(f"  {template.description}")
        for section in template.sections:
            print(f"  - {section.title}")
            for sub in section.subsections:
                print(f"      - {sub.title}")
    return 0


async def handle_status(args: argparse.Namespace, components: Components) -> int:
    if args.report_id:
        status = await components.tracker.get_report_status(args.report_id)
        print(f"{status['title']}")
        print(f"  Status:   {status['status']}  ({status['progress']}%)")
        if status["output_path"]:
            print(f"  Output:   {status['output_path']}")
        for section in status["sections"]:
            line = f"  [{section['order']:>3}] {section['status']:<10} {section['heading']}  ({section['id']})"
            if section["error_code"]:
                line += f"  {section['error_code']}: {section['error_message']}"
            print(line)
        return 0

    documents = await components.ingestion.list_documents(args.collection)
    print(f"Documents ({len(documents)}):")
    for document in documents:
        line = f"  {document.id}  {document.status.value:<10} {document.title}  chunks={document.chunk_count}"
        if document.error_message:
            line += f"  [{document.error_code}] {document.error_message}"
        print(line)

    reports = await components.tracker.list_reports(args.collection)
    print(f"\nReports ({len(reports)}):")
    for report in reports:
        print(f"  {report.id}  {report.status.value:<10} {report.progress:3d}%  {report.title}")
    return 0
