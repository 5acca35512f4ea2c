"""Markdown assembly of a finished report.

Sections are rendered strictly by ``section_order`` regardless of the order
in which they finished generating.  Top-level sections render as ``##`` and
subsections as ``###``; when a subsection has content but its parent
section does not, the parent heading is emitted once so the subsection is
never orphaned.  Failed and skipped sections are left out of the body and
listed under "Sections not generated".
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import structlog

from townplanner.models.reports import ReportGeneration, ReportSection, SectionStatus

logger = structlog.get_logger(logger_name=__name__)


def _has_content(section: ReportSection) -> bool:
    return section.status is SectionStatus.COMPLETED and bool((section.generated_content or "").strip())


def _strip_leading_heading(content: str, heading: str) -> str:
    """Drop a first line that only repeats the section heading."""
    lines = content.strip().splitlines()
    if lines and lines[0].lstrip("#").strip().lower() == heading.strip().lower():
        return "\n".join(lines[1:]).strip()
    return content.strip()


def assemble_report(
    report: ReportGeneration,
    sections: list[ReportSection],
    generated_at: datetime | None = None,
) -> str:
    """Render *report* and its *sections* as a Markdown document."""
    ordered = sorted(sections, key=lambda s: s.section_order)
    included = [s for s in ordered if _has_content(s)]
    missing = [s for s in ordered if not _has_content(s)]
    when = generated_at or datetime.now(tz=timezone.utc)  # noqa: UP017

    lines: list[str] = [f"# {report.title}", ""]
    if report.address:
        lines.append(f"**Site:** {report.address}")
    lines.append(f"**Topic:** {report.topic}")
    lines.append(f"**Date:** {when.strftime('%d %B %Y')}")
    lines.append("")

    if included:
        lines.extend(["## Table of Contents", ""])
        toc_parents: set[str] = set()
        for section in included:
            if section.is_subsection:
                if section.section_name not in toc_parents:
                    lines.append(f"- {section.section_title}")
                    toc_parents.add(section.section_name)
                lines.append(f"  - {section.subsection_title}")
            else:
                lines.append(f"- {section.section_title}")
                toc_parents.add(section.section_name)
        lines.append("")

    rendered_parents: set[str] = set()
    for section in included:
        if section.is_subsection:
            if section.section_name not in rendered_parents:
                lines.extend([f"## {section.section_title}", ""])
                rendered_parents.add(section.section_name)
            heading = section.subsection_title or ""
            lines.extend([f"### {heading}", ""])
        else:
            heading = section.section_title
            lines.extend([f"## {heading}", ""])
            rendered_parents.add(section.section_name)
        lines.extend([_strip_leading_heading(section.generated_content or "", heading), ""])

    if missing:
        lines.extend(["## Sections not generated", ""])
        for section in missing:
            label = section.heading
            if section.is_subsection:
                label = f"{section.section_title} / {section.subsection_title}"
            reason = section.status.value
            if section.error_message:
                reason += f": {section.error_message}"
            lines.append(f"- {label} ({reason})")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def write_report(content: str, output_dir: str | Path, report_id: str) -> Path:
    """Write the assembled report to ``<output_dir>/<report_id>.md``."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{report_id}.md"
    path.write_text(content, encoding="utf-8")
    logger.info("report_written", report_id=report_id, path=str(path), chars=len(content))
    return path
