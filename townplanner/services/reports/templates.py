"""Report template catalogue and template expansion.

Templates are loaded from YAML (``config/report_templates.yaml``)::

    templates:
      - name: heritage_impact_report
        sections:
          - name: introduction
            title: Introduction
            order: 2
            subsections:
              - {name: purpose, title: Purpose and Scope}

:func:`expand_template` flattens a template into one :class:`SectionQuery`
per leaf node.  Ordering keys interleave parents and children::

    section at position p           -> p * 10
    its i-th subsection (0-based)   -> p * 10 + i + 1
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from townplanner.models.reports import ORDER_SPACING, ReportTemplate, SectionQuery
from townplanner.utils.errors import ConfigurationError, TemplateNotFoundError

logger = structlog.get_logger(logger_name=__name__)


def _query_suffix(topic: str, address: str | None, context: str | None) -> str:
    suffix = f" for {topic.strip()}"
    if address and address.strip():
        suffix += f" at {address.strip()}"
    if context and context.strip():
        suffix += f". Context: {context.strip()}"
    return suffix


def expand_template(
    template: ReportTemplate,
    topic: str,
    address: str | None = None,
    context: str | None = None,
) -> list[SectionQuery]:
    """Flatten *template* into ordered retrieval queries.

    Sections without an explicit ``order`` use their 1-based position.
    The returned list is sorted by ``section_order``.
    """
    suffix = _query_suffix(topic, address, context)
    queries: list[SectionQuery] = []
    for position, section in enumerate(template.sections, start=1):
        base = (section.order or position) * ORDER_SPACING
        queries.append(
            SectionQuery(
                section_name=section.name,
                section_title=section.title,
                section_order=base,
                query_text=f"{section.title}{suffix}",
            )
        )
        for index, sub in enumerate(section.subsections):
            queries.append(
                SectionQuery(
                    section_name=section.name,
                    section_title=section.title,
                    subsection_name=sub.name,
                    subsection_title=sub.title,
                    section_order=base + index + 1,
                    query_text=f"{sub.title} (under {section.title}){suffix}",
                )
            )
    queries.sort(key=lambda q: q.section_order)
    return queries


class ReportTemplateCatalog:
    """Named report templates, loaded from YAML or registered in code."""

    def __init__(self, templates: list[ReportTemplate] | None = None) -> None:
        self._templates: dict[str, ReportTemplate] = {}
        for template in templates or []:
            self.register(template)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ReportTemplateCatalog:
        """Load a catalogue file.

        Raises
        ------
        ConfigurationError
            Missing file, unreadable YAML or an invalid template.
        """
        file_path = Path(path)
        if not file_path.is_file():
            raise ConfigurationError(message=f"Report template file not found: {file_path}")
        try:
            with open(file_path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(message=f"Invalid YAML in {file_path}: {exc}") from exc

        entries = raw.get("templates", []) if isinstance(raw, dict) else []
        try:
            templates = [ReportTemplate.model_validate(entry) for entry in entries]
        except ValidationError as exc:
            raise ConfigurationError(message=f"Invalid report template in {file_path}: {exc}") from exc

        logger.info("report_templates_loaded", path=str(file_path), templates=len(templates))
        return cls(templates)

    def register(self, template: ReportTemplate) -> None:
        self._templates[template.name] = template

    def get(self, name: str) -> ReportTemplate:
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFoundError(message=f"Report template '{name}' does not exist")
        return template

    def list_templates(self) -> list[ReportTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.name)
