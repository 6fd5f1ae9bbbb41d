from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from .analytics import AnalyticsEngine
from .config import AppConfig, get_config
from .entries import EntryStore
from .models import DynamicChartingEntry, DynamicStudentAnalytics, FormTemplate
from .storage import DocumentStore
from .templates import TemplateStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChartingServices:
    """The three core components sharing one persistence backend."""

    store: DocumentStore
    templates: TemplateStore
    entries: EntryStore
    analytics: AnalyticsEngine
    config: AppConfig


def build_services(
    db_path: Path | str | None = None,
    *,
    config: Optional[AppConfig] = None,
    store: Optional[DocumentStore] = None,
) -> ChartingServices:
    """
    Wire the stores and the analytics engine together.

    When ``analytics.auto_recalculate`` is on, every entry mutation
    synchronously refreshes the snapshot for that entry's subject and template.
    """
    config = config or get_config()
    store = store or DocumentStore(db_path)
    templates = TemplateStore(store)
    engine_ref: dict[str, AnalyticsEngine] = {}

    def _recalculate(entry: DynamicChartingEntry) -> None:
        if not config.analytics.auto_recalculate:
            return
        LOGGER.debug("Entry %s changed; refreshing analytics", entry.id)
        engine_ref["engine"].recalculate(entry.subject_id, entry.form_template_id)

    entries = EntryStore(store, templates, on_change=_recalculate)
    engine = AnalyticsEngine(store, templates, entries, config=config)
    engine_ref["engine"] = engine
    return ChartingServices(store=store, templates=templates, entries=entries, analytics=engine, config=config)


def load_json_payload(source: Path) -> Any:
    """Load a JSON document (template definition, responses) from disk."""
    if not source.exists():
        raise FileNotFoundError(f"File not found: {source}")

    raw_text = source.read_text(encoding="utf-8")
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{source} is not valid JSON.") from exc


def _render_table(headers: Sequence[str], rows: Sequence[Mapping[str, str]]) -> str:
    widths = {key: len(key) for key in headers}
    for row in rows:
        for key in headers:
            widths[key] = max(widths[key], len(row[key]))

    def _format_line(values: Mapping[str, str]) -> str:
        return "  ".join(values[key].ljust(widths[key]) for key in headers).rstrip()

    header_line = "  ".join(key.upper().ljust(widths[key]) for key in headers).rstrip()
    body = "\n".join(_format_line(row) for row in rows)
    return "\n".join(filter(None, [header_line, body]))


def render_template_table(templates: Sequence[FormTemplate]) -> str:
    headers = ("id", "name", "scope", "version", "status", "usage")
    rows = []
    for template in templates:
        if template.is_archived:
            status = "archived"
        elif template.is_active:
            status = "active"
        else:
            status = "inactive"
        rows.append(
            {
                "id": template.id or "",
                "name": template.name,
                "scope": template.scope or "",
                "version": str(template.version),
                "status": status,
                "usage": str(template.usage_count),
            }
        )
    return _render_table(headers, rows)


def render_template_outline(template: FormTemplate) -> str:
    """Indented outline of sections and fields."""
    lines = [f"{template.name} (v{template.version}, id={template.id})"]
    if template.description:
        lines.append(template.description)
    for section in template.sections:
        marker = " [repeatable]" if section.is_repeatable else ""
        lines.append(f"- {section.title} <{section.id}>{marker}")
        for form_field in section.fields:
            flags = []
            if form_field.required:
                flags.append("required")
            if form_field.analytics.enabled:
                flags.append(form_field.analytics.type)
            suffix = f" ({', '.join(flags)})" if flags else ""
            lines.append(f"    {form_field.id}: {form_field.label} [{form_field.type}]{suffix}")
    return "\n".join(lines)


def render_entry_table(entries: Sequence[DynamicChartingEntry]) -> str:
    headers = ("id", "subject", "template", "submitted", "complete", "pct")
    rows = [
        {
            "id": entry.id or "",
            "subject": entry.subject_id,
            "template": entry.form_template_id,
            "submitted": entry.submitted_at.strftime("%Y-%m-%d %H:%M"),
            "complete": "yes" if entry.is_complete else "no",
            "pct": f"{entry.completion_percentage}%",
        }
        for entry in entries
    ]
    return _render_table(headers, rows)


def render_analytics_summary(snapshot: DynamicStudentAnalytics) -> str:
    stats = snapshot.session_stats
    lines = [
        f"{snapshot.form_template_name} for {snapshot.subject_id}",
        (
            f"Sessions: {stats.total_sessions} ({stats.completed_sessions} complete, "
            f"{stats.completion_rate}% completion rate, avg {stats.average_completion_percentage}% filled)"
        ),
        (
            f"Streak: current {snapshot.streak.current_streak}, longest {snapshot.streak.longest_streak}; "
            f"{stats.average_sessions_per_week:.1f} sessions/week"
        ),
        f"Overall: {snapshot.overall_performance_score:.1f} ({snapshot.overall_trend})",
    ]
    if snapshot.top_strengths:
        lines.append("Strengths: " + ", ".join(snapshot.top_strengths))
    if snapshot.areas_for_improvement:
        lines.append("Needs work: " + ", ".join(snapshot.areas_for_improvement))

    headers = ("category", "fields", "score", "trend")
    rows = [
        {
            "category": name,
            "fields": str(category.field_count),
            "score": f"{category.overall_score:.1f}",
            "trend": category.trend,
        }
        for name, category in sorted(snapshot.category_analytics.items())
    ]
    if rows:
        lines.append("")
        lines.append(_render_table(headers, rows))
    return "\n".join(lines)
