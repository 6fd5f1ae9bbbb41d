from __future__ import annotations

import json
import platform
import tempfile
from xml.sax.saxutils import escape
from datetime import datetime
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .analytics import extract_field_values, field_score
from .config import as_dict as config_as_dict
from .constants import CALCULATION_VERSION, TREND_DECLINING, TREND_IMPROVING
from .env import get_env
from .metrics import entries_to_dataframe
from .models import DynamicChartingEntry, DynamicStudentAnalytics, FormTemplate, to_field_value

_HEADER_STYLE = [
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1F3C88")),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
    ("ALIGN", (0, 0), (-1, -1), "LEFT"),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
    ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
    ("BACKGROUND", (0, 1), (-1, -1), colors.whitesmoke),
    ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
]
_TREND_COLOURS = {TREND_IMPROVING: "#2B8A3E", TREND_DECLINING: "#C92A2A"}


@lru_cache(maxsize=1)
def app_version() -> str:
    try:
        return metadata.version("dynamic-charting")
    except metadata.PackageNotFoundError:  # pragma: no cover - local dev fallback
        return "0.0.0"


# --------------------------------------------------------------------------
# Entry exports
# --------------------------------------------------------------------------


def _cell(raw: Any) -> Any:
    resolved = to_field_value(raw)
    if resolved is None:
        return None
    value = resolved.value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return value


def build_entries_dataframe(template: FormTemplate, entries: Sequence[DynamicChartingEntry]) -> pd.DataFrame:
    """
    Flatten entries into one row each with a ``section.field`` column per field.

    Repeatable sections get one column per repetition, e.g.
    ``overtime[2].ot_focus``.
    """
    base = entries_to_dataframe(entries)
    repeat_counts = {
        section.id: max(
            (len(entry.responses.get(section.id) or []) for entry in entries),
            default=0,
        )
        for section in template.sections
        if section.is_repeatable
    }

    records = []
    for entry in entries:
        row: dict[str, Any] = {
            "session_id": entry.session_id,
            "form_template_version": entry.form_template_version,
            "submitted_by": entry.submitted_by,
        }
        for section in template.sections:
            raw_section = entry.responses.get(section.id)
            if section.is_repeatable:
                instances = raw_section if isinstance(raw_section, list) else []
                for index in range(repeat_counts.get(section.id, 0)):
                    instance = instances[index] if index < len(instances) else {}
                    for form_field in section.fields:
                        row[f"{section.id}[{index + 1}].{form_field.id}"] = _cell(instance.get(form_field.id))
            else:
                instance = raw_section if isinstance(raw_section, dict) else {}
                for form_field in section.fields:
                    row[f"{section.id}.{form_field.id}"] = _cell(instance.get(form_field.id))
        row["additional_comments"] = entry.additional_comments
        records.append(row)

    responses = pd.DataFrame.from_records(records, index=base.index) if records else pd.DataFrame()
    df = pd.concat([base, responses], axis=1)
    if not df.empty:
        df["submitted_at"] = df["submitted_at"].map(lambda moment: moment.isoformat())
        df["local_date"] = df["local_date"].map(lambda day: day.isoformat())
    return df


def resolve_export_paths(target: Path) -> dict[str, Path]:
    target = target.expanduser()
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")

    if target.suffix:
        directory = target.parent
        stem = target.stem
    else:
        directory = target
        stem = f"entries_{timestamp}"

    return {
        "csv": directory / f"{stem}.csv",
        "json": directory / f"{stem}.json",
        "metadata": directory / f"{stem}_metadata.json",
    }


def build_export_metadata(
    *,
    row_count: int,
    columns: list[str],
    generated_at: str,
    version: str,
    template: FormTemplate,
    filters: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    payload = {
        "application": "dynamic-charting",
        "version": version,
        "generated_at": generated_at,
        "rows": row_count,
        "columns": columns,
        "data_formats": ["csv", "json"],
        "template": {"id": template.id, "name": template.name, "version": template.version},
        "environment": {
            "python_version": platform.python_version(),
            "dynamic_charting_data_dir": get_env("DATA_DIR"),
            "dynamic_charting_db_file": get_env("DB_FILE"),
        },
    }
    if filters:
        payload["filters"] = filters
    return payload


def export_entries(
    template: FormTemplate,
    entries: Sequence[DynamicChartingEntry],
    target: Path,
    *,
    filters: Optional[dict[str, Any]] = None,
) -> dict[str, Path]:
    """Write entries as CSV and JSON plus a metadata sidecar; returns the written paths."""
    if not entries:
        raise ValueError("No entries available to export.")

    df = build_entries_dataframe(template, entries)
    version = app_version()
    generated_at = datetime.now().astimezone().isoformat()

    paths = resolve_export_paths(target)
    paths["csv"].parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(paths["csv"], index=False)

    json_payload = json.dumps([entry.to_dict() for entry in entries], indent=2, default=str) + "\n"
    paths["json"].write_text(json_payload, encoding="utf-8")

    metadata_payload = build_export_metadata(
        row_count=len(df),
        columns=list(df.columns),
        generated_at=generated_at,
        version=version,
        template=template,
        filters=filters,
    )
    paths["metadata"].write_text(json.dumps(metadata_payload, indent=2) + "\n", encoding="utf-8")
    return paths


# --------------------------------------------------------------------------
# PDF report
# --------------------------------------------------------------------------


def _slugify(value: str) -> str:
    cleaned = "".join(char.lower() if char.isalnum() else "_" for char in value.strip())
    slug = "_".join(token for token in cleaned.split("_") if token)
    return slug or "subject"


def _create_completion_plot(entries: Sequence[DynamicChartingEntry], tmp_dir: Path) -> Path:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plot_path = tmp_dir / "completion.png"
    ordered = entries_to_dataframe(entries).sort_values("submitted_at")
    fig, ax = plt.subplots()
    ax.plot(list(ordered["local_date"]), list(ordered["completion_percentage"]), marker="o", linewidth=2, color="#1F3C88")
    ax.set_title("Completion per Submission")
    ax.set_xlabel("Date")
    ax.set_ylabel("Completion (%)")
    ax.set_ylim(0, 105)
    ax.grid(True, linestyle="--", alpha=0.3)
    fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(plot_path, dpi=150)
    plt.close(fig)
    return plot_path


def _create_field_trend_plot(rows: Sequence[tuple[str, float, Optional[str]]], tmp_dir: Path) -> Path:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plot_path = tmp_dir / "field_scores.png"
    labels = [label for label, _, _ in rows]
    scores = [score for _, score, _ in rows]
    palette = [_TREND_COLOURS.get(trend or "", "#868E96") for _, _, trend in rows]
    fig, ax = plt.subplots(figsize=(7, max(2.5, 0.35 * len(rows) + 1)))
    ax.barh(labels, scores, color=palette)
    ax.invert_yaxis()
    ax.set_xlim(0, 100)
    ax.set_title("Field Scores (green improving, red declining)")
    ax.set_xlabel("Score")
    ax.grid(axis="x", linestyle="--", alpha=0.4)
    fig.tight_layout()
    fig.savefig(plot_path, dpi=150)
    plt.close(fig)
    return plot_path


def _field_rows(template: FormTemplate, snapshot: DynamicStudentAnalytics) -> list[tuple[str, float, Optional[str]]]:
    rows = []
    for section, form_field in template.iter_fields():
        result = snapshot.field_analytics.get(f"{section.id}.{form_field.id}") or snapshot.field_analytics.get(form_field.id)
        if result is None:
            continue
        score = field_score(result)
        if score is not None:
            rows.append((result.field_label, score, result.trend))
    return rows


def _table(data: list[list[str]], widths: Sequence[float]) -> Table:
    table = Table(data, hAlign="LEFT", colWidths=[width * inch for width in widths])
    table.setStyle(TableStyle(_HEADER_STYLE))
    return table


def generate_analytics_report(
    snapshot: DynamicStudentAnalytics,
    template: FormTemplate,
    entries: Sequence[DynamicChartingEntry],
    *,
    output_dir: Path = Path("reports"),
) -> Path:
    """Render a snapshot as a PDF with summary tables and charts."""
    if not entries:
        raise ValueError(f"No entries recorded for {snapshot.subject_id}.")

    output_dir.mkdir(parents=True, exist_ok=True)
    config_snapshot = config_as_dict()
    styles = getSampleStyleSheet()
    stats = snapshot.session_stats
    story: list[Any] = [
        Paragraph(f"{snapshot.form_template_name}: {snapshot.subject_id}", styles["Title"]),
        Paragraph(
            f"App v{app_version()} | Calculation v{snapshot.calculation_version or CALCULATION_VERSION} | "
            f"Calculated {snapshot.last_calculated:%Y-%m-%d %H:%M} | Timezone {config_snapshot.get('timezone')}",
            styles["BodyText"],
        ),
        Spacer(1, 0.2 * inch),
    ]

    summary = [
        ["Metric", "Value"],
        ["Overall score", f"{snapshot.overall_performance_score:.1f} ({snapshot.overall_trend})"],
        ["Sessions", f"{stats.total_sessions} ({stats.completed_sessions} complete)"],
        ["Completion rate", f"{stats.completion_rate}%"],
        ["Average completion", f"{stats.average_completion_percentage}%"],
        ["Sessions per week", f"{stats.average_sessions_per_week:.1f}"],
        ["Current streak", f"{snapshot.streak.current_streak} day(s)"],
        ["Longest streak", f"{snapshot.streak.longest_streak} day(s)"],
        ["Strengths", ", ".join(snapshot.top_strengths) or "n/a"],
        ["Needs improvement", ", ".join(snapshot.areas_for_improvement) or "n/a"],
    ]
    story += [_table(summary, [2.0, 4.5]), Spacer(1, 0.3 * inch)]

    if snapshot.category_analytics:
        story.append(Paragraph("Categories", styles["Heading2"]))
        data = [["Category", "Fields", "Score", "Trend"]]
        for name, category in sorted(snapshot.category_analytics.items()):
            data.append([name, str(category.field_count), f"{category.overall_score:.1f}", category.trend])
        story += [_table(data, [3.0, 0.8, 1.0, 1.2]), Spacer(1, 0.3 * inch)]

    targets = [result for result in snapshot.field_analytics.values() if result.target_value is not None]
    if targets:
        story.append(Paragraph("Targets", styles["Heading2"]))
        data = [["Field", "Target", "Progress", "On target"]]
        for result in targets:
            data.append(
                [
                    result.field_label,
                    f"{result.target_value:g}",
                    f"{result.target_progress:.0f}%" if result.target_progress is not None else "n/a",
                    "yes" if result.is_on_target else "no",
                ]
            )
        story += [_table(data, [3.0, 1.0, 1.0, 1.0]), Spacer(1, 0.3 * inch)]

    notes = text_answers(template, entries)
    if notes:
        story.append(Paragraph("Notes", styles["Heading2"]))
        for label, values in notes.items():
            story.append(Paragraph(f"<b>{escape(label)}</b>", styles["BodyText"]))
            for value in values[:5]:
                story.append(Paragraph(escape(value), styles["BodyText"]))
        story.append(Spacer(1, 0.3 * inch))

    with tempfile.TemporaryDirectory() as tmp_dir:
        tmp_dir_path = Path(tmp_dir)
        story.append(Paragraph("Completion over Time", styles["Heading2"]))
        story.append(Image(str(_create_completion_plot(entries, tmp_dir_path)), width=6.5 * inch, height=3.2 * inch))
        rows = _field_rows(template, snapshot)
        if rows:
            story.append(Spacer(1, 0.3 * inch))
            story.append(Paragraph("Field Scores and Trends", styles["Heading2"]))
            story.append(
                Image(
                    str(_create_field_trend_plot(rows, tmp_dir_path)),
                    width=6.5 * inch,
                    height=min(8.0, 0.3 * len(rows) + 1.2) * inch,
                )
            )

        pdf_path = output_dir / (
            f"analytics_{_slugify(snapshot.subject_id)}_{_slugify(snapshot.form_template_name)}_"
            f"{snapshot.last_calculated:%Y%m%d}.pdf"
        )
        doc = SimpleDocTemplate(str(pdf_path), pagesize=letter, title=f"Analytics {snapshot.subject_id}")
        doc.build(story)
    return pdf_path


def text_answers(
    template: FormTemplate,
    entries: Sequence[DynamicChartingEntry],
) -> Mapping[str, list[str]]:
    """Free-text answers per field label, newest first."""
    answers: dict[str, list[str]] = {}
    for section, form_field in template.iter_fields():
        if form_field.type not in ("text", "textarea"):
            continue
        values = [str(value) for value in extract_field_values(entries, section, form_field)]
        if values:
            answers[form_field.label] = values
    return answers
