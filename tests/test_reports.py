from __future__ import annotations

import json

import pandas as pd
import pytest

from dynamic_charting.reports import (
    build_entries_dataframe,
    export_entries,
    generate_analytics_report,
    resolve_export_paths,
    text_answers,
)


@pytest.fixture
def populated(services, make_template, days_ago):
    definition = make_template()
    definition["sections"].append(
        {
            "id": "ot",
            "title": "Overtime",
            "is_repeatable": True,
            "fields": [{"id": "saves", "label": "Saves", "type": "numeric"}],
        }
    )
    template_id = services.templates.create_template(definition)
    rows = [
        {"prep": {"rested": True, "shots": 12, "mood": "high", "notes": "Sharp <glove> side"}, "ot": [{"saves": 2}, {"saves": 4}]},
        {"prep": {"rested": {"value": False, "comments": "late bus"}, "mood": "low"}},
    ]
    for offset, responses in enumerate(rows):
        services.entries.create_entry(
            {
                "form_template_id": template_id,
                "subject_id": "goalie-1",
                "submitted_at": days_ago(offset),
                "responses": responses,
            }
        )
    template = services.templates.require_template(template_id)
    entries = services.entries.get_entries_by_subject("goalie-1", template_id)
    return template, entries


def test_entries_dataframe_flattens_sections(populated):
    template, entries = populated
    df = build_entries_dataframe(template, entries)

    assert len(df) == 2
    for column in ("subject_id", "submitted_at", "prep.rested", "prep.shots", "ot[1].saves", "ot[2].saves"):
        assert column in df.columns
    first, second = df.iloc[0], df.iloc[1]
    assert bool(first["prep.rested"]) is True
    assert bool(second["prep.rested"]) is False
    assert first["ot[2].saves"] == 4
    assert pd.isna(second["ot[1].saves"])
    assert first["prep.notes"] == "Sharp <glove> side"


def test_export_writes_csv_json_and_metadata(populated, tmp_path):
    template, entries = populated
    paths = export_entries(template, entries, tmp_path / "exports", filters={"subject_id": "goalie-1"})

    assert set(paths) == {"csv", "json", "metadata"}
    for path in paths.values():
        assert path.exists()
    raw = json.loads(paths["json"].read_text(encoding="utf-8"))
    assert [row["subject_id"] for row in raw] == ["goalie-1", "goalie-1"]
    metadata = json.loads(paths["metadata"].read_text(encoding="utf-8"))
    assert metadata["rows"] == 2
    assert metadata["template"]["id"] == template.id
    assert metadata["filters"] == {"subject_id": "goalie-1"}
    assert "prep.mood" in metadata["columns"]


def test_export_requires_entries(populated, tmp_path):
    template, _ = populated
    with pytest.raises(ValueError):
        export_entries(template, [], tmp_path / "exports")


def test_resolve_export_paths_honours_file_stem(tmp_path):
    paths = resolve_export_paths(tmp_path / "season.csv")
    assert paths["csv"] == tmp_path / "season.csv"
    assert paths["json"] == tmp_path / "season.json"
    assert paths["metadata"] == tmp_path / "season_metadata.json"


def test_text_answers_are_newest_first(populated):
    template, entries = populated
    assert text_answers(template, entries) == {"Notes": ["Sharp <glove> side"]}


def test_generate_analytics_report_writes_pdf(services, populated, tmp_path):
    template, entries = populated
    snapshot = services.analytics.recalculate("goalie-1", template.id, include_partial=True)

    pdf_path = generate_analytics_report(snapshot, template, entries, output_dir=tmp_path / "reports")

    assert pdf_path.exists()
    assert pdf_path.suffix == ".pdf"
    assert pdf_path.name.startswith("analytics_goalie_1_practice_log_")
    assert pdf_path.read_bytes().startswith(b"%PDF")
