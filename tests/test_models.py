from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from dynamic_charting.errors import ValidationError
from dynamic_charting.models import (
    DynamicChartingEntry,
    FormTemplate,
    Scalar,
    Wrapped,
    coerce_number,
    is_value_present,
    parse_iso_date,
    parse_timestamp,
    round_half_up,
    to_field_value,
)


@pytest.mark.parametrize(
    "raw, present",
    [
        (None, False),
        ("", False),
        ("   ", False),
        ([], False),
        ({"value": None}, False),
        ({"comments": "only a note"}, False),
        ({"value": "  "}, False),
        (0, True),
        (False, True),
        ("no", True),
        (["a"], True),
        ({"value": False, "comments": "tired"}, True),
    ],
)
def test_is_value_present_rule(raw, present):
    assert is_value_present(raw) is present


def test_to_field_value_distinguishes_wrapped_and_scalar():
    assert to_field_value(None) is None
    assert to_field_value(7) == Scalar(7)
    wrapped = to_field_value({"value": True, "comments": "felt sharp"})
    assert wrapped == Wrapped(True, "felt sharp")
    assert to_field_value({"value": 3, "comments": 5}) == Wrapped(3, None)


def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(62.5) == 63
    assert round_half_up(62.4) == 62
    assert round_half_up(0.5) == 1
    assert round_half_up(-2.5) == -3


def test_coerce_number_rejects_booleans_and_bounds():
    assert coerce_number("4.5", field="shots") == pytest.approx(4.5)
    with pytest.raises(ValidationError):
        coerce_number(True, field="shots")
    with pytest.raises(ValidationError) as excinfo:
        coerce_number(11, field="shots", maximum=10)
    assert excinfo.value.issues[0].path == "shots"
    with pytest.raises(ValidationError):
        coerce_number(float("nan"))


def test_parse_helpers():
    assert parse_iso_date("2024-03-01") == date(2024, 3, 1)
    with pytest.raises(ValidationError):
        parse_iso_date("03/01/2024")
    stamp = parse_timestamp("2024-03-01T10:00:00Z")
    assert stamp.tzinfo is not None
    assert parse_timestamp("2024-03-01T10:00:00") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)


def test_template_round_trip_keeps_structure(make_template):
    template = FormTemplate.from_dict(make_template())
    payload = template.to_dict()
    restored = FormTemplate.from_dict(payload)

    assert restored.name == "Practice Log"
    assert [section.id for section in restored.sections] == ["prep"]
    rested = restored.sections[0].fields[0]
    assert rested.required is True
    assert rested.analytics.type == "percentage"
    assert rested.analytics.target_value == pytest.approx(80)
    assert restored.sections[0].fields[2].options == ["low", "ok", "high"]


def test_entry_from_dict_defaults():
    entry = DynamicChartingEntry.from_dict(
        {
            "id": "e1",
            "subject_id": "goalie-1",
            "form_template_id": "t1",
            "responses": {"prep": {"rested": True}},
            "submitted_at": "2024-05-01T20:00:00+00:00",
        }
    )
    assert entry.submitter_role == "student"
    assert entry.is_complete is False
    assert entry.to_dict()["id"] == "e1"
