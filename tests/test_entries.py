from __future__ import annotations

import pytest

from dynamic_charting.errors import (
    EntryNotFoundError,
    TemplateArchivedError,
    TemplateNotFoundError,
    ValidationError,
)
from dynamic_charting.entries import compute_completion, validate_responses
from dynamic_charting.models import FormTemplate


def _repeatable_template() -> FormTemplate:
    return FormTemplate.from_dict(
        {
            "name": "Game",
            "sections": [
                {
                    "id": "main",
                    "title": "Main",
                    "fields": [
                        {"id": "a", "label": "A", "type": "yesno", "validation": {"required": True}},
                        {
                            "id": "b",
                            "label": "B",
                            "type": "numeric",
                            "validation": {"required": True, "custom_error_message": "Tell us B"},
                        },
                        {"id": "c", "label": "C", "type": "text"},
                    ],
                },
                {
                    "id": "ot",
                    "title": "Overtime",
                    "is_repeatable": True,
                    "max_repeats": 2,
                    "fields": [{"id": "saves", "label": "Saves", "type": "numeric", "validation": {"required": True}}],
                },
            ],
        }
    )


def test_completion_counts_all_fields_and_gates_on_required():
    template = _repeatable_template()

    partial = compute_completion(template, {"main": {"a": False, "c": "ok"}})
    assert partial.is_complete is False
    assert partial.total_fields == 4
    assert partial.completed_fields == 2
    assert partial.percentage == 50

    full = compute_completion(
        template,
        {"main": {"a": {"value": True, "comments": "yes"}, "b": 0}, "ot": [{"saves": 3}, {}]},
    )
    assert full.is_complete is True
    assert full.required_fields == 3
    assert full.completed_required_fields == 3
    assert full.percentage == 75


def test_later_repetitions_do_not_complete_an_entry():
    template = _repeatable_template()
    result = compute_completion(template, {"main": {"a": True, "b": 1}, "ot": [{}, {"saves": 4}]})
    assert result.is_complete is False
    assert result.completed_required_fields == 2
    assert result.percentage == 50
    missing = validate_responses(template, {"main": {"a": True, "b": 1}, "ot": [{}, {"saves": 4}]})
    assert [(error.section_id, error.field_id) for error in missing.errors] == [("ot", "saves")]


def test_completion_of_empty_template_is_zero_percent():
    template = FormTemplate.from_dict({"name": "Empty", "sections": [{"id": "s", "title": "S", "fields": []}]})
    result = compute_completion(template, {})
    assert result.percentage == 0
    assert result.is_complete is True


def test_validate_responses_reports_each_missing_required_field():
    template = _repeatable_template()
    result = validate_responses(template, {"main": {"a": "  ", "b": {"comments": "no value"}}, "ot": []})

    assert result.is_valid is False
    assert [(issue.section_id, issue.field_id, issue.message) for issue in result.errors] == [
        ("main", "a", "A is required"),
        ("main", "b", "Tell us B"),
        ("ot", "saves", "Saves is required"),
    ]


def test_create_entry_derives_completion_and_bumps_usage(services, make_template):
    template_id = services.templates.create_template(make_template())

    entry_id = services.entries.create_entry(
        {
            "form_template_id": template_id,
            "subject_id": "goalie-1",
            "responses": {"prep": {"rested": True, "shots": "22"}},
            "is_complete": False,
            "completion_percentage": 5,
            "session_id": "game-1",
        }
    )

    entry = services.entries.require_entry(entry_id)
    assert entry.is_complete is True
    assert entry.completion_percentage == 50
    assert entry.form_template_version == 1
    assert entry.submitter_role == "student"
    assert services.templates.require_template(template_id).usage_count == 1


def test_create_entry_collects_every_value_problem(services, make_template):
    template_id = services.templates.create_template(make_template())

    with pytest.raises(ValidationError) as excinfo:
        services.entries.create_entry(
            {
                "form_template_id": template_id,
                "subject_id": "goalie-1",
                "submitter_role": "parent",
                "responses": {
                    "prep": {"rested": "maybe", "shots": 61, "mood": "ecstatic", "notes": "x" * 201},
                    "bogus": {},
                },
            }
        )

    paths = [issue.path for issue in excinfo.value.issues]
    assert paths == [
        "responses.bogus",
        "responses.prep.rested",
        "responses.prep.shots",
        "responses.prep.mood",
        "responses.prep.notes",
        "submitter_role",
    ]
    assert services.templates.require_template(template_id).usage_count == 0
    assert services.entries.get_all_entries() == []


def test_create_entry_requires_identifiers(services):
    with pytest.raises(ValidationError) as excinfo:
        services.entries.create_entry({"responses": {}})
    assert {issue.path for issue in excinfo.value.issues} == {"subject_id", "form_template_id"}
    with pytest.raises(TemplateNotFoundError):
        services.entries.create_entry({"form_template_id": "missing", "subject_id": "s"})


def test_create_entry_rejects_archived_template(services, make_template):
    template_id = services.templates.create_template(make_template())
    services.templates.archive_template(template_id)
    with pytest.raises(TemplateArchivedError):
        services.entries.create_entry(
            {"form_template_id": template_id, "subject_id": "s", "responses": {"prep": {"rested": True}}}
        )


def test_partial_submission_can_be_disallowed(services, make_template):
    template_id = services.templates.create_template(make_template(allow_partial_submission=False))
    with pytest.raises(ValidationError) as excinfo:
        services.entries.create_entry({"form_template_id": template_id, "subject_id": "s", "responses": {}})
    assert excinfo.value.issues[0].message == "Well Rested is required"


def test_repeatable_sections_are_bounded(services):
    template_id = services.templates.create_template(_repeatable_template().to_dict())
    with pytest.raises(ValidationError) as excinfo:
        services.entries.create_entry(
            {
                "form_template_id": template_id,
                "subject_id": "s",
                "responses": {"ot": [{"saves": 1}, {"saves": 2}, {"saves": 3}]},
            }
        )
    assert excinfo.value.issues[0].message == "Overtime allows at most 2 entries"


def test_update_entry_recomputes_completion_and_keeps_identity(services, make_template):
    template_id = services.templates.create_template(make_template())
    entry_id = services.entries.create_entry(
        {"form_template_id": template_id, "subject_id": "goalie-1", "responses": {}}
    )
    assert services.entries.require_entry(entry_id).is_complete is False

    updated = services.entries.update_entry(
        entry_id,
        {
            "responses": {"prep": {"rested": False, "shots": 10, "mood": "ok", "notes": "fine"}},
            "additional_comments": "late edit",
            "subject_id": "someone-else",
            "is_complete": False,
        },
    )

    assert updated.is_complete is True
    assert updated.completion_percentage == 100
    assert updated.subject_id == "goalie-1"
    assert updated.additional_comments == "late edit"
    assert updated.last_updated_at is not None
    assert services.templates.require_template(template_id).usage_count == 1


def test_missing_entries(services):
    assert services.entries.get_entry("nope") is None
    with pytest.raises(EntryNotFoundError):
        services.entries.update_entry("nope", {"additional_comments": "x"})
    with pytest.raises(EntryNotFoundError):
        services.entries.delete_entry("nope")


def test_entry_queries_are_newest_first(services, make_template, days_ago):
    template_id = services.templates.create_template(make_template())
    ids = []
    for offset, subject in [(3, "a"), (1, "a"), (2, "b")]:
        ids.append(
            services.entries.create_entry(
                {
                    "form_template_id": template_id,
                    "subject_id": subject,
                    "session_id": "camp",
                    "submitted_at": days_ago(offset),
                    "responses": {"prep": {"rested": True}},
                }
            )
        )

    by_subject = services.entries.get_entries_by_subject("a", template_id)
    assert [entry.id for entry in by_subject] == [ids[1], ids[0]]
    assert [entry.id for entry in services.entries.get_entries_by_session("camp")] == [ids[1], ids[2], ids[0]]
    assert len(services.entries.get_all_entries(template_id=template_id, limit=2)) == 2

    services.entries.delete_entry(ids[0])
    assert [entry.id for entry in services.entries.get_entries_by_subject("a")] == [ids[1]]


def test_validate_responses_through_store(services, make_template):
    template_id = services.templates.create_template(make_template())
    result = services.entries.validate_responses(template_id, {"prep": {}})
    assert result.to_dict() == {
        "is_valid": False,
        "errors": [{"section_id": "prep", "field_id": "rested", "message": "Well Rested is required"}],
    }
