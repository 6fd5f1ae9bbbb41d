from __future__ import annotations

import logging

import pytest

from dynamic_charting.errors import (
    MissingScopeError,
    TemplateArchivedError,
    TemplateInUseError,
    TemplateNotFoundError,
    ValidationError,
)
from dynamic_charting.templates import validate_template


def _submit(services, template_id, subject="goalie-1", **responses):
    payload = responses or {"prep": {"rested": True}}
    return services.entries.create_entry(
        {"form_template_id": template_id, "subject_id": subject, "responses": payload}
    )


def test_validate_template_collects_every_issue():
    definition = {
        "name": " ",
        "sections": [
            {
                "id": "a",
                "title": "First",
                "fields": [
                    {"id": "pick", "label": "Pick", "type": "radio"},
                    {"id": "pick", "label": "Again", "type": "numeric", "validation": {"min": 5, "max": 5}},
                    {"id": "flag", "label": "Flag", "type": "yesno", "analytics": {"enabled": True, "type": "sum"}},
                    {"id": "note", "label": "", "type": "essay"},
                    {"id": "on", "label": "On", "type": "yesno", "analytics": {"enabled": True}},
                ],
            },
            {"id": "a", "title": "", "fields": []},
        ],
    }

    result = validate_template(definition)
    paths = {issue.path: issue.message for issue in result.errors}

    assert result.is_valid is False
    assert paths["name"] == "Template name is required"
    assert paths["sections[0].fields[0].options"] == "Radio and checkbox fields require options"
    assert paths["sections[0].fields[1].id"] == "Duplicate field ID: pick"
    assert paths["sections[0].fields[1].validation"] == "Min value must be less than max value"
    assert "not compatible" in paths["sections[0].fields[2].analytics.type"]
    assert paths["sections[0].fields[3].label"] == "Field label is required"
    assert paths["sections[0].fields[3].type"] == "Unknown field type 'essay'"
    assert paths["sections[0].fields[4].analytics.type"] == "Analytics type required when analytics is enabled"
    assert paths["sections[1].id"] == "Duplicate section ID: a"
    assert paths["sections[1].title"] == "Section title is required"
    assert [warning.path for warning in result.warnings] == ["sections[1].fields"]


def test_validate_template_accepts_practice_definition(make_template):
    result = validate_template(make_template())
    assert result.is_valid, result.errors
    assert result.warnings == []


def test_create_template_starts_lineage(services, make_template):
    template_id = services.templates.create_template(make_template(), creator_id="coach-1")
    template = services.templates.require_template(template_id)

    assert template.version == 1
    assert template.lineage_id == template_id
    assert template.usage_count == 0
    assert template.created_by == "coach-1"
    assert template.created_at is not None


def test_create_invalid_template_raises_with_issues(services):
    with pytest.raises(ValidationError) as excinfo:
        services.templates.create_template({"name": "", "sections": []})
    assert {issue.path for issue in excinfo.value.issues} == {"name", "sections"}
    assert services.templates.list_templates() == []


def test_missing_template_lookups(services):
    assert services.templates.get_template("nope") is None
    with pytest.raises(TemplateNotFoundError):
        services.templates.require_template("nope")


def test_update_unused_template_in_place_ignores_protected_keys(services, make_template):
    template_id = services.templates.create_template(make_template(), creator_id="coach-1")

    result_id = services.templates.update_template(
        template_id,
        {"description": "Tweaked", "version": 9, "usage_count": 40, "created_by": "intruder"},
        modified_by="coach-2",
    )

    assert result_id == template_id
    template = services.templates.require_template(template_id)
    assert template.description == "Tweaked"
    assert template.version == 1
    assert template.usage_count == 0
    assert template.created_by == "coach-1"
    assert template.last_modified_by == "coach-2"


def test_update_in_use_template_creates_new_version(services, make_template):
    template_id = services.templates.create_template(make_template())
    _submit(services, template_id)

    new_id = services.templates.update_template(template_id, {"name": "Practice Log v2"})

    assert new_id != template_id
    old = services.templates.require_template(template_id)
    new = services.templates.require_template(new_id)
    assert old.is_archived is True and old.is_active is False
    assert old.name == "Practice Log"
    assert new.version == 2
    assert new.lineage_id == template_id
    assert new.usage_count == 0
    assert new.name == "Practice Log v2"

    # A second edit of the archived original still moves the lineage forward.
    third_id = services.templates.update_template(template_id, {"name": "Again"}, force_new_version=True)
    assert services.templates.require_template(third_id).version == 3


def test_update_with_invalid_patch_leaves_template_untouched(services, make_template):
    template_id = services.templates.create_template(make_template())
    with pytest.raises(ValidationError):
        services.templates.update_template(template_id, {"sections": []})
    assert len(services.templates.require_template(template_id).sections) == 1


def test_activation_is_exclusive_per_scope(services, make_template):
    first = services.templates.create_template(make_template())
    second = services.templates.create_template(make_template(name="Second", is_active=False))

    services.templates.activate_template(second)

    assert services.templates.require_template(first).is_active is False
    assert services.templates.get_active_template("Hockey").id == second
    assert services.templates.get_active_template("Soccer") is None


def test_creating_active_template_deactivates_siblings(services, make_template):
    first = services.templates.create_template(make_template())
    second = services.templates.create_template(make_template(name="Newer"))
    assert services.templates.require_template(first).is_active is False
    assert services.templates.require_template(second).is_active is True


def test_activate_without_scope_raises(services, make_template):
    template_id = services.templates.create_template(make_template(scope=None, is_active=False))
    with pytest.raises(MissingScopeError):
        services.templates.activate_template(template_id)
    services.templates.activate_template(template_id, scope="Soccer")
    assert services.templates.require_template(template_id).scope == "Soccer"


def test_archived_templates_cannot_be_activated_until_restored(services, make_template):
    template_id = services.templates.create_template(make_template())
    services.templates.archive_template(template_id)

    archived = services.templates.require_template(template_id)
    assert archived.is_archived and not archived.is_active
    with pytest.raises(TemplateArchivedError):
        services.templates.activate_template(template_id)

    services.templates.restore_template(template_id)
    restored = services.templates.require_template(template_id)
    assert restored.is_archived is False
    assert restored.is_active is False
    services.templates.activate_template(template_id)
    assert services.templates.require_template(template_id).is_active is True


def test_delete_refuses_used_templates(services, make_template):
    used = services.templates.create_template(make_template())
    unused = services.templates.create_template(make_template(name="Spare", is_active=False))
    _submit(services, used)

    with pytest.raises(TemplateInUseError) as excinfo:
        services.templates.delete_template(used)
    assert excinfo.value.context["usage_count"] == 1
    services.templates.delete_template(unused)
    assert services.templates.get_template(unused) is None


def test_clone_starts_a_new_inactive_lineage(services, make_template):
    template_id = services.templates.create_template(make_template())
    _submit(services, template_id)

    clone_id = services.templates.clone_template(template_id, "Copy", "coach-9")
    clone = services.templates.require_template(clone_id)

    assert clone.name == "Copy"
    assert clone.version == 1
    assert clone.lineage_id == clone_id
    assert clone.usage_count == 0
    assert clone.is_active is False
    assert clone.created_by == "coach-9"
    assert [section.id for section in clone.sections] == ["prep"]


def test_list_templates_filters_and_orders(services, make_template):
    first = services.templates.create_template(make_template(name="A"))
    services.templates.create_template(make_template(name="B", scope="Soccer"))
    third = services.templates.create_template(make_template(name="C", is_active=False))
    services.templates.archive_template(third)

    names = [template.name for template in services.templates.list_templates(order_by="name", descending=False)]
    assert names == ["A", "B", "C"]
    hockey = services.templates.list_templates(scope="Hockey", is_archived=False)
    assert [template.id for template in hockey] == [first]
    assert [t.id for t in services.templates.list_templates(limit=1, order_by="name")] == [third]
    assert services.templates.get_templates_by_creator("nobody") == []
    with pytest.raises(ValueError):
        services.templates.list_templates(order_by="bogus")


def test_get_active_template_warns_on_multiple(services, make_template, caplog):
    services.templates.create_template(make_template())
    services.templates.create_template(make_template(name="Other", is_active=False))
    other = services.templates.list_templates(scope="Hockey", is_active=False)[0]
    services.store.update("form_templates", other.id, {"is_active": True})

    with caplog.at_level(logging.WARNING, logger="dynamic_charting.templates"):
        active = services.templates.get_active_template("Hockey")

    assert active is not None
    assert "active templates" in caplog.text


def test_template_stats_count_entries_and_subjects(services, make_template):
    template_id = services.templates.create_template(make_template())
    _submit(services, template_id, subject="a")
    _submit(services, template_id, subject="a")
    _submit(services, template_id, subject="b")

    stats = services.templates.get_template_stats(template_id)
    assert stats.usage_count == 3
    assert stats.entry_count == 3
    assert stats.active_subjects == 2
    assert stats.last_used is not None
