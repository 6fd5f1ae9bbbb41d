"""
Template Store: validation, versioning and lifecycle of form templates.

A template already referenced by entries is never edited in place. The
current document is archived and a successor with ``version + 1`` is
written in the same lineage, so historical entries keep pointing at the
exact schema they were captured with.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Callable, List, Mapping, Optional

from .constants import (
    ANALYTICS_TYPES,
    ENTRIES_COLLECTION,
    FIELD_TYPES,
    INCOMPATIBLE_ANALYTICS,
    NUMERIC_FIELD_TYPES,
    OPTION_FIELD_TYPES,
    TEMPLATES_COLLECTION,
)
from .errors import (
    MissingScopeError,
    TemplateArchivedError,
    TemplateInUseError,
    TemplateNotFoundError,
    ValidationError,
    ValidationIssue,
)
from .models import (
    FormTemplate,
    TemplateStats,
    TemplateValidationResult,
    format_timestamp,
    now_utc,
    parse_timestamp,
)
from .storage import DocumentStore

LOGGER = logging.getLogger(__name__)

# Keys a caller can never override through an update patch.
PROTECTED_KEYS = frozenset({"id", "version", "usage_count", "created_at", "created_by", "lineage_id"})


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _validate_field(raw: Any, path: str) -> List[ValidationIssue]:
    errors: List[ValidationIssue] = []
    if not isinstance(raw, Mapping):
        return [ValidationIssue(path, "Field must be an object")]

    if not str(raw.get("label") or "").strip():
        errors.append(ValidationIssue(f"{path}.label", "Field label is required"))

    field_type = raw.get("type")
    if not field_type:
        errors.append(ValidationIssue(f"{path}.type", "Field type is required"))
    elif field_type not in FIELD_TYPES:
        errors.append(ValidationIssue(f"{path}.type", f"Unknown field type '{field_type}'"))

    if field_type in OPTION_FIELD_TYPES:
        options = raw.get("options")
        if not isinstance(options, (list, tuple)) or not options:
            errors.append(ValidationIssue(f"{path}.options", "Radio and checkbox fields require options"))

    validation = raw.get("validation") or {}
    if not isinstance(validation, Mapping):
        errors.append(ValidationIssue(f"{path}.validation", "Validation rules must be an object"))
        validation = {}
    if field_type in NUMERIC_FIELD_TYPES:
        minimum = _as_number(validation.get("min"))
        maximum = _as_number(validation.get("max"))
        if minimum is not None and maximum is not None and minimum >= maximum:
            errors.append(ValidationIssue(f"{path}.validation", "Min value must be less than max value"))
    pattern = validation.get("pattern")
    if pattern:
        try:
            re.compile(str(pattern))
        except re.error:
            errors.append(ValidationIssue(f"{path}.validation.pattern", "Validation pattern is not a valid regular expression"))

    analytics = raw.get("analytics") or {}
    if not isinstance(analytics, Mapping):
        errors.append(ValidationIssue(f"{path}.analytics", "Analytics settings must be an object"))
        analytics = {}
    analytics_type = analytics.get("type") or "none"
    if analytics_type not in ANALYTICS_TYPES:
        errors.append(ValidationIssue(f"{path}.analytics.type", f"Unknown analytics type '{analytics_type}'"))
    elif analytics.get("enabled"):
        if analytics_type == "none":
            errors.append(
                ValidationIssue(f"{path}.analytics.type", "Analytics type required when analytics is enabled")
            )
        elif analytics_type in INCOMPATIBLE_ANALYTICS.get(str(field_type), frozenset()):
            errors.append(
                ValidationIssue(
                    f"{path}.analytics.type",
                    f"Analytics type '{analytics_type}' is not compatible with field type '{field_type}'",
                )
            )
    return errors


def validate_template(definition: FormTemplate | Mapping[str, Any]) -> TemplateValidationResult:
    """
    Check a template definition against every structural rule.

    Pure: performs no I/O and never raises for invalid input. All problems
    are collected, each addressed by a path such as
    ``sections[0].fields[2].label``.
    """
    raw = definition.to_dict() if isinstance(definition, FormTemplate) else definition
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if not str(raw.get("name") or "").strip():
        errors.append(ValidationIssue("name", "Template name is required"))

    sections = raw.get("sections")
    if not isinstance(sections, (list, tuple)) or not sections:
        errors.append(ValidationIssue("sections", "Template must have at least one section"))
        sections = []

    seen_sections: set[str] = set()
    for s_index, section in enumerate(sections):
        section_path = f"sections[{s_index}]"
        if not isinstance(section, Mapping):
            errors.append(ValidationIssue(section_path, "Section must be an object"))
            continue

        section_id = str(section.get("id") or "").strip()
        if not section_id:
            errors.append(ValidationIssue(f"{section_path}.id", "Section ID is required"))
        elif section_id in seen_sections:
            errors.append(ValidationIssue(f"{section_path}.id", f"Duplicate section ID: {section_id}"))
        else:
            seen_sections.add(section_id)

        if not str(section.get("title") or "").strip():
            errors.append(ValidationIssue(f"{section_path}.title", "Section title is required"))

        max_repeats = section.get("max_repeats")
        if max_repeats is not None:
            number = _as_number(max_repeats)
            if number is None or number < 1 or number != int(number):
                errors.append(ValidationIssue(f"{section_path}.max_repeats", "Max repeats must be a positive integer"))

        fields = section.get("fields")
        if not isinstance(fields, (list, tuple)) or not fields:
            warnings.append(ValidationIssue(f"{section_path}.fields", "Section has no fields"))
            continue

        seen_fields: set[str] = set()
        for f_index, field in enumerate(fields):
            field_path = f"{section_path}.fields[{f_index}]"
            if isinstance(field, Mapping):
                field_id = str(field.get("id") or "").strip()
                if not field_id:
                    errors.append(ValidationIssue(f"{field_path}.id", "Field ID is required"))
                elif field_id in seen_fields:
                    errors.append(ValidationIssue(f"{field_path}.id", f"Duplicate field ID: {field_id}"))
                else:
                    seen_fields.add(field_id)
            errors.extend(_validate_field(field, field_path))

    return TemplateValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _raise_if_invalid(result: TemplateValidationResult) -> None:
    if result.is_valid:
        return
    raise ValidationError(
        "Template validation failed: " + ", ".join(issue.message for issue in result.errors),
        result.errors,
        warnings=result.warnings,
    )


def _sort_key(order_by: str) -> Callable[[FormTemplate], Any]:
    def key(template: FormTemplate) -> Any:
        value = getattr(template, order_by, None)
        return (value is not None, value if value is not None else 0)

    return key


class TemplateStore:
    """Lifecycle operations for form templates over a :class:`DocumentStore`."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    validate_template = staticmethod(validate_template)

    # -- reads -------------------------------------------------------------

    def get_template(self, template_id: str) -> Optional[FormTemplate]:
        document = self._store.get(TEMPLATES_COLLECTION, template_id)
        if document is None:
            LOGGER.debug("Template %s not found", template_id)
            return None
        return FormTemplate.from_dict(document)

    def require_template(self, template_id: str) -> FormTemplate:
        template = self.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def list_templates(
        self,
        *,
        scope: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_archived: Optional[bool] = None,
        created_by: Optional[str] = None,
        limit: Optional[int] = None,
        order_by: str = "updated_at",
        descending: bool = True,
    ) -> List[FormTemplate]:
        filters: dict[str, Any] = {}
        if scope is not None:
            filters["scope"] = scope
        if is_active is not None:
            filters["is_active"] = is_active
        if is_archived is not None:
            filters["is_archived"] = is_archived
        if created_by is not None:
            filters["created_by"] = created_by

        templates = [FormTemplate.from_dict(doc) for doc in self._store.query(TEMPLATES_COLLECTION, **filters)]
        if order_by not in FormTemplate.__dataclass_fields__:
            raise ValueError(f"Cannot order templates by {order_by!r}")
        templates.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            templates = templates[: max(0, limit)]
        return templates

    def get_templates_by_creator(self, creator_id: str, *, include_archived: bool = False) -> List[FormTemplate]:
        templates = self.list_templates(created_by=creator_id)
        if include_archived:
            return templates
        return [template for template in templates if not template.is_archived]

    def get_active_template(self, scope: str) -> Optional[FormTemplate]:
        candidates = [
            FormTemplate.from_dict(doc)
            for doc in self._store.query(TEMPLATES_COLLECTION, scope=scope, is_active=True, is_archived=False)
        ]
        if not candidates:
            return None
        if len(candidates) > 1:
            LOGGER.warning(
                "Scope %s has %d active templates; using the most recently updated",
                scope,
                len(candidates),
            )
            candidates.sort(key=_sort_key("updated_at"), reverse=True)
        return candidates[0]

    def get_template_stats(self, template_id: str) -> TemplateStats:
        template = self.require_template(template_id)
        entries = self._store.query(ENTRIES_COLLECTION, form_template_id=template_id)
        subjects = {entry.get("subject_id") for entry in entries if entry.get("subject_id")}
        submitted = [parse_timestamp(entry["submitted_at"]) for entry in entries if entry.get("submitted_at")]
        return TemplateStats(
            template_id=template_id,
            usage_count=template.usage_count,
            entry_count=len(entries),
            active_subjects=len(subjects),
            last_used=max(submitted) if submitted else None,
        )

    # -- writes ------------------------------------------------------------

    def create_template(
        self,
        definition: FormTemplate | Mapping[str, Any],
        *,
        creator_id: Optional[str] = None,
    ) -> str:
        """Validate and persist a new template lineage at version 1."""
        raw = dict(definition.to_dict() if isinstance(definition, FormTemplate) else definition)
        _raise_if_invalid(validate_template(raw))

        template = FormTemplate.from_dict(raw)
        template_id = uuid.uuid4().hex
        stamp = now_utc()
        template.id = template_id
        template.lineage_id = template_id
        template.version = 1
        template.usage_count = 0
        template.is_archived = False
        template.created_by = creator_id or template.created_by
        template.last_modified_by = template.created_by
        template.created_at = stamp
        template.updated_at = stamp

        if template.is_active and template.scope:
            self._deactivate_siblings(template.scope, exclude_id=template_id)
        self._store.create(TEMPLATES_COLLECTION, template.to_dict(), doc_id=template_id)
        LOGGER.info("Created template %s (%s)", template_id, template.name)
        return template_id

    def update_template(
        self,
        template_id: str,
        patch: Mapping[str, Any],
        *,
        force_new_version: bool = False,
        modified_by: Optional[str] = None,
    ) -> str:
        """
        Apply ``patch`` and return the id of the resulting template.

        In-use templates (or ``force_new_version``) produce a new document in
        the same lineage; otherwise the template is updated in place.
        """
        current = self.require_template(template_id)
        changes = {key: value for key, value in patch.items() if key not in PROTECTED_KEYS}
        merged = {**current.to_dict(), **changes}
        _raise_if_invalid(validate_template(merged))

        stamp = now_utc()
        if force_new_version or current.usage_count > 0:
            return self._create_new_version(current, merged, modified_by=modified_by, stamp=stamp)

        updated = FormTemplate.from_dict(merged)
        updated.last_modified_by = modified_by or current.last_modified_by
        updated.updated_at = stamp
        if changes.get("is_active") and updated.scope:
            self._deactivate_siblings(updated.scope, exclude_id=template_id)
        self._store.upsert(TEMPLATES_COLLECTION, template_id, updated.to_dict())
        LOGGER.info("Updated template %s in place", template_id)
        return template_id

    def _create_new_version(
        self,
        current: FormTemplate,
        merged: Mapping[str, Any],
        *,
        modified_by: Optional[str],
        stamp: Any,
    ) -> str:
        lineage_id = current.lineage_id or current.id
        siblings = self._store.query(TEMPLATES_COLLECTION, lineage_id=lineage_id)
        latest = max([int(doc.get("version") or 1) for doc in siblings] + [current.version])

        successor = FormTemplate.from_dict(merged)
        new_id = uuid.uuid4().hex
        successor.id = new_id
        successor.lineage_id = lineage_id
        successor.version = latest + 1
        successor.usage_count = 0
        successor.is_archived = False
        successor.created_by = current.created_by
        successor.last_modified_by = modified_by or current.last_modified_by
        successor.created_at = stamp
        successor.updated_at = stamp

        self._store.update(
            TEMPLATES_COLLECTION,
            current.id,
            {"is_archived": True, "is_active": False, "updated_at": format_timestamp(stamp)},
        )
        if successor.is_active and successor.scope:
            self._deactivate_siblings(successor.scope, exclude_id=new_id)
        self._store.create(TEMPLATES_COLLECTION, successor.to_dict(), doc_id=new_id)
        LOGGER.info(
            "Template %s is in use; archived it and created version %d as %s",
            current.id,
            successor.version,
            new_id,
        )
        return new_id

    def delete_template(self, template_id: str) -> None:
        template = self.require_template(template_id)
        if template.usage_count > 0:
            raise TemplateInUseError(template_id, template.usage_count)
        self._store.delete(TEMPLATES_COLLECTION, template_id)
        LOGGER.info("Deleted template %s", template_id)

    def archive_template(self, template_id: str) -> None:
        self.require_template(template_id)
        self._store.update(
            TEMPLATES_COLLECTION,
            template_id,
            {"is_archived": True, "is_active": False, "updated_at": format_timestamp(now_utc())},
        )
        LOGGER.info("Archived template %s", template_id)

    def restore_template(self, template_id: str) -> None:
        self.require_template(template_id)
        self._store.update(
            TEMPLATES_COLLECTION,
            template_id,
            {"is_archived": False, "updated_at": format_timestamp(now_utc())},
        )
        LOGGER.info("Restored template %s", template_id)

    def clone_template(self, template_id: str, new_name: str, creator_id: Optional[str] = None) -> str:
        source = self.require_template(template_id)
        clone = FormTemplate.from_dict(source.to_dict())
        clone_id = uuid.uuid4().hex
        stamp = now_utc()
        clone.id = clone_id
        clone.lineage_id = clone_id
        clone.name = new_name
        clone.version = 1
        clone.usage_count = 0
        clone.is_active = False
        clone.is_archived = False
        clone.created_by = creator_id
        clone.last_modified_by = creator_id
        clone.created_at = stamp
        clone.updated_at = stamp
        _raise_if_invalid(validate_template(clone))
        self._store.create(TEMPLATES_COLLECTION, clone.to_dict(), doc_id=clone_id)
        LOGGER.info("Cloned template %s into %s (%s)", template_id, clone_id, new_name)
        return clone_id

    def activate_template(self, template_id: str, scope: Optional[str] = None) -> None:
        template = self.require_template(template_id)
        if template.is_archived:
            message = "Archived templates cannot be activated. Restore it first."
            raise TemplateArchivedError(message, [ValidationIssue("is_archived", message)])
        target_scope = scope or template.scope
        if not target_scope:
            raise MissingScopeError(template_id)

        self._deactivate_siblings(target_scope, exclude_id=template_id)
        self._store.update(
            TEMPLATES_COLLECTION,
            template_id,
            {"is_active": True, "scope": target_scope, "updated_at": format_timestamp(now_utc())},
        )
        LOGGER.info("Activated template %s for scope %s", template_id, target_scope)

        still_active = self._store.query(TEMPLATES_COLLECTION, scope=target_scope, is_active=True)
        if len(still_active) > 1:
            LOGGER.warning(
                "Concurrent activation detected for scope %s: %s",
                target_scope,
                ", ".join(sorted(doc["id"] for doc in still_active)),
            )

    def increment_usage_count(self, template_id: str) -> None:
        if not self._store.increment(TEMPLATES_COLLECTION, template_id, "usage_count", 1):
            raise TemplateNotFoundError(template_id)

    def _deactivate_siblings(self, scope: str, *, exclude_id: Optional[str]) -> List[str]:
        deactivated: List[str] = []
        for document in self._store.query(TEMPLATES_COLLECTION, scope=scope, is_active=True):
            if document["id"] == exclude_id:
                continue
            self._store.update(TEMPLATES_COLLECTION, document["id"], {"is_active": False})
            deactivated.append(document["id"])
        if deactivated:
            LOGGER.info("Deactivated %s in scope %s", ", ".join(deactivated), scope)
        return deactivated

