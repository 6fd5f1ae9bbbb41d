"""
Entry Store plus the completion and response-validation rules.

Completion is always derived from the template at write time; a
caller-supplied ``is_complete`` or ``completion_percentage`` is ignored.
"""

from __future__ import annotations

import logging
import re
from datetime import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from .constants import ENTRIES_COLLECTION, SUBMITTER_ROLES
from .errors import (
    EntryNotFoundError,
    TemplateArchivedError,
    ValidationError,
    ValidationIssue,
)
from .models import (
    CompletionResult,
    DynamicChartingEntry,
    FormField,
    FormSection,
    FormTemplate,
    ResponseIssue,
    ResponseValidationResult,
    coerce_number,
    is_value_present,
    now_utc,
    parse_iso_date,
    parse_timestamp,
    round_half_up,
    to_field_value,
)
from .storage import DocumentStore
from .templates import TemplateStore

LOGGER = logging.getLogger(__name__)

EntryListener = Callable[[DynamicChartingEntry], None]

_BOOLEAN_STRINGS = frozenset({"true", "false"})
_MUTABLE_KEYS = frozenset({"responses", "session_id", "additional_comments"})


def first_instance(section: FormSection, raw: Any) -> Mapping[str, Any]:
    """The response object used for completion: the first repetition of a repeatable section."""
    if isinstance(raw, (list, tuple)):
        head = raw[0] if raw else None
        return head if isinstance(head, Mapping) else {}
    if isinstance(raw, Mapping):
        return raw
    return {}


def compute_completion(template: FormTemplate, responses: Mapping[str, Any] | None) -> CompletionResult:
    """
    Derive ``is_complete`` and ``completion_percentage`` for a response payload.

    Every field counts toward the percentage; only required fields gate
    ``is_complete``. Repeatable sections are judged on their first
    repetition only.
    """
    responses = responses or {}
    total = completed = required = completed_required = 0
    for section in template.sections:
        instance = first_instance(section, responses.get(section.id))
        for form_field in section.fields:
            present = is_value_present(instance.get(form_field.id))
            total += 1
            completed += int(present)
            if form_field.required:
                required += 1
                completed_required += int(present)

    percentage = round_half_up(100 * completed / total) if total else 0
    return CompletionResult(
        is_complete=completed_required == required,
        percentage=percentage,
        total_fields=total,
        completed_fields=completed,
        required_fields=required,
        completed_required_fields=completed_required,
    )


def _required_message(form_field: FormField) -> str:
    return form_field.validation.custom_error_message or f"{form_field.label} is required"


def validate_responses(template: FormTemplate, responses: Mapping[str, Any] | None) -> ResponseValidationResult:
    """Check required-field presence only (first repetition for repeatable sections)."""
    responses = responses or {}
    errors: List[ResponseIssue] = []
    for section in template.sections:
        instance = first_instance(section, responses.get(section.id))
        for form_field in section.fields:
            if form_field.required and not is_value_present(instance.get(form_field.id)):
                errors.append(ResponseIssue(section.id, form_field.id, _required_message(form_field)))
    return ResponseValidationResult(is_valid=not errors, errors=errors)


def _check_value(form_field: FormField, value: Any) -> Optional[str]:
    rules = form_field.validation
    label = form_field.label
    custom = rules.custom_error_message

    if form_field.type in ("numeric", "scale"):
        try:
            coerce_number(value, field=label, minimum=rules.min, maximum=rules.max)
        except ValidationError as exc:
            return custom or exc.message
        return None

    if form_field.type == "yesno":
        if isinstance(value, bool):
            return None
        if value in _BOOLEAN_STRINGS:
            return None
        return custom or f"{label} must be true or false"

    if form_field.type == "radio":
        if str(value) not in form_field.options:
            return custom or f"{label} must be one of: {', '.join(form_field.options)}"
        return None

    if form_field.type == "checkbox":
        selected = value if isinstance(value, (list, tuple)) else [value]
        unknown = [str(item) for item in selected if str(item) not in form_field.options]
        if unknown:
            return custom or f"{label} has unknown option(s): {', '.join(unknown)}"
        return None

    if form_field.type == "date":
        try:
            parse_iso_date(value, field=label)
        except ValidationError as exc:
            return custom or exc.message
        return None

    if form_field.type == "time":
        try:
            time.fromisoformat(str(value).strip())
        except ValueError:
            return custom or f"{label} must be a time (HH:MM)"
        return None

    if form_field.type in ("text", "textarea"):
        if not isinstance(value, str):
            return custom or f"{label} must be text"
        length = len(value.strip())
        if rules.min_length is not None and length < rules.min_length:
            return custom or f"{label} must be at least {rules.min_length} characters"
        if rules.max_length is not None and length > rules.max_length:
            return custom or f"{label} must be at most {rules.max_length} characters"
        if rules.pattern and not re.search(rules.pattern, value):
            return custom or f"{label} has an invalid format"
    return None


def check_response_values(template: FormTemplate, responses: Mapping[str, Any] | None) -> List[ResponseIssue]:
    """Check response shape and every present value against its field definition."""
    responses = responses or {}
    issues: List[ResponseIssue] = []
    known = {section.id for section in template.sections}
    for section_id in responses:
        if section_id not in known:
            issues.append(ResponseIssue(str(section_id), "", f"Unknown section '{section_id}'"))

    for section in template.sections:
        raw = responses.get(section.id)
        if raw is None:
            continue
        if section.is_repeatable:
            if not isinstance(raw, (list, tuple)) or not all(isinstance(item, Mapping) for item in raw):
                issues.append(ResponseIssue(section.id, "", f"{section.title} must be a list of responses"))
                continue
            if section.max_repeats is not None and len(raw) > section.max_repeats:
                issues.append(
                    ResponseIssue(section.id, "", f"{section.title} allows at most {section.max_repeats} entries")
                )
            instances = list(raw)
        else:
            if not isinstance(raw, Mapping):
                issues.append(ResponseIssue(section.id, "", f"{section.title} must be an object"))
                continue
            instances = [raw]

        for instance in instances:
            for form_field in section.fields:
                field_value = instance.get(form_field.id)
                if not is_value_present(field_value):
                    continue
                message = _check_value(form_field, to_field_value(field_value).value)
                if message:
                    issues.append(ResponseIssue(section.id, form_field.id, message))
    return issues


def _sort_newest_first(entries: List[DynamicChartingEntry]) -> List[DynamicChartingEntry]:
    return sorted(entries, key=lambda entry: entry.submitted_at, reverse=True)


class EntryStore:
    """Persist charting entries against templates held by a :class:`TemplateStore`."""

    def __init__(
        self,
        store: DocumentStore,
        templates: TemplateStore,
        *,
        on_change: Optional[EntryListener] = None,
    ) -> None:
        self._store = store
        self._templates = templates
        self._on_change = on_change

    def _notify(self, entry: DynamicChartingEntry) -> None:
        if self._on_change is not None:
            self._on_change(entry)

    def validate_responses(self, template_id: str, responses: Mapping[str, Any] | None) -> ResponseValidationResult:
        template = self._templates.require_template(template_id)
        return validate_responses(template, responses)

    def create_entry(self, data: Mapping[str, Any]) -> str:
        """Validate a submission, persist it, and bump the template's usage count."""
        template_id = str(data.get("form_template_id") or "").strip()
        subject_id = str(data.get("subject_id") or "").strip()
        if not subject_id or not template_id:
            issues = []
            if not subject_id:
                issues.append(ValidationIssue("subject_id", "Subject ID is required"))
            if not template_id:
                issues.append(ValidationIssue("form_template_id", "Form template ID is required"))
            raise ValidationError("Entry is missing identifiers", issues)

        template = self._templates.require_template(template_id)
        if template.is_archived:
            message = "Archived templates cannot accept new entries."
            raise TemplateArchivedError(message, [ValidationIssue("form_template_id", message)])

        responses = data.get("responses") or {}
        if not isinstance(responses, Mapping):
            raise ValidationError(
                "Responses must be an object keyed by section ID",
                [ValidationIssue("responses", "Responses must be an object keyed by section ID")],
            )

        role = str(data.get("submitter_role") or "student")
        issues = [issue.as_validation_issue() for issue in check_response_values(template, responses)]
        if role not in SUBMITTER_ROLES:
            issues.append(ValidationIssue("submitter_role", f"Submitter role must be one of: {', '.join(SUBMITTER_ROLES)}"))
        if not template.allow_partial_submission:
            issues.extend(issue.as_validation_issue() for issue in validate_responses(template, responses).errors)
        if issues:
            raise ValidationError(
                "Entry validation failed: " + ", ".join(issue.message for issue in issues),
                issues,
            )

        completion = compute_completion(template, responses)
        submitted_at = data.get("submitted_at")
        entry = DynamicChartingEntry(
            subject_id=subject_id,
            form_template_id=template_id,
            responses=dict(responses),
            session_id=data.get("session_id") or None,
            form_template_version=template.version,
            submitted_by=data.get("submitted_by") or None,
            submitter_role=role,
            submitted_at=parse_timestamp(submitted_at, field="submitted_at") if submitted_at else now_utc(),
            additional_comments=data.get("additional_comments") or None,
            is_complete=completion.is_complete,
            completion_percentage=completion.percentage,
        )
        entry.id = self._store.create(ENTRIES_COLLECTION, entry.to_dict())
        self._templates.increment_usage_count(template_id)
        LOGGER.info(
            "Created entry %s for subject %s on template %s (%d%% complete)",
            entry.id,
            subject_id,
            template_id,
            completion.percentage,
        )
        self._notify(entry)
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[DynamicChartingEntry]:
        document = self._store.get(ENTRIES_COLLECTION, entry_id)
        if document is None:
            LOGGER.debug("Entry %s not found", entry_id)
            return None
        return DynamicChartingEntry.from_dict(document)

    def require_entry(self, entry_id: str) -> DynamicChartingEntry:
        entry = self.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    def update_entry(self, entry_id: str, patch: Mapping[str, Any]) -> DynamicChartingEntry:
        entry = self.require_entry(entry_id)
        changes: Dict[str, Any] = {key: value for key, value in patch.items() if key in _MUTABLE_KEYS}

        if "responses" in changes:
            responses = changes["responses"] or {}
            if not isinstance(responses, Mapping):
                raise ValidationError(
                    "Responses must be an object keyed by section ID",
                    [ValidationIssue("responses", "Responses must be an object keyed by section ID")],
                )
            template = self._templates.require_template(entry.form_template_id)
            issues = [issue.as_validation_issue() for issue in check_response_values(template, responses)]
            if not template.allow_partial_submission:
                issues.extend(issue.as_validation_issue() for issue in validate_responses(template, responses).errors)
            if issues:
                raise ValidationError(
                    "Entry validation failed: " + ", ".join(issue.message for issue in issues),
                    issues,
                )
            completion = compute_completion(template, responses)
            entry.responses = dict(responses)
            entry.is_complete = completion.is_complete
            entry.completion_percentage = completion.percentage

        if "session_id" in changes:
            entry.session_id = changes["session_id"] or None
        if "additional_comments" in changes:
            entry.additional_comments = changes["additional_comments"] or None
        entry.last_updated_at = now_utc()

        self._store.upsert(ENTRIES_COLLECTION, entry_id, entry.to_dict())
        LOGGER.info("Updated entry %s", entry_id)
        self._notify(entry)
        return entry

    def delete_entry(self, entry_id: str) -> None:
        entry = self.require_entry(entry_id)
        self._store.delete(ENTRIES_COLLECTION, entry_id)
        LOGGER.info("Deleted entry %s", entry_id)
        self._notify(entry)

    def get_entries_by_session(self, session_id: str) -> List[DynamicChartingEntry]:
        documents = self._store.query(ENTRIES_COLLECTION, session_id=session_id)
        return _sort_newest_first([DynamicChartingEntry.from_dict(doc) for doc in documents])

    def get_entries_by_subject(
        self,
        subject_id: str,
        template_id: Optional[str] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[DynamicChartingEntry]:
        return self.get_all_entries(template_id=template_id, subject_id=subject_id, limit=limit)

    def get_all_entries(
        self,
        *,
        template_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DynamicChartingEntry]:
        filters: Dict[str, Any] = {}
        if template_id:
            filters["form_template_id"] = template_id
        if subject_id:
            filters["subject_id"] = subject_id
        documents = self._store.query(ENTRIES_COLLECTION, **filters)
        entries = _sort_newest_first([DynamicChartingEntry.from_dict(doc) for doc in documents])
        if limit is not None:
            entries = entries[: max(0, limit)]
        LOGGER.debug("Loaded %d entries (%s)", len(entries), filters or "all")
        return entries
