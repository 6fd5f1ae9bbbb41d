from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .constants import CALCULATION_VERSION, TREND_STABLE
from .errors import ValidationError, ValidationIssue

__all__ = [
    "now_utc",
    "parse_iso_date",
    "parse_timestamp",
    "format_timestamp",
    "coerce_number",
    "round_half_up",
    "Scalar",
    "Wrapped",
    "FieldValue",
    "to_field_value",
    "is_value_present",
    "AnalyticsDescriptor",
    "FieldValidation",
    "FormField",
    "FormSection",
    "FormTemplate",
    "DynamicChartingEntry",
    "CompletionResult",
    "TemplateValidationResult",
    "ResponseIssue",
    "ResponseValidationResult",
    "TemplateStats",
    "DistributionBucket",
    "FieldAnalyticsResult",
    "CategoryAnalyticsResult",
    "SessionStats",
    "StreakInfo",
    "DynamicStudentAnalytics",
]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_date(value: Any, *, field: str = "date") -> date:
    """
    Parse user-supplied ISO-8601 dates.

    Accepts `datetime.date`, `datetime.datetime`, or strings. Raises `ValidationError`
    with a friendlier message if the payload cannot be parsed.
    """
    if isinstance(value, date):
        return value if not isinstance(value, datetime) else value.date()

    if not isinstance(value, str):
        raise _single_issue(field, f"{field} must be provided as YYYY-MM-DD text; received {value!r}.")

    candidate = value.strip()
    if not candidate:
        raise _single_issue(field, f"{field} cannot be empty.")

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise _single_issue(
            field, f"{field} must be a valid ISO date (YYYY-MM-DD); received {candidate!r}."
        ) from exc

    return parsed.date()


def parse_timestamp(value: Any, *, field: str = "timestamp") -> datetime:
    """Parse an ISO timestamp into an aware datetime; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise _single_issue(field, f"{field} must be an ISO timestamp; received {value!r}.") from exc
    else:
        raise _single_issue(field, f"{field} must be an ISO timestamp; received {value!r}.")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def coerce_number(
    value: Any,
    *,
    field: str = "value",
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """
    Convert arbitrary input into a float with guardrails.

    The `minimum` and `maximum` bounds (inclusive) trigger a ValidationError when
    breached. Booleans are rejected rather than silently read as 0/1.
    """
    if value is None:
        raise _single_issue(field, f"{field} is required.")

    if isinstance(value, bool):
        raise _single_issue(field, f"{field} must be a number; received {value!r}.")

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise _single_issue(field, f"{field} is required.")
        try:
            number = float(stripped)
        except ValueError as exc:
            raise _single_issue(field, f"{field} must be a number; received {value!r}.") from exc
    else:
        raise _single_issue(field, f"{field} must be a number; received {value!r}.")

    if number != number:
        raise _single_issue(field, f"{field} must be a number; received {value!r}.")

    if minimum is not None and number < minimum:
        raise _single_issue(field, f"{field} must be >= {minimum:g}; received {number:g}.")

    if maximum is not None and number > maximum:
        raise _single_issue(field, f"{field} must be <= {maximum:g}; received {number:g}.")

    return number


def round_half_up(value: float) -> int:
    """Round halves away from zero, so 62.5 becomes 63."""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def _single_issue(path: str, message: str) -> ValidationError:
    return ValidationError(message, [ValidationIssue(path, message)])


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> Optional[int]:
    number = _optional_float(value)
    return None if number is None else int(number)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)


def _optional_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    return parse_iso_date(value)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


# --------------------------------------------------------------------------
# Field values
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Scalar:
    """A bare response value (``True``, ``7``, ``"good"``, ``["a", "b"]``)."""

    value: Any


@dataclass(frozen=True)
class Wrapped:
    """A response stored as ``{"value": ..., "comments": ...}``."""

    value: Any
    comments: Optional[str] = None


FieldValue = Union[Scalar, Wrapped]


def to_field_value(raw: Any) -> Optional[FieldValue]:
    """
    Resolve a raw response into its tagged shape.

    Any mapping is read as a wrapper; a mapping without ``value`` wraps nothing.
    Returns None when the raw response is absent.
    """
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        comments = raw.get("comments")
        return Wrapped(value=raw.get("value"), comments=comments if isinstance(comments, str) else None)
    return Scalar(value=raw)


def is_value_present(raw: Any) -> bool:
    """
    The shared presence rule.

    Absent/None, empty or whitespace-only strings and empty lists are not
    present; everything else (including ``0`` and ``False``) is.
    """
    resolved = to_field_value(raw)
    if resolved is None:
        return False
    value = resolved.value
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return False
    return True


# --------------------------------------------------------------------------
# Templates
# --------------------------------------------------------------------------


@dataclass
class AnalyticsDescriptor:
    enabled: bool = False
    type: str = "none"
    category: Optional[str] = None
    display_name: Optional[str] = None
    higher_is_better: bool = True
    target_value: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "AnalyticsDescriptor":
        raw = raw or {}
        higher = raw.get("higher_is_better")
        return cls(
            enabled=bool(raw.get("enabled", False)),
            type=str(raw.get("type") or "none"),
            category=_optional_str(raw.get("category")),
            display_name=_optional_str(raw.get("display_name")),
            higher_is_better=True if higher is None else bool(higher),
            target_value=_optional_float(raw.get("target_value")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "enabled": self.enabled,
            "type": self.type,
            "higher_is_better": self.higher_is_better,
        }
        if self.category:
            payload["category"] = self.category
        if self.display_name:
            payload["display_name"] = self.display_name
        if self.target_value is not None:
            payload["target_value"] = self.target_value
        return payload


@dataclass
class FieldValidation:
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    custom_error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "FieldValidation":
        raw = raw or {}
        return cls(
            required=bool(raw.get("required", False)),
            min=_optional_float(raw.get("min")),
            max=_optional_float(raw.get("max")),
            min_length=_optional_int(raw.get("min_length")),
            max_length=_optional_int(raw.get("max_length")),
            pattern=_optional_str(raw.get("pattern")),
            custom_error_message=_optional_str(raw.get("custom_error_message")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = _drop_none(
            {
                "min": self.min,
                "max": self.max,
                "min_length": self.min_length,
                "max_length": self.max_length,
                "pattern": self.pattern,
                "custom_error_message": self.custom_error_message,
            }
        )
        payload["required"] = self.required
        return payload


@dataclass
class FormField:
    id: str
    label: str
    type: str
    options: List[str] = field(default_factory=list)
    validation: FieldValidation = field(default_factory=FieldValidation)
    analytics: AnalyticsDescriptor = field(default_factory=AnalyticsDescriptor)
    description: Optional[str] = None
    placeholder: Optional[str] = None
    include_comments: bool = False
    order: int = 0

    @property
    def required(self) -> bool:
        return self.validation.required

    @property
    def display_label(self) -> str:
        return self.analytics.display_name or self.label

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FormField":
        options = raw.get("options") or []
        return cls(
            id=str(raw.get("id") or ""),
            label=str(raw.get("label") or ""),
            type=str(raw.get("type") or ""),
            options=[str(option) for option in options] if isinstance(options, (list, tuple)) else [],
            validation=FieldValidation.from_dict(raw.get("validation")),
            analytics=AnalyticsDescriptor.from_dict(raw.get("analytics")),
            description=_optional_str(raw.get("description")),
            placeholder=_optional_str(raw.get("placeholder")),
            include_comments=bool(raw.get("include_comments", False)),
            order=_optional_int(raw.get("order")) or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "validation": self.validation.to_dict(),
            "analytics": self.analytics.to_dict(),
            "include_comments": self.include_comments,
            "order": self.order,
        }
        if self.options:
            payload["options"] = list(self.options)
        if self.description:
            payload["description"] = self.description
        if self.placeholder:
            payload["placeholder"] = self.placeholder
        return payload


@dataclass
class FormSection:
    id: str
    title: str
    fields: List[FormField] = field(default_factory=list)
    is_repeatable: bool = False
    description: Optional[str] = None
    order: int = 0
    repeat_label: Optional[str] = None
    max_repeats: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FormSection":
        fields = raw.get("fields") or []
        return cls(
            id=str(raw.get("id") or ""),
            title=str(raw.get("title") or ""),
            fields=[FormField.from_dict(item) for item in fields if isinstance(item, Mapping)],
            is_repeatable=bool(raw.get("is_repeatable", False)),
            description=_optional_str(raw.get("description")),
            order=_optional_int(raw.get("order")) or 0,
            repeat_label=_optional_str(raw.get("repeat_label")),
            max_repeats=_optional_int(raw.get("max_repeats")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "fields": [item.to_dict() for item in self.fields],
            "is_repeatable": self.is_repeatable,
            "order": self.order,
        }
        if self.description:
            payload["description"] = self.description
        if self.repeat_label:
            payload["repeat_label"] = self.repeat_label
        if self.max_repeats is not None:
            payload["max_repeats"] = self.max_repeats
        return payload


@dataclass
class FormTemplate:
    """A versioned form schema: ordered sections of typed fields."""

    name: str
    sections: List[FormSection] = field(default_factory=list)
    id: Optional[str] = None
    scope: Optional[str] = None
    description: Optional[str] = None
    version: int = 1
    lineage_id: Optional[str] = None
    is_active: bool = False
    is_archived: bool = False
    usage_count: int = 0
    allow_partial_submission: bool = True
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def iter_fields(self) -> Iterator[Tuple[FormSection, FormField]]:
        for section in self.sections:
            for form_field in section.fields:
                yield section, form_field

    def section(self, section_id: str) -> Optional[FormSection]:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FormTemplate":
        sections = raw.get("sections") or []
        version = _optional_int(raw.get("version"))
        return cls(
            id=_optional_str(raw.get("id")),
            name=str(raw.get("name") or ""),
            sections=[FormSection.from_dict(item) for item in sections if isinstance(item, Mapping)],
            scope=_optional_str(raw.get("scope")),
            description=_optional_str(raw.get("description")),
            version=version if version and version > 0 else 1,
            lineage_id=_optional_str(raw.get("lineage_id")),
            is_active=bool(raw.get("is_active", False)),
            is_archived=bool(raw.get("is_archived", False)),
            usage_count=_optional_int(raw.get("usage_count")) or 0,
            allow_partial_submission=bool(raw.get("allow_partial_submission", True)),
            created_by=_optional_str(raw.get("created_by")),
            last_modified_by=_optional_str(raw.get("last_modified_by")),
            created_at=_optional_timestamp(raw.get("created_at")),
            updated_at=_optional_timestamp(raw.get("updated_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "sections": [section.to_dict() for section in self.sections],
            "version": self.version,
            "is_active": self.is_active,
            "is_archived": self.is_archived,
            "usage_count": self.usage_count,
            "allow_partial_submission": self.allow_partial_submission,
        }
        optional = _drop_none(
            {
                "id": self.id,
                "scope": self.scope,
                "description": self.description,
                "lineage_id": self.lineage_id,
                "created_by": self.created_by,
                "last_modified_by": self.last_modified_by,
                "created_at": format_timestamp(self.created_at),
                "updated_at": format_timestamp(self.updated_at),
            }
        )
        payload.update(optional)
        return payload


# --------------------------------------------------------------------------
# Entries
# --------------------------------------------------------------------------


@dataclass
class DynamicChartingEntry:
    """One submission of responses against a specific template version."""

    subject_id: str
    form_template_id: str
    responses: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    session_id: Optional[str] = None
    form_template_version: Optional[int] = None
    submitted_by: Optional[str] = None
    submitter_role: str = "student"
    submitted_at: datetime = field(default_factory=now_utc)
    last_updated_at: Optional[datetime] = None
    additional_comments: Optional[str] = None
    is_complete: bool = False
    completion_percentage: int = 0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DynamicChartingEntry":
        responses = raw.get("responses")
        submitted = raw.get("submitted_at")
        return cls(
            id=_optional_str(raw.get("id")),
            subject_id=str(raw.get("subject_id") or ""),
            form_template_id=str(raw.get("form_template_id") or ""),
            responses=dict(responses) if isinstance(responses, Mapping) else {},
            session_id=_optional_str(raw.get("session_id")),
            form_template_version=_optional_int(raw.get("form_template_version")),
            submitted_by=_optional_str(raw.get("submitted_by")),
            submitter_role=_optional_str(raw.get("submitter_role")) or "student",
            submitted_at=parse_timestamp(submitted, field="submitted_at") if submitted else now_utc(),
            last_updated_at=_optional_timestamp(raw.get("last_updated_at")),
            additional_comments=_optional_str(raw.get("additional_comments")),
            is_complete=bool(raw.get("is_complete", False)),
            completion_percentage=_optional_int(raw.get("completion_percentage")) or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "subject_id": self.subject_id,
            "form_template_id": self.form_template_id,
            "responses": self.responses,
            "submitter_role": self.submitter_role,
            "submitted_at": format_timestamp(self.submitted_at),
            "is_complete": self.is_complete,
            "completion_percentage": self.completion_percentage,
        }
        payload.update(
            _drop_none(
                {
                    "id": self.id,
                    "session_id": self.session_id,
                    "form_template_version": self.form_template_version,
                    "submitted_by": self.submitted_by,
                    "last_updated_at": format_timestamp(self.last_updated_at),
                    "additional_comments": self.additional_comments,
                }
            )
        )
        return payload


@dataclass(frozen=True)
class CompletionResult:
    is_complete: bool
    percentage: int
    total_fields: int
    completed_fields: int
    required_fields: int
    completed_required_fields: int


# --------------------------------------------------------------------------
# Validation results
# --------------------------------------------------------------------------


@dataclass
class TemplateValidationResult:
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }


@dataclass(frozen=True)
class ResponseIssue:
    section_id: str
    field_id: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"section_id": self.section_id, "field_id": self.field_id, "message": self.message}

    def as_validation_issue(self) -> ValidationIssue:
        path = f"responses.{self.section_id}.{self.field_id}" if self.field_id else f"responses.{self.section_id}"
        return ValidationIssue(path, self.message)


@dataclass
class ResponseValidationResult:
    is_valid: bool
    errors: List[ResponseIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": [issue.to_dict() for issue in self.errors]}


@dataclass(frozen=True)
class TemplateStats:
    template_id: str
    usage_count: int
    entry_count: int
    active_subjects: int
    last_used: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "usage_count": self.usage_count,
            "entry_count": self.entry_count,
            "active_subjects": self.active_subjects,
            "last_used": format_timestamp(self.last_used),
        }


# --------------------------------------------------------------------------
# Analytics snapshot
# --------------------------------------------------------------------------


@dataclass
class DistributionBucket:
    count: int
    percentage: int


@dataclass
class FieldAnalyticsResult:
    field_id: str
    field_label: str
    field_type: str
    analytics_type: str
    data_points: int
    category: Optional[str] = None
    percentage: Optional[int] = None
    average: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    median: Optional[float] = None
    sum: Optional[float] = None
    distribution: Optional[Dict[str, DistributionBucket]] = None
    most_common: Optional[str] = None
    consistency_score: Optional[int] = None
    standard_deviation: Optional[float] = None
    count: Optional[int] = None
    trend: Optional[str] = None
    recent_average: Optional[float] = None
    older_average: Optional[float] = None
    improvement_rate: Optional[float] = None
    target_value: Optional[float] = None
    target_progress: Optional[float] = None
    is_on_target: Optional[bool] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldAnalyticsResult":
        payload = dict(raw)
        distribution = payload.pop("distribution", None)
        result = cls(**payload)
        if isinstance(distribution, Mapping):
            result.distribution = {
                str(option): DistributionBucket(count=int(bucket["count"]), percentage=int(bucket["percentage"]))
                for option, bucket in distribution.items()
            }
        return result

    def to_dict(self) -> Dict[str, Any]:
        payload = _drop_none(
            {
                "field_id": self.field_id,
                "field_label": self.field_label,
                "field_type": self.field_type,
                "analytics_type": self.analytics_type,
                "data_points": self.data_points,
                "category": self.category,
                "percentage": self.percentage,
                "average": self.average,
                "min": self.min,
                "max": self.max,
                "median": self.median,
                "sum": self.sum,
                "most_common": self.most_common,
                "consistency_score": self.consistency_score,
                "standard_deviation": self.standard_deviation,
                "count": self.count,
                "trend": self.trend,
                "recent_average": self.recent_average,
                "older_average": self.older_average,
                "improvement_rate": self.improvement_rate,
                "target_value": self.target_value,
                "target_progress": self.target_progress,
                "is_on_target": self.is_on_target,
            }
        )
        if self.distribution is not None:
            payload["distribution"] = {
                option: {"count": bucket.count, "percentage": bucket.percentage}
                for option, bucket in self.distribution.items()
            }
        return payload


@dataclass
class CategoryAnalyticsResult:
    category: str
    fields: List[str] = field(default_factory=list)
    field_count: int = 0
    overall_score: float = 0.0
    trend: str = TREND_STABLE
    field_results: List[FieldAnalyticsResult] = field(default_factory=list)
    top_performing_fields: List[str] = field(default_factory=list)
    needs_improvement_fields: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CategoryAnalyticsResult":
        return cls(
            category=str(raw["category"]),
            fields=list(raw.get("fields", [])),
            field_count=int(raw.get("field_count", 0)),
            overall_score=float(raw.get("overall_score", 0.0)),
            trend=str(raw.get("trend") or TREND_STABLE),
            field_results=[FieldAnalyticsResult.from_dict(item) for item in raw.get("field_results", [])],
            top_performing_fields=list(raw.get("top_performing_fields", [])),
            needs_improvement_fields=list(raw.get("needs_improvement_fields", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "fields": list(self.fields),
            "field_count": self.field_count,
            "overall_score": self.overall_score,
            "trend": self.trend,
            "field_results": [item.to_dict() for item in self.field_results],
            "top_performing_fields": list(self.top_performing_fields),
            "needs_improvement_fields": list(self.needs_improvement_fields),
        }


@dataclass
class SessionStats:
    total_sessions: int = 0
    completed_sessions: int = 0
    partial_sessions: int = 0
    completion_rate: int = 0
    average_completion_percentage: int = 0
    first_session_date: Optional[datetime] = None
    last_session_date: Optional[datetime] = None
    average_sessions_per_week: float = 0.0
    average_sessions_per_month: float = 0.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SessionStats":
        return cls(
            total_sessions=int(raw.get("total_sessions", 0)),
            completed_sessions=int(raw.get("completed_sessions", 0)),
            partial_sessions=int(raw.get("partial_sessions", 0)),
            completion_rate=int(raw.get("completion_rate", 0)),
            average_completion_percentage=int(raw.get("average_completion_percentage", 0)),
            first_session_date=_optional_timestamp(raw.get("first_session_date")),
            last_session_date=_optional_timestamp(raw.get("last_session_date")),
            average_sessions_per_week=float(raw.get("average_sessions_per_week", 0.0)),
            average_sessions_per_month=float(raw.get("average_sessions_per_month", 0.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "completed_sessions": self.completed_sessions,
            "partial_sessions": self.partial_sessions,
            "completion_rate": self.completion_rate,
            "average_completion_percentage": self.average_completion_percentage,
            "first_session_date": format_timestamp(self.first_session_date),
            "last_session_date": format_timestamp(self.last_session_date),
            "average_sessions_per_week": self.average_sessions_per_week,
            "average_sessions_per_month": self.average_sessions_per_month,
        }


@dataclass
class StreakInfo:
    current_streak: int = 0
    longest_streak: int = 0
    last_active_date: Optional[date] = None
    streak_dates: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StreakInfo":
        return cls(
            current_streak=int(raw.get("current_streak", 0)),
            longest_streak=int(raw.get("longest_streak", 0)),
            last_active_date=_optional_date(raw.get("last_active_date")),
            streak_dates=list(raw.get("streak_dates", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_active_date": self.last_active_date.isoformat() if self.last_active_date else None,
            "streak_dates": list(self.streak_dates),
        }


@dataclass
class DynamicStudentAnalytics:
    """Wholesale-recomputed analytics for one (subject, template) pair."""

    subject_id: str
    form_template_id: str
    form_template_name: str
    session_stats: SessionStats = field(default_factory=SessionStats)
    streak: StreakInfo = field(default_factory=StreakInfo)
    field_analytics: Dict[str, FieldAnalyticsResult] = field(default_factory=dict)
    category_analytics: Dict[str, CategoryAnalyticsResult] = field(default_factory=dict)
    overall_performance_score: float = 0.0
    overall_trend: str = TREND_STABLE
    top_strengths: List[str] = field(default_factory=list)
    areas_for_improvement: List[str] = field(default_factory=list)
    entries_analyzed: int = 0
    last_calculated: datetime = field(default_factory=now_utc)
    calculation_version: int = CALCULATION_VERSION

    @property
    def is_stale(self) -> bool:
        return self.calculation_version != CALCULATION_VERSION

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DynamicStudentAnalytics":
        return cls(
            subject_id=str(raw["subject_id"]),
            form_template_id=str(raw["form_template_id"]),
            form_template_name=str(raw.get("form_template_name") or ""),
            session_stats=SessionStats.from_dict(raw.get("session_stats") or {}),
            streak=StreakInfo.from_dict(raw.get("streak") or {}),
            field_analytics={
                key: FieldAnalyticsResult.from_dict(value)
                for key, value in (raw.get("field_analytics") or {}).items()
            },
            category_analytics={
                key: CategoryAnalyticsResult.from_dict(value)
                for key, value in (raw.get("category_analytics") or {}).items()
            },
            overall_performance_score=float(raw.get("overall_performance_score", 0.0)),
            overall_trend=str(raw.get("overall_trend") or TREND_STABLE),
            top_strengths=list(raw.get("top_strengths", [])),
            areas_for_improvement=list(raw.get("areas_for_improvement", [])),
            entries_analyzed=int(raw.get("entries_analyzed", 0)),
            last_calculated=parse_timestamp(raw["last_calculated"]) if raw.get("last_calculated") else now_utc(),
            calculation_version=int(raw.get("calculation_version", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "form_template_id": self.form_template_id,
            "form_template_name": self.form_template_name,
            "session_stats": self.session_stats.to_dict(),
            "streak": self.streak.to_dict(),
            "field_analytics": {key: value.to_dict() for key, value in self.field_analytics.items()},
            "category_analytics": {key: value.to_dict() for key, value in self.category_analytics.items()},
            "overall_performance_score": self.overall_performance_score,
            "overall_trend": self.overall_trend,
            "top_strengths": list(self.top_strengths),
            "areas_for_improvement": list(self.areas_for_improvement),
            "entries_analyzed": self.entries_analyzed,
            "last_calculated": format_timestamp(self.last_calculated),
            "calculation_version": self.calculation_version,
        }
