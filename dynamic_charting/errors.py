"""
Error taxonomy for the charting core.

Every error carries a machine-readable ``code`` plus a message that is safe
to show to end users. Infrastructure faults keep the driver text in
``message`` for logs but never expose it through ``user_message``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class ValidationIssue:
    """A single violated rule, addressed by a dotted/bracketed path."""

    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


class ChartingError(Exception):
    """Base class for every error raised by the charting core."""

    code = "CHARTING_ERROR"
    default_user_message = "The request could not be completed."

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message or self.default_user_message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API responses."""
        payload: dict[str, Any] = {"code": self.code, "message": self.user_message}
        if self.context:
            payload["details"] = self.context
        return payload


class ValidationError(ChartingError):
    """
    A template or response violates one or more declared rules.

    ``issues`` always holds the complete list of violations.
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        issues: Iterable[ValidationIssue] = (),
        *,
        warnings: Iterable[ValidationIssue] = (),
        **kwargs: Any,
    ) -> None:
        self.issues = list(issues)
        self.warnings = list(warnings)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["details"] = [issue.to_dict() for issue in self.issues]
        if self.warnings:
            payload["warnings"] = [issue.to_dict() for issue in self.warnings]
        return payload


class TemplateArchivedError(ValidationError):
    code = "TEMPLATE_ARCHIVED"


class NotFoundError(ChartingError):
    code = "NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str) -> None:
        super().__init__(
            f"Form template {template_id!r} does not exist.",
            context={"template_id": template_id},
        )
        self.template_id = template_id


class EntryNotFoundError(NotFoundError):
    code = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str) -> None:
        super().__init__(
            f"Charting entry {entry_id!r} does not exist.",
            context={"entry_id": entry_id},
        )
        self.entry_id = entry_id


class TemplateInUseError(ChartingError):
    code = "TEMPLATE_IN_USE"

    def __init__(self, template_id: str, usage_count: int) -> None:
        super().__init__(
            "Cannot delete template that is in use. Archive it instead.",
            context={"template_id": template_id, "usage_count": usage_count},
        )


class MissingScopeError(ChartingError):
    code = "MISSING_SCOPE"

    def __init__(self, template_id: str) -> None:
        super().__init__(
            "A scope must be specified to activate this template.",
            context={"template_id": template_id},
        )


class PersistenceError(ChartingError):
    """The underlying store failed; opaque to the core's logic."""

    code = "PERSISTENCE_ERROR"
    default_user_message = "The data store is temporarily unavailable. Please try again."

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            user_message=self.default_user_message,
            context={"operation": operation} if operation else None,
        )
        self.operation = operation
