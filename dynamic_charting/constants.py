from __future__ import annotations

# Bumped whenever the aggregation algorithm changes so cached snapshots
# computed under an older algorithm can be detected and discarded.
CALCULATION_VERSION = 2

FIELD_TYPES: tuple[str, ...] = (
    "yesno",
    "radio",
    "checkbox",
    "numeric",
    "scale",
    "text",
    "textarea",
    "date",
    "time",
)
OPTION_FIELD_TYPES = frozenset({"radio", "checkbox"})
NUMERIC_FIELD_TYPES = frozenset({"numeric", "scale"})
TEXT_FIELD_TYPES = frozenset({"text", "textarea"})

ANALYTICS_TYPES: tuple[str, ...] = (
    "none",
    "percentage",
    "average",
    "sum",
    "distribution",
    "consistency",
    "trend",
    "count",
)

# Analytics types that make no sense for a given field type.
INCOMPATIBLE_ANALYTICS: dict[str, frozenset[str]] = {
    "yesno": frozenset({"sum", "distribution"}),
    "text": frozenset({"average", "sum", "percentage"}),
    "textarea": frozenset({"average", "sum", "percentage"}),
    "radio": frozenset({"average", "sum"}),
    "checkbox": frozenset({"average", "sum"}),
}

TREND_IMPROVING = "improving"
TREND_DECLINING = "declining"
TREND_STABLE = "stable"
# Precedence order used to break ties in majority votes.
TREND_PRECEDENCE: tuple[str, ...] = (TREND_STABLE, TREND_IMPROVING, TREND_DECLINING)

TREND_STABLE_THRESHOLD = 0.05
RECENT_WINDOW = 5
CATEGORY_HIGHLIGHTS = 3
OVERALL_HIGHLIGHTS = 5

SUBMITTER_ROLES = ("student", "admin")

TEMPLATES_COLLECTION = "form_templates"
ENTRIES_COLLECTION = "dynamic_charting_entries"
ANALYTICS_COLLECTION = "dynamic_charting_analytics"
