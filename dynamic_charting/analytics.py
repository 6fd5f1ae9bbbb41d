"""
Analytics Engine.

Snapshots are recomputed wholesale from the current entry set and written
over any previous snapshot for the same (subject, template) pair. Every
aggregation below is a pure function of the extracted values, so
concurrent recalculations for one key converge on the same result.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, tzinfo
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import AppConfig, get_config
from .constants import (
    ANALYTICS_COLLECTION,
    CALCULATION_VERSION,
    CATEGORY_HIGHLIGHTS,
    OVERALL_HIGHLIGHTS,
    RECENT_WINDOW,
    TREND_DECLINING,
    TREND_IMPROVING,
    TREND_PRECEDENCE,
    TREND_STABLE,
    TREND_STABLE_THRESHOLD,
)
from .entries import EntryStore
from .metrics import compute_session_stats, compute_streak, filter_by_date_range
from .models import (
    CategoryAnalyticsResult,
    DistributionBucket,
    DynamicChartingEntry,
    DynamicStudentAnalytics,
    FieldAnalyticsResult,
    FormField,
    FormSection,
    FormTemplate,
    is_value_present,
    now_utc,
    round_half_up,
    to_field_value,
)
from .storage import DocumentStore
from .templates import TemplateStore

LOGGER = logging.getLogger(__name__)

_TRUE_STRING = "true"


def round_to(value: float, decimals: int) -> float:
    factor = 10**decimals
    return math.floor(value * factor + 0.5) / factor


def snapshot_id(subject_id: str, template_id: str) -> str:
    return f"{subject_id}_{template_id}"


# --------------------------------------------------------------------------
# Extraction
# --------------------------------------------------------------------------


def extract_field_values(
    entries: Iterable[DynamicChartingEntry],
    section: FormSection,
    form_field: FormField,
) -> List[Any]:
    """
    Present values for one field, newest entry first.

    Repeatable sections contribute every repetition, in stored order.
    """
    values: List[Any] = []
    for entry in entries:
        raw_section = entry.responses.get(section.id)
        if raw_section is None:
            continue
        instances = raw_section if isinstance(raw_section, (list, tuple)) else [raw_section]
        for instance in instances:
            if not isinstance(instance, dict):
                continue
            raw = instance.get(form_field.id)
            if is_value_present(raw):
                values.append(to_field_value(raw).value)
    return values


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return value == _TRUE_STRING


def numeric_values(values: Iterable[Any]) -> List[float]:
    """Numbers among ``values``; booleans and non-numeric text are discarded."""
    numbers: List[float] = []
    for value in values:
        if isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            numbers.append(number)
    return numbers


# --------------------------------------------------------------------------
# Trends
# --------------------------------------------------------------------------


def split_windows(values: Sequence[Any]) -> Tuple[Sequence[Any], Sequence[Any]]:
    """Newest-first values split into the recent window and everything older."""
    recent_count = min(RECENT_WINDOW, len(values))
    return values[:recent_count], values[recent_count:]


def determine_trend(recent: float, older: float, higher_is_better: bool = True) -> str:
    """
    Classify the move from ``older`` to ``recent``.

    A relative change under 5% is stable in either direction.
    """
    diff = recent - older
    if older == 0:
        if diff == 0:
            return TREND_STABLE
    elif abs(diff) / abs(older) < TREND_STABLE_THRESHOLD:
        return TREND_STABLE

    if higher_is_better:
        return TREND_IMPROVING if diff > 0 else TREND_DECLINING
    return TREND_IMPROVING if diff < 0 else TREND_DECLINING


def majority_trend(trends: Iterable[Optional[str]]) -> str:
    """Most frequent trend; ties resolve as stable, then improving, then declining."""
    counts = Counter(trend for trend in trends if trend)
    if not counts:
        return TREND_STABLE
    return max(TREND_PRECEDENCE, key=lambda trend: (counts.get(trend, 0), -TREND_PRECEDENCE.index(trend)))


# --------------------------------------------------------------------------
# Per-field aggregation
# --------------------------------------------------------------------------


def _percentage(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    hits = sum(1 for value in values if is_truthy(value))
    result.percentage = round_half_up(hits / len(values) * 100)

    recent, older = split_windows(values)
    if older:
        recent_share = sum(1 for value in recent if is_truthy(value)) / len(recent) * 100
        older_share = sum(1 for value in older if is_truthy(value)) / len(older) * 100
        result.recent_average = round_to(recent_share, 2)
        result.older_average = round_to(older_share, 2)
        result.trend = determine_trend(recent_share, older_share, form_field.analytics.higher_is_better)


def _average(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    numbers = numeric_values(values)
    if not numbers:
        return
    array = np.asarray(numbers, dtype=float)
    result.average = round_to(float(array.mean()), 2)
    result.min = float(array.min())
    result.max = float(array.max())
    result.median = float(np.median(array))

    recent, older = split_windows(numbers)
    if older:
        result.recent_average = round_to(float(np.mean(recent)), 2)
        result.older_average = round_to(float(np.mean(older)), 2)
        result.trend = determine_trend(
            result.recent_average, result.older_average, form_field.analytics.higher_is_better
        )
        if result.older_average != 0:
            result.improvement_rate = round_to(
                (result.recent_average - result.older_average) / result.older_average * 100, 1
            )


def _sum(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    result.sum = round_to(float(np.sum(numeric_values(values))), 4)


def _distribution(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    flat: List[str] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(str(item) for item in value)
        else:
            flat.append(str(value))
    if not flat:
        return

    counts = Counter(flat)
    result.distribution = {
        option: DistributionBucket(count=count, percentage=round_half_up(count / len(flat) * 100))
        for option, count in counts.items()
    }
    # Counter preserves first-seen order, so ties go to the newest answer.
    result.most_common = max(counts, key=lambda option: counts[option])


def _consistency(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    numbers = numeric_values(values)
    if not numbers:
        return
    if len(numbers) < 2:
        result.standard_deviation = 0.0
        result.consistency_score = 100
        return

    array = np.asarray(numbers, dtype=float)
    mean = float(array.mean())
    std_dev = float(array.std())
    result.standard_deviation = round_to(std_dev, 2)
    if mean <= 0:
        result.consistency_score = 100 if std_dev == 0 else 0
        return
    # Half the mean is taken as the spread at which consistency reaches 0.
    result.consistency_score = round_half_up(max(0.0, (1 - std_dev / (mean / 2)) * 100))


def _count(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    result.count = len(values)


def _trend(result: FieldAnalyticsResult, values: Sequence[Any], form_field: FormField) -> None:
    numbers = numeric_values(values)
    recent, older = split_windows(numbers)
    if not recent or not older:
        return
    result.recent_average = round_to(float(np.mean(recent)), 2)
    result.older_average = round_to(float(np.mean(older)), 2)
    result.trend = determine_trend(
        float(np.mean(recent)), float(np.mean(older)), form_field.analytics.higher_is_better
    )


AGGREGATORS = {
    "percentage": _percentage,
    "average": _average,
    "sum": _sum,
    "distribution": _distribution,
    "consistency": _consistency,
    "count": _count,
    "trend": _trend,
}


def _track_target(result: FieldAnalyticsResult, form_field: FormField) -> None:
    target = form_field.analytics.target_value
    if target is None:
        return
    if result.percentage is not None:
        current = float(result.percentage)
    elif result.average is not None:
        current = result.average
    else:
        current = 0.0

    result.target_value = target
    if form_field.analytics.higher_is_better:
        progress = 100.0 if target == 0 else current / target * 100
        result.is_on_target = current >= target
    else:
        progress = 100.0 if current <= target or current == 0 else target / current * 100
        result.is_on_target = current <= target
    result.target_progress = round_to(min(100.0, max(0.0, progress)), 1)


def compute_field_analytics(
    entries: Sequence[DynamicChartingEntry],
    section: FormSection,
    form_field: FormField,
) -> FieldAnalyticsResult:
    """Aggregate one field according to its declared analytics type."""
    values = extract_field_values(entries, section, form_field)
    analytics_type = form_field.analytics.type
    result = FieldAnalyticsResult(
        field_id=form_field.id,
        field_label=form_field.display_label,
        field_type=form_field.type,
        analytics_type=analytics_type,
        data_points=len(values),
        category=form_field.analytics.category,
    )
    aggregator = AGGREGATORS.get(analytics_type)
    if values and aggregator is not None:
        aggregator(result, values, form_field)
    _track_target(result, form_field)
    return result


def field_score(result: FieldAnalyticsResult) -> Optional[float]:
    """
    A 0-100 score for ranking, or None when the result has none.

    Averages are normalised against the observed min/max; a flat range
    scores 100.
    """
    if result.analytics_type == "percentage" and result.percentage is not None:
        return float(result.percentage)
    if result.analytics_type == "average" and result.average is not None:
        low, high = result.min, result.max
        if low is None or high is None or high == low:
            return 100.0
        score = (result.average - low) / (high - low) * 100
        return float(round_half_up(min(100.0, max(0.0, score))))
    if result.analytics_type == "consistency" and result.consistency_score is not None:
        return float(result.consistency_score)
    return None


def _ranked(scored: List[Tuple[str, float]], size: int) -> Tuple[List[str], List[str]]:
    ordered = sorted(scored, key=lambda item: item[1], reverse=True)
    top = [label for label, _ in ordered[:size]]
    bottom = [label for label, _ in reversed(ordered[-size:])] if ordered else []
    return top, bottom


def compute_snapshot(
    template: FormTemplate,
    entries: Sequence[DynamicChartingEntry],
    subject_id: str,
    *,
    tz: tzinfo | None = None,
    today: Optional[date] = None,
) -> DynamicStudentAnalytics:
    """Build a full snapshot from newest-first ``entries``."""
    field_analytics: dict[str, FieldAnalyticsResult] = {}
    categories: dict[str, CategoryAnalyticsResult] = {}
    scored: List[Tuple[str, float]] = []
    category_scores: dict[str, List[Tuple[str, float]]] = {}

    for section, form_field in template.iter_fields():
        descriptor = form_field.analytics
        if not descriptor.enabled or descriptor.type == "none":
            continue
        result = compute_field_analytics(entries, section, form_field)
        key = form_field.id if form_field.id not in field_analytics else f"{section.id}.{form_field.id}"
        field_analytics[key] = result
        score = field_score(result)
        if score is not None:
            scored.append((result.field_label, score))

        if descriptor.category:
            category = categories.setdefault(descriptor.category, CategoryAnalyticsResult(category=descriptor.category))
            category.fields.append(form_field.id)
            category.field_results.append(result)
            if score is not None:
                category_scores.setdefault(descriptor.category, []).append((result.field_label, score))

    for name, category in categories.items():
        member_scores = category_scores.get(name, [])
        category.field_count = len(category.fields)
        category.overall_score = (
            round_to(sum(score for _, score in member_scores) / len(member_scores), 2) if member_scores else 0.0
        )
        category.trend = majority_trend(result.trend for result in category.field_results)
        category.top_performing_fields, category.needs_improvement_fields = _ranked(member_scores, CATEGORY_HIGHLIGHTS)

    top_strengths, areas_for_improvement = _ranked(scored, OVERALL_HIGHLIGHTS)
    overall_score = round_to(sum(score for _, score in scored) / len(scored), 2) if scored else 0.0

    return DynamicStudentAnalytics(
        subject_id=subject_id,
        form_template_id=template.id or "",
        form_template_name=template.name,
        session_stats=compute_session_stats(entries, tz),
        streak=compute_streak(entries, today=today, tz=tz),
        field_analytics=field_analytics,
        category_analytics=categories,
        overall_performance_score=overall_score,
        overall_trend=majority_trend(result.trend for result in field_analytics.values()),
        top_strengths=top_strengths,
        areas_for_improvement=areas_for_improvement,
        entries_analyzed=len(entries),
        last_calculated=now_utc(),
        calculation_version=CALCULATION_VERSION,
    )


class AnalyticsEngine:
    """Recalculate and cache per-subject analytics snapshots."""

    def __init__(
        self,
        store: DocumentStore,
        templates: TemplateStore,
        entries: EntryStore,
        *,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._store = store
        self._templates = templates
        self._entries = entries
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config or get_config()

    def recalculate(
        self,
        subject_id: str,
        template_id: str,
        *,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        include_partial: Optional[bool] = None,
        limit: Optional[int] = None,
        today: Optional[date] = None,
    ) -> DynamicStudentAnalytics:
        """Recompute the snapshot for (subject, template) and overwrite the cached one."""
        settings = self.config.analytics
        template = self._templates.require_template(template_id)
        include_partial = settings.include_partial if include_partial is None else include_partial
        limit = settings.entry_limit if limit is None else limit
        tz = self.config.tzinfo

        entries = self._entries.get_entries_by_subject(subject_id, template_id)
        entries = filter_by_date_range(entries, date_from, date_to, tz)[:limit]
        if not include_partial:
            entries = [entry for entry in entries if entry.is_complete]

        snapshot = compute_snapshot(template, entries, subject_id, tz=tz, today=today)
        self._store.upsert(ANALYTICS_COLLECTION, snapshot_id(subject_id, template_id), snapshot.to_dict())
        LOGGER.info(
            "Recalculated analytics for %s on %s from %d entries (score %.1f)",
            subject_id,
            template_id,
            snapshot.entries_analyzed,
            snapshot.overall_performance_score,
        )
        return snapshot

    def get_cached(
        self,
        subject_id: str,
        template_id: str,
        *,
        include_stale: bool = False,
    ) -> Optional[DynamicStudentAnalytics]:
        document = self._store.get(ANALYTICS_COLLECTION, snapshot_id(subject_id, template_id))
        if document is None:
            return None
        snapshot = DynamicStudentAnalytics.from_dict(document)
        if snapshot.is_stale and not include_stale:
            LOGGER.warning(
                "Ignoring snapshot %s computed with version %d (current %d)",
                snapshot_id(subject_id, template_id),
                snapshot.calculation_version,
                CALCULATION_VERSION,
            )
            return None
        return snapshot
