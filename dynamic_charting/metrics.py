from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable, Optional, Sequence

import pandas as pd

from .config import get_config
from .models import DynamicChartingEntry, SessionStats, StreakInfo, round_half_up

ENTRY_COLUMNS = ["entry_id", "subject_id", "submitted_at", "local_date", "is_complete", "completion_percentage"]


def _zone(tz: tzinfo | None) -> tzinfo:
    return tz if tz is not None else get_config().tzinfo


def local_date(moment: datetime, tz: tzinfo | None = None) -> date:
    """The calendar day a submission falls on in the subject's timezone."""
    return moment.astimezone(_zone(tz)).date()


def entries_to_dataframe(entries: Sequence[DynamicChartingEntry], tz: tzinfo | None = None) -> pd.DataFrame:
    """Normalise entries into a DataFrame with one row per submission."""
    zone = _zone(tz)
    records = [
        {
            "entry_id": entry.id,
            "subject_id": entry.subject_id,
            "submitted_at": entry.submitted_at,
            "local_date": local_date(entry.submitted_at, zone),
            "is_complete": bool(entry.is_complete),
            "completion_percentage": int(entry.completion_percentage),
        }
        for entry in entries
    ]
    if not records:
        return pd.DataFrame(columns=ENTRY_COLUMNS)
    return pd.DataFrame.from_records(records, columns=ENTRY_COLUMNS)


def filter_by_date_range(
    entries: Iterable[DynamicChartingEntry],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    tz: tzinfo | None = None,
) -> list[DynamicChartingEntry]:
    """Keep entries whose local submission date lies within the inclusive bounds."""
    zone = _zone(tz)
    kept = []
    for entry in entries:
        day = local_date(entry.submitted_at, zone)
        if date_from is not None and day < date_from:
            continue
        if date_to is not None and day > date_to:
            continue
        kept.append(entry)
    return kept


def compute_session_stats(entries: Sequence[DynamicChartingEntry], tz: tzinfo | None = None) -> SessionStats:
    df = entries_to_dataframe(entries, tz)
    total = len(df)
    if total == 0:
        return SessionStats()

    completed = int(df["is_complete"].sum())
    first_day = df["local_date"].min()
    last_day = df["local_date"].max()
    span_days = (last_day - first_day).days
    per_week = round(total / span_days * 7, 1) if span_days > 0 else 0.0
    per_month = round(total / span_days * 30, 1) if span_days > 0 else 0.0

    return SessionStats(
        total_sessions=total,
        completed_sessions=completed,
        partial_sessions=total - completed,
        completion_rate=round_half_up(completed / total * 100),
        average_completion_percentage=round_half_up(float(df["completion_percentage"].mean())),
        first_session_date=min(entry.submitted_at for entry in entries),
        last_session_date=max(entry.submitted_at for entry in entries),
        average_sessions_per_week=per_week,
        average_sessions_per_month=per_month,
    )


def compute_streak(
    entries: Sequence[DynamicChartingEntry],
    *,
    today: Optional[date] = None,
    tz: tzinfo | None = None,
) -> StreakInfo:
    """
    Current and longest runs of consecutive days with at least one entry.

    The current streak is 0 unless today or yesterday has an entry; the
    longest streak covers the whole history.
    """
    zone = _zone(tz)
    df = entries_to_dataframe(entries, zone)
    if df.empty:
        return StreakInfo()

    days = sorted(set(df["local_date"]), reverse=True)
    today = today or datetime.now(zone).date()

    longest = run = 1
    for newer, older in zip(days, days[1:]):
        run = run + 1 if newer - older == timedelta(days=1) else 1
        longest = max(longest, run)

    current = 0
    present = set(days)
    cursor = today if today in present else today - timedelta(days=1)
    while cursor in present:
        current += 1
        cursor -= timedelta(days=1)

    return StreakInfo(
        current_streak=current,
        longest_streak=max(longest, current),
        last_active_date=days[0],
        streak_dates=[day.isoformat() for day in days],
    )
