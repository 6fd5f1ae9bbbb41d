from __future__ import annotations

import argparse
import random
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

from rich.progress import Progress

from dynamic_charting.config import get_config
from dynamic_charting.defaults import ensure_default_template
from dynamic_charting.models import FormField, FormTemplate
from dynamic_charting.services import build_services

DEFAULT_SUBJECTS = ["goalie-001", "goalie-002"]


def _value_for(form_field: FormField, rng: random.Random, skill: float) -> Any:
    rules = form_field.validation
    if form_field.type == "yesno":
        return rng.random() < skill
    if form_field.type in {"numeric", "scale"}:
        low = int(rules.min if rules.min is not None else 0)
        high = int(rules.max if rules.max is not None else 10)
        if form_field.analytics.higher_is_better:
            return rng.randint(low, max(low, int(low + (high - low) * skill)))
        return rng.randint(low, max(low, int(low + (high - low) * (1 - skill) / 2)))
    if form_field.type == "radio" and form_field.options:
        index = min(len(form_field.options) - 1, int(rng.random() * skill * len(form_field.options) + skill))
        return form_field.options[index]
    if form_field.type == "checkbox" and form_field.options:
        return rng.sample(form_field.options, k=rng.randint(1, len(form_field.options)))
    if form_field.type in {"text", "textarea"}:
        return rng.choice(["Solid night.", "Tracked pucks well through traffic.", "Late on low shots.", ""])
    return None


def _build_responses(template: FormTemplate, rng: random.Random, skill: float) -> dict[str, Any]:
    responses: dict[str, Any] = {}
    for section in template.sections:
        if section.is_repeatable:
            if rng.random() < 0.7:
                continue
            repeats = rng.randint(1, section.max_repeats or 2)
            responses[section.id] = [
                {f.id: _value_for(f, rng, skill) for f in section.fields} for _ in range(repeats)
            ]
            continue
        answers = {}
        for form_field in section.fields:
            if not form_field.required and rng.random() < 0.4:
                continue
            value = _value_for(form_field, rng, skill)
            if form_field.include_comments and rng.random() < 0.2:
                value = {"value": value, "comments": "Noted in review."}
            answers[form_field.id] = value
        responses[section.id] = answers
    return responses


def _game_days(days: int, start: date, rng: random.Random) -> list[date]:
    return [start + timedelta(days=offset) for offset in range(days) if rng.random() < 0.45]


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the default template and synthetic goalie entries.")
    parser.add_argument("--days", type=int, default=42, help="Number of calendar days to cover.")
    parser.add_argument(
        "--start-date",
        type=date.fromisoformat,
        default=(date.today() - timedelta(days=41)).isoformat(),
        help="Start date (YYYY-MM-DD). Defaults to 41 days before today.",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed for reproducibility.")
    parser.add_argument("--db", type=Path, default=None, help="Database file (defaults to the configured one).")
    parser.add_argument(
        "--subjects",
        nargs="+",
        default=DEFAULT_SUBJECTS,
        help="Space-separated subject identifiers (default: %(default)s).",
    )
    args = parser.parse_args()

    start = date.fromisoformat(args.start_date) if isinstance(args.start_date, str) else args.start_date
    rng = random.Random(args.seed)

    config = get_config()
    config = replace(config, analytics=replace(config.analytics, auto_recalculate=False))
    services = build_services(args.db, config=config)
    template_id, created = ensure_default_template(services.templates, "demo-admin")
    template = services.templates.require_template(template_id)
    if created:
        print(f"Created default template {template_id}")

    schedule: list[tuple[str, date, float]] = []
    for subject in args.subjects:
        base_skill = rng.uniform(0.45, 0.7)
        days: Sequence[date] = _game_days(args.days, start, rng)
        for index, day in enumerate(days):
            skill = min(0.95, base_skill + 0.25 * index / max(1, len(days)))
            schedule.append((subject, day, skill))

    with Progress() as progress:
        task = progress.add_task("Submitting demo entries", total=len(schedule))
        for subject, day, skill in schedule:
            submitted_at = datetime.combine(day, time(hour=21), tzinfo=timezone.utc)
            services.entries.create_entry(
                {
                    "form_template_id": template_id,
                    "subject_id": subject,
                    "responses": _build_responses(template, rng, skill),
                    "submitted_by": subject,
                    "submitter_role": "student",
                    "submitted_at": submitted_at.isoformat(),
                }
            )
            progress.update(task, advance=1)

    for subject in args.subjects:
        snapshot = services.analytics.recalculate(subject, template_id, include_partial=True)
        print(
            f"{subject}: {snapshot.entries_analyzed} entries, "
            f"score {snapshot.overall_performance_score:.1f} ({snapshot.overall_trend})"
        )


if __name__ == "__main__":
    main()
