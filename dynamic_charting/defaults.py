"""Built-in templates and helpers to seed them into a Template Store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .templates import TemplateStore

LOGGER = logging.getLogger(__name__)

HOCKEY_SCOPE = "Hockey"
HOCKEY_TEMPLATE_NAME = "Hockey Goalie Performance Tracker"

_QUALITY = ["poor", "improving", "good"]
_CONSISTENCY = ["inconsistent", "consistent"]
_DECISIONS = ["needs_work", "improving", "strong"]


def _analytics(
    analytics_type: str,
    category: Optional[str] = None,
    *,
    higher_is_better: bool = True,
    target_value: Optional[float] = None,
) -> Dict[str, Any]:
    if analytics_type == "none":
        return {"enabled": False, "type": "none"}
    payload: Dict[str, Any] = {
        "enabled": True,
        "type": analytics_type,
        "category": category,
        "higher_is_better": higher_is_better,
    }
    if target_value is not None:
        payload["target_value"] = target_value
    return payload


def _field(
    field_id: str,
    label: str,
    field_type: str,
    analytics: Dict[str, Any],
    *,
    description: Optional[str] = None,
    required: bool = True,
    options: Optional[List[str]] = None,
    include_comments: bool = False,
    **rules: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": field_id,
        "label": label,
        "type": field_type,
        "validation": {"required": required, **rules},
        "analytics": analytics,
        "include_comments": include_comments,
    }
    if description:
        payload["description"] = description
    if options:
        payload["options"] = list(options)
    return payload


def _yesno(field_id: str, label: str, description: str, category: Optional[str], **kwargs: Any) -> Dict[str, Any]:
    higher_is_better = kwargs.pop("higher_is_better", True)
    target_value = kwargs.pop("target_value", 80 if category and higher_is_better else None)
    analytics = (
        _analytics("percentage", category, higher_is_better=higher_is_better, target_value=target_value)
        if category
        else _analytics("none")
    )
    return _field(field_id, label, "yesno", analytics, description=description, **kwargs)


def _radio(field_id: str, label: str, options: List[str], category: str, **kwargs: Any) -> Dict[str, Any]:
    kwargs.setdefault("include_comments", True)
    return _field(field_id, label, "radio", _analytics("distribution", category), options=options, **kwargs)


def _period_fields(suffix: str, number: int) -> List[Dict[str, Any]]:
    mind_set = f"Period {number} Mind Set"
    return [
        _yesno(
            f"focus_consistent_{suffix}",
            "Focus - Consistent",
            "Was your focus consistent throughout this period?",
            mind_set,
            target_value=75,
            include_comments=True,
        ),
        _radio(f"decision_making_{suffix}", "Decision Making", _DECISIONS, mind_set),
        _radio(f"body_language_{suffix}", "Body Language", _CONSISTENCY, mind_set),
        _radio(
            f"skating_{suffix}",
            "Skating Performance",
            ["not_in_sync", "weak", "improving", "in_sync"],
            f"Period {number} Skating",
        ),
        _radio(f"positional_above_{suffix}", "Positional - Above Icing Line", _QUALITY, f"Period {number} Positional"),
        _radio(
            f"positional_below_{suffix}",
            "Positional - Below Icing Line",
            _QUALITY + ["strong"],
            f"Period {number} Positional",
        ),
        _radio(f"rebound_quality_{suffix}", "Rebound Control - Quality", _QUALITY, f"Period {number} Rebound Control"),
        _radio(
            f"rebound_consistency_{suffix}",
            "Rebound Control - Consistency",
            _CONSISTENCY,
            f"Period {number} Rebound Control",
        ),
        _radio(f"freezing_quality_{suffix}", "Freezing Puck - Quality", _QUALITY, f"Period {number} Puck Control"),
        _radio(
            f"freezing_consistency_{suffix}",
            "Freezing Puck - Consistency",
            _CONSISTENCY,
            f"Period {number} Puck Control",
        ),
    ]


def _goal_fields(suffix: str, number: int) -> List[Dict[str, Any]]:
    return [
        _field(
            f"good_goals_{suffix}",
            f"Good Goals - Period {number}",
            "numeric",
            _analytics("sum", "Goals Against"),
            description="Number of well-executed goals scored against you",
            min=0,
            max=20,
        ),
        _field(
            f"bad_goals_{suffix}",
            f"Bad Goals - Period {number}",
            "numeric",
            _analytics("sum", "Goals Against", higher_is_better=False),
            description="Number of preventable goals",
            min=0,
            max=20,
        ),
        _field(
            f"challenge_{suffix}",
            f"Degree of Challenge - Period {number}",
            "scale",
            _analytics("average", "Challenge Level"),
            description="How challenging was this period? (1=Easy, 10=Very Difficult)",
            min=1,
            max=10,
        ),
    ]


def hockey_goalie_template(created_by: Optional[str] = None) -> Dict[str, Any]:
    """The default goalie tracker: preparation, per-period performance and review."""
    periods = []
    for number in (1, 2, 3):
        fields = _period_fields(f"p{number}", number)
        if number == 3:
            fields += [
                _radio("team_play_defense_p3", "Team Play - Setting Up Defense", _QUALITY, "Team Play", required=False),
                _radio("team_play_forwards_p3", "Team Play - Setting Up Forwards", _QUALITY, "Team Play", required=False),
            ]
        periods.append(
            {
                "id": f"period_{number}",
                "title": f"Period {number} Performance",
                "description": f"Detailed performance tracking for Period {number}",
                "order": number + 2,
                "fields": fields,
            }
        )

    sections = [
        {
            "id": "pre_game",
            "title": "Pre-Game",
            "description": "Track your preparation before the game",
            "order": 1,
            "fields": [
                _yesno("well_rested", "Well Rested", "Did you get adequate rest before the game?", "Game Readiness"),
                _yesno("fueled_for_game", "Properly Fueled", "Did you eat and hydrate appropriately?", "Game Readiness"),
                _yesno("mind_cleared", "Mind Cleared", "Is your mind clear and focused?", "Mental Preparation"),
                _yesno("mental_imagery", "Mental Imagery", "Did you perform mental imagery exercises?", "Mental Preparation"),
                _yesno("ball_exercises", "Ball Exercises", "Did you complete ball handling exercises?", "Pre-Game Routine"),
                _yesno("stretching", "Stretching", "Did you complete stretching routine?", "Pre-Game Routine"),
                _yesno("other_prep", "Other Preparation", "Did you complete other preparation activities?", None, required=False),
                _yesno("looked_engaged", "Looked Engaged", "Were you engaged during warm-up?", "Warm Up"),
                _yesno(
                    "lacked_focus",
                    "Lacked Focus",
                    "Did you lack focus during warm-up?",
                    "Warm Up",
                    higher_is_better=False,
                    required=False,
                ),
                _yesno(
                    "team_warmup_needs_adjustment",
                    "Team Warm-Up Needs Adjustment",
                    "Does the team warm-up routine need changes?",
                    None,
                    required=False,
                ),
            ],
        },
        {
            "id": "game_overview",
            "title": "Game Overview",
            "description": "Track goals and challenge level by period",
            "order": 2,
            "fields": _goal_fields("p1", 1) + _goal_fields("p2", 2) + _goal_fields("p3", 3),
        },
        *periods,
        {
            "id": "overtime",
            "title": "Overtime",
            "description": "Performance during overtime (if applicable)",
            "order": 6,
            "is_repeatable": True,
            "repeat_label": "Overtime period",
            "max_repeats": 5,
            "fields": [
                _radio("ot_focus", "Focus Quality", ["poor", "needs_work", "good"], "Overtime Performance", required=False),
                _radio("ot_decision_making", "Decision Making", _DECISIONS, "Overtime Performance", required=False),
                _radio("ot_skating", "Skating Performance", ["poor", "needs_work", "good"], "Overtime Performance", required=False),
            ],
        },
        {
            "id": "shootout",
            "title": "Shootout",
            "description": "Shootout performance (if applicable)",
            "order": 7,
            "fields": [
                _radio("shootout_result", "Result", ["won", "lost"], "Shootout", required=False, include_comments=False),
                _field(
                    "shootout_shots_saved",
                    "Shots Saved",
                    "numeric",
                    _analytics("sum", "Shootout"),
                    description="Number of shots saved (0-10)",
                    required=False,
                    min=0,
                    max=10,
                ),
                _field(
                    "shootout_shots_scored",
                    "Goals Against",
                    "numeric",
                    _analytics("sum", "Shootout", higher_is_better=False),
                    description="Number of goals scored against (0-10)",
                    required=False,
                    min=0,
                    max=10,
                ),
                _field(
                    "shootout_comments",
                    "Shootout Notes",
                    "textarea",
                    _analytics("none"),
                    required=False,
                    max_length=500,
                ),
            ],
        },
        {
            "id": "post_game",
            "title": "Post-Game",
            "description": "Post-game review and reflection",
            "order": 8,
            "fields": [
                _yesno(
                    "review_completed",
                    "Review Completed",
                    "Did you complete a post-game review?",
                    "Post-Game",
                    target_value=90,
                    include_comments=True,
                ),
                _field(
                    "additional_comments",
                    "Additional Comments",
                    "textarea",
                    _analytics("none"),
                    description="Any additional notes about the game",
                    required=False,
                    max_length=1000,
                ),
            ],
        },
    ]

    return {
        "name": HOCKEY_TEMPLATE_NAME,
        "description": (
            "Comprehensive performance tracking for hockey goalies including pre-game "
            "preparation, in-game performance, and post-game review."
        ),
        "scope": HOCKEY_SCOPE,
        "is_active": True,
        "allow_partial_submission": True,
        "created_by": created_by,
        "sections": sections,
    }


def initialize_default_templates(templates: TemplateStore, admin_id: Optional[str] = None) -> List[str]:
    """Create every built-in template and return the new ids."""
    LOGGER.info("Initializing default form templates")
    template_id = templates.create_template(hockey_goalie_template(admin_id), creator_id=admin_id)
    LOGGER.info("Hockey goalie template created as %s", template_id)
    return [template_id]


def check_default_templates_exist(templates: TemplateStore) -> Dict[str, bool]:
    active = templates.list_templates(scope=HOCKEY_SCOPE, is_active=True, is_archived=False, limit=1)
    return {"hockey_goalie": bool(active)}


def ensure_default_template(templates: TemplateStore, admin_id: Optional[str] = None) -> Tuple[str, bool]:
    """Return the active hockey template id, creating it when missing. The flag is True on creation."""
    existing = templates.get_active_template(HOCKEY_SCOPE)
    if existing is not None and existing.id:
        return existing.id, False
    template_id = templates.create_template(hockey_goalie_template(admin_id), creator_id=admin_id)
    return template_id, True
