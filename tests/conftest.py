from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from dynamic_charting.config import AppConfig, get_config
from dynamic_charting.services import ChartingServices, build_services


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DYNAMIC_CHARTING_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("DYNAMIC_CHARTING_DB_FILE", str(tmp_path / "data" / "charting.db"))
    monkeypatch.delenv("DYNAMIC_CHARTING_CONFIG", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def services(tmp_path) -> ChartingServices:
    return build_services(tmp_path / "data" / "charting.db", config=AppConfig())


def practice_template(**overrides: Any) -> dict[str, Any]:
    """A small template covering the common field and analytics types."""
    definition: dict[str, Any] = {
        "name": "Practice Log",
        "scope": "Hockey",
        "is_active": True,
        "sections": [
            {
                "id": "prep",
                "title": "Preparation",
                "fields": [
                    {
                        "id": "rested",
                        "label": "Well Rested",
                        "type": "yesno",
                        "validation": {"required": True},
                        "analytics": {
                            "enabled": True,
                            "type": "percentage",
                            "category": "Readiness",
                            "target_value": 80,
                        },
                    },
                    {
                        "id": "shots",
                        "label": "Shots Faced",
                        "type": "numeric",
                        "validation": {"required": False, "min": 0, "max": 60},
                        "analytics": {"enabled": True, "type": "average", "category": "Workload"},
                    },
                    {
                        "id": "mood",
                        "label": "Mood",
                        "type": "radio",
                        "options": ["low", "ok", "high"],
                        "analytics": {"enabled": True, "type": "distribution", "category": "Readiness"},
                    },
                    {
                        "id": "notes",
                        "label": "Notes",
                        "type": "textarea",
                        "validation": {"max_length": 200},
                    },
                ],
            }
        ],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def make_template() -> Callable[..., dict[str, Any]]:
    return practice_template


def _days_ago(days: int, *, hour: int = 12) -> str:
    moment = datetime.now(timezone.utc).replace(hour=hour, minute=0, second=0, microsecond=0)
    return (moment - timedelta(days=days)).isoformat()


@pytest.fixture
def days_ago() -> Callable[..., str]:
    """ISO timestamp for noon UTC, `days` days before today."""
    return _days_ago
