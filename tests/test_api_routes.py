from __future__ import annotations

import pytest

from dynamic_charting.webapp import create_app


@pytest.fixture
def client(services):
    app = create_app(services)
    app.config.update(TESTING=True)
    return app.test_client()


def _create_template(client, definition, user="coach-1"):
    resp = client.post("/api/templates", json=definition, headers={"X-User-Id": user})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["template"]


def test_health(client):
    assert client.get("/api/health").get_json() == {"status": "ok"}


def test_template_lifecycle_over_http(client, make_template):
    template = _create_template(client, make_template())
    template_id = template["id"]
    assert template["created_by"] == "coach-1"

    listed = client.get("/api/templates?scope=Hockey").get_json()["templates"]
    assert [item["id"] for item in listed] == [template_id]

    active = client.get("/api/templates/active?scope=Hockey").get_json()["template"]
    assert active["id"] == template_id

    patched = client.patch(f"/api/templates/{template_id}", json={"description": "Updated"})
    assert patched.status_code == 200
    assert patched.get_json()["new_version"] is False

    clone = client.post(f"/api/templates/{template_id}/clone", json={"name": "Copy"})
    assert clone.status_code == 201
    clone_id = clone.get_json()["template"]["id"]

    assert client.post(f"/api/templates/{template_id}/archive").status_code == 200
    blocked = client.post(f"/api/templates/{template_id}/activate", json={})
    assert blocked.status_code == 409
    assert blocked.get_json()["error"]["code"] == "TEMPLATE_ARCHIVED"
    assert client.post(f"/api/templates/{template_id}/restore").status_code == 200

    assert client.delete(f"/api/templates/{clone_id}").status_code == 200
    assert client.get(f"/api/templates/{clone_id}").status_code == 404


def test_template_validation_errors_are_structured(client):
    resp = client.post("/api/templates", json={"name": "", "sections": []})
    assert resp.status_code == 400
    error = resp.get_json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert {detail["path"] for detail in error["details"]} == {"name", "sections"}

    dry_run = client.post("/api/templates/validate", json={"name": "x", "sections": []}).get_json()
    assert dry_run["is_valid"] is False

    assert client.post("/api/templates", data="not json").status_code == 400
    assert client.get("/api/templates/active").status_code == 400


def test_missing_scope_maps_to_422(client, make_template):
    template = _create_template(client, make_template(scope=None, is_active=False))
    resp = client.post(f"/api/templates/{template['id']}/activate", json={})
    assert resp.status_code == 422
    assert resp.get_json()["error"]["code"] == "MISSING_SCOPE"


def test_entries_and_analytics_over_http(client, make_template):
    template_id = _create_template(client, make_template())["id"]

    created = client.post(
        "/api/entries",
        json={"form_template_id": template_id, "subject_id": "goalie-1", "responses": {"prep": {"rested": True}}},
        headers={"X-User-Id": "goalie-1"},
    )
    assert created.status_code == 201
    entry = created.get_json()["entry"]
    assert entry["submitted_by"] == "goalie-1"
    assert entry["is_complete"] is True

    bad = client.post(
        "/api/entries",
        json={"form_template_id": template_id, "subject_id": "goalie-1", "responses": {"prep": {"shots": 99}}},
    )
    assert bad.status_code == 400
    assert bad.get_json()["error"]["details"][0]["path"] == "responses.prep.shots"

    check = client.post(
        "/api/entries/validate", json={"form_template_id": template_id, "responses": {"prep": {}}}
    ).get_json()
    assert check["is_valid"] is False

    listed = client.get(f"/api/entries?subject_id=goalie-1&template_id={template_id}").get_json()["entries"]
    assert [item["id"] for item in listed] == [entry["id"]]

    cached = client.get(f"/api/analytics/goalie-1/{template_id}")
    assert cached.status_code == 200
    assert cached.get_json()["analytics"]["field_analytics"]["rested"]["percentage"] == 100

    recalculated = client.post(f"/api/analytics/goalie-1/{template_id}", json={"include_partial": True})
    assert recalculated.get_json()["analytics"]["entries_analyzed"] == 1

    in_use = client.delete(f"/api/templates/{template_id}")
    assert in_use.status_code == 409
    assert in_use.get_json()["error"]["details"]["usage_count"] == 1

    updated = client.patch(f"/api/entries/{entry['id']}", json={"additional_comments": "edited"})
    assert updated.get_json()["entry"]["additional_comments"] == "edited"
    assert client.delete(f"/api/entries/{entry['id']}").status_code == 200
    assert client.get(f"/api/entries/{entry['id']}").get_json()["error"]["code"] == "ENTRY_NOT_FOUND"

    stats = client.get(f"/api/templates/{template_id}/stats").get_json()
    assert stats["usage_count"] == 1
    assert stats["entry_count"] == 0


def test_recalculate_rejects_malformed_options(client, make_template):
    template_id = _create_template(client, make_template())["id"]
    client.post(
        "/api/entries",
        json={"form_template_id": template_id, "subject_id": "goalie-1", "responses": {"prep": {}}},
    )
    url = f"/api/analytics/goalie-1/{template_id}"

    malformed = [
        ({"limit": "many"}, "limit"),
        ({"limit": 2.5}, "limit"),
        ({"include_partial": "maybe"}, "include_partial"),
    ]
    for body, path in malformed:
        resp = client.post(url, json=body)
        assert resp.status_code == 400
        assert resp.get_json()["error"]["details"][0]["path"] == path

    listed = client.post(url, json=[1, 2])
    assert listed.status_code == 400
    assert listed.get_json()["error"]["details"][0]["path"] == "body"

    excluded = client.post(url, json={"include_partial": "false", "limit": "5"})
    assert excluded.get_json()["analytics"]["entries_analyzed"] == 0
    included = client.post(url, json={"include_partial": "true"})
    assert included.get_json()["analytics"]["entries_analyzed"] == 1


def test_unknown_analytics_returns_404(client):
    assert client.get("/api/analytics/nobody/nothing").status_code == 404
    assert client.post("/api/analytics/nobody/nothing").get_json()["error"]["code"] == "TEMPLATE_NOT_FOUND"


def test_unknown_routes_answer_in_json(client):
    resp = client.get("/api/does-not-exist")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "NOT_FOUND"
