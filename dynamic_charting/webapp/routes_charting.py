from __future__ import annotations

from typing import Any, Optional

from flask import current_app, jsonify, request

from ..errors import ValidationError, ValidationIssue
from ..models import parse_iso_date
from ..services import ChartingServices

EXTENSION_KEY = "dynamic_charting"
USER_HEADER = "X-User-Id"


def _services() -> ChartingServices:
    return current_app.extensions[EXTENSION_KEY]


def _caller_id() -> Optional[str]:
    value = (request.headers.get(USER_HEADER) or "").strip()
    return value or None


def _json_body(*, optional: bool = False) -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None and optional:
        return {}
    if not isinstance(payload, dict):
        message = "Request body must be a JSON object"
        raise ValidationError(message, [ValidationIssue("body", message)])
    return payload


def _flag(name: str) -> Optional[bool]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int_arg(name: str) -> Optional[int]:
    return _as_int(request.args.get(name), name)


def _as_int(raw: Any, name: str) -> Optional[int]:
    if raw is None or raw == "":
        return None
    message = f"{name} must be an integer"
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if not isinstance(raw, str):
        raise ValidationError(message, [ValidationIssue(name, message)])
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(message, [ValidationIssue(name, message)]) from exc


def _as_bool(raw: Any, name: str) -> Optional[bool]:
    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in {"true", "false"}:
        return raw.strip().lower() == "true"
    message = f"{name} must be true or false"
    raise ValidationError(message, [ValidationIssue(name, message)])


def _date_arg(payload: dict[str, Any], name: str):
    raw = payload.get(name)
    return parse_iso_date(raw, field=name) if raw else None


def register_charting_api(app) -> None:
    # -- templates -----------------------------------------------------------

    @app.get("/api/templates")
    def api_list_templates():
        include_archived = _flag("include_archived")
        templates = _services().templates.list_templates(
            scope=request.args.get("scope") or None,
            is_active=_flag("active"),
            is_archived=None if include_archived else False,
            created_by=request.args.get("created_by") or None,
            limit=_int_arg("limit"),
        )
        return jsonify({"templates": [template.to_dict() for template in templates]})

    @app.post("/api/templates")
    def api_create_template():
        template_id = _services().templates.create_template(_json_body(), creator_id=_caller_id())
        template = _services().templates.require_template(template_id)
        return jsonify({"template": template.to_dict()}), 201

    @app.post("/api/templates/validate")
    def api_validate_template():
        result = _services().templates.validate_template(_json_body())
        return jsonify(result.to_dict())

    @app.get("/api/templates/active")
    def api_active_template():
        scope = (request.args.get("scope") or "").strip()
        if not scope:
            message = "scope query parameter is required"
            raise ValidationError(message, [ValidationIssue("scope", message)])
        template = _services().templates.get_active_template(scope)
        return jsonify({"template": template.to_dict() if template else None})

    @app.get("/api/templates/<template_id>")
    def api_get_template(template_id: str):
        template = _services().templates.require_template(template_id)
        return jsonify({"template": template.to_dict()})

    @app.patch("/api/templates/<template_id>")
    def api_update_template(template_id: str):
        payload = _json_body()
        force_new_version = bool(payload.pop("force_new_version", False))
        new_id = _services().templates.update_template(
            template_id,
            payload,
            force_new_version=force_new_version,
            modified_by=_caller_id(),
        )
        template = _services().templates.require_template(new_id)
        return jsonify({"template": template.to_dict(), "new_version": new_id != template_id})

    @app.delete("/api/templates/<template_id>")
    def api_delete_template(template_id: str):
        _services().templates.delete_template(template_id)
        return jsonify({"status": "ok"})

    @app.post("/api/templates/<template_id>/archive")
    def api_archive_template(template_id: str):
        _services().templates.archive_template(template_id)
        return jsonify({"status": "ok"})

    @app.post("/api/templates/<template_id>/restore")
    def api_restore_template(template_id: str):
        _services().templates.restore_template(template_id)
        return jsonify({"status": "ok"})

    @app.post("/api/templates/<template_id>/activate")
    def api_activate_template(template_id: str):
        payload = _json_body(optional=True)
        _services().templates.activate_template(template_id, payload.get("scope") or None)
        return jsonify({"template": _services().templates.require_template(template_id).to_dict()})

    @app.post("/api/templates/<template_id>/clone")
    def api_clone_template(template_id: str):
        payload = _json_body()
        name = str(payload.get("name") or "").strip()
        if not name:
            message = "name is required"
            raise ValidationError(message, [ValidationIssue("name", message)])
        clone_id = _services().templates.clone_template(template_id, name, _caller_id())
        return jsonify({"template": _services().templates.require_template(clone_id).to_dict()}), 201

    @app.get("/api/templates/<template_id>/stats")
    def api_template_stats(template_id: str):
        return jsonify(_services().templates.get_template_stats(template_id).to_dict())

    # -- entries -------------------------------------------------------------

    @app.get("/api/entries")
    def api_list_entries():
        entries_store = _services().entries
        session_id = request.args.get("session_id")
        if session_id:
            entries = entries_store.get_entries_by_session(session_id)
        else:
            entries = entries_store.get_all_entries(
                template_id=request.args.get("template_id") or None,
                subject_id=request.args.get("subject_id") or None,
                limit=_int_arg("limit"),
            )
        return jsonify({"entries": [entry.to_dict() for entry in entries]})

    @app.post("/api/entries")
    def api_create_entry():
        payload = _json_body()
        payload.setdefault("submitted_by", _caller_id())
        entry_id = _services().entries.create_entry(payload)
        return jsonify({"entry": _services().entries.require_entry(entry_id).to_dict()}), 201

    @app.post("/api/entries/validate")
    def api_validate_entry():
        payload = _json_body()
        template_id = str(payload.get("form_template_id") or "").strip()
        if not template_id:
            message = "form_template_id is required"
            raise ValidationError(message, [ValidationIssue("form_template_id", message)])
        result = _services().entries.validate_responses(template_id, payload.get("responses") or {})
        return jsonify(result.to_dict())

    @app.get("/api/entries/<entry_id>")
    def api_get_entry(entry_id: str):
        return jsonify({"entry": _services().entries.require_entry(entry_id).to_dict()})

    @app.patch("/api/entries/<entry_id>")
    def api_update_entry(entry_id: str):
        entry = _services().entries.update_entry(entry_id, _json_body())
        return jsonify({"entry": entry.to_dict()})

    @app.delete("/api/entries/<entry_id>")
    def api_delete_entry(entry_id: str):
        _services().entries.delete_entry(entry_id)
        return jsonify({"status": "ok"})

    # -- analytics -----------------------------------------------------------

    @app.get("/api/analytics/<subject_id>/<template_id>")
    def api_get_analytics(subject_id: str, template_id: str):
        snapshot = _services().analytics.get_cached(
            subject_id,
            template_id,
            include_stale=bool(_flag("include_stale")),
        )
        if snapshot is None:
            return jsonify({"analytics": None}), 404
        return jsonify({"analytics": snapshot.to_dict()})

    @app.post("/api/analytics/<subject_id>/<template_id>")
    def api_recalculate_analytics(subject_id: str, template_id: str):
        payload = _json_body(optional=True)
        snapshot = _services().analytics.recalculate(
            subject_id,
            template_id,
            date_from=_date_arg(payload, "date_from"),
            date_to=_date_arg(payload, "date_to"),
            include_partial=_as_bool(payload.get("include_partial"), "include_partial"),
            limit=_as_int(payload.get("limit"), "limit"),
        )
        return jsonify({"analytics": snapshot.to_dict()})
