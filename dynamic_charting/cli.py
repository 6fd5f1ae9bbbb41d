from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer

from .config import as_dict as config_as_dict, get_config
from .defaults import check_default_templates_exist, ensure_default_template, initialize_default_templates
from .errors import ChartingError, NotFoundError, ValidationError
from .models import parse_iso_date
from .reports import export_entries, generate_analytics_report
from .services import (
    ChartingServices,
    build_services,
    load_json_payload,
    render_analytics_summary,
    render_entry_table,
    render_template_outline,
    render_template_table,
)

app = typer.Typer(help="Define charting templates, record entries, and review analytics.")
templates_app = typer.Typer(help="Create, version, and manage form templates.")
entries_app = typer.Typer(help="Submit and review charting entries.")
analytics_app = typer.Typer(help="Recalculate and inspect analytics snapshots.")


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@contextmanager
def _handling_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        lines = [exc.user_message] + [f" • {issue.path}: {issue.message}" for issue in exc.issues]
        _fail("\n".join(lines), code=2)
    except NotFoundError as exc:
        _fail(exc.user_message, code=4)
    except ChartingError as exc:
        _fail(f"{exc.user_message} ({exc.code})")
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))


def _services() -> ChartingServices:
    return build_services()


def _load_mapping(path: Path, *, what: str) -> dict[str, Any]:
    payload = load_json_payload(path.expanduser())
    if not isinstance(payload, dict):
        raise ValueError(f"{what} file must contain a JSON object.")
    return payload


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr."),
) -> None:
    level = "DEBUG" if verbose else get_config().log_level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# --------------------------------------------------------------------------
# templates
# --------------------------------------------------------------------------


@templates_app.command("create")
def template_create(
    file: Path = typer.Option(..., "--file", "-f", help="JSON file with the template definition."),
    creator: Optional[str] = typer.Option(None, "--creator", help="Creator ID recorded on the template."),
) -> None:
    """Validate and store a new template."""
    with _handling_errors():
        definition = _load_mapping(file, what="Template")
        template_id = _services().templates.create_template(definition, creator_id=creator)
    typer.echo(f"Created template {template_id}")


@templates_app.command("show")
def template_show(
    template_id: str = typer.Argument(..., help="Template ID."),
    as_json: bool = typer.Option(False, "--json", help="Print the full template as JSON."),
) -> None:
    """Show a template's structure."""
    with _handling_errors():
        template = _services().templates.require_template(template_id)
    if as_json:
        typer.echo(json.dumps(template.to_dict(), indent=2))
    else:
        typer.echo(render_template_outline(template))


@templates_app.command("list")
def template_list(
    scope: Optional[str] = typer.Option(None, "--scope", help="Only templates for this scope."),
    active: bool = typer.Option(False, "--active", help="Only active templates."),
    include_archived: bool = typer.Option(False, "--all", help="Include archived templates."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum number of templates."),
) -> None:
    """List templates, most recently updated first."""
    with _handling_errors():
        templates = _services().templates.list_templates(
            scope=scope,
            is_active=True if active else None,
            is_archived=None if include_archived else False,
            limit=limit,
        )
    if not templates:
        typer.echo("No templates found.")
        return
    typer.echo(render_template_table(templates))


@templates_app.command("validate")
def template_validate(
    file: Path = typer.Option(..., "--file", "-f", help="JSON file with the template definition."),
) -> None:
    """Check a template definition without saving it."""
    with _handling_errors():
        definition = _load_mapping(file, what="Template")
    result = _services().templates.validate_template(definition)
    for warning in result.warnings:
        typer.secho(f"warning {warning.path}: {warning.message}", fg=typer.colors.YELLOW)
    if not result.is_valid:
        _fail("\n".join(f"{issue.path}: {issue.message}" for issue in result.errors), code=2)
    typer.echo("Template is valid.")


@templates_app.command("update")
def template_update(
    template_id: str = typer.Argument(..., help="Template ID."),
    file: Path = typer.Option(..., "--file", "-f", help="JSON file with the fields to change."),
    force_new_version: bool = typer.Option(False, "--new-version", help="Always create a new version."),
    modified_by: Optional[str] = typer.Option(None, "--by", help="ID of the user making the change."),
) -> None:
    """Update a template; in-use templates get a new version."""
    with _handling_errors():
        patch = _load_mapping(file, what="Patch")
        new_id = _services().templates.update_template(
            template_id,
            patch,
            force_new_version=force_new_version,
            modified_by=modified_by,
        )
    if new_id == template_id:
        typer.echo(f"Updated template {template_id} in place")
    else:
        typer.echo(f"Archived {template_id}; new version is {new_id}")


@templates_app.command("activate")
def template_activate(
    template_id: str = typer.Argument(..., help="Template ID."),
    scope: Optional[str] = typer.Option(None, "--scope", help="Scope to activate for (defaults to the template's)."),
) -> None:
    """Make a template the single active one for its scope."""
    with _handling_errors():
        _services().templates.activate_template(template_id, scope)
    typer.echo(f"Activated template {template_id}")


@templates_app.command("archive")
def template_archive(template_id: str = typer.Argument(..., help="Template ID.")) -> None:
    """Archive a template so it no longer accepts entries."""
    with _handling_errors():
        _services().templates.archive_template(template_id)
    typer.echo(f"Archived template {template_id}")


@templates_app.command("restore")
def template_restore(template_id: str = typer.Argument(..., help="Template ID.")) -> None:
    """Restore an archived template."""
    with _handling_errors():
        _services().templates.restore_template(template_id)
    typer.echo(f"Restored template {template_id}")


@templates_app.command("clone")
def template_clone(
    template_id: str = typer.Argument(..., help="Template ID."),
    name: str = typer.Option(..., "--name", "-n", help="Name for the copy."),
    creator: Optional[str] = typer.Option(None, "--creator", help="Creator ID for the copy."),
) -> None:
    """Copy a template's structure into a new, inactive template."""
    with _handling_errors():
        clone_id = _services().templates.clone_template(template_id, name, creator)
    typer.echo(f"Cloned template {template_id} into {clone_id}")


@templates_app.command("delete")
def template_delete(template_id: str = typer.Argument(..., help="Template ID.")) -> None:
    """Delete a template that has never been used."""
    with _handling_errors():
        _services().templates.delete_template(template_id)
    typer.echo(f"Deleted template {template_id}")


@templates_app.command("stats")
def template_stats(template_id: str = typer.Argument(..., help="Template ID.")) -> None:
    """Show usage statistics for a template."""
    with _handling_errors():
        stats = _services().templates.get_template_stats(template_id)
    last_used = stats.last_used.strftime("%Y-%m-%d %H:%M") if stats.last_used else "never"
    typer.echo(
        f"Usage: {stats.usage_count} | Entries: {stats.entry_count} | "
        f"Subjects: {stats.active_subjects} | Last used: {last_used}"
    )


@templates_app.command("seed")
def template_seed(
    admin: Optional[str] = typer.Option(None, "--admin", help="Admin ID recorded as creator."),
    force: bool = typer.Option(False, "--force", help="Create the defaults even if they already exist."),
) -> None:
    """Install the built-in default templates."""
    with _handling_errors():
        templates = _services().templates
        if force:
            created = initialize_default_templates(templates, admin)
            typer.echo(f"Created {len(created)} default template(s): {', '.join(created)}")
            return
        existing = check_default_templates_exist(templates)
        template_id, created_now = ensure_default_template(templates, admin)
    if created_now:
        typer.echo(f"Created default hockey goalie template {template_id}")
    else:
        status = "present" if existing.get("hockey_goalie") else "missing"
        typer.echo(f"Default hockey goalie template already {status}: {template_id}")


# --------------------------------------------------------------------------
# entries
# --------------------------------------------------------------------------


@entries_app.command("submit")
def entry_submit(
    template_id: str = typer.Option(..., "--template", "-t", help="Template ID the responses answer."),
    subject_id: str = typer.Option(..., "--subject", "-s", help="ID of the person being charted."),
    responses: Path = typer.Option(..., "--responses", "-r", help="JSON file with responses keyed by section ID."),
    session_id: Optional[str] = typer.Option(None, "--session", help="Optional session grouping key."),
    submitted_by: Optional[str] = typer.Option(None, "--by", help="ID of the submitting user."),
    role: str = typer.Option("student", "--role", help="Submitter role (student or admin)."),
    comments: Optional[str] = typer.Option(None, "--comments", help="Additional comments."),
) -> None:
    """Submit a new charting entry."""
    with _handling_errors():
        payload = _load_mapping(responses, what="Responses")
        services = _services()
        entry_id = services.entries.create_entry(
            {
                "form_template_id": template_id,
                "subject_id": subject_id,
                "responses": payload,
                "session_id": session_id,
                "submitted_by": submitted_by,
                "submitter_role": role,
                "additional_comments": comments,
            }
        )
        entry = services.entries.require_entry(entry_id)
    state = "complete" if entry.is_complete else "partial"
    typer.echo(f"Saved entry {entry_id} ({state}, {entry.completion_percentage}% filled)")


@entries_app.command("show")
def entry_show(entry_id: str = typer.Argument(..., help="Entry ID.")) -> None:
    """Print an entry as JSON."""
    with _handling_errors():
        entry = _services().entries.require_entry(entry_id)
    typer.echo(json.dumps(entry.to_dict(), indent=2))


@entries_app.command("list")
def entry_list(
    subject_id: Optional[str] = typer.Option(None, "--subject", "-s", help="Only entries for this subject."),
    template_id: Optional[str] = typer.Option(None, "--template", "-t", help="Only entries for this template."),
    session_id: Optional[str] = typer.Option(None, "--session", help="Only entries in this session."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum number of entries."),
) -> None:
    """List entries, newest first."""
    with _handling_errors():
        entries_store = _services().entries
        if session_id:
            entries = entries_store.get_entries_by_session(session_id)[:limit]
        else:
            entries = entries_store.get_all_entries(template_id=template_id, subject_id=subject_id, limit=limit)
    if not entries:
        typer.echo("No entries found.")
        return
    typer.echo(render_entry_table(entries))


@entries_app.command("update")
def entry_update(
    entry_id: str = typer.Argument(..., help="Entry ID."),
    responses: Optional[Path] = typer.Option(None, "--responses", "-r", help="JSON file with replacement responses."),
    comments: Optional[str] = typer.Option(None, "--comments", help="Replacement additional comments."),
    session_id: Optional[str] = typer.Option(None, "--session", help="Replacement session ID."),
) -> None:
    """Amend an entry; completion is recomputed when responses change."""
    patch: dict[str, Any] = {}
    with _handling_errors():
        if responses is not None:
            patch["responses"] = _load_mapping(responses, what="Responses")
    if comments is not None:
        patch["additional_comments"] = comments
    if session_id is not None:
        patch["session_id"] = session_id
    if not patch:
        _fail("Nothing to update. Pass --responses, --comments or --session.")
    with _handling_errors():
        entry = _services().entries.update_entry(entry_id, patch)
    typer.echo(f"Updated entry {entry_id} ({entry.completion_percentage}% filled)")


@entries_app.command("delete")
def entry_delete(entry_id: str = typer.Argument(..., help="Entry ID.")) -> None:
    """Delete an entry."""
    with _handling_errors():
        _services().entries.delete_entry(entry_id)
    typer.echo(f"Deleted entry {entry_id}")


@entries_app.command("validate")
def entry_validate(
    template_id: str = typer.Option(..., "--template", "-t", help="Template ID."),
    responses: Path = typer.Option(..., "--responses", "-r", help="JSON file with responses keyed by section ID."),
) -> None:
    """Check required fields without saving anything."""
    with _handling_errors():
        payload = _load_mapping(responses, what="Responses")
        result = _services().entries.validate_responses(template_id, payload)
    if not result.is_valid:
        _fail("\n".join(f"{issue.section_id}.{issue.field_id}: {issue.message}" for issue in result.errors), code=2)
    typer.echo("All required fields are answered.")


# --------------------------------------------------------------------------
# analytics
# --------------------------------------------------------------------------


@analytics_app.command("recalc")
def analytics_recalc(
    subject_id: str = typer.Argument(..., help="Subject ID."),
    template_id: str = typer.Argument(..., help="Template ID."),
    date_from: Optional[str] = typer.Option(None, "--from", help="Earliest submission date (YYYY-MM-DD)."),
    date_to: Optional[str] = typer.Option(None, "--to", help="Latest submission date (YYYY-MM-DD)."),
    include_partial: Optional[bool] = typer.Option(
        None,
        "--include-partial/--complete-only",
        help="Include incomplete entries (defaults to config).",
    ),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Read at most this many recent entries."),
) -> None:
    """Recompute and store the analytics snapshot."""
    with _handling_errors():
        snapshot = _services().analytics.recalculate(
            subject_id,
            template_id,
            date_from=parse_iso_date(date_from, field="--from") if date_from else None,
            date_to=parse_iso_date(date_to, field="--to") if date_to else None,
            include_partial=include_partial,
            limit=limit,
        )
    typer.echo(render_analytics_summary(snapshot))


@analytics_app.command("show")
def analytics_show(
    subject_id: str = typer.Argument(..., help="Subject ID."),
    template_id: str = typer.Argument(..., help="Template ID."),
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON."),
    include_stale: bool = typer.Option(False, "--include-stale", help="Show snapshots from older calculation versions."),
) -> None:
    """Show the cached analytics snapshot."""
    with _handling_errors():
        snapshot = _services().analytics.get_cached(subject_id, template_id, include_stale=include_stale)
    if snapshot is None:
        _fail("No current snapshot. Run `analytics recalc` first.", code=4)
    if as_json:
        typer.echo(json.dumps(snapshot.to_dict(), indent=2))
    else:
        typer.echo(render_analytics_summary(snapshot))


# --------------------------------------------------------------------------
# export / report / config
# --------------------------------------------------------------------------


@app.command("export")
def export(
    template_id: str = typer.Option(..., "--template", "-t", help="Template whose entries to export."),
    subject_id: Optional[str] = typer.Option(None, "--subject", "-s", help="Only entries for this subject."),
    to: Path = typer.Option(Path("export"), "--to", help="Output directory or file stem."),
) -> None:
    """Export entries to CSV and JSON with a metadata file."""
    with _handling_errors():
        services = _services()
        template = services.templates.require_template(template_id)
        entries = services.entries.get_all_entries(template_id=template_id, subject_id=subject_id)
        paths = export_entries(
            template,
            entries,
            to,
            filters={key: value for key, value in {"subject_id": subject_id}.items() if value},
        )
    for kind, path in paths.items():
        typer.echo(f"Wrote {kind}: {path}")


@app.command("report")
def report(
    subject_id: str = typer.Argument(..., help="Subject ID."),
    template_id: str = typer.Argument(..., help="Template ID."),
    output_dir: Path = typer.Option(Path("reports"), "--output-dir", "-o", help="Directory for the PDF."),
    include_partial: bool = typer.Option(False, "--include-partial", help="Include incomplete entries."),
) -> None:
    """Recalculate analytics and render them as a PDF report."""
    with _handling_errors():
        services = _services()
        template = services.templates.require_template(template_id)
        snapshot = services.analytics.recalculate(subject_id, template_id, include_partial=include_partial)
        entries = services.entries.get_entries_by_subject(subject_id, template_id)
        if not include_partial:
            entries = [entry for entry in entries if entry.is_complete]
        path = generate_analytics_report(snapshot, template, entries, output_dir=output_dir.expanduser())
    typer.echo(f"Saved report to {path}")


@app.command("config")
def config_show() -> None:
    """Show the effective configuration."""
    config = config_as_dict()
    analytics = config.get("analytics", {})
    typer.echo(f"Config source: {config.get('source')}")
    typer.echo(f"Timezone: {config.get('timezone')}")
    typer.echo(
        "Analytics: "
        f"entry_limit={analytics.get('entry_limit')}, "
        f"include_partial={analytics.get('include_partial')}, "
        f"auto_recalculate={analytics.get('auto_recalculate')}"
    )
    typer.echo(f"Log level: {config.get('log_level')}")


app.add_typer(templates_app, name="templates", help="Manage form templates.")
app.add_typer(entries_app, name="entries", help="Submit and review entries.")
app.add_typer(analytics_app, name="analytics", help="Recalculate and inspect analytics.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
