"""Dash callbacks for the pile tracker."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Callable
from urllib.parse import parse_qs

import dash
import dash_bootstrap_components as dbc
import pandas as pd
from dash import Dash, Input, Output, State, html
from dash.dcc import send_bytes
from dash.exceptions import PreventUpdate

from .callback_utils import (
    decode_upload,
    ensure_list,
    frame_to_records,
    make_toast,
    mapping_options,
    mapping_rows,
    overrides_from_rows,
)
from .charts import (
    create_daily_trend_chart,
    create_group_chart,
    create_machine_efficiency_chart,
    create_machine_status_chart,
    create_site_map,
    create_status_pie,
)
from .column_mapping import PILE_FIELD_LABELS, ColumnMapping
from .config import AppConfig
from .database import DatabaseError
from .duplicates import find_duplicate_groups, reconcile_duplicates
from .field_entry import FIELD_ENTRY_PATH, build_field_entry_url, qr_data_uri, submit_field_entry
from .filters import (
    PileFilters,
    apply_pile_filters,
    filter_options,
    page_count,
    paginate,
    piles_with_notes,
    sort_and_group_duplicates,
    unique_blocks,
)
from .importer import PileImporter
from .layout import FIELD_ENTRY_FIELDS, build_dashboard, build_field_entry_page
from .lookup import (
    LOOKUP_FIELD_LABELS,
    build_lookup_records,
    describe_lookup_upload,
    read_lookup_file,
    replace_lookup_data,
)
from .metrics import (
    daily_production,
    filter_machines,
    machine_daily_breakdown,
    machines_frame,
    production_overview,
    sort_machines,
    status_counts,
    summarize_groups,
    summarize_machines,
    top_machines,
)
from .pdf_report import make_piles_pdf_bytes
from .preliminary import (
    PRELIMINARY_FIELD_LABELS,
    build_preliminary_records,
    clear_preliminary,
    delete_preliminary_record,
    read_preliminary_file,
    upload_preliminary,
)
from .services.piles import (
    PILE_FORM_FIELDS,
    create_pile,
    delete_all_piles,
    delete_pile,
    delete_piles,
    get_pile,
    pile_form_values,
    set_pile_status,
    set_published,
    update_notes,
    update_pile,
)
from .services.projects import (
    ProjectSettings,
    assign_user,
    create_project,
    delete_project,
    has_completed_project_setup,
    list_members,
    list_projects,
    projects_for_user,
    remove_user,
    update_project,
)
from .site_map import MAP_STATUS_LABELS, MAP_STATUSES, build_site_map_frame, filter_site_map, site_map_counts
from .state import AppDataStore
from .workbook import (
    export_filename,
    make_import_report_workbook_bytes,
    make_piles_workbook_bytes,
    make_production_workbook_bytes,
)


LOGGER = logging.getLogger(__name__)

REVIEW_ROW_LIMIT = 200
PILE_TABLE_FIELDS = [
    "id", "pile_number", "pile_id", "block", "machine", "start_day", "embedment",
    "design_embedment", "display_status", "duration", "drive_time_rating", "published", "notes",
]
DERIVED_STATUS = "__derived__"
PRELIM_RECORD_FIELDS = ["id", "machine", "pile_id", "block", "start_date", "embedment", "duration"]
NOTES_TABLE_FIELDS = ["pile_number", "pile_id", "block", "start_day", "display_status", "notes"]
SETTINGS_INPUTS = {
    "settings-name": "project_name",
    "settings-location": "project_location",
    "settings-total-piles": "total_project_piles",
    "settings-tolerance": "embedment_tolerance",
    "settings-geotech": "geotech_company",
    "settings-tracker": "tracker_system",
}


def _resolve_triggered_id() -> Any:
    """Return the ID (string or dict) of the input that fired the current callback."""

    trig = dash.ctx.triggered_id
    if trig is not None:
        return trig
    triggered = dash.callback_context.triggered
    if not triggered:
        return None
    raw = triggered[0]["prop_id"].split(".")[0]
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _error_toast(exc: Exception) -> dbc.Toast:
    return make_toast(str(exc), "error", "Error")


def _denied_toast() -> dbc.Toast:
    return make_toast("Owner accounts are read-only.", "warning", "Not allowed")


@dataclass
class _UploadFlow:
    """Read -> preview -> commit hooks for one upload dialog."""

    prefix: str
    labels: dict[str, str]
    read: Callable[[bytes, str], tuple[pd.DataFrame, ColumnMapping]]
    preview: Callable[[pd.DataFrame, ColumnMapping, str], tuple[str, pd.DataFrame]]
    commit: Callable[[pd.DataFrame, ColumnMapping, str, bool], tuple[str, bool]]


def register_callbacks(app: Dash, store: AppDataStore, config: AppConfig) -> None:
    LOGGER.debug("Registering callbacks")
    db = store.db
    importer = PileImporter(db, config)

    def _pile_filters(statuses, blocks, start_date, end_date, search, duplicates_only) -> PileFilters:
        return PileFilters(
            statuses=ensure_list(statuses),
            blocks=ensure_list(blocks),
            start_date=start_date,
            end_date=end_date,
            duplicates_only=bool(duplicates_only),
            search=search or "",
        )

    def _filtered_piles(project_id: str, filters: PileFilters) -> pd.DataFrame:
        prepared = store.get_prepared_piles(project_id)
        return sort_and_group_duplicates(apply_pile_filters(prepared, filters))

    def _after_write(project_id: str, version: int | None) -> int:
        store.invalidate(project_id)
        return int(version or 0) + 1

    # --- routing -------------------------------------------------------------
    @app.callback(
        Output("page-content", "children"),
        Input("url", "pathname"),
        State("url", "search"),
    )
    def render_page(pathname: str | None, search: str | None):
        if pathname and pathname.rstrip("/").endswith(FIELD_ENTRY_PATH):
            params = parse_qs((search or "").lstrip("?"))
            project_id = (params.get("project") or [None])[0]
            return build_field_entry_page(project_id)
        return build_dashboard(config.can_edit, config.table_page_size)

    # --- projects ------------------------------------------------------------
    @app.callback(
        Output("f-project", "options"),
        Output("f-project", "value"),
        Input("store-data-version", "data"),
        State("f-project", "value"),
    )
    def refresh_projects(_version: int | None, current: str | None):
        user = config.current_user_id
        try:
            if has_completed_project_setup(db, user):
                projects = projects_for_user(db, user)
            else:
                projects = list_projects(db)
        except DatabaseError:
            LOGGER.exception("Unable to list projects")
            return [], None
        options = [
            {"label": f"{row.project_name} ({row.project_location})", "value": row.id}
            for row in projects.itertuples()
        ]
        values = [option["value"] for option in options]
        value = current if current in values else (values[0] if values else None)
        return options, value

    @app.callback(
        Output("project-modal", "is_open"),
        Output("store-data-version", "data", allow_duplicate=True),
        Output("f-project", "value", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-open-project", "n_clicks"),
        Input("project-close", "n_clicks"),
        Input("btn-create-project", "n_clicks"),
        State("project-name", "value"),
        State("project-location", "value"),
        State("project-total-piles", "value"),
        State("project-tolerance", "value"),
        State("project-geotech", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def project_modal(_open, _close, create, name, location, total, tolerance, geotech, version):
        trigger = _resolve_triggered_id()
        if trigger == "btn-open-project":
            return True, dash.no_update, dash.no_update, dash.no_update
        if trigger == "project-close":
            return False, dash.no_update, dash.no_update, dash.no_update
        if trigger != "btn-create-project" or not create:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, dash.no_update, dash.no_update, _denied_toast()
        try:
            settings = ProjectSettings.from_form(
                {
                    "project_name": name,
                    "project_location": location,
                    "total_project_piles": total,
                    "embedment_tolerance": tolerance,
                    "geotech_company": geotech,
                }
            )
            project_id = create_project(db, settings, owner_user_id=config.current_user_id)
        except (ValueError, DatabaseError) as exc:
            LOGGER.warning("Project creation failed: %s", exc)
            return dash.no_update, dash.no_update, dash.no_update, _error_toast(exc)
        toast = make_toast(f"Project '{settings.project_name}' created.", "success")
        return False, int(version or 0) + 1, project_id, toast

    @app.callback(
        Output("settings-modal", "is_open"),
        *[Output(component, "value") for component in SETTINGS_INPUTS],
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-open-settings", "n_clicks"),
        Input("settings-close", "n_clicks"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def settings_modal(_open, _close, project_id):
        unchanged = [dash.no_update] * len(SETTINGS_INPUTS)
        if _resolve_triggered_id() == "settings-close":
            return (False, *unchanged, dash.no_update)
        if not config.can_edit:
            return (False, *unchanged, _denied_toast())
        project = store.get_project(project_id)
        if project is None:
            return (False, *unchanged, make_toast("Select a project first.", "warning"))
        values = [project.get(field) for field in SETTINGS_INPUTS.values()]
        return (True, *values, dash.no_update)

    @app.callback(
        Output("settings-modal", "is_open", allow_duplicate=True),
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("settings-save", "n_clicks"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        *[State(component, "value") for component in SETTINGS_INPUTS],
        prevent_initial_call=True,
    )
    def save_settings(n_clicks, project_id, version, *values):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, dash.no_update, _denied_toast()
        form = dict(zip(SETTINGS_INPUTS.values(), values))
        try:
            project = store.get_project(project_id) or {}
            settings = ProjectSettings.from_form({**form, "role": project.get("role")})
            update_project(db, project_id, settings)
        except (ValueError, DatabaseError) as exc:
            LOGGER.warning("Saving project settings failed: %s", exc)
            return dash.no_update, dash.no_update, _error_toast(exc)
        return False, _after_write(project_id, version), make_toast("Project settings saved.", "success")

    @app.callback(
        Output("confirm-delete-project", "displayed"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("settings-delete", "n_clicks"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def confirm_delete_project(n_clicks, project_id):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return False, _denied_toast()
        return True, dash.no_update

    @app.callback(
        Output("settings-modal", "is_open", allow_duplicate=True),
        Output("store-data-version", "data", allow_duplicate=True),
        Output("f-project", "value", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("confirm-delete-project", "submit_n_clicks"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def remove_project(submitted, project_id, version):
        if not submitted or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, dash.no_update, dash.no_update, _denied_toast()
        try:
            removed = delete_project(db, project_id)
        except DatabaseError as exc:
            LOGGER.exception("Deleting project %s failed", project_id)
            return dash.no_update, dash.no_update, dash.no_update, _error_toast(exc)
        message = f"Project deleted with {removed.get('piles', 0)} piles."
        return False, _after_write(project_id, version), None, make_toast(message, "success")

    @app.callback(
        Output("tbl-members", "data"),
        Output("tbl-members", "selected_rows"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("settings-modal", "is_open"),
        Input("btn-member-add", "n_clicks"),
        Input("btn-member-remove", "n_clicks"),
        State("member-user", "value"),
        State("member-role", "value"),
        State("tbl-members", "selected_rows"),
        State("tbl-members", "data"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def manage_members(is_open, _add, _remove, user_id, role, selected, rows, project_id):
        trigger = _resolve_triggered_id()
        if not project_id or (trigger == "settings-modal" and not is_open):
            raise PreventUpdate
        toast = dash.no_update
        if trigger in ("btn-member-add", "btn-member-remove"):
            toast = _change_membership(trigger, project_id, user_id, role, selected, rows)
        try:
            members = list_members(db, project_id)
        except DatabaseError as exc:
            LOGGER.exception("Listing members failed")
            return [], [], _error_toast(exc)
        records = frame_to_records(members)
        for record in records:
            record["is_owner"] = "Yes" if record.get("is_owner") else ""
        return records, [], toast

    def _change_membership(trigger, project_id, user_id, role, selected, rows) -> dbc.Toast:
        if not config.can_edit:
            return _denied_toast()
        try:
            if trigger == "btn-member-add":
                user = (user_id or "").strip()
                if not user:
                    return make_toast("Enter a user id to add.", "warning")
                assign_user(db, project_id, user, role or "viewer")
                return make_toast(f"{user} added as {role or 'viewer'}.", "success")
            if not selected or not rows or selected[0] >= len(rows):
                return make_toast("Select a member to remove.", "warning")
            member = rows[selected[0]]
            if member.get("is_owner"):
                return make_toast("The project owner cannot be removed.", "warning")
            remove_user(db, project_id, member["user_id"])
            return make_toast(f"{member['user_id']} removed.", "success")
        except DatabaseError as exc:
            LOGGER.exception("Membership change failed")
            return _error_toast(exc)

    # --- pile list -----------------------------------------------------------
    @app.callback(
        Output("tbl-piles", "data"),
        Output("tbl-piles", "page_count"),
        Output("tbl-piles", "page_current"),
        Output("label-pile-count", "children"),
        Output("f-block", "options"),
        Output("kpi-total", "children"),
        Output("kpi-accepted", "children"),
        Output("kpi-tolerance", "children"),
        Output("kpi-refusal", "children"),
        Output("kpi-missing", "children"),
        Output("g-status-pie", "figure"),
        Output("label-last-loaded", "children"),
        Input("f-project", "value"),
        Input("f-status", "value"),
        Input("f-block", "value"),
        Input("f-date-range", "start_date"),
        Input("f-date-range", "end_date"),
        Input("f-search", "value"),
        Input("f-duplicates", "value"),
        Input("tbl-piles", "page_current"),
        Input("store-data-version", "data"),
    )
    def update_pile_list(project_id, statuses, blocks, start_date, end_date, search, duplicates_only, page, _version):
        if not project_id:
            empty_counts = {"total": 0}
            return ([], 1, 0, "Select or create a project.", [], "0", "0", "0", "0", "0",
                    create_status_pie(empty_counts), "Last loaded: N/A")
        filters = _pile_filters(statuses, blocks, start_date, end_date, search, duplicates_only)
        prepared = store.get_prepared_piles(project_id)
        filtered = sort_and_group_duplicates(apply_pile_filters(prepared, filters))

        page_size = config.table_page_size
        if _resolve_triggered_id() != "tbl-piles":
            page = 0
        pages = page_count(len(filtered), page_size)
        page = min(int(page or 0), pages - 1)
        visible = paginate(filtered, page + 1, page_size)
        columns = [col for col in PILE_TABLE_FIELDS if col in visible.columns]
        records = frame_to_records(visible, columns)
        for record in records:
            record["published"] = "Yes" if record.get("published") else "No"

        counts = status_counts(prepared, column="display_status")
        metadata = store.get_metadata(project_id)
        label = f"{len(filtered)} of {len(prepared)} piles"
        return (
            records,
            pages,
            page,
            label,
            filter_options(unique_blocks(prepared)),
            str(counts["total"]),
            str(counts["accepted"]),
            str(counts["tolerance"]),
            str(counts["refusal"]),
            str(counts["missing"]),
            create_status_pie(counts),
            f"Last loaded: {metadata.last_loaded_text} | Latest pile: {metadata.last_pile_date_text}",
        )

    @app.callback(
        Output("toast-container", "children", allow_duplicate=True),
        Input("tbl-piles", "data_timestamp"),
        State("tbl-piles", "data"),
        State("tbl-piles", "data_previous"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def save_note_edits(_timestamp, data, previous, project_id):
        if not data or not previous or not project_id:
            raise PreventUpdate
        before = {row.get("id"): row.get("notes") for row in previous}
        changed = [row for row in data if row.get("id") in before and row.get("notes") != before[row.get("id")]]
        if not changed:
            raise PreventUpdate
        if not config.can_edit:
            return _denied_toast()
        try:
            for row in changed:
                update_notes(db, row["id"], row.get("notes"))
        except DatabaseError as exc:
            LOGGER.exception("Saving notes failed")
            return _error_toast(exc)
        store.invalidate(project_id)
        return make_toast(f"Saved notes for {len(changed)} pile(s).", "success")

    @app.callback(
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Output("tbl-piles", "selected_rows"),
        Input("btn-set-status", "n_clicks"),
        Input("btn-publish", "n_clicks"),
        Input("btn-unpublish", "n_clicks"),
        Input("btn-delete-selected", "n_clicks"),
        State("tbl-piles", "selected_row_ids"),
        State("f-status-override", "value"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def bulk_pile_action(_status, _publish, _unpublish, _delete, selected_ids, override, project_id, version):
        trigger = _resolve_triggered_id()
        if trigger is None or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, _denied_toast(), dash.no_update
        ids = [str(pid) for pid in (selected_ids or [])]
        if not ids:
            return dash.no_update, make_toast("Select piles first.", "warning"), dash.no_update
        try:
            if trigger == "btn-set-status":
                if not override:
                    return dash.no_update, make_toast("Choose a status to apply.", "warning"), dash.no_update
                status = None if override == DERIVED_STATUS else override
                changed = sum(set_pile_status(db, pid, status) for pid in ids)
                message = f"Updated status on {changed} pile(s)."
            elif trigger in ("btn-publish", "btn-unpublish"):
                published = trigger == "btn-publish"
                changed = set_published(db, project_id, published, ids)
                message = f"{'Published' if published else 'Unpublished'} {changed} pile(s)."
            elif trigger == "btn-delete-selected":
                changed = delete_piles(db, ids, config.import_batch_size)
                message = f"Deleted {changed} pile(s)."
            else:
                raise PreventUpdate
        except (DatabaseError, ValueError) as exc:
            LOGGER.exception("Bulk pile action %s failed", trigger)
            return _after_write(project_id, version), _error_toast(exc), []
        return _after_write(project_id, version), make_toast(message, "success"), []

    # --- single pile form ----------------------------------------------------
    @app.callback(
        Output("pile-modal", "is_open"),
        Output("pile-modal-title", "children"),
        Output("store-pile-edit-id", "data"),
        Output("toast-container", "children", allow_duplicate=True),
        *[Output(f"pile-{name}", "value") for name in PILE_FORM_FIELDS],
        Input("btn-open-pile-new", "n_clicks"),
        Input("btn-open-pile-edit", "n_clicks"),
        Input("pile-close", "n_clicks"),
        State("tbl-piles", "selected_row_ids"),
        prevent_initial_call=True,
    )
    def open_pile_form(_new, _edit, _close, selected_ids):
        trigger = _resolve_triggered_id()
        unchanged = [dash.no_update] * len(PILE_FORM_FIELDS)
        if trigger == "pile-close":
            return (False, dash.no_update, dash.no_update, dash.no_update, *unchanged)
        if not config.can_edit:
            return (False, dash.no_update, dash.no_update, _denied_toast(), *unchanged)
        if trigger == "btn-open-pile-new":
            return (True, "Add pile", None, dash.no_update, *pile_form_values(None).values())
        if trigger != "btn-open-pile-edit":
            raise PreventUpdate
        ids = selected_ids or []
        if len(ids) != 1:
            toast = make_toast("Select exactly one pile to edit.", "warning")
            return (dash.no_update, dash.no_update, dash.no_update, toast, *unchanged)
        try:
            record = get_pile(db, str(ids[0]))
        except DatabaseError as exc:
            LOGGER.exception("Loading pile %s failed", ids[0])
            return (dash.no_update, dash.no_update, dash.no_update, _error_toast(exc), *unchanged)
        if record is None:
            toast = make_toast("That pile no longer exists.", "warning")
            return (dash.no_update, dash.no_update, dash.no_update, toast, *unchanged)
        title = f"Edit pile {record.get('pile_number') or record.get('pile_id')}"
        return (True, title, record["id"], dash.no_update, *pile_form_values(record).values())

    @app.callback(
        Output("pile-modal", "is_open", allow_duplicate=True),
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Output("tbl-piles", "selected_rows", allow_duplicate=True),
        Input("pile-save", "n_clicks"),
        Input("pile-delete", "n_clicks"),
        State("store-pile-edit-id", "data"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        *[State(f"pile-{name}", "value") for name in PILE_FORM_FIELDS],
        prevent_initial_call=True,
    )
    def save_pile(save_clicks, delete_clicks, pile_id, project_id, version, *values):
        trigger = _resolve_triggered_id()
        clicks = {"pile-save": save_clicks, "pile-delete": delete_clicks}.get(trigger)
        if not clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, dash.no_update, _denied_toast(), dash.no_update
        form = dict(zip(PILE_FORM_FIELDS, values))
        try:
            if trigger == "pile-delete":
                if not pile_id:
                    toast = make_toast("This pile is not saved yet.", "warning")
                    return dash.no_update, dash.no_update, toast, dash.no_update
                delete_pile(db, pile_id)
                message = "Pile deleted."
            elif pile_id:
                update_pile(db, pile_id, project_id, form)
                message = "Pile updated."
            else:
                create_pile(db, project_id, form)
                message = "Pile added."
        except (ValueError, DatabaseError) as exc:
            LOGGER.warning("Pile form action %s failed: %s", trigger, exc)
            return dash.no_update, dash.no_update, _error_toast(exc), dash.no_update
        return False, _after_write(project_id, version), make_toast(message, "success"), []

    @app.callback(
        Output("confirm-delete-all", "displayed"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-delete-all", "n_clicks"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def confirm_delete_all(n_clicks, project_id):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return False, _denied_toast()
        return True, dash.no_update

    @app.callback(
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("confirm-delete-all", "submit_n_clicks"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def delete_every_pile(submitted, project_id, version):
        if not submitted or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, _denied_toast()
        try:
            deleted = delete_all_piles(db, project_id)
        except DatabaseError as exc:
            LOGGER.exception("Deleting all piles failed")
            return dash.no_update, _error_toast(exc)
        return _after_write(project_id, version), make_toast(f"Deleted {deleted} piles.", "success")

    @app.callback(
        Output("download-piles-xlsx", "data"),
        Output("download-piles-pdf", "data"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-export-xlsx", "n_clicks"),
        Input("btn-export-pdf", "n_clicks"),
        State("f-project", "value"),
        State("f-status", "value"),
        State("f-block", "value"),
        State("f-date-range", "start_date"),
        State("f-date-range", "end_date"),
        State("f-search", "value"),
        State("f-duplicates", "value"),
        prevent_initial_call=True,
    )
    def export_piles(_xlsx, _pdf, project_id, statuses, blocks, start_date, end_date, search, duplicates_only):
        trigger = _resolve_triggered_id()
        if trigger not in ("btn-export-xlsx", "btn-export-pdf") or not project_id:
            raise PreventUpdate
        filters = _pile_filters(statuses, blocks, start_date, end_date, search, duplicates_only)
        filtered = _filtered_piles(project_id, filters)
        project = store.get_project(project_id) or {}
        name = str(project.get("project_name") or "project")

        if trigger == "btn-export-xlsx":
            def _writer(buffer: BytesIO) -> None:
                buffer.write(make_piles_workbook_bytes(filtered, project=project, active_filters=filters.describe()))

            return send_bytes(_writer, export_filename(name, "piles", "xlsx")), dash.no_update, dash.no_update

        try:
            content = make_piles_pdf_bytes(filtered, project=project, active_filters=filters.describe())
        except ValueError as exc:
            return dash.no_update, dash.no_update, make_toast(str(exc), "warning")
        return dash.no_update, send_bytes(content, export_filename(name, "piles", "pdf")), dash.no_update

    # --- uploads -------------------------------------------------------------
    def _pile_preview(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str) -> tuple[str, pd.DataFrame]:
        report = importer.validate(frame, mapping, project_id)
        return report.summary_text(), report.to_frame()

    def _pile_commit(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str, skip: bool) -> tuple[str, bool]:
        report = importer.validate(frame, mapping, project_id)
        result = importer.commit(report, skip_duplicates=skip)
        text = result.message()
        if report.invalid_count:
            text += f" {report.invalid_count} invalid rows were skipped."
        return text, result.ok

    def _lookup_preview(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str) -> tuple[str, pd.DataFrame]:
        records, skipped = build_lookup_records(frame, mapping, project_id)
        preview = pd.DataFrame(records).drop(columns=["project_id", "normalized_tag"], errors="ignore")
        return describe_lookup_upload(db, project_id, len(records), skipped), preview

    def _lookup_commit(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str, _skip: bool) -> tuple[str, bool]:
        records, skipped = build_lookup_records(frame, mapping, project_id)
        result = replace_lookup_data(db, project_id, records, config.lookup_batch_size, skipped=skipped)
        text = f"Replaced {result.deleted} lookup rows with {result.inserted}."
        if result.errors:
            text += " Failed: " + "; ".join(result.errors)
        return text, result.ok

    def _prelim_preview(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str) -> tuple[str, pd.DataFrame]:
        records, skipped = build_preliminary_records(frame, mapping, project_id)
        preview = pd.DataFrame(records).drop(columns=["project_id"], errors="ignore")
        return f"{len(records)} records ready, {len(skipped)} rows without a machine will be skipped.", preview

    def _prelim_commit(frame: pd.DataFrame, mapping: ColumnMapping, project_id: str, _skip: bool) -> tuple[str, bool]:
        records, skipped = build_preliminary_records(frame, mapping, project_id)
        result = upload_preliminary(db, records, config.preliminary_batch_size, skipped_rows=skipped)
        return result.message(), not result.errors

    flows = [
        _UploadFlow("piles-upload", PILE_FIELD_LABELS, importer.read, _pile_preview, _pile_commit),
        _UploadFlow("lookup", LOOKUP_FIELD_LABELS, read_lookup_file, _lookup_preview, _lookup_commit),
        _UploadFlow("prelim", PRELIMINARY_FIELD_LABELS, read_preliminary_file, _prelim_preview, _prelim_commit),
    ]
    open_buttons = {"piles-upload": "btn-open-piles-upload", "lookup": "btn-open-lookup", "prelim": "btn-open-prelim"}
    for flow in flows:
        _register_upload_flow(app, flow, open_buttons[flow.prefix], store, config)

    @app.callback(
        Output("download-import-report", "data"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-import-report", "n_clicks"),
        State("store-piles-upload-file", "data"),
        State("piles-upload-mapping", "data"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def download_import_report(n_clicks, file_data, mapping_data, project_id):
        if not n_clicks or not file_data or not project_id:
            raise PreventUpdate
        try:
            frame, mapping = importer.read(decode_upload(file_data["contents"], file_data["filename"]), file_data["filename"])
            mapping = mapping.with_overrides(overrides_from_rows(mapping_data))
            report = importer.validate(frame, mapping, project_id, filename=file_data["filename"])
        except (ValueError, DatabaseError) as exc:
            return dash.no_update, _error_toast(exc)
        content = make_import_report_workbook_bytes(report)
        return send_bytes(content, export_filename(file_data["filename"].rsplit(".", 1)[0], "review", "xlsx")), dash.no_update

    # --- duplicates ----------------------------------------------------------
    @app.callback(
        Output("duplicates-modal", "is_open"),
        Output("tbl-duplicate-groups", "data"),
        Output("tbl-duplicate-groups", "selected_rows"),
        Output("duplicates-summary", "children"),
        Input("btn-open-duplicates", "n_clicks"),
        Input("duplicates-close", "n_clicks"),
        Input("store-data-version", "data"),
        State("duplicates-modal", "is_open"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def duplicates_modal(_open, _close, _version, is_open, project_id):
        trigger = _resolve_triggered_id()
        if trigger == "duplicates-close":
            return False, dash.no_update, dash.no_update, dash.no_update
        if trigger == "store-data-version" and not is_open:
            raise PreventUpdate
        if not project_id:
            return False, [], [], "Select a project."
        piles = store.get_piles(project_id, include_unpublished=True)
        groups = find_duplicate_groups(piles)
        rows = []
        for group in groups:
            embedments = pd.to_numeric(group.rows.get("embedment"), errors="coerce").dropna().round(2).astype(str)
            dates = group.rows.get("start_date", pd.Series(dtype=object)).dropna().astype(str)
            rows.append(
                {
                    "key": group.key,
                    "size": group.size,
                    "embedments": ", ".join(embedments),
                    "dates": ", ".join(sorted(set(dates))),
                }
            )
        extra = sum(group.size - 1 for group in groups)
        summary = f"{len(groups)} duplicate groups, {extra} extra records."
        return True, rows, [], summary

    @app.callback(
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-dup-apply", "n_clicks"),
        State("tbl-duplicate-groups", "data"),
        State("tbl-duplicate-groups", "selected_rows"),
        State("dup-action", "value"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def apply_duplicate_action(n_clicks, rows, selected, action, project_id, version):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, _denied_toast()
        keys = [rows[index]["key"] for index in (selected or []) if index < len(rows or [])] or None
        piles = store.get_piles(project_id, include_unpublished=True)
        try:
            outcome = reconcile_duplicates(db, piles, action, keys=keys, batch_size=config.import_batch_size)
        except ValueError as exc:
            return dash.no_update, _error_toast(exc)
        kind = "success" if outcome.ok else "error"
        return _after_write(project_id, version), make_toast(outcome.message(), kind)

    # --- QR ------------------------------------------------------------------
    @app.callback(
        Output("qr-modal", "is_open"),
        Output("qr-image", "src"),
        Output("qr-url", "children"),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-open-qr", "n_clicks"),
        Input("qr-close", "n_clicks"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def qr_modal(_open, _close, project_id):
        if _resolve_triggered_id() == "qr-close":
            return False, dash.no_update, dash.no_update, dash.no_update
        try:
            url = build_field_entry_url(config.public_base_url, project_id)
        except ValueError as exc:
            return False, dash.no_update, dash.no_update, make_toast(str(exc), "warning")
        return True, qr_data_uri(url), url, dash.no_update

    @app.callback(
        Output("field-entry-result", "children"),
        Input("btn-field-submit", "n_clicks"),
        State("field-project", "data"),
        *[State(f"fe-{name}", "value") for name in FIELD_ENTRY_FIELDS],
        prevent_initial_call=True,
    )
    def submit_field_form(n_clicks, project_id, *values):
        if not n_clicks:
            raise PreventUpdate
        if not project_id:
            return dbc.Alert("This link is missing its project.", color="danger")
        try:
            submit_field_entry(db, project_id, dict(zip(FIELD_ENTRY_FIELDS, values)))
        except ValueError as exc:
            return dbc.Alert(str(exc), color="warning")
        except DatabaseError:
            LOGGER.exception("Field entry insert failed")
            return dbc.Alert("Could not save the pile. Please try again.", color="danger")
        store.invalidate(project_id)
        return dbc.Alert("Pile saved.", color="success")

    # --- production ----------------------------------------------------------
    def _production_frame(project_id: str, source: str | None) -> pd.DataFrame:
        if source == "preliminary":
            return store.get_prepared_preliminary(project_id)
        return store.get_prepared_piles(project_id)

    def _machine_scope(project_id, source, search, start_date, end_date, sort_key, descending, issues_only):
        prepared = _production_frame(project_id, source)
        summaries = filter_machines(
            summarize_machines(prepared),
            search=search,
            start_date=start_date,
            end_date=end_date,
            performance_only=bool(issues_only),
        )
        summaries = sort_machines(summaries, sort_key or "total_piles", descending=bool(descending))
        if start_date or end_date:
            days = prepared.get("start_day", pd.Series(dtype=str))
            keep = days != ""
            if start_date:
                keep &= days >= str(start_date)[:10]
            if end_date:
                keep &= days <= str(end_date)[:10]
            prepared = prepared[keep] if not prepared.empty else prepared
        return prepared, summaries

    @app.callback(
        Output("g-machine-status", "figure"),
        Output("g-machine-efficiency", "figure"),
        Output("g-daily-trend", "figure"),
        Output("tbl-machines", "data"),
        Output("tbl-machines", "selected_rows"),
        Output("prod-overview", "children"),
        Input("f-project", "value"),
        Input("prod-source", "value"),
        Input("prod-search", "value"),
        Input("prod-date-range", "start_date"),
        Input("prod-date-range", "end_date"),
        Input("prod-sort", "value"),
        Input("prod-sort-desc", "value"),
        Input("prod-performance", "value"),
        Input("store-data-version", "data"),
    )
    def update_production(project_id, source, search, start_date, end_date, sort_key, descending, issues_only, _v):
        if not project_id:
            raise PreventUpdate
        prepared, summaries = _machine_scope(
            project_id, source, search, start_date, end_date, sort_key, descending, issues_only
        )
        top = top_machines(summaries)
        overview = production_overview(prepared, summaries)
        cards = dbc.Row(
            [
                dbc.Col(
                    dbc.Card(dbc.CardBody([html.Div(label, className="kpi-label"),
                                           html.Div(str(overview[key]), className="kpi-value")]),
                             className="kpi"),
                )
                for key, label in (
                    ("total_piles", "Piles"),
                    ("machines", "Machines"),
                    ("active_days", "Active days"),
                    ("piles_per_day", "Piles / day"),
                    ("accepted_percent", "Accepted %"),
                    ("refusal_percent", "Refusal %"),
                    ("slow_drives", "Slow drives"),
                    ("low_gain_piles", "Low gain"),
                )
            ],
            className="g-3",
        )
        return (
            create_machine_status_chart(top),
            create_machine_efficiency_chart(top),
            create_daily_trend_chart(daily_production(prepared)),
            frame_to_records(machines_frame(summaries)),
            [],
            cards,
        )

    @app.callback(
        Output("tbl-machine-daily", "data"),
        Output("label-machine-daily", "children"),
        Input("tbl-machines", "selected_rows"),
        State("tbl-machines", "data"),
        State("f-project", "value"),
        State("prod-source", "value"),
        prevent_initial_call=True,
    )
    def show_machine_daily(selected, rows, project_id, source):
        if not selected or not rows or not project_id:
            return [], "Select a machine"
        machine = rows[selected[0]]["machine"]
        daily = machine_daily_breakdown(_production_frame(project_id, source), machine)
        return frame_to_records(daily), f"Machine {machine}: daily breakdown"

    @app.callback(
        Output("download-production-xlsx", "data"),
        Input("btn-export-production", "n_clicks"),
        State("f-project", "value"),
        State("prod-source", "value"),
        State("prod-search", "value"),
        State("prod-date-range", "start_date"),
        State("prod-date-range", "end_date"),
        State("prod-sort", "value"),
        State("prod-sort-desc", "value"),
        State("prod-performance", "value"),
        State("tbl-machines", "selected_rows"),
        State("tbl-machines", "data"),
        prevent_initial_call=True,
    )
    def export_production(n_clicks, project_id, source, search, start_date, end_date, sort_key, descending,
                          issues_only, selected, rows):
        if not n_clicks or not project_id:
            raise PreventUpdate
        prepared, summaries = _machine_scope(
            project_id, source, search, start_date, end_date, sort_key, descending, issues_only
        )
        machine = rows[selected[0]]["machine"] if selected and rows else None
        machine_daily = machine_daily_breakdown(prepared, machine) if machine else None
        project = store.get_project(project_id) or {}
        content = make_production_workbook_bytes(
            summaries,
            daily_production(prepared),
            summarize_groups(prepared, "block"),
            machine_for_sheet=machine,
            machine_daily=machine_daily,
        )
        return send_bytes(content, export_filename(str(project.get("project_name") or "project"), "production", "xlsx"))

    @app.callback(
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-clear-prelim", "n_clicks"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def clear_preliminary_data(n_clicks, project_id, version):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, _denied_toast()
        try:
            deleted = clear_preliminary(db, project_id)
        except DatabaseError as exc:
            LOGGER.exception("Clearing preliminary data failed")
            return dash.no_update, _error_toast(exc)
        return _after_write(project_id, version), make_toast(f"Removed {deleted} preliminary records.", "success")

    @app.callback(
        Output("tbl-prelim-records", "data"),
        Output("tbl-prelim-records", "selected_rows"),
        Input("f-project", "value"),
        Input("store-data-version", "data"),
    )
    def update_prelim_records(project_id, _version):
        if not project_id:
            return [], []
        frame = store.get_preliminary(project_id)
        columns = [col for col in PRELIM_RECORD_FIELDS if col in frame.columns]
        return frame_to_records(frame, columns), []

    @app.callback(
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input("btn-delete-prelim-records", "n_clicks"),
        State("tbl-prelim-records", "selected_row_ids"),
        State("f-project", "value"),
        State("store-data-version", "data"),
        prevent_initial_call=True,
    )
    def delete_prelim_records(n_clicks, selected_ids, project_id, version):
        if not n_clicks or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, _denied_toast()
        ids = [str(record_id) for record_id in (selected_ids or [])]
        if not ids:
            return dash.no_update, make_toast("Select preliminary records first.", "warning")
        try:
            deleted = sum(delete_preliminary_record(db, record_id) for record_id in ids)
        except DatabaseError as exc:
            LOGGER.exception("Deleting preliminary records failed")
            return _after_write(project_id, version), _error_toast(exc)
        return _after_write(project_id, version), make_toast(f"Deleted {deleted} preliminary records.", "success")

    # --- blocks --------------------------------------------------------------
    @app.callback(
        Output("g-blocks", "figure"),
        Output("tbl-blocks", "columns"),
        Output("tbl-blocks", "data"),
        Input("f-project", "value"),
        Input("blocks-group-by", "value"),
        Input("store-data-version", "data"),
    )
    def update_blocks(project_id, group_by, _version):
        if not project_id:
            raise PreventUpdate
        group_by = group_by or "block"
        groups = summarize_groups(store.get_prepared_piles(project_id), group_by)
        columns = [{"name": col.replace("_", " ").title(), "id": col} for col in groups.columns]
        return create_group_chart(groups, group_by), columns, frame_to_records(groups)

    # --- site map and notes --------------------------------------------------
    @app.callback(
        Output("g-site-map", "figure"),
        Output("map-block", "options"),
        Output("map-summary", "children"),
        Input("f-project", "value"),
        Input("map-status", "value"),
        Input("map-block", "value"),
        Input("store-data-version", "data"),
    )
    def update_site_map(project_id, statuses, blocks, _version):
        if not project_id:
            raise PreventUpdate
        frame = build_site_map_frame(store.get_lookup(project_id), store.get_prepared_piles(project_id))
        visible = filter_site_map(frame, ensure_list(statuses), ensure_list(blocks))
        counts = site_map_counts(visible)
        summary = f"{len(visible)} of {len(frame)} piles: " + ", ".join(
            f"{MAP_STATUS_LABELS[status]} {counts[status]}" for status in MAP_STATUSES
        )
        return create_site_map(visible), filter_options(unique_blocks(frame)), summary

    @app.callback(
        Output("tbl-notes", "data"),
        Output("label-notes-count", "children"),
        Input("f-project", "value"),
        Input("tabs-main", "active_tab"),
        Input("store-data-version", "data"),
    )
    def update_notes_tab(project_id, _tab, _version):
        if not project_id:
            return [], "Select a project."
        noted = piles_with_notes(store.get_prepared_piles(project_id))
        columns = [col for col in NOTES_TABLE_FIELDS if col in noted.columns]
        return frame_to_records(noted, columns), f"{len(noted)} piles with notes"


def _register_upload_flow(app: Dash, flow: _UploadFlow, open_button: str, store: AppDataStore, config: AppConfig) -> None:
    prefix = flow.prefix

    @app.callback(
        Output(f"{prefix}-modal", "is_open"),
        Input(open_button, "n_clicks"),
        Input(f"{prefix}-close", "n_clicks"),
        prevent_initial_call=True,
    )
    def toggle_modal(_open, _close):
        return _resolve_triggered_id() == open_button

    @app.callback(
        Output(f"store-{prefix}-file", "data"),
        Output(f"{prefix}-mapping", "data"),
        Output(f"{prefix}-mapping", "dropdown"),
        Output(f"{prefix}-filename", "children"),
        Output(f"{prefix}-summary", "children"),
        Output(f"{prefix}-review", "columns"),
        Output(f"{prefix}-review", "data"),
        Input(f"{prefix}-upload", "contents"),
        Input(f"{prefix}-validate", "n_clicks"),
        State(f"{prefix}-upload", "filename"),
        State(f"store-{prefix}-file", "data"),
        State(f"{prefix}-mapping", "data"),
        State("f-project", "value"),
        prevent_initial_call=True,
    )
    def preview_upload(contents, _validate, filename, file_data, mapping_data, project_id):
        trigger = _resolve_triggered_id()
        if not project_id:
            return (dash.no_update,) * 4 + ("Select a project first.", dash.no_update, dash.no_update)
        fresh = trigger == f"{prefix}-upload"
        if fresh:
            file_data = {"contents": contents, "filename": filename}
        if not file_data:
            raise PreventUpdate
        try:
            content = decode_upload(file_data["contents"], file_data["filename"])
            frame, mapping = flow.read(content, file_data["filename"])
            if not fresh:
                mapping = mapping.with_overrides(overrides_from_rows(mapping_data))
            summary, review = flow.preview(frame, mapping, project_id)
        except (ValueError, DatabaseError) as exc:
            LOGGER.warning("Upload preview failed for %s: %s", file_data.get("filename"), exc)
            return (file_data if fresh else dash.no_update, dash.no_update, dash.no_update,
                    file_data.get("filename") or "", str(exc), [], [])
        review = review.head(REVIEW_ROW_LIMIT)
        columns = [{"name": str(col), "id": str(col)} for col in review.columns]
        review.columns = [str(col) for col in review.columns]
        return (
            file_data if fresh else dash.no_update,
            mapping_rows(mapping, flow.labels) if fresh else dash.no_update,
            {"column": {"options": mapping_options(list(mapping.headers))}} if fresh else dash.no_update,
            f"{file_data['filename']}: {len(frame)} data rows",
            summary,
            columns,
            frame_to_records(review),
        )

    commit_states = [
        State(f"store-{prefix}-file", "data"),
        State(f"{prefix}-mapping", "data"),
        State("f-project", "value"),
        State("store-data-version", "data"),
    ]
    if prefix == "piles-upload":
        commit_states.append(State("piles-upload-skip-duplicates", "value"))

    @app.callback(
        Output(f"{prefix}-summary", "children", allow_duplicate=True),
        Output("store-data-version", "data", allow_duplicate=True),
        Output("toast-container", "children", allow_duplicate=True),
        Input(f"{prefix}-commit", "n_clicks"),
        *commit_states,
        prevent_initial_call=True,
    )
    def commit_upload(n_clicks, file_data, mapping_data, project_id, version, skip_duplicates=False):
        if not n_clicks or not file_data or not project_id:
            raise PreventUpdate
        if not config.can_edit:
            return dash.no_update, dash.no_update, _denied_toast()
        try:
            content = decode_upload(file_data["contents"], file_data["filename"])
            frame, mapping = flow.read(content, file_data["filename"])
            mapping = mapping.with_overrides(overrides_from_rows(mapping_data))
            message, ok = flow.commit(frame, mapping, project_id, bool(skip_duplicates))
        except (ValueError, DatabaseError) as exc:
            LOGGER.warning("Upload commit failed for %s: %s", file_data.get("filename"), exc)
            return str(exc), dash.no_update, _error_toast(exc)
        store.invalidate(project_id)
        LOGGER.info("Upload %s committed for project %s: %s", prefix, project_id, message)
        return message, int(version or 0) + 1, make_toast(message, "success" if ok else "warning")


__all__ = ["register_callbacks"]
