"""Dash layout composition."""
from __future__ import annotations

import urllib.parse

import dash_bootstrap_components as dbc
from dash import dash_table, dcc, html
from dash.dcc import Download

from .duplicates import ACTION_LABELS
from .metrics import MACHINE_SORT_KEYS
from .services.piles import PILE_FORM_FIELDS
from .services.projects import TRACKER_SYSTEMS
from .site_map import MAP_STATUS_LABELS, MAP_STATUSES
from .status import STATUS_LABELS, STATUSES

GRAPH_CONFIG = {
    "displayModeBar": False,
    "doubleClick": False,
    "scrollZoom": False,
}

TABLE_STYLE_CELL = {
    "fontFamily": "Inter, system-ui",
    "fontSize": 13,
    "border": "1px solid var(--border, #e6e9f0)",
    "whiteSpace": "normal",
    "height": "auto",
}
TABLE_STYLE_HEADER = {"border": "1px solid var(--border, #e6e9f0)", "fontWeight": "600"}

PILE_TABLE_COLUMNS = [
    {"name": "Pile #", "id": "pile_number"},
    {"name": "Pile ID", "id": "pile_id"},
    {"name": "Block", "id": "block"},
    {"name": "Machine", "id": "machine"},
    {"name": "Date", "id": "start_day"},
    {"name": "Embedment", "id": "embedment", "type": "numeric"},
    {"name": "Design", "id": "design_embedment", "type": "numeric"},
    {"name": "Status", "id": "display_status"},
    {"name": "Duration", "id": "duration"},
    {"name": "Drive Time", "id": "drive_time_rating"},
    {"name": "Published", "id": "published"},
    {"name": "Notes", "id": "notes", "editable": True},
]

MACHINE_TABLE_COLUMNS = [
    {"name": "Machine", "id": "machine"},
    {"name": "Piles", "id": "total_piles", "type": "numeric"},
    {"name": "Accepted %", "id": "accepted_percent", "type": "numeric"},
    {"name": "Refusal %", "id": "refusal_percent", "type": "numeric"},
    {"name": "Slow Drives", "id": "slow_drive_count", "type": "numeric"},
    {"name": "Low Gain", "id": "low_gain_count", "type": "numeric"},
    {"name": "Avg Drive (min)", "id": "average_drive_time", "type": "numeric"},
    {"name": "Avg Embedment", "id": "average_embedment", "type": "numeric"},
    {"name": "Days", "id": "active_days", "type": "numeric"},
    {"name": "First", "id": "first_date"},
    {"name": "Last", "id": "last_date"},
]

PRELIM_RECORD_COLUMNS = [
    {"name": "Machine", "id": "machine"},
    {"name": "Pile ID", "id": "pile_id"},
    {"name": "Block", "id": "block"},
    {"name": "Date", "id": "start_date"},
    {"name": "Embedment", "id": "embedment", "type": "numeric"},
    {"name": "Duration", "id": "duration"},
]

MACHINE_SORT_LABELS = {
    "machine": "Machine ID",
    "total_piles": "Total piles",
    "accepted_percent": "Accepted %",
    "refusal_percent": "Refusal %",
    "average_drive_time": "Avg drive time",
    "average_embedment": "Avg embedment",
}

_PILE_SVG = '''
<svg width="22" height="22" viewBox="0 0 24 24" fill="none"
     xmlns="http://www.w3.org/2000/svg" aria-hidden="true">
  <path d="M12 2V18" stroke="white" stroke-width="2" stroke-linecap="round"/>
  <path d="M8 18L12 22L16 18" stroke="white" stroke-width="2" stroke-linejoin="round"/>
  <path d="M4 12H20" stroke="white" stroke-width="1.6" stroke-dasharray="2 2"/>
</svg>
'''.strip()


def _table(table_id: str, columns: list[dict], **kwargs) -> dash_table.DataTable:
    options = dict(
        id=table_id,
        columns=columns,
        data=[],
        style_table={"overflowX": "auto"},
        style_cell=TABLE_STYLE_CELL,
        style_header=TABLE_STYLE_HEADER,
    )
    options.update(kwargs)
    return dash_table.DataTable(**options)


def _row_style(visible: bool) -> dict:
    style = {"display": "flex", "gap": "8px", "flexWrap": "wrap", "alignItems": "center"}
    if not visible:
        style["display"] = "none"
    return style


def build_header(title: str, can_edit: bool = True) -> html.Div:
    """Top bar: icon, title, project selector and the 'last loaded' line."""

    icon = html.Img(
        src="data:image/svg+xml;utf8," + urllib.parse.quote(_PILE_SVG),
        style={"width": "22px", "height": "22px"},
    )
    return html.Div(
        [
            html.Div(html.Div(icon, className="brand-badge"), className="topbar__icon"),
            html.Div(
                [
                    html.Div(title, className="topbar__title"),
                    html.Div(html.Span(id="label-last-loaded", children="Last loaded: N/A"), className="topbar__meta"),
                ],
                className="topbar__text",
            ),
            html.Div(
                [
                    dcc.Dropdown(id="f-project", options=[], placeholder="Select project", clearable=False,
                                 style={"minWidth": "260px"}),
                    dbc.Button("New project", id="btn-open-project", color="secondary", outline=True, size="sm"),
                    dbc.Button("Project settings", id="btn-open-settings", color="secondary", outline=True,
                               size="sm", style={} if can_edit else {"display": "none"}),
                ],
                style={"marginLeft": "auto", "display": "flex", "gap": "10px", "alignItems": "center"},
            ),
        ],
        className="topbar",
    )


def build_kpi_cards() -> dbc.Row:
    cards = [("Total Piles", "kpi-total", "kpi--blue")]
    tones = {"accepted": "kpi--green", "tolerance": "kpi--amber", "refusal": "kpi--red", "missing": "kpi--gray"}
    for status, tone in tones.items():
        cards.append((STATUS_LABELS[status], f"kpi-{status}", tone))
    return dbc.Row(
        [
            dbc.Col(
                dbc.Card(
                    dbc.CardBody(
                        [
                            html.Div(label, className="kpi-label"),
                            html.Div(html.Span(id=kpi_id, children="0", className="kpi-value"), className="kpi-row"),
                        ]
                    ),
                    className=f"kpi {tone}",
                )
            )
            for label, kpi_id, tone in cards
        ],
        className="g-3 mb-3",
    )


def build_pile_controls(can_edit: bool) -> dbc.Card:
    filters = dbc.Row(
        [
            dbc.Col(
                dcc.Dropdown(
                    id="f-status",
                    options=[{"label": STATUS_LABELS[s], "value": s} for s in STATUSES],
                    multi=True,
                    placeholder="Status",
                ),
                md=2,
            ),
            dbc.Col(dcc.Dropdown(id="f-block", options=[], multi=True, placeholder="Block"), md=2),
            dbc.Col(dcc.DatePickerRange(id="f-date-range", clearable=True, display_format="YYYY-MM-DD"), md=3),
            dbc.Col(dbc.Input(id="f-search", type="search", placeholder="Search piles", debounce=True), md=3),
            dbc.Col(dbc.Switch(id="f-duplicates", label="Duplicates only", value=False), md=2),
        ],
        className="g-3 align-items-center mb-2",
    )
    edit_buttons = [
        dbc.Button("Add pile", id="btn-open-pile-new", color="primary", size="sm", outline=True),
        dbc.Button("Edit pile", id="btn-open-pile-edit", color="primary", size="sm", outline=True),
        dbc.Button("Upload piles", id="btn-open-piles-upload", color="primary", size="sm"),
        dbc.Button("Pile lookup", id="btn-open-lookup", color="secondary", size="sm"),
        dbc.Button("Duplicates", id="btn-open-duplicates", color="warning", size="sm"),
        dbc.Button("Field entry QR", id="btn-open-qr", color="info", size="sm"),
        dcc.Dropdown(
            id="f-status-override",
            options=[{"label": "(derived)", "value": "__derived__"}]
            + [{"label": STATUS_LABELS[s], "value": s} for s in STATUSES],
            placeholder="Set status",
            style={"minWidth": "150px"},
        ),
        dbc.Button("Apply status", id="btn-set-status", size="sm", outline=True),
        dbc.Button("Publish", id="btn-publish", size="sm", outline=True, color="success"),
        dbc.Button("Unpublish", id="btn-unpublish", size="sm", outline=True, color="secondary"),
        dbc.Button("Delete selected", id="btn-delete-selected", size="sm", outline=True, color="danger"),
        dbc.Button("Delete all", id="btn-delete-all", size="sm", color="danger"),
    ]
    export_buttons = [
        dbc.Button("Export XLSX", id="btn-export-xlsx", size="sm", outline=True),
        dbc.Button("Export PDF", id="btn-export-pdf", size="sm", outline=True),
    ]
    actions = html.Div(
        [
            html.Div(edit_buttons, style=_row_style(can_edit)),
            html.Div(export_buttons, style=_row_style(True)),
        ],
        style={"display": "flex", "gap": "8px", "flexWrap": "wrap"},
    )
    return dbc.Card(dbc.CardBody([filters, actions]), className="filter-card shadow-sm mb-3")


def build_piles_tab(can_edit: bool, page_size: int) -> html.Div:
    table = _table(
        "tbl-piles",
        PILE_TABLE_COLUMNS,
        row_selectable="multi" if can_edit else False,
        selected_rows=[],
        editable=can_edit,
        page_action="custom",
        page_current=0,
        page_size=page_size,
        page_count=1,
        style_data_conditional=[
            {"if": {"filter_query": '{display_status} = "refusal"'}, "backgroundColor": "#FDECEA"},
            {"if": {"filter_query": '{display_status} = "tolerance"'}, "backgroundColor": "#FFF8E1"},
        ],
    )
    return html.Div(
        [
            build_kpi_cards(),
            build_pile_controls(can_edit),
            dbc.Row(
                [
                    dbc.Col(dbc.Card(dbc.CardBody([html.Div(id="label-pile-count", className="section-sub"), table]),
                                     className="viz-card shadow-sm"), md=9),
                    dbc.Col(dbc.Card(dbc.CardBody(dcc.Graph(id="g-status-pie", config=GRAPH_CONFIG)),
                                     className="viz-card shadow-sm"), md=3),
                ],
                className="g-3",
            ),
        ]
    )


def build_production_tab(can_edit: bool) -> html.Div:
    controls = dbc.Row(
        [
            dbc.Col(
                dbc.RadioItems(
                    id="prod-source",
                    options=[{"label": "Piles", "value": "piles"}, {"label": "Preliminary", "value": "preliminary"}],
                    value="piles",
                    inline=True,
                ),
                md=2,
            ),
            dbc.Col(dbc.Input(id="prod-search", type="search", placeholder="Search machine", debounce=True), md=2),
            dbc.Col(dcc.DatePickerRange(id="prod-date-range", clearable=True, display_format="YYYY-MM-DD"), md=3),
            dbc.Col(
                dcc.Dropdown(
                    id="prod-sort",
                    options=[{"label": MACHINE_SORT_LABELS[key], "value": key} for key in MACHINE_SORT_KEYS],
                    value="total_piles",
                    clearable=False,
                ),
                md=2,
            ),
            dbc.Col(dbc.Switch(id="prod-sort-desc", label="Descending", value=True), md=1),
            dbc.Col(dbc.Switch(id="prod-performance", label="Issues only", value=False), md=2),
        ],
        className="g-3 align-items-center mb-2",
    )
    buttons = [
        html.Div(
            [
                dbc.Button("Upload preliminary", id="btn-open-prelim", size="sm", color="primary"),
                dbc.Button("Clear preliminary", id="btn-clear-prelim", size="sm", outline=True, color="danger"),
            ],
            style=_row_style(can_edit),
        ),
        dbc.Button("Export XLSX", id="btn-export-production", size="sm", outline=True),
    ]
    return html.Div(
        [
            dbc.Card(
                dbc.CardBody([controls, html.Div(buttons, style={"display": "flex", "gap": "8px"})]),
                className="filter-card shadow-sm mb-3",
            ),
            html.Div(id="prod-overview", className="mb-3"),
            dbc.Row(
                [
                    dbc.Col(dbc.Card([dbc.CardHeader(html.Div("Top machines", className="section-title")),
                                      dbc.CardBody(dcc.Graph(id="g-machine-status", config=GRAPH_CONFIG))],
                                     className="viz-card shadow-sm"), md=7),
                    dbc.Col(dbc.Card([dbc.CardHeader(html.Div("Machine efficiency", className="section-title")),
                                      dbc.CardBody(dcc.Graph(id="g-machine-efficiency", config=GRAPH_CONFIG))],
                                     className="viz-card shadow-sm"), md=5),
                ],
                className="g-3 mb-3",
            ),
            dbc.Card([dbc.CardHeader(html.Div("Daily production", className="section-title")),
                      dbc.CardBody(dcc.Graph(id="g-daily-trend", config=GRAPH_CONFIG))],
                     className="viz-card shadow-sm mb-3"),
            dbc.Row(
                [
                    dbc.Col(dbc.Card(dbc.CardBody(_table("tbl-machines", MACHINE_TABLE_COLUMNS,
                                                         row_selectable="single", selected_rows=[],
                                                         page_size=15, sort_action="native")),
                                     className="shadow-sm"), md=8),
                    dbc.Col(
                        dbc.Card(
                            [
                                dbc.CardHeader(html.Div(id="label-machine-daily", className="section-title",
                                                        children="Select a machine")),
                                dbc.CardBody(
                                    _table(
                                        "tbl-machine-daily",
                                        [{"name": "Date", "id": "date"}, {"name": "Piles", "id": "piles"},
                                         {"name": "Accepted", "id": "accepted"}, {"name": "Refusal", "id": "refusal"},
                                         {"name": "Avg Drive", "id": "average_drive_time"}],
                                        page_size=15,
                                    )
                                ),
                            ],
                            className="shadow-sm",
                        ),
                        md=4,
                    ),
                ],
                className="g-3",
            ),
            dbc.Card(
                [
                    dbc.CardHeader(html.Div("Preliminary records", className="section-title")),
                    dbc.CardBody(
                        [
                            _table("tbl-prelim-records", PRELIM_RECORD_COLUMNS,
                                   row_selectable="multi" if can_edit else False, selected_rows=[],
                                   page_size=15, sort_action="native"),
                            html.Div(
                                dbc.Button("Delete selected records", id="btn-delete-prelim-records", size="sm",
                                           outline=True, color="danger", className="mt-2"),
                                style=_row_style(can_edit),
                            ),
                        ]
                    ),
                ],
                className="shadow-sm mt-3",
            ),
        ]
    )


def build_blocks_tab() -> html.Div:
    return html.Div(
        [
            dbc.RadioItems(
                id="blocks-group-by",
                options=[{"label": "Blocks", "value": "block"}, {"label": "Pile types", "value": "pile_type"}],
                value="block",
                inline=True,
                className="mb-2",
            ),
            dbc.Card(dbc.CardBody(dcc.Graph(id="g-blocks", config=GRAPH_CONFIG)), className="viz-card shadow-sm mb-3"),
            dbc.Card(dbc.CardBody(_table("tbl-blocks", [], page_size=20, sort_action="native")), className="shadow-sm"),
        ]
    )


def build_site_map_tab() -> html.Div:
    return html.Div(
        [
            dbc.Row(
                [
                    dbc.Col(
                        dcc.Dropdown(
                            id="map-status",
                            options=[{"label": MAP_STATUS_LABELS[s], "value": s} for s in MAP_STATUSES],
                            multi=True,
                            placeholder="Status",
                        ),
                        md=4,
                    ),
                    dbc.Col(dcc.Dropdown(id="map-block", options=[], multi=True, placeholder="Block"), md=4),
                    dbc.Col(html.Div(id="map-summary", className="section-sub"), md=4),
                ],
                className="g-3 align-items-center mb-2",
            ),
            dbc.Card(
                dbc.CardBody(dcc.Graph(id="g-site-map", config={"displayModeBar": True, "scrollZoom": True})),
                className="viz-card shadow-sm",
            ),
        ]
    )


def build_notes_tab() -> html.Div:
    columns = [
        {"name": "Pile #", "id": "pile_number"},
        {"name": "Pile ID", "id": "pile_id"},
        {"name": "Block", "id": "block"},
        {"name": "Date", "id": "start_day"},
        {"name": "Status", "id": "display_status"},
        {"name": "Notes", "id": "notes"},
    ]
    return html.Div(
        [
            html.Div(id="label-notes-count", className="section-sub mb-2"),
            dbc.Card(dbc.CardBody(_table("tbl-notes", columns, page_size=25, sort_action="native")),
                     className="shadow-sm"),
        ]
    )


def build_upload_modal(prefix: str, title: str, extra_controls: list | None = None) -> dbc.Modal:
    """Upload -> mapping review -> commit dialog shared by the three uploads."""

    body = [
        dcc.Upload(
            id=f"{prefix}-upload",
            children=html.Div(["Drag and drop or ", html.A("select a CSV / XLSX file")]),
            accept=".csv,.txt,.xlsx,.xlsm,.xls",
            multiple=False,
            className="upload-drop",
            style={"border": "1px dashed #94a3b8", "borderRadius": "8px", "padding": "18px", "textAlign": "center"},
        ),
        html.Div(id=f"{prefix}-filename", className="section-sub my-2"),
        html.Div("Column mapping", className="section-title mt-2"),
        _table(
            f"{prefix}-mapping",
            [{"name": "Field", "id": "label"}, {"name": "Column", "id": "column", "presentation": "dropdown"}],
            editable=True,
            dropdown={},
            page_action="none",
        ),
        html.Div(extra_controls or [], className="my-2"),
        dbc.Alert(id=f"{prefix}-summary", color="light", className="mt-3", children="No file loaded."),
        _table(f"{prefix}-review", [], page_size=10),
        dcc.Store(id=f"store-{prefix}-file", data=None),
    ]
    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle(title)),
            dbc.ModalBody(body),
            dbc.ModalFooter(
                [
                    dbc.Button("Validate", id=f"{prefix}-validate", color="secondary", n_clicks=0),
                    dbc.Button("Upload", id=f"{prefix}-commit", color="primary", n_clicks=0),
                    dbc.Button("Close", id=f"{prefix}-close", className="ms-auto", n_clicks=0),
                ]
            ),
        ],
        id=f"{prefix}-modal",
        is_open=False,
        size="xl",
        scrollable=True,
    )


def build_duplicates_modal() -> dbc.Modal:
    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle("Duplicate piles")),
            dbc.ModalBody(
                [
                    html.Div(id="duplicates-summary", className="section-sub mb-2"),
                    _table(
                        "tbl-duplicate-groups",
                        [{"name": "Pile ID", "id": "key"}, {"name": "Records", "id": "size"},
                         {"name": "Embedments", "id": "embedments"}, {"name": "Dates", "id": "dates"}],
                        row_selectable="multi",
                        selected_rows=[],
                        page_size=15,
                    ),
                    dbc.RadioItems(
                        id="dup-action",
                        options=[{"label": label, "value": value} for value, label in ACTION_LABELS.items()],
                        value=next(iter(ACTION_LABELS)),
                        className="mt-3",
                    ),
                    html.Div("Leave the table unselected to apply to every group.", className="section-sub"),
                ]
            ),
            dbc.ModalFooter(
                [
                    dbc.Button("Apply", id="btn-dup-apply", color="warning", n_clicks=0),
                    dbc.Button("Close", id="duplicates-close", className="ms-auto", n_clicks=0),
                ]
            ),
        ],
        id="duplicates-modal",
        is_open=False,
        size="lg",
        scrollable=True,
    )


def build_qr_modal() -> dbc.Modal:
    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle("Field entry")),
            dbc.ModalBody(
                [
                    html.Img(id="qr-image", style={"width": "260px", "display": "block", "margin": "0 auto"}),
                    html.Div(html.Code(id="qr-url"), className="text-center mt-3"),
                    html.Div("Scan on site to record piles for this project.", className="section-sub text-center"),
                ]
            ),
            dbc.ModalFooter(dbc.Button("Close", id="qr-close", className="ms-auto", n_clicks=0)),
        ],
        id="qr-modal",
        is_open=False,
    )


def build_project_modal() -> dbc.Modal:
    def _field(label: str, component) -> dbc.Row:
        return dbc.Row([dbc.Label(label, width=4), dbc.Col(component, width=8)], className="mb-2")

    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle("New project")),
            dbc.ModalBody(
                [
                    _field("Name", dbc.Input(id="project-name")),
                    _field("Location", dbc.Input(id="project-location")),
                    _field("Total piles", dbc.Input(id="project-total-piles", type="number", min=0)),
                    _field("Embedment tolerance (ft)", dbc.Input(id="project-tolerance", type="number", min=0,
                                                                 step=0.1, value=1.0)),
                    _field("Geotech company", dbc.Input(id="project-geotech")),
                ]
            ),
            dbc.ModalFooter(
                [
                    dbc.Button("Create", id="btn-create-project", color="primary", n_clicks=0),
                    dbc.Button("Close", id="project-close", className="ms-auto", n_clicks=0),
                ]
            ),
        ],
        id="project-modal",
        is_open=False,
    )


PILE_FORM_LABELS = {
    "pile_number": "Pile number",
    "pile_id": "Pile ID",
    "block": "Block",
    "zone": "Zone",
    "machine": "Machine",
    "pile_type": "Pile type",
    "pile_size": "Pile size",
    "start_date": "Start date",
    "start_time": "Start time",
    "stop_time": "Stop time",
    "duration": "Duration (h:mm:ss)",
    "start_z": "Start Z",
    "end_z": "End Z",
    "embedment": "Embedment (ft)",
    "design_embedment": "Design embedment (ft)",
    "notes": "Notes",
}
_NUMERIC_FORM_FIELDS = {"start_z", "end_z", "embedment", "design_embedment"}


def build_pile_modal() -> dbc.Modal:
    """Add / edit / delete a single pile."""

    def _input(name: str):
        if name in _NUMERIC_FORM_FIELDS:
            return dbc.Input(id=f"pile-{name}", type="number", step="any")
        if name == "start_date":
            return dbc.Input(id=f"pile-{name}", type="date")
        return dbc.Input(id=f"pile-{name}")

    rows = [
        dbc.Row([dbc.Label(PILE_FORM_LABELS[name], width=5), dbc.Col(_input(name), width=7)], className="mb-2")
        for name in PILE_FORM_FIELDS
    ]
    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle(id="pile-modal-title", children="Add pile")),
            dbc.ModalBody(rows + [dcc.Store(id="store-pile-edit-id", data=None)]),
            dbc.ModalFooter(
                [
                    dbc.Button("Save", id="pile-save", color="primary", n_clicks=0),
                    dbc.Button("Delete", id="pile-delete", color="danger", outline=True, n_clicks=0),
                    dbc.Button("Close", id="pile-close", className="ms-auto", n_clicks=0),
                ]
            ),
        ],
        id="pile-modal",
        is_open=False,
        scrollable=True,
    )


def build_settings_modal() -> dbc.Modal:
    def _field(label: str, component) -> dbc.Row:
        return dbc.Row([dbc.Label(label, width=4), dbc.Col(component, width=8)], className="mb-2")

    members = [
        html.Div("Members", className="section-title mt-3"),
        _table(
            "tbl-members",
            [{"name": "User", "id": "user_id"}, {"name": "Role", "id": "role"}, {"name": "Owner", "id": "is_owner"}],
            row_selectable="single",
            selected_rows=[],
            page_size=10,
        ),
        dbc.Row(
            [
                dbc.Col(dbc.Input(id="member-user", placeholder="User id"), md=5),
                dbc.Col(
                    dcc.Dropdown(
                        id="member-role",
                        options=[{"label": role.replace("_", " ").title(), "value": role}
                                 for role in ("viewer", "editor", "project_manager")],
                        value="viewer",
                        clearable=False,
                    ),
                    md=4,
                ),
                dbc.Col(dbc.Button("Add", id="btn-member-add", size="sm", n_clicks=0), md=1),
                dbc.Col(dbc.Button("Remove", id="btn-member-remove", size="sm", outline=True, color="danger",
                                   n_clicks=0), md=2),
            ],
            className="g-2 mt-2 align-items-center",
        ),
    ]
    return dbc.Modal(
        [
            dbc.ModalHeader(dbc.ModalTitle("Project settings")),
            dbc.ModalBody(
                [
                    _field("Name", dbc.Input(id="settings-name")),
                    _field("Location", dbc.Input(id="settings-location")),
                    _field("Total piles", dbc.Input(id="settings-total-piles", type="number", min=0)),
                    _field("Embedment tolerance (ft)", dbc.Input(id="settings-tolerance", type="number", min=0,
                                                                 step=0.1)),
                    _field("Geotech company", dbc.Input(id="settings-geotech")),
                    _field(
                        "Tracker system",
                        dcc.Dropdown(
                            id="settings-tracker",
                            options=[{"label": value.title(), "value": value} for value in TRACKER_SYSTEMS],
                            clearable=False,
                        ),
                    ),
                ]
                + members
            ),
            dbc.ModalFooter(
                [
                    dbc.Button("Save", id="settings-save", color="primary", n_clicks=0),
                    dbc.Button("Delete project", id="settings-delete", color="danger", outline=True, n_clicks=0),
                    dbc.Button("Close", id="settings-close", className="ms-auto", n_clicks=0),
                ]
            ),
        ],
        id="settings-modal",
        is_open=False,
        size="lg",
        scrollable=True,
    )


def build_field_entry_page(project_id: str | None) -> dbc.Container:
    """Mobile form opened from the QR code."""

    def _input(label: str, field_id: str, **kwargs) -> dbc.Row:
        return dbc.Row([dbc.Label(label, width=5), dbc.Col(dbc.Input(id=field_id, **kwargs), width=7)], className="mb-2")

    return dbc.Container(
        [
            html.H4("Field Entry", className="mt-3"),
            dcc.Store(id="field-project", data=project_id),
            _input("Inspector name *", "fe-inspector_name"),
            _input("Pile ID *", "fe-pile_id"),
            _input("Pile number *", "fe-pile_number"),
            _input("Block", "fe-block"),
            _input("Machine", "fe-machine"),
            _input("Start date", "fe-start_date", type="date"),
            _input("Start time", "fe-start_time", type="time"),
            _input("Stop time", "fe-stop_time", type="time"),
            _input("Start Z", "fe-start_z", type="number", step="any"),
            _input("End Z", "fe-end_z", type="number", step="any"),
            _input("Embedment (ft)", "fe-embedment", type="number", step="any"),
            _input("Design embedment (ft)", "fe-design_embedment", type="number", step="any"),
            _input("Notes", "fe-notes"),
            dbc.Button("Submit", id="btn-field-submit", color="primary", className="w-100 mt-2", n_clicks=0),
            html.Div(id="field-entry-result", className="mt-3"),
        ],
        style={"maxWidth": "560px"},
    )


FIELD_ENTRY_FIELDS = (
    "inspector_name", "pile_id", "pile_number", "block", "machine", "start_date", "start_time",
    "stop_time", "start_z", "end_z", "embedment", "design_embedment", "notes",
)


def build_dashboard(can_edit: bool, page_size: int) -> html.Div:
    return html.Div(
        [
            dbc.Tabs(
                [
                    dbc.Tab(build_piles_tab(can_edit, page_size), label="Piles", tab_id="tab-piles"),
                    dbc.Tab(build_production_tab(can_edit), label="Production", tab_id="tab-production"),
                    dbc.Tab(build_blocks_tab(), label="Blocks", tab_id="tab-blocks"),
                    dbc.Tab(build_site_map_tab(), label="Site map", tab_id="tab-site-map"),
                    dbc.Tab(build_notes_tab(), label="Notes", tab_id="tab-notes"),
                ],
                id="tabs-main",
                active_tab="tab-piles",
                className="mb-3",
            ),
            build_upload_modal(
                "piles-upload",
                "Upload piles",
                [dbc.Switch(id="piles-upload-skip-duplicates", label="Skip duplicate rows", value=False),
                 dbc.Button("Download review", id="btn-import-report", size="sm", outline=True)],
            ),
            build_upload_modal("lookup", "Upload pile plot lookup"),
            build_upload_modal("prelim", "Upload preliminary production"),
            build_duplicates_modal(),
            build_qr_modal(),
            build_pile_modal(),
            dcc.ConfirmDialog(
                id="confirm-delete-all",
                message="Delete every pile in this project? This cannot be undone.",
            ),
        ]
    )


def build_layout(can_edit: bool = True, page_size: int = 50) -> dbc.Container:
    """Assemble the full Dash layout. ``/field-entry`` renders the mobile form instead."""

    return dbc.Container(
        [
            dcc.Location(id="url", refresh=False),
            build_header("Pile Tracker", can_edit),
            html.Div(id="page-content", children=build_dashboard(can_edit, page_size)),
            build_project_modal(),
            build_settings_modal(),
            dcc.ConfirmDialog(
                id="confirm-delete-project",
                message="Delete this project with all of its piles, pile plot and preliminary data?",
            ),
            dcc.Store(id="store-data-version", data=0),
            Download(id="download-piles-xlsx"),
            Download(id="download-piles-pdf"),
            Download(id="download-production-xlsx"),
            Download(id="download-import-report"),
            html.Div(id="toast-container", style={"position": "fixed", "top": 16, "right": 16, "zIndex": 2000}),
        ],
        fluid=True,
    )
