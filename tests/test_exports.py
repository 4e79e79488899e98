"""
Unit tests for piletracker/workbook.py, piletracker/pdf_report.py and piletracker/charts.py
"""

import io

import pandas as pd
import pytest

from piletracker.charts import (
    create_daily_trend_chart,
    create_group_chart,
    create_machine_status_chart,
    create_site_map,
    create_status_pie,
)
from piletracker.column_mapping import infer_column_mapping
from piletracker.importer import build_import_report
from piletracker.metrics import (
    daily_production,
    machine_daily_breakdown,
    prepare_piles,
    status_counts,
    summarize_groups,
    summarize_machines,
    top_machines,
)
from piletracker.pdf_report import make_piles_pdf_bytes
from piletracker.workbook import (
    PILE_EXPORT_COLUMNS,
    export_filename,
    make_import_report_workbook_bytes,
    make_piles_workbook_bytes,
    make_production_workbook_bytes,
    pile_export_frame,
)


@pytest.fixture
def prepared():
    piles = pd.DataFrame(
        [
            {"id": "1", "pile_id": "A1", "machine": "M1", "block": "B1", "embedment": 10.0,
             "design_embedment": 10.0, "start_date": "2024-05-01", "start_time": "13:05:00",
             "duration_seconds": 300, "duration": "0:05:00", "notes": "ok",
             "gain_per_30_seconds": 4.0},
            {"id": "2", "pile_id": "A2", "machine": "M1", "block": "B1", "embedment": 7.0,
             "design_embedment": 10.0, "start_date": "2024-05-02", "start_time": None,
             "duration_seconds": None, "duration": None, "notes": None,
             "gain_per_30_seconds": 9.0},
        ]
    )
    return prepare_piles(piles, 1.0)


def _sheets(content: bytes) -> list[str]:
    return pd.ExcelFile(io.BytesIO(content), engine="openpyxl").sheet_names


@pytest.mark.unit
class TestWorkbooks:
    """XLSX exports."""

    def test_filename(self):
        stamp = pd.Timestamp("2024-05-01 08:30:00")
        assert export_filename("Solar Farm #2", "piles", "pdf", now=stamp) == "Solar_Farm_2_piles_20240501_083000.pdf"
        assert export_filename("", now=stamp) == "project_piles_20240501_083000.xlsx"

    def test_pile_rows(self, prepared):
        frame = pile_export_frame(prepared)
        assert list(frame.columns) == PILE_EXPORT_COLUMNS
        first, second = frame.to_dict("records")
        assert first["Status"] == "Accepted"
        assert first["Start Time"] == "1:05 PM"
        assert first["Drive Time (min)"] == 5.0
        assert first["Low Gain"] == "Yes"
        assert second["Low Gain"] == ""
        assert second["Status"] == "Refusal"
        assert pd.isna(second["Drive Time (min)"])

    def test_piles_workbook(self, prepared):
        content = make_piles_workbook_bytes(
            prepared,
            project={"project_name": "Solar Farm", "project_location": "Nevada"},
            active_filters={"Block": "B1"},
        )
        assert _sheets(content) == ["Piles", "Summary", "SelectionContext"]
        context = pd.read_excel(io.BytesIO(content), sheet_name="SelectionContext", engine="openpyxl")
        assert context.loc[0, "Filters"] == "Block: B1"
        summary = pd.read_excel(io.BytesIO(content), sheet_name="Summary", engine="openpyxl")
        assert summary.iloc[-1].tolist() == ["Total", 2, 100.0]

    def test_production_workbook(self, prepared):
        summaries = summarize_machines(prepared)
        content = make_production_workbook_bytes(
            summaries,
            daily_production(prepared),
            summarize_groups(prepared, "block"),
            machine_for_sheet="M1",
            machine_daily=machine_daily_breakdown(prepared, "M1"),
        )
        assert _sheets(content) == ["Machines", "DailyProduction", "Blocks", "Daily_M1"]

    def test_import_report_workbook(self):
        frame = pd.DataFrame([{"Pile ID": "A1", "Embedment": "x"}], dtype=object)
        frame.index = [2]
        report = build_import_report(
            frame, infer_column_mapping(list(frame.columns)), project_id="proj", filename="piles.csv"
        )
        content = make_import_report_workbook_bytes(report)
        assert _sheets(content) == ["Totals", "Review", "Errors", "Mapping"]


@pytest.mark.unit
class TestPdf:
    def test_pdf_bytes(self, prepared):
        content = make_piles_pdf_bytes(
            prepared,
            project={"project_name": "Solar Farm"},
            active_filters={"Status": "accepted"},
        )
        assert content.startswith(b"%PDF")

    def test_empty_selection_raises(self, prepared):
        with pytest.raises(ValueError):
            make_piles_pdf_bytes(prepared.iloc[0:0])


@pytest.mark.unit
class TestCharts:
    def test_figures_build(self, prepared):
        summaries = summarize_machines(prepared)
        assert len(create_status_pie(status_counts(prepared)).data) == 1
        assert create_machine_status_chart(top_machines(summaries)).data
        assert create_daily_trend_chart(daily_production(prepared)).data
        assert create_group_chart(summarize_groups(prepared, "block")).data

    def test_site_map_trace_per_status(self):
        frame = pd.DataFrame(
            [
                {"pile_tag": "A1", "northing": 10.0, "easting": 5.0, "status": "accepted", "block": "B1",
                 "embedment": 10.0, "design_embedment": 10.0},
                {"pile_tag": "A2", "northing": 11.0, "easting": 5.0, "status": "pending", "block": None,
                 "embedment": None, "design_embedment": None},
            ]
        )
        figure = create_site_map(frame)
        assert [trace.name for trace in figure.data] == ["Accepted (1)", "Pending (1)"]
        assert figure.layout.yaxis.scaleanchor == "x"
        assert not create_site_map(frame.iloc[0:0]).data

    def test_empty_data_gives_placeholder(self):
        figure = create_machine_status_chart(pd.DataFrame())
        assert not figure.data
        assert figure.layout.annotations
