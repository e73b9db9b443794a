import datetime as dt
import io

import pytest
from openpyxl import load_workbook

from app.pitt import (
    TITLE,
    UNASSIGNED_OBJECTIVE_TITLE,
    PittDataError,
    assemble_pitt,
    pitt_filename,
    pitt_merges,
    pitt_rows,
    pitt_workbook_bytes,
)

PROJECT = {"id": 1, "name": "Water Access"}
NODES = [
    {"id": 10, "title": "Objective 2: Hygiene", "sort_order": 2},
    {"id": 11, "title": "Objective 1: Access", "sort_order": 1},
]
INDICATORS = [
    {"id": 100, "results_node_id": 11, "name": "People reached", "aggregation_rule": "sum", "frequency": "quarterly", "baseline_value": "0"},
    {"id": 101, "results_node_id": None, "name": "Schools equipped", "aggregation_rule": "latest", "frequency": "quarterly"},
]
PERIODS = {
    100: [
        {"id": 1, "period_key": "Q1-2025", "start_date": "2025-01-01", "end_date": "2025-03-31", "target_value": 50},
        {"id": 2, "period_key": "Q4-2024", "start_date": "2024-10-01", "end_date": "2024-12-31", "target_value": 40},
    ],
    101: [{"id": 3, "period_key": "Q2-2025", "start_date": "2025-04-01", "end_date": "2025-06-30", "target_value": 10}],
}
REPORTED = {1: [20, 25], 2: [40]}


@pytest.fixture
def pitt():
    return assemble_pitt(PROJECT, NODES, INDICATORS, PERIODS, REPORTED, {1: "Rains delayed works"})


def test_objectives_follow_sort_order_with_unassigned_last(pitt):
    titles = [o["title"] for o in pitt["objectives"]]
    assert titles == ["Objective 1: Access", "Objective 2: Hygiene", UNASSIGNED_OBJECTIVE_TITLE]
    assert pitt["objectives"][1]["indicators"] == []
    assert pitt["objectives"][2]["indicators"][0]["name"] == "Schools equipped"
    assert pitt["years"] == [2025]


def test_period_rows_ordered_by_end_date_with_fiscal_quarters(pitt):
    periods = pitt["objectives"][0]["indicators"][0]["periods"]
    assert [(p["period_key"], p["year"], p["quarter"]) for p in periods] == [("Q4-2024", 2025, 1), ("Q1-2025", 2025, 2)]
    assert periods[0]["actual"] == 40.0
    assert periods[0]["deviation_percent"] == 0.0
    assert periods[1]["actual"] == 45.0
    assert periods[1]["deviation_percent"] == -10.0
    assert periods[1]["narrative"] == "Rains delayed works"


def test_annual_and_life_of_project_totals(pitt):
    indicator = pitt["objectives"][0]["indicators"][0]
    assert indicator["annual_totals_by_year"] == [{"year": 2025, "target": 90.0, "actual": 85.0, "deviation_percent": -5.6}]
    assert indicator["life_of_project"] == {"target": 90.0, "actual": 85.0, "deviation_percent": -5.6}
    assert indicator["baseline"] == 0.0


def test_indicator_without_reports_has_no_actual(pitt):
    indicator = pitt["objectives"][2]["indicators"][0]
    assert indicator["periods"][0]["actual"] is None
    assert indicator["life_of_project"] == {"target": 10.0, "actual": None, "deviation_percent": None}


def test_period_without_end_date_is_rejected():
    periods = {100: [{"id": 9, "period_key": "broken", "end_date": None}]}
    with pytest.raises(PittDataError):
        assemble_pitt(PROJECT, NODES, INDICATORS[:1], periods, {})


def test_rows_layout(pitt):
    rows = pitt_rows(pitt)
    assert len(rows) == 10
    assert all(len(row) == 19 for row in rows[:5])
    assert rows[0][0][0] == TITLE
    assert rows[1][1][0] == "Water Access"
    assert rows[2][5][0] == "FY 2025"
    assert rows[5][1][0] == "Objective 1: Access"
    values = [cell[0] for cell in rows[6]]
    assert values[2] == "People reached"
    assert values[5:9] == [40.0, 40.0, 50.0, 45.0]
    assert values[9:13] == ["", "", "", ""]
    assert values[13:16] == [90.0, 85.0, "-5.6%"]
    assert values[16:19] == [90.0, 85.0, "-5.6%"]


def test_quarter_headings_line_up_with_target_columns_across_years():
    periods = {
        100: PERIODS[100] + [
            {"id": 4, "period_key": "Q4-2025", "start_date": "2025-10-01", "end_date": "2025-12-31", "target_value": 60},
        ],
        101: PERIODS[101],
    }
    data = assemble_pitt(PROJECT, NODES, INDICATORS, periods, REPORTED)
    assert data["years"] == [2025, 2026]
    rows = pitt_rows(data)
    assert all(len(row) == 5 + 2 * 11 + 3 for row in rows)
    headings, metrics = rows[3], rows[4]
    labelled = [i for i, (value, _style) in enumerate(headings) if value]
    assert [headings[i][0] for i in labelled] == [
        "FY 2025 Q1 (Oct-Dec)", "Q2 (Jan-Mar)", "Q3 (Apr-Jun)", "Q4 (Jul-Sep)", "Annual Totals",
        "FY 2026 Q1 (Oct-Dec)", "Q2 (Jan-Mar)", "Q3 (Apr-Jun)", "Q4 (Jul-Sep)", "Annual Totals",
        "Cumulative Totals",
    ]
    assert {metrics[i][0] for i in labelled} == {"Target"}
    assert headings[16][0] == "FY 2026 Q1 (Oct-Dec)"
    assert rows[2][16][0] == "FY 2026"


def test_merges_for_one_year():
    assert pitt_merges(1) == ["A1:S1", "F3:P3", "Q3:S3"]
    assert pitt_merges(2)[0] == "A1:AD1"


def test_filename_is_sanitised():
    assert pitt_filename("Water & Sanitation", dt.date(2026, 1, 2)) == "PITT_Water___Sanitation_2026-01-02.xlsx"


def test_workbook_bytes_open_in_openpyxl(pitt):
    wb = load_workbook(io.BytesIO(pitt_workbook_bytes(pitt)))
    ws = wb["PITT"]
    assert ws["A1"].value == TITLE
    assert ws["C7"].value == "People reached"
    assert "A1:S1" in {str(r) for r in ws.merged_cells.ranges}
    assert ws.freeze_panes == "D6"
