import io

import pytest
from openpyxl import Workbook, load_workbook

from app.data_import import (
    TOTAL_KEY,
    ImportFormatError,
    build_data_template,
    build_dataset,
    classify_value,
    combination_key,
    combination_label,
    generate_disagg_combinations,
    import_data_template,
    infer_column_type,
    page_rows,
    read_table,
    template_filename,
    workbook_bytes,
)

SEX = {"id": 1, "name": "Sex", "values": [{"id": 12, "value_label": "Male", "sort_order": 1}, {"id": 11, "value_label": "Female", "sort_order": 0}]}
AGE = {"id": 2, "name": "Age group", "values": [{"id": 21, "value_label": "0-17", "sort_order": 0}, {"id": 22, "value_label": "18+", "sort_order": 1}]}
INDICATOR = {"id": 7, "name": "Learners enrolled", "unit_symbol": "people"}
PERIOD = {"id": 42, "period_key": "Q1-2026"}


def test_combinations_are_cartesian_and_sorted():
    combos = generate_disagg_combinations([SEX, AGE])
    assert [combination_key(c) for c in combos] == ["11|21", "11|22", "12|21", "12|22"]
    assert combination_label(combos[0]) == "Female / 0-17"
    assert generate_disagg_combinations([]) == [[]]
    assert combination_key([]) == TOTAL_KEY
    assert combination_label([]) == "Total"


def test_template_filename():
    assert template_filename("Learners enrolled", "Q1-2026") == "Learners_enrolled_Q1-2026.xlsx"
    assert template_filename("Learners enrolled", "Q1-2026", empty=True) == "Learners_enrolled_Q1-2026_template.xlsx"


def test_template_prefills_one_row_per_combination():
    values = {"11": {"value": "14", "is_estimated": True, "notes": "estimate from roster"}}
    wb = load_workbook(io.BytesIO(workbook_bytes(build_data_template(INDICATOR, PERIOD, [SEX], values))))
    ws = wb["Learners enrolled"]
    assert [c.value for c in ws[1]] == ["Sex", "Value (people)", "Estimated", "Notes"]
    assert [c.value for c in ws[2]] == ["Female", 14, "Yes", "estimate from roster"]
    assert ws["A3"].value == "Male"
    meta = wb["_meta"]
    assert meta.sheet_state == "hidden"
    assert {row[0].value: row[1].value for row in meta.iter_rows()}["periodId"] == "42"


def test_filled_template_imports_back_by_labels():
    wb = build_data_template(INDICATOR, PERIOD, [SEX])
    ws = wb["Learners enrolled"]
    ws["B2"] = 10
    ws["B3"] = 12.5
    ws["C3"] = "yes"
    ws["D3"] = "from register"
    result = import_data_template(io.BytesIO(workbook_bytes(wb)))
    assert result["success"] is True
    assert result["indicator_id"] == "7"
    assert result["period_id"] == "42"
    assert result["values"] == {
        "Female": {"value": "10", "is_estimated": False, "notes": ""},
        "Male": {"value": "12.5", "is_estimated": True, "notes": "from register"},
    }


def test_total_only_template_imports_total_key():
    wb = build_data_template(INDICATOR, PERIOD, [])
    wb["Learners enrolled"]["A2"] = 30
    result = import_data_template(io.BytesIO(workbook_bytes(wb)))
    assert result["values"] == {TOTAL_KEY: {"value": "30", "is_estimated": False, "notes": ""}}


@pytest.mark.parametrize("stored", [0, 0.0, "0"])
def test_zero_total_survives_template_round_trip(stored):
    values = {TOTAL_KEY: {"value": stored, "is_estimated": False, "notes": "none reached"}}
    wb = load_workbook(io.BytesIO(workbook_bytes(build_data_template(INDICATOR, PERIOD, [], values))))
    ws = wb["Learners enrolled"]
    assert ws["A2"].value == 0
    assert ws["A2"].data_type == "n"
    result = import_data_template(io.BytesIO(workbook_bytes(wb)))
    assert result["success"] is True
    assert result["values"] == {TOTAL_KEY: {"value": "0", "is_estimated": False, "notes": "none reached"}}


def test_empty_template_has_requested_rows_and_no_data():
    wb = build_data_template(INDICATOR, PERIOD, [SEX], row_count=5)
    assert wb["Learners enrolled"].max_row == 6
    result = import_data_template(io.BytesIO(workbook_bytes(wb)))
    assert result["success"] is False
    assert result["errors"] == ["No data found in the file"]


def test_foreign_workbook_is_rejected():
    wb = Workbook()
    wb.active["A1"] = "anything"
    result = import_data_template(io.BytesIO(workbook_bytes(wb)))
    assert result["success"] is False
    assert "not created from our system" in result["errors"][0]


def test_garbage_bytes_are_reported_not_raised():
    result = import_data_template(io.BytesIO(b"not a workbook"))
    assert result["success"] is False
    assert result["errors"]


@pytest.mark.parametrize(
    "value, kind",
    [(None, None), ("", None), (True, "boolean"), ("Yes", "boolean"), (3, "number"), ("1,200.5", "number"),
     ("$1200", "currency"), ("45%", "percentage"), ("2025-01-05", "date"), ("North", "text")],
)
def test_classify_value(value, kind):
    assert classify_value(value) == kind


def test_infer_column_type_requires_agreement():
    assert infer_column_type(["1", "2", None]) == "number"
    assert infer_column_type(["1", "$2"]) == "number"
    assert infer_column_type(["1", "n/a"]) == "text"
    assert infer_column_type([None, ""]) == "text"


def test_build_dataset_from_csv_normalizes_cells():
    content = (
        "District,Households,Coverage,Budget,Active,Surveyed\n"
        "North,1200,45%,$1200,yes,2025-01-05\n"
        "South,800,50.5%,$900,no,2025-02-01\n"
    ).encode("utf-8")
    dataset = build_dataset("survey.csv", content)
    assert [(c["name"], c["type"]) for c in dataset["columns"]] == [
        ("District", "text"),
        ("Households", "number"),
        ("Coverage", "percentage"),
        ("Budget", "currency"),
        ("Active", "boolean"),
        ("Surveyed", "date"),
    ]
    assert dataset["rows"][0] == {
        "District": "North",
        "Households": 1200,
        "Coverage": 45,
        "Budget": 1200,
        "Active": True,
        "Surveyed": "2025-01-05",
    }
    assert dataset["rows"][1]["Coverage"] == 50.5


def test_build_dataset_from_xlsx_pads_short_rows():
    wb = Workbook()
    ws = wb.active
    ws.append(["Name", "Score"])
    ws.append(["Ana", 3])
    ws.append(["Ben"])
    dataset = build_dataset("scores.xlsx", workbook_bytes(wb))
    assert dataset["columns"] == [{"name": "Name", "type": "text"}, {"name": "Score", "type": "number"}]
    assert dataset["rows"] == [{"Name": "Ana", "Score": 3}, {"Name": "Ben", "Score": None}]


def test_read_table_dedupes_headers():
    headers, rows = read_table("dup.csv", b"A,A,,B\n1,2,3,4\n5,6,7,8\n")
    assert headers == ["A", "A (2)", "Column 3", "B"]
    assert rows[0] == ["1", "2", "3", "4"]


def test_read_table_rejects_bad_input():
    with pytest.raises(ImportFormatError):
        read_table("notes.pdf", b"%PDF")
    with pytest.raises(ImportFormatError):
        read_table("empty.csv", b"\n\n")
    with pytest.raises(ImportFormatError):
        read_table("broken.xlsx", b"not a zip")


def test_page_rows_clamps_page_and_limit():
    rows = list(range(12))
    assert page_rows(rows, 2, 5) == {"data": [5, 6, 7, 8, 9], "total": 12, "page": 2, "limit": 5}
    assert page_rows(rows, 0, 0)["data"] == [0]
    assert page_rows(rows, 9, 5)["data"] == []
