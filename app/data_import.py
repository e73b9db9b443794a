"""Spreadsheet import/export: dataset uploads and indicator data-collection templates."""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import re
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation

log = logging.getLogger(__name__)

TOTAL_KEY = "total"
META_SHEET_NAMES = ("_meta", "_metadata")
MAX_IMPORT_ROWS = 50_000
TYPE_SAMPLE_SIZE = 200
COLUMN_TYPES = ["number", "currency", "percentage", "date", "boolean", "text"]

_THIN_BLUE = Side(style="thin", color="2F5496")
_THIN_GREY = Side(style="thin", color="D9D9D9")
HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)
HEADER_FILL = PatternFill(fill_type="solid", start_color="4472C4", end_color="4472C4")
HEADER_BORDER = Border(top=_THIN_BLUE, bottom=_THIN_BLUE, left=_THIN_BLUE, right=_THIN_BLUE)
DATA_BORDER = Border(top=_THIN_GREY, bottom=_THIN_GREY, left=_THIN_GREY, right=_THIN_GREY)
ALT_FILL = PatternFill(fill_type="solid", start_color="F2F2F2", end_color="F2F2F2")


class ImportFormatError(ValueError):
    """Raised when an uploaded file cannot be read as a table."""


# -- disaggregation grid ---------------------------------------------------


def generate_disagg_combinations(definitions: Sequence[Mapping[str, Any]]) -> List[List[Mapping[str, Any]]]:
    """Cartesian product of every definition's values, each definition ordered by sort order."""
    combos: List[List[Mapping[str, Any]]] = [[]]
    for definition in definitions:
        values = sorted(definition.get("values") or [], key=lambda v: int(v.get("sort_order") or 0))
        combos = [combo + [value] for combo in combos for value in values]
    return combos


def combination_key(combination: Sequence[Mapping[str, Any]]) -> str:
    if not combination:
        return TOTAL_KEY
    return "|".join(str(v["id"]) for v in combination)


def combination_label(combination: Sequence[Mapping[str, Any]]) -> str:
    if not combination:
        return "Total"
    return " / ".join(str(v.get("value_label") or "") for v in combination)


# -- data-collection template ----------------------------------------------


def safe_sheet_name(name: str) -> str:
    return re.sub(r"[\\/*?\[\]:]", "_", (name or "Data")[:28]) or "Data"


def template_filename(indicator_name: str, period_key: str, empty: bool = False) -> str:
    safe = re.sub(r"[^a-z0-9]", "_", indicator_name or "", flags=re.IGNORECASE)
    suffix = "_template" if empty else ""
    return f"{safe}_{period_key}{suffix}.xlsx"


def _column_width(header: str) -> int:
    if "Notes" in header:
        return 40
    if "Estimated" in header:
        return 12
    if "Value" in header:
        return 18
    return 22


def _style_row(ws, row_idx: int, width: int, alt: bool) -> None:
    for col in range(1, width + 1):
        cell = ws.cell(row=row_idx, column=col)
        cell.border = DATA_BORDER
        cell.alignment = Alignment(vertical="center")
        if alt:
            cell.fill = ALT_FILL


def build_data_template(
    indicator: Mapping[str, Any],
    period: Mapping[str, Any],
    definitions: Sequence[Mapping[str, Any]],
    values: Optional[Mapping[str, Mapping[str, Any]]] = None,
    row_count: Optional[int] = None,
) -> Workbook:
    """Build a data-entry workbook for one indicator period.

    With ``row_count`` set the sheet holds that many blank rows (the empty template); otherwise it
    is pre-filled with one row per disaggregation combination, or a single total row followed by
    20 blank rows when the indicator is not disaggregated.
    """
    values = values or {}
    unit = str(indicator.get("unit_symbol") or indicator.get("unit_name") or "")
    value_header = "Value" + (f" ({unit})" if unit else "")
    headers = [str(d.get("name") or "") for d in definitions] + [value_header, "Estimated", "Notes"]

    wb = Workbook()
    ws = wb.active
    ws.title = safe_sheet_name(str(indicator.get("name") or ""))
    for col, header in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.border = HEADER_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center")
        ws.column_dimensions[get_column_letter(col)].width = _column_width(header)
    ws.row_dimensions[1].height = 28

    row_idx = 2
    if row_count is not None:
        for i in range(row_count):
            _style_row(ws, row_idx, len(headers), alt=i % 2 == 1)
            row_idx += 1
    elif not definitions:
        current = values.get(TOTAL_KEY) or {}
        raw_value = current.get("value")
        number = _to_float(raw_value)
        ws.cell(row=row_idx, column=1, value=number if number is not None else (raw_value or ""))
        ws.cell(row=row_idx, column=2, value="Yes" if current.get("is_estimated") else "")
        ws.cell(row=row_idx, column=3, value=current.get("notes") or "")
        _style_row(ws, row_idx, len(headers), alt=False)
        row_idx += 1
        for i in range(20):
            _style_row(ws, row_idx, len(headers), alt=i % 2 == 0)
            row_idx += 1
    else:
        for idx, combo in enumerate(generate_disagg_combinations(definitions)):
            current = values.get(combination_key(combo)) or {}
            for col, value in enumerate(combo, start=1):
                ws.cell(row=row_idx, column=col, value=str(value.get("value_label") or ""))
            raw_value = current.get("value")
            number = _to_float(raw_value)
            ws.cell(row=row_idx, column=len(combo) + 1, value=number if number is not None else (raw_value or ""))
            ws.cell(row=row_idx, column=len(combo) + 2, value="Yes" if current.get("is_estimated") else "")
            ws.cell(row=row_idx, column=len(combo) + 3, value=current.get("notes") or "")
            _style_row(ws, row_idx, len(headers), alt=idx % 2 == 1)
            row_idx += 1

    last_row = (row_count + 1) if row_count is not None else 1000
    for col_idx, definition in enumerate(definitions, start=1):
        labels = [str(v.get("value_label") or "") for v in definition.get("values") or []]
        letter = get_column_letter(col_idx)
        dv = DataValidation(
            type="list",
            formula1='"' + ",".join(labels) + '"',
            allow_blank=True,
            showErrorMessage=True,
            errorTitle=f"Invalid {definition.get('name') or ''}"[:32],
            error=f"Select: {', '.join(labels)}"[:255],
        )
        dv.add(f"{letter}2:{letter}{last_row}")
        ws.add_data_validation(dv)
    estimated_letter = get_column_letter(len(definitions) + 2)
    estimated_dv = DataValidation(type="list", formula1='"Yes,No"', allow_blank=True)
    estimated_dv.add(f"{estimated_letter}2:{estimated_letter}{last_row}")
    ws.add_data_validation(estimated_dv)
    ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    meta = wb.create_sheet("_meta")
    meta_rows: List[Tuple[str, str]] = [
        ("indicatorId", str(indicator.get("id") or "")),
        ("indicatorName", str(indicator.get("name") or "")),
        ("periodId", str(period.get("id") or "")),
        ("periodKey", str(period.get("period_key") or "")),
        ("disaggregationCount", str(len(definitions))),
    ]
    meta_rows += [(f"disagg_{i}_id", str(d.get("id") or "")) for i, d in enumerate(definitions)]
    meta_rows += [(f"disagg_{i}_name", str(d.get("name") or "")) for i, d in enumerate(definitions)]
    for row in meta_rows:
        meta.append(list(row))
    meta.sheet_state = "hidden"
    return wb


def workbook_bytes(wb: Workbook) -> bytes:
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def import_data_template(stream: BinaryIO) -> Dict[str, Any]:
    """Read a filled data-collection template back into submission values.

    Returns ``{"success", "values", "rows", "errors", "indicator_id", "period_id"}``. Values are
    keyed by ``total`` for undisaggregated templates, otherwise by the row's labels joined with
    ``|``.
    """
    result: Dict[str, Any] = {"success": False, "values": {}, "rows": [], "errors": []}
    try:
        wb = load_workbook(stream, data_only=True, read_only=True)
    except Exception as exc:
        log.warning("template workbook could not be opened: %s", exc)
        result["errors"].append(str(exc) or "Failed to parse Excel file")
        return result

    try:
        meta_name = next((n for n in wb.sheetnames if n in META_SHEET_NAMES), None)
        if not meta_name:
            result["errors"].append("This file was not created from our system. Please use Export Template first.")
            return result

        metadata: Dict[str, str] = {}
        for row in wb[meta_name].iter_rows(values_only=True):
            if row and len(row) >= 2 and row[0] is not None:
                metadata[str(row[0])] = _cell_text(row[1])
        result["indicator_id"] = metadata.get("indicatorId") or None
        result["period_id"] = metadata.get("periodId") or None
        if not result["indicator_id"] or not result["period_id"]:
            result["errors"].append("Invalid template: Missing indicator or period information")
            return result

        data_name = next((n for n in wb.sheetnames if not n.startswith("_")), None)
        if not data_name:
            result["errors"].append("No data sheet found")
            return result

        try:
            disagg_count = int(metadata.get("disaggregationCount") or 0)
        except ValueError:
            disagg_count = 0

        sheet_rows = list(wb[data_name].iter_rows(values_only=True))
        headers = [_cell_text(v) for v in (sheet_rows[0] if sheet_rows else ())]
        for raw in sheet_rows[1:]:
            cells = [_cell_text(v) for v in raw]
            if not any(cells):
                continue
            cells += [""] * (disagg_count + 3 - len(cells))
            result["rows"].append({headers[i] if i < len(headers) and headers[i] else f"col_{i}": cells[i] for i in range(len(cells))})
            labels = cells[:disagg_count]
            value, estimated, notes = cells[disagg_count:disagg_count + 3]
            if not value or not all(labels):
                continue
            key = "|".join(labels) if disagg_count else TOTAL_KEY
            result["values"][key] = {"value": value, "is_estimated": estimated.lower() == "yes", "notes": notes}
    finally:
        wb.close()

    if not result["values"]:
        result["errors"].append("No data found in the file")
        return result
    result["success"] = True
    return result


# -- dataset import ----------------------------------------------------------


_CURRENCY_RE = re.compile(r"^-?[$€£¥₦]\s?-?[\d,]+(\.\d+)?$")
_PERCENT_RE = re.compile(r"^-?[\d,]+(\.\d+)?\s?%$")
_NUMBER_RE = re.compile(r"^-?[\d,]*\.?\d+([eE][-+]?\d+)?$")
_BOOLEAN_VALUES = {"true", "false", "yes", "no"}


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text.replace(",", ""))
    except ValueError:
        return None


def _looks_like_date(text: str) -> bool:
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            dt.datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False


def classify_value(value: Any) -> Optional[str]:
    """Return the column type a single cell suggests, or ``None`` for blanks."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (dt.date, dt.datetime)):
        return "date"
    text = str(value).strip()
    if not text:
        return None
    if text.lower() in _BOOLEAN_VALUES:
        return "boolean"
    if _CURRENCY_RE.match(text):
        return "currency"
    if _PERCENT_RE.match(text):
        return "percentage"
    if _NUMBER_RE.match(text):
        return "number"
    if _looks_like_date(text):
        return "date"
    return "text"


def infer_column_type(values: Sequence[Any]) -> str:
    """A column takes a type only when every non-blank sampled cell agrees; ``number`` absorbs
    currency/percentage mixes, anything else falls back to ``text``."""
    kinds = {k for k in (classify_value(v) for v in values[:TYPE_SAMPLE_SIZE]) if k}
    if not kinds:
        return "text"
    if len(kinds) == 1:
        return kinds.pop()
    if kinds <= {"number", "currency", "percentage"}:
        return "number"
    return "text"


def normalize_cell(value: Any, column_type: str) -> Any:
    if value is None:
        return None
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if column_type in {"number", "currency", "percentage"}:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        text = re.sub(r"[$€£¥₦,%\s]", "", str(value))
        try:
            number = float(text)
        except ValueError:
            return str(value).strip() or None
        return int(number) if number.is_integer() else number
    if column_type == "boolean":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"true", "yes"}
    text = str(value).strip()
    return text or None


def _dedupe_headers(raw_headers: Sequence[Any]) -> List[str]:
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for idx, raw in enumerate(raw_headers):
        name = _cell_text(raw) or f"Column {idx + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name} ({seen[name]})"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def read_table(filename: str, content: bytes) -> Tuple[List[str], List[List[Any]]]:
    """Read a CSV or XLSX upload into ``(headers, rows)``."""
    lower = (filename or "").lower()
    if lower.endswith((".xlsx", ".xlsm")):
        try:
            wb = load_workbook(io.BytesIO(content), data_only=True, read_only=True)
        except Exception as exc:
            raise ImportFormatError(f"Could not read workbook: {exc}") from exc
        try:
            sheet = next((wb[n] for n in wb.sheetnames if not n.startswith("_")), None)
            if sheet is None:
                raise ImportFormatError("Workbook has no data sheet")
            table = [list(r) for r in sheet.iter_rows(values_only=True)]
        finally:
            wb.close()
    elif lower.endswith((".csv", ".txt")):
        text = content.decode("utf-8-sig", errors="ignore")
        try:
            dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
        except csv.Error:
            dialect = csv.excel
        table = [list(r) for r in csv.reader(io.StringIO(text), dialect)]
    else:
        raise ImportFormatError("Unsupported file type. Upload a .csv or .xlsx file.")

    table = [row for row in table if any(_cell_text(v) for v in row)]
    if not table:
        raise ImportFormatError("The file is empty")
    headers = _dedupe_headers(table[0])
    rows = table[1:]
    if len(rows) > MAX_IMPORT_ROWS:
        raise ImportFormatError(f"Too many rows ({len(rows)}); the limit is {MAX_IMPORT_ROWS}")
    return headers, rows


def build_dataset(filename: str, content: bytes) -> Dict[str, Any]:
    """Parse an upload into ``{"columns": [{"name", "type"}], "rows": [dict, ...]}``."""
    headers, raw_rows = read_table(filename, content)
    width = len(headers)
    padded = [list(r[:width]) + [None] * (width - len(r[:width])) for r in raw_rows]
    columns = []
    for idx, name in enumerate(headers):
        columns.append({"name": name, "type": infer_column_type([r[idx] for r in padded])})
    rows = [{col["name"]: normalize_cell(r[idx], col["type"]) for idx, col in enumerate(columns)} for r in padded]
    return {"columns": columns, "rows": rows}


def page_rows(rows: Sequence[Any], page: int, limit: int) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(5000, limit))
    start = (page - 1) * limit
    return {"data": list(rows[start:start + limit]), "total": len(rows), "page": page, "limit": limit}
