"""Performance Indicator Tracking Table (PITT): data assembly and Excel layout.

``assemble_pitt`` turns a project's results framework, indicators, periods and reported
actuals into the nested PITT structure. ``build_pitt_workbook`` lays that structure out as the
reference spreadsheet: one wide row per indicator, a block of quarter/annual columns per fiscal
year and a cumulative block at the end.
"""

from __future__ import annotations

import datetime as dt
import io
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from app.indicators import aggregate_values, deviation_percent, to_number
from app.periods import fiscal_year_quarter, parse_period_date

TITLE = "Performance Indicator Tracking Table (PITT)"
QUARTER_LABELS = ["Q1 (Oct-Dec)", "Q2 (Jan-Mar)", "Q3 (Apr-Jun)", "Q4 (Jul-Sep)"]
LEFT_COLS = 5  # blank, Objectives, Indicator, Frequency, Baseline
COLS_PER_YEAR = 4 * 2 + 3  # quarter Target/Actual pairs + Annual Target/Actual/Deviate Comments
CUMULATIVE_COLS = 3
UNASSIGNED_OBJECTIVE_TITLE = "Unassigned Indicators"


class PittDataError(ValueError):
    """Raised when PITT input rows are inconsistent."""


def _border(rgb: str) -> Border:
    side = Side(style="thin", color=rgb)
    return Border(top=side, bottom=side, left=side, right=side)


def _style(font: Font, fill: str, alignment: Alignment, border_rgb: str) -> Dict[str, Any]:
    return {
        "font": font,
        "fill": PatternFill(fill_type="solid", start_color=fill, end_color=fill),
        "alignment": alignment,
        "border": _border(border_rgb),
    }


_CENTER = Alignment(horizontal="center", vertical="center", wrap_text=True)

TITLE_STYLE = _style(Font(bold=True, color="FFFFFF", size=14), "2F5496", _CENTER, "2F5496")
FY_HEADER_STYLE = _style(Font(bold=True, color="FFFFFF", size=11), "4472C4", _CENTER, "2F5496")
SUB_HEADER_STYLE = _style(Font(bold=True, color="2F5496", size=10), "D6DCE4", _CENTER, "2F5496")
METRIC_HEADER_STYLE = _style(Font(bold=True, color="2F5496", size=10), "FFFFFF", _CENTER, "2F5496")
OBJECTIVE_STYLE = _style(
    Font(bold=True, color="5B3A29", size=11),
    "FCE4D6",
    Alignment(vertical="center", wrap_text=True),
    "BD8B6F",
)
DATA_STYLE = _style(Font(color="000000", size=10), "FFFFFF", Alignment(vertical="center", wrap_text=True), "BDC3C7")
NUMBER_STYLE = dict(DATA_STYLE, alignment=Alignment(horizontal="right", vertical="center"))
LABEL_STYLE = dict(DATA_STYLE, font=Font(size=10, bold=False))


def _rollup(values: Sequence[Optional[float]], rule: str) -> Optional[float]:
    known = [v for v in values if v is not None]
    if not known:
        return None
    if rule == "avg":
        return round(sum(known) / len(known), 2)
    if rule == "latest":
        return known[-1]
    return round(float(sum(known)), 2)


def _totals(rows: Sequence[Mapping[str, Any]], rule: str) -> Dict[str, Optional[float]]:
    target = _rollup([r.get("target") for r in rows], rule)
    actual = _rollup([r.get("actual") for r in rows], rule)
    return {"target": target, "actual": actual, "deviation_percent": deviation_percent(target, actual)}


def indicator_period_rows(
    indicator: Mapping[str, Any],
    periods: Iterable[Mapping[str, Any]],
    reported: Mapping[Any, Sequence[object]],
    narratives: Mapping[Any, str],
) -> List[Dict[str, Any]]:
    """Build the per-period rows of one indicator, ordered by period end date."""
    rule = str(indicator.get("aggregation_rule") or "sum")
    formula = str(indicator.get("formula_expr") or "")
    rows: List[Dict[str, Any]] = []
    for period in periods:
        end = parse_period_date(period.get("end_date"))
        if end is None:
            raise PittDataError(f"Period {period.get('period_key') or period.get('id')} has no end date")
        year, quarter = fiscal_year_quarter(end)
        target = to_number(period.get("target_value"))
        actual = aggregate_values(reported.get(period["id"], ()), rule, formula)
        if actual is not None:
            actual = round(actual, 2)
        rows.append(
            {
                "period_id": period["id"],
                "period_key": period.get("period_key") or "",
                "start_date": period.get("start_date") or "",
                "end_date": end.isoformat(),
                "year": year,
                "quarter": quarter,
                "target": target,
                "actual": actual,
                "deviation_percent": deviation_percent(target, actual),
                "narrative": narratives.get(period["id"], ""),
            }
        )
    rows.sort(key=lambda r: (r["end_date"], r["period_key"]))
    return rows


def assemble_pitt(
    project: Mapping[str, Any],
    nodes: Sequence[Mapping[str, Any]],
    indicators: Sequence[Mapping[str, Any]],
    periods_by_indicator: Mapping[Any, Sequence[Mapping[str, Any]]],
    reported: Mapping[Any, Sequence[object]],
    narratives: Optional[Mapping[Any, str]] = None,
) -> Dict[str, Any]:
    """Assemble the PITT structure for one project.

    ``reported`` maps a period id to the counted values for that period in reporting order;
    ``narratives`` maps a period id to the latest narrative text. Indicators without a results
    node are collected under an extra "Unassigned Indicators" objective at the end.
    """
    narratives = narratives or {}
    years: set = set()
    by_node: Dict[Any, List[Dict[str, Any]]] = {}

    for ind in indicators:
        rule = str(ind.get("aggregation_rule") or "sum")
        period_rows = indicator_period_rows(ind, periods_by_indicator.get(ind["id"], ()), reported, narratives)
        annual: List[Dict[str, Any]] = []
        for year in sorted({r["year"] for r in period_rows}):
            years.add(year)
            totals = _totals([r for r in period_rows if r["year"] == year], rule)
            annual.append(dict(totals, year=year))
        by_node.setdefault(ind.get("results_node_id"), []).append(
            {
                "id": ind["id"],
                "name": ind.get("name") or "",
                "definition": ind.get("definition") or None,
                "unit": ind.get("unit_name") or None,
                "unit_symbol": ind.get("unit_symbol") or None,
                "frequency": ind.get("frequency") or "",
                "baseline": to_number(ind.get("baseline_value")),
                "baseline_date": ind.get("baseline_date") or None,
                "periods": period_rows,
                "annual_totals_by_year": annual,
                "life_of_project": _totals(period_rows, rule),
            }
        )

    objectives: List[Dict[str, Any]] = []
    for node in sorted(nodes, key=lambda n: (int(n.get("sort_order") or 0), str(n.get("title") or ""))):
        objectives.append(
            {
                "id": node["id"],
                "title": node.get("title") or "",
                "description": node.get("description") or None,
                "sort_order": int(node.get("sort_order") or 0),
                "indicators": by_node.pop(node["id"], []),
            }
        )
    leftovers = [ind for group in by_node.values() for ind in group]
    if leftovers:
        objectives.append(
            {
                "id": None,
                "title": UNASSIGNED_OBJECTIVE_TITLE,
                "description": None,
                "sort_order": len(objectives) + 1,
                "indicators": leftovers,
            }
        )

    return {
        "project": {"id": project["id"], "name": project.get("name") or ""},
        "years": sorted(years),
        "objectives": objectives,
    }


def _percent_comment(value: Optional[float]) -> str:
    if value is None:
        return ""
    text = f"{float(value) + 0.0:f}".rstrip("0").rstrip(".")
    return f"{text}%"


def _blank(value: Any) -> Any:
    return "" if value is None else value


def pitt_rows(data: Mapping[str, Any], today: Optional[dt.date] = None) -> List[List[tuple]]:
    """Lay the PITT out as rows of ``(value, style)`` cells, before any workbook exists."""
    years = list(data.get("years") or []) or [(today or dt.date.today()).year]
    total_cols = LEFT_COLS + len(years) * COLS_PER_YEAR + CUMULATIVE_COLS
    rows: List[List[tuple]] = []

    rows.append([(TITLE if i == 0 else "", TITLE_STYLE) for i in range(total_cols)])
    project_name = (data.get("project") or {}).get("name") or ""
    rows.append([(project_name, LABEL_STYLE) if i == 1 else ("", DATA_STYLE) for i in range(total_cols)])

    header = [("", FY_HEADER_STYLE), ("Project Objectives / Results", FY_HEADER_STYLE), ("Indicator", FY_HEADER_STYLE),
              ("Data Collection Frequency", FY_HEADER_STYLE), ("Baseline", FY_HEADER_STYLE)]
    for year in years:
        header.append((f"FY {year}", FY_HEADER_STYLE))
        header.extend([("", FY_HEADER_STYLE)] * (COLS_PER_YEAR - 1))
    header.append(("Cumulative Totals\n(End of Project)", FY_HEADER_STYLE))
    header.extend([("", FY_HEADER_STYLE)] * (CUMULATIVE_COLS - 1))
    rows.append(header)

    sub = [("", SUB_HEADER_STYLE)] * LEFT_COLS
    for year in years:
        for index, label in enumerate(QUARTER_LABELS):
            text = f"FY {year} {label}" if index == 0 else label
            sub.extend([(text, SUB_HEADER_STYLE), ("", SUB_HEADER_STYLE)])
        sub.extend([("Annual Totals", SUB_HEADER_STYLE), ("", SUB_HEADER_STYLE), ("", SUB_HEADER_STYLE)])
    sub.extend([("Cumulative Totals", SUB_HEADER_STYLE), ("", SUB_HEADER_STYLE), ("", SUB_HEADER_STYLE)])
    rows.append(sub)

    metrics = [("", METRIC_HEADER_STYLE)] * LEFT_COLS
    triple = [("Target", METRIC_HEADER_STYLE), ("Actual", METRIC_HEADER_STYLE), ("Deviate Comments", METRIC_HEADER_STYLE)]
    for _year in years:
        for _q in range(4):
            metrics.extend([("Target", METRIC_HEADER_STYLE), ("Actual", METRIC_HEADER_STYLE)])
        metrics.extend(triple)
    metrics.extend(triple)
    rows.append(metrics)

    for objective in data.get("objectives") or []:
        rows.append([(objective.get("title") or "", OBJECTIVE_STYLE) if i == 1 else ("", OBJECTIVE_STYLE) for i in range(total_cols)])
        for ind in objective.get("indicators") or []:
            name = ind.get("name") or ""
            label = f"{name}\n{ind['definition']}" if ind.get("definition") else name
            row = [
                ("", DATA_STYLE),
                ("", DATA_STYLE),
                (label, LABEL_STYLE),
                (ind.get("frequency") or "", DATA_STYLE),
                (_blank(ind.get("baseline")), NUMBER_STYLE),
            ]
            by_quarter: Dict[tuple, Mapping[str, Any]] = {}
            for period in ind.get("periods") or []:
                if period.get("quarter"):
                    by_quarter[(period["year"], period["quarter"])] = period
            annual_by_year = {a["year"]: a for a in ind.get("annual_totals_by_year") or []}
            for year in years:
                for quarter in range(1, 5):
                    period = by_quarter.get((year, quarter)) or {}
                    row.append((_blank(period.get("target")), NUMBER_STYLE))
                    row.append((_blank(period.get("actual")), NUMBER_STYLE))
                annual = annual_by_year.get(year) or {}
                row.append((_blank(annual.get("target")), NUMBER_STYLE))
                row.append((_blank(annual.get("actual")), NUMBER_STYLE))
                row.append((_percent_comment(annual.get("deviation_percent")), DATA_STYLE))
            lop = ind.get("life_of_project") or {}
            row.append((_blank(lop.get("target")), NUMBER_STYLE))
            row.append((_blank(lop.get("actual")), NUMBER_STYLE))
            row.append((_percent_comment(lop.get("deviation_percent")), DATA_STYLE))
            rows.append(row)
    return rows


def pitt_merges(year_count: int) -> List[str]:
    """Merged ranges: title across the sheet, then each FY block and the cumulative block in row 3."""
    year_count = year_count or 1
    total_cols = LEFT_COLS + year_count * COLS_PER_YEAR + CUMULATIVE_COLS
    merges = [f"A1:{get_column_letter(total_cols)}1"]
    col = LEFT_COLS + 1
    for _ in range(year_count):
        merges.append(f"{get_column_letter(col)}3:{get_column_letter(col + COLS_PER_YEAR - 1)}3")
        col += COLS_PER_YEAR
    merges.append(f"{get_column_letter(col)}3:{get_column_letter(col + CUMULATIVE_COLS - 1)}3")
    return merges


def build_pitt_workbook(data: Mapping[str, Any], today: Optional[dt.date] = None) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = "PITT"
    rows = pitt_rows(data, today=today)
    for r, row in enumerate(rows, start=1):
        for c, (value, style) in enumerate(row, start=1):
            cell = ws.cell(row=r, column=c, value=value)
            cell.font = style["font"]
            cell.fill = style["fill"]
            cell.alignment = style["alignment"]
            cell.border = style["border"]

    for ref in pitt_merges(len(data.get("years") or [])):
        ws.merge_cells(ref)

    widths = [2, 38, 42, 12, 10]
    total_cols = len(rows[0])
    for idx in range(1, total_cols + 1):
        ws.column_dimensions[get_column_letter(idx)].width = widths[idx - 1] if idx <= len(widths) else 10
    ws.freeze_panes = "D6"
    return wb


def pitt_filename(project_name: str, today: Optional[dt.date] = None) -> str:
    safe = re.sub(r"[^a-z0-9]", "_", project_name or "", flags=re.IGNORECASE)
    return f"PITT_{safe}_{(today or dt.date.today()).isoformat()}.xlsx"


def pitt_workbook_bytes(data: Mapping[str, Any], today: Optional[dt.date] = None) -> bytes:
    buf = io.BytesIO()
    build_pitt_workbook(data, today=today).save(buf)
    return buf.getvalue()
