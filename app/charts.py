"""Chart data pipeline: aggregate dataset rows and reshape them for a chart type.

Rows are plain dicts as stored for an imported dataset. ``transform_for_chart`` returns chart
points (``{"name", "value"}``, ``{"x", "y", "value"}`` and so on) and ``build_figure`` turns
those points into a Plotly-style figure dict that the browser renders as-is.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

log = logging.getLogger(__name__)

BASIC_CHART_TYPES = ["bar", "line", "pie", "area", "scatter", "composed"]
ADVANCED_CHART_TYPES = ["heatmap", "treemap", "sankey", "scatter3d", "surface"]
CHART_TYPES = BASIC_CHART_TYPES + ADVANCED_CHART_TYPES
AGGREGATION_TYPES = ["sum", "avg", "count", "min", "max", "none"]
CATEGORY_CHART_TYPES = {"bar", "line", "area", "composed", "pie"}
NUMERIC_COLUMN_TYPES = {"number", "currency", "percentage"}
CONFIG_KEYS = (
    "x_axis",
    "y_axis",
    "value",
    "source",
    "target",
    "group_by",
    "aggregation",
    "colorscale",
    "color",
)


def coerce_number(value: Any) -> float:
    """Loose numeric coercion: blanks count as 0, unparseable text becomes NaN."""
    if value is None or value == "" or value is False:
        return 0.0
    if value is True:
        return 1.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan


def label_text(value: Any) -> str:
    if value is None or value == "" or value is False:
        return ""
    if isinstance(value, float):
        if math.isnan(value) or value == 0:
            return ""
        if value.is_integer():
            return str(int(value))
    if isinstance(value, int) and value == 0:
        return ""
    return str(value)


def lookup(row: Mapping[str, Any], key: str) -> Any:
    """Read ``key`` from a row, falling back to its lowercase spelling when the value is blank."""
    if not key:
        return None
    value = row.get(key)
    if value not in (None, "", 0, False):
        return value
    lowered = row.get(key.lower())
    if lowered not in (None, "", 0, False):
        return lowered
    return value if value is not None else lowered


def aggregate_data(rows: Sequence[Mapping[str, Any]], group_by: str, value_field: str, aggregation: str) -> List[Dict[str, Any]]:
    """Group rows by ``group_by`` and reduce ``value_field`` per group.

    Groups keep first-seen order. Each output row is ``{group_by: key, "value": v, "count": n}``
    where ``count`` is the number of rows in the group regardless of value validity.
    """
    if not rows:
        return []
    if aggregation == "none":
        return [dict(row) for row in rows]

    grouped: Dict[str, List[Mapping[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(label_text(row.get(group_by)), []).append(row)

    out: List[Dict[str, Any]] = []
    for key, members in grouped.items():
        values = [v for v in (coerce_number(r.get(value_field)) for r in members) if not math.isnan(v)]
        if aggregation == "sum":
            result = float(sum(values))
        elif aggregation == "avg":
            result = float(sum(values)) / len(values) if values else 0.0
        elif aggregation == "count":
            result = float(len(members))
        elif aggregation == "min":
            result = min(values) if values else 0.0
        elif aggregation == "max":
            result = max(values) if values else 0.0
        else:
            result = values[0] if values else 0.0
        out.append({group_by: key, "value": result, "count": len(members)})
    return out


def _category_points(rows: Sequence[Mapping[str, Any]], group_key: str, value_key: str, label: str) -> List[Dict[str, Any]]:
    points = []
    for row in rows:
        name = label_text(lookup(row, group_key))
        value = coerce_number(lookup(row, value_key))
        if name and not math.isnan(value):
            points.append({label: name, "value": value})
    return points


def transform_for_chart(rows: Sequence[Mapping[str, Any]], chart_type: str, config: Mapping[str, Any]) -> List[Dict[str, Any]]:
    if not rows:
        return []

    processed: List[Dict[str, Any]] = [dict(row) for row in rows]
    group_by = str(config.get("group_by") or "")
    value_field = str(config.get("value") or "")
    aggregation = str(config.get("aggregation") or "")
    aggregated = False
    if group_by and value_field and aggregation and aggregation != "none":
        try:
            processed = aggregate_data(processed, group_by, value_field, aggregation)
            aggregated = True
        except Exception:
            log.exception("chart aggregation failed; using raw rows (group_by=%s, value=%s)", group_by, value_field)

    x_axis = str(config.get("x_axis") or "")
    y_axis = str(config.get("y_axis") or "")
    # Aggregated rows carry their reduced number under "value".
    value_key = "value" if aggregated else (value_field or "value")
    group_key = group_by or x_axis

    if chart_type in CATEGORY_CHART_TYPES:
        return _category_points(processed, group_key, value_key, "name")

    if chart_type == "scatter":
        points = []
        for row in processed:
            x = coerce_number(lookup(row, x_axis))
            y = coerce_number(lookup(row, y_axis))
            value = coerce_number(lookup(row, value_key))
            if not math.isnan(x) and not math.isnan(y):
                points.append({"x": x, "y": y, "value": value})
        return points

    if chart_type == "heatmap":
        cells: Dict[tuple, float] = {}
        for row in processed:
            x = label_text(lookup(row, x_axis))
            y = label_text(lookup(row, y_axis))
            value = coerce_number(lookup(row, value_key))
            if x and y and not math.isnan(value):
                cells[(x, y)] = cells.get((x, y), 0.0) + value
        return [{"x": x, "y": y, "value": value} for (x, y), value in cells.items()]

    if chart_type == "treemap":
        return [
            {"label": point["label"], "parent": "", "value": point["value"]}
            for point in _category_points(processed, group_key, value_key, "label")
        ]

    if chart_type == "sankey":
        source_key = str(config.get("source") or "")
        target_key = str(config.get("target") or "")
        links = []
        for row in processed:
            source = label_text(lookup(row, source_key))
            target = label_text(lookup(row, target_key))
            value = coerce_number(lookup(row, value_key))
            if source and target and not math.isnan(value):
                links.append({"source": source, "target": target, "value": value})
        return links

    if chart_type == "scatter3d":
        points = []
        for row in processed:
            x = coerce_number(lookup(row, x_axis))
            y = coerce_number(lookup(row, y_axis))
            z = coerce_number(lookup(row, value_key))
            if not any(math.isnan(v) for v in (x, y, z)):
                points.append({"x": x, "y": y, "z": z})
        return points

    return processed


def _layout(config: Mapping[str, Any], title: str = "") -> Dict[str, Any]:
    layout: Dict[str, Any] = {"autosize": True, "margin": {"l": 48, "r": 24, "t": 40, "b": 48}}
    if title:
        layout["title"] = {"text": title}
    extra = config.get("layout")
    if isinstance(extra, Mapping):
        layout.update(extra)
    return layout


def build_figure(points: Sequence[Mapping[str, Any]], chart_type: str, config: Mapping[str, Any], title: str = "") -> Dict[str, Any]:
    """Convert chart points into ``{"data": [traces], "layout": {...}}``."""
    color = config.get("color") or "#2F5496"
    colorscale = config.get("colorscale") or "Viridis"
    traces: List[Dict[str, Any]]

    if chart_type in {"bar", "composed"}:
        names = [p.get("name", "") for p in points]
        values = [p.get("value", 0) for p in points]
        traces = [{"type": "bar", "x": names, "y": values, "marker": {"color": color}}]
        if chart_type == "composed":
            traces.append({"type": "scatter", "mode": "lines+markers", "x": names, "y": values})
    elif chart_type in {"line", "area"}:
        trace: Dict[str, Any] = {
            "type": "scatter",
            "mode": "lines+markers",
            "x": [p.get("name", "") for p in points],
            "y": [p.get("value", 0) for p in points],
            "line": {"color": color},
        }
        if chart_type == "area":
            trace["fill"] = "tozeroy"
        traces = [trace]
    elif chart_type == "pie":
        traces = [{"type": "pie", "labels": [p.get("name", "") for p in points], "values": [p.get("value", 0) for p in points]}]
    elif chart_type == "scatter":
        traces = [
            {
                "type": "scatter",
                "mode": "markers",
                "x": [p.get("x", 0) for p in points],
                "y": [p.get("y", 0) for p in points],
                "marker": {"color": color},
            }
        ]
    elif chart_type == "heatmap":
        x_values = sorted({str(p.get("x", "")) for p in points})
        y_values = sorted({str(p.get("y", "")) for p in points})
        x_index = {x: i for i, x in enumerate(x_values)}
        y_index = {y: i for i, y in enumerate(y_values)}
        z = [[0.0 for _ in x_values] for _ in y_values]
        for p in points:
            z[y_index[str(p.get("y", ""))]][x_index[str(p.get("x", ""))]] += float(p.get("value") or 0)
        traces = [{"type": "heatmap", "x": x_values, "y": y_values, "z": z, "colorscale": colorscale}]
    elif chart_type == "treemap":
        traces = [
            {
                "type": "treemap",
                "labels": [p.get("label") or p.get("name") or "" for p in points],
                "parents": [p.get("parent") or "" for p in points],
                "values": [p.get("value") or 0 for p in points],
                "textinfo": "label+value",
            }
        ]
    elif chart_type == "sankey":
        labels: List[str] = []
        index: Dict[str, int] = {}
        for p in points:
            for end in (str(p.get("source") or ""), str(p.get("target") or "")):
                if end not in index:
                    index[end] = len(labels)
                    labels.append(end)
        traces = [
            {
                "type": "sankey",
                "node": {"label": labels, "color": list(config.get("node_colors") or [])},
                "link": {
                    "source": [index[str(p.get("source") or "")] for p in points],
                    "target": [index[str(p.get("target") or "")] for p in points],
                    "value": [p.get("value") or 0 for p in points],
                },
            }
        ]
    elif chart_type == "scatter3d":
        traces = [
            {
                "type": "scatter3d",
                "mode": "markers",
                "x": [p.get("x") or 0 for p in points],
                "y": [p.get("y") or 0 for p in points],
                "z": [p.get("z") or 0 for p in points],
                "marker": {"size": 5, "color": color},
            }
        ]
    elif chart_type == "surface":
        z_rows = [list(p["z"]) if isinstance(p.get("z"), list) else [p.get("value") or 0] for p in points]
        traces = [{"type": "surface", "z": z_rows, "colorscale": colorscale}]
    else:
        raise ValueError(f"Unsupported chart type: {chart_type}")

    return {"data": traces, "layout": _layout(config, title)}


def default_chart_config(columns: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pick sensible axes from a dataset schema (list of ``{"name", "type"}``)."""
    names = [str(c.get("name") or "") for c in columns if c.get("name")]
    if not names:
        return {"aggregation": "sum"}
    numeric = [str(c["name"]) for c in columns if c.get("name") and c.get("type") in NUMERIC_COLUMN_TYPES]
    return {
        "x_axis": names[0],
        "y_axis": names[1] if len(names) > 1 else names[0],
        "value": numeric[0] if numeric else names[0],
        "group_by": names[0],
        "aggregation": "sum",
    }


def sanitize_chart_config(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    for key in CONFIG_KEYS:
        value = (raw or {}).get(key)
        if value not in (None, ""):
            config[key] = str(value).strip()
    if config.get("aggregation") not in AGGREGATION_TYPES:
        config["aggregation"] = "sum"
    return config


def chart_payload(points: Sequence[Mapping[str, Any]], unit: str = "", note: str = "") -> Dict[str, Any]:
    """Labels/values view of category points for the server-rendered bar list."""
    labels = [str(p.get("name") or p.get("label") or "") for p in points]
    values = [round(float(p.get("value") or 0), 2) for p in points]
    return {"labels": labels, "values": values, "unit": unit, "note": note}
