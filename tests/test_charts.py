import math

import pytest

from app.charts import (
    aggregate_data,
    build_figure,
    chart_payload,
    coerce_number,
    default_chart_config,
    label_text,
    sanitize_chart_config,
    transform_for_chart,
)

ROWS = [
    {"District": "North", "Households": 100, "Coverage": "40.5", "Sector": "Water"},
    {"District": "South", "Households": 250, "Coverage": "62", "Sector": "Water"},
    {"District": "North", "Households": 50, "Coverage": "n/a", "Sector": "Health"},
]


def test_coerce_number_and_label_text():
    assert coerce_number("") == 0.0
    assert coerce_number(True) == 1.0
    assert coerce_number("3.5") == 3.5
    assert math.isnan(coerce_number("n/a"))
    assert label_text(4.0) == "4"
    assert label_text(0) == ""
    assert label_text("North") == "North"


def test_aggregate_data_keeps_first_seen_order():
    out = aggregate_data(ROWS, "District", "Households", "sum")
    assert out == [
        {"District": "North", "value": 150.0, "count": 2},
        {"District": "South", "value": 250.0, "count": 1},
    ]


@pytest.mark.parametrize(
    "aggregation, north",
    [("avg", 75.0), ("count", 2.0), ("min", 50.0), ("max", 100.0)],
)
def test_aggregate_data_reducers(aggregation, north):
    out = aggregate_data(ROWS, "District", "Households", aggregation)
    assert out[0]["value"] == north


def test_aggregate_data_skips_unparseable_values():
    out = aggregate_data(ROWS, "District", "Coverage", "avg")
    assert out[0]["value"] == 40.5


def test_transform_bar_uses_aggregated_value():
    config = {"group_by": "District", "value": "Households", "aggregation": "sum"}
    points = transform_for_chart(ROWS, "bar", config)
    assert points == [{"name": "North", "value": 150.0}, {"name": "South", "value": 250.0}]


def test_transform_scatter_drops_nan_points():
    config = {"x_axis": "Households", "y_axis": "Coverage", "aggregation": "none"}
    points = transform_for_chart(ROWS, "scatter", config)
    assert [(p["x"], p["y"]) for p in points] == [(100.0, 40.5), (250.0, 62.0)]


def test_transform_heatmap_sums_cells():
    config = {"x_axis": "District", "y_axis": "Sector", "value": "Households", "aggregation": "none"}
    points = transform_for_chart(ROWS, "heatmap", config)
    assert {(p["x"], p["y"]): p["value"] for p in points} == {
        ("North", "Water"): 100.0,
        ("South", "Water"): 250.0,
        ("North", "Health"): 50.0,
    }


def test_transform_sankey_links():
    config = {"source": "Sector", "target": "District", "value": "Households", "aggregation": "none"}
    links = transform_for_chart(ROWS, "sankey", config)
    assert links[0] == {"source": "Water", "target": "North", "value": 100.0}
    figure = build_figure(links, "sankey", config)
    trace = figure["data"][0]
    assert trace["node"]["label"] == ["Water", "North", "South", "Health"]
    assert trace["link"]["source"] == [0, 0, 3]
    assert trace["link"]["target"] == [1, 2, 1]


def test_transform_empty_rows():
    assert transform_for_chart([], "bar", {}) == []


def test_build_figure_bar_and_composed():
    points = [{"name": "North", "value": 150.0}, {"name": "South", "value": 250.0}]
    figure = build_figure(points, "composed", {"color": "#123456"}, title="Households")
    assert [t["type"] for t in figure["data"]] == ["bar", "scatter"]
    assert figure["data"][0]["marker"]["color"] == "#123456"
    assert figure["layout"]["title"] == {"text": "Households"}


def test_build_figure_heatmap_matrix():
    points = [{"x": "a", "y": "r1", "value": 2}, {"x": "b", "y": "r1", "value": 3}, {"x": "a", "y": "r2", "value": 5}]
    trace = build_figure(points, "heatmap", {})["data"][0]
    assert trace["x"] == ["a", "b"]
    assert trace["z"] == [[2.0, 3.0], [5.0, 0.0]]


def test_build_figure_rejects_unknown_type():
    with pytest.raises(ValueError):
        build_figure([], "radar", {})


def test_default_config_prefers_numeric_value_column():
    columns = [{"name": "District", "type": "text"}, {"name": "Households", "type": "number"}]
    config = default_chart_config(columns)
    assert config == {
        "x_axis": "District",
        "y_axis": "Households",
        "value": "Households",
        "group_by": "District",
        "aggregation": "sum",
    }
    assert default_chart_config([]) == {"aggregation": "sum"}


def test_sanitize_config_drops_unknown_keys_and_bad_aggregation():
    config = sanitize_chart_config({"x_axis": " District ", "evil": "x", "aggregation": "median"})
    assert config == {"x_axis": "District", "aggregation": "sum"}


def test_chart_payload_rounds_values():
    payload = chart_payload([{"name": "A", "value": 1.234}, {"label": "B", "value": None}], unit="%")
    assert payload == {"labels": ["A", "B"], "values": [1.23, 0.0], "unit": "%", "note": ""}
