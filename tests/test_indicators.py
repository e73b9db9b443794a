import pytest

from app.indicators import (
    FormulaError,
    aggregate_values,
    deviation_percent,
    evaluate_formula,
    is_on_track,
    to_number,
    transition_min_role,
    transition_submission,
    validate_submission_form,
    validate_wizard_step,
)

NUMERIC = {"type": "quantitative", "unit": {"name": "People"}}
TEXTUAL = {"type": "qualitative", "unit": {"name": "Text"}}


def test_to_number_parses_grouped_digits_and_rejects_junk():
    assert to_number("1,250.5") == 1250.5
    assert to_number(3) == 3.0
    assert to_number("") is None
    assert to_number("abc") is None
    assert to_number(True) is None
    assert to_number(float("nan")) is None


def test_submission_form_requires_selections_in_order():
    assert validate_submission_form("", 1, 1, "5", "", NUMERIC) == "Please select a project"
    assert validate_submission_form(1, "", 1, "5", "", NUMERIC) == "Please select an indicator"
    assert validate_submission_form(1, 1, "", "5", "", NUMERIC) == "Please select a reporting period"
    assert validate_submission_form(1, 1, 1, "", "", NUMERIC) == "Please enter a value"


def test_submission_form_numeric_rules():
    assert validate_submission_form(1, 1, 1, "-4", "", NUMERIC) == "Please enter a valid numeric value"
    assert validate_submission_form(1, 1, 1, "many", "", NUMERIC) == "Please enter a valid numeric value"
    assert validate_submission_form(1, 1, 1, "12", "", NUMERIC) is None
    assert validate_submission_form(1, 1, 1, "", "Good progress", TEXTUAL) is None


def test_wizard_step_one_requires_name_unit_and_formula():
    assert validate_wizard_step(1, {"name": " ", "unit_id": 1}, []) == "Indicator name is required"
    assert validate_wizard_step(1, {"name": "Wells"}, []).startswith("Unit of measurement is required")
    assert (
        validate_wizard_step(1, {"name": "Wells", "unit_id": 1, "aggregation_rule": "formula"}, [])
        == "Formula expression is required when using formula aggregation"
    )
    assert validate_wizard_step(1, {"name": "Wells", "unit_id": 1, "aggregation_rule": "sum"}, []) is None


def test_wizard_step_three_requires_periods():
    assert validate_wizard_step(3, {}, []) == "At least one reporting period is required"
    assert validate_wizard_step(3, {}, [{"period_key": "Q1-2026"}]) is None
    assert validate_wizard_step(2, {}, []) is None


@pytest.mark.parametrize(
    "status, action, expected",
    [
        ("draft", "submit", "submitted"),
        ("returned", "submit", "submitted"),
        ("submitted", "approve", "approved"),
        ("submitted", "return", "returned"),
        ("approved", "return", None),
        ("draft", "approve", None),
        ("draft", "archive", None),
    ],
)
def test_submission_transitions(status, action, expected):
    assert transition_submission(status, action) == expected


def test_transition_roles():
    assert transition_min_role("submit") == "field_staff"
    assert transition_min_role("approve") == "manager"
    assert transition_min_role("bogus") == "owner"


def test_aggregation_rules():
    values = [10, "20", None, "x", 30]
    assert aggregate_values(values, "sum") == 60.0
    assert aggregate_values(values, "avg") == 20.0
    assert aggregate_values(values, "latest") == 30.0
    assert aggregate_values(values, "formula", "max - min") == 20.0
    assert aggregate_values([], "sum") is None


def test_formula_evaluation_is_restricted():
    assert evaluate_formula("sum / count * 100", {"sum": 5.0, "count": 10.0}) == 50.0
    assert evaluate_formula("-(2 ** 3) % 5", {}) == 2.0
    with pytest.raises(FormulaError):
        evaluate_formula("", {})
    with pytest.raises(FormulaError):
        evaluate_formula("__import__('os')", {})
    with pytest.raises(FormulaError):
        evaluate_formula("total + 1", {"sum": 1.0})
    with pytest.raises(FormulaError):
        evaluate_formula("sum / 0", {"sum": 1.0})
    with pytest.raises(FormulaError):
        evaluate_formula("sum +", {"sum": 1.0})


@pytest.mark.parametrize(
    "expression",
    [
        "sum ** 400",
        "(sum - 100) ** 0.5",
        "((sum - 100) ** 0.5) % 2",
        "sum * 1e308 * 10",
        "sum * 1e308 * 10 - sum * 1e308 * 10",
    ],
)
def test_formula_rejects_overflow_complex_and_non_finite_results(expression):
    with pytest.raises(FormulaError):
        evaluate_formula(expression, {"sum": 80.0})


def test_formula_aggregation_reports_bad_results_as_formula_errors():
    with pytest.raises(FormulaError):
        aggregate_values([40, 40], "formula", "(sum - 100) ** 0.5")
    assert aggregate_values([60, 60], "formula", "(sum - 100) ** 0.5") == pytest.approx(20 ** 0.5)


def test_deviation_and_on_track():
    assert deviation_percent(100.0, 92.0) == -8.0
    assert deviation_percent(0.0, 5.0) is None
    assert deviation_percent(None, 5.0) is None
    assert is_on_track(-8.0) is True
    assert is_on_track(-15.0) is False
    assert is_on_track(15.0, "decrease") is False
    assert is_on_track(-30.0, "decrease") is True
    assert is_on_track(None) is None
