"""Indicator rules: form validation, submission workflow and value roll-ups."""

from __future__ import annotations

import ast
import math
import operator
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

INDICATOR_TYPES = ["quantitative", "qualitative", "percentage"]
INDICATOR_DIRECTIONS = ["increase", "decrease"]
AGGREGATION_RULES = ["sum", "avg", "latest", "formula"]
UNIT_TYPES = ["count", "percentage", "currency", "ratio", "time", "distance", "weight", "other", "text"]
SUBMISSION_STATUSES = ["draft", "submitted", "approved", "returned"]

# action -> (allowed source statuses, resulting status, minimum role)
SUBMISSION_TRANSITIONS: Dict[str, tuple] = {
    "submit": (("draft", "returned"), "submitted", "field_staff"),
    "approve": (("submitted",), "approved", "manager"),
    "return": (("submitted",), "returned", "manager"),
}

# Submissions whose values count toward actuals.
COUNTED_STATUSES = ("submitted", "approved")


class FormulaError(ValueError):
    """Raised when an indicator formula cannot be parsed or evaluated."""


def to_number(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        parsed = float(text)
    except ValueError:
        return None
    return None if math.isnan(parsed) else parsed


def unit_name(indicator: Optional[Mapping[str, object]]) -> str:
    if not indicator:
        return ""
    unit = indicator.get("unit")
    if isinstance(unit, Mapping):
        return str(unit.get("name") or "").lower()
    return str(unit or indicator.get("unit_type") or "").lower()


def validate_submission_form(
    project_id: object,
    indicator_id: object,
    period_id: object,
    value_number: str,
    value_text: str,
    indicator: Optional[Mapping[str, object]],
) -> Optional[str]:
    """Return the first problem with a submission form, or ``None`` when it is acceptable."""
    if not project_id:
        return "Please select a project"
    if not indicator_id:
        return "Please select an indicator"
    if not period_id:
        return "Please select a reporting period"
    if not value_number and not value_text:
        return "Please enter a value"

    if indicator and indicator.get("type") != "qualitative" and unit_name(indicator) != "text":
        parsed = to_number(value_number)
        if parsed is None or parsed < 0:
            return "Please enter a valid numeric value"
    return None


def validate_wizard_step(step: int, indicator_data: Mapping[str, object], periods: Sequence[object]) -> Optional[str]:
    if step == 1:
        if not str(indicator_data.get("name") or "").strip():
            return "Indicator name is required"
        if not indicator_data.get("unit_id"):
            return "Unit of measurement is required - a value without units is meaningless"
        if indicator_data.get("aggregation_rule") == "formula" and not str(indicator_data.get("formula_expr") or "").strip():
            return "Formula expression is required when using formula aggregation"
        return None
    if step == 3 and len(periods) == 0:
        return "At least one reporting period is required"
    return None


def transition_submission(current_status: str, action: str) -> Optional[str]:
    """Return the status a submission moves to, or ``None`` if the action does not apply."""
    rule = SUBMISSION_TRANSITIONS.get(action)
    if not rule:
        return None
    sources, target, _role = rule
    if current_status not in sources:
        return None
    return target


def transition_min_role(action: str) -> str:
    rule = SUBMISSION_TRANSITIONS.get(action)
    return rule[2] if rule else "owner"


_BIN_OPS: Dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
    ast.Mod: operator.mod,
}
_UNARY_OPS: Dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
FORMULA_NAMES = ("sum", "avg", "min", "max", "count", "latest")


def formula_variables(values: Sequence[float]) -> Dict[str, float]:
    if not values:
        return {name: 0.0 for name in FORMULA_NAMES}
    return {
        "sum": float(sum(values)),
        "avg": float(sum(values)) / len(values),
        "min": float(min(values)),
        "max": float(max(values)),
        "count": float(len(values)),
        "latest": float(values[-1]),
    }


def evaluate_formula(expression: str, variables: Mapping[str, float]) -> float:
    """Evaluate an arithmetic formula such as ``sum / count * 100``.

    Only numbers, the names in ``variables``, parentheses and ``+ - * / % **`` are allowed.
    """
    if not expression or not expression.strip():
        raise FormulaError("Formula expression is empty")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"Invalid formula: {exc.msg}") from exc

    def walk(node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return walk(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id not in variables:
                raise FormulaError(f"Unknown name in formula: {node.id}")
            return float(variables[node.id])
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left = walk(node.left)
            right = walk(node.right)
            try:
                value = _BIN_OPS[type(node.op)](left, right)
            except ZeroDivisionError as exc:
                raise FormulaError("Division by zero in formula") from exc
            except ArithmeticError as exc:
                raise FormulaError(f"Formula result out of range: {exc}") from exc
            # a negative base with a fractional exponent yields a complex number
            if isinstance(value, complex):
                raise FormulaError("Formula produced a complex number")
            return value
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](walk(node.operand))
        raise FormulaError(f"Unsupported formula element: {type(node).__name__}")

    result = walk(tree)
    if not math.isfinite(result):
        raise FormulaError("Formula did not produce a finite number")
    return result


def aggregate_values(values: Iterable[object], rule: str, formula_expr: str = "") -> Optional[float]:
    """Roll reported values up into one actual according to an indicator aggregation rule.

    ``values`` must be in reporting order; ``latest`` takes the last one. Non-numeric values are
    ignored and an empty input yields ``None``.
    """
    numbers: List[float] = [n for n in (to_number(v) for v in values) if n is not None]
    if not numbers:
        return None
    if rule == "avg":
        return sum(numbers) / len(numbers)
    if rule == "latest":
        return numbers[-1]
    if rule == "formula":
        return evaluate_formula(formula_expr, formula_variables(numbers))
    return float(sum(numbers))


def deviation_percent(target: Optional[float], actual: Optional[float]) -> Optional[float]:
    if target is None or actual is None or target == 0:
        return None
    return round((actual - target) / target * 100, 1)


def is_on_track(deviation: Optional[float], direction: str = "increase", tolerance: float = 10.0) -> Optional[bool]:
    """An indicator is on track when within ``tolerance`` percent of target or better."""
    if deviation is None:
        return None
    if direction == "decrease":
        return deviation <= tolerance
    return deviation >= -tolerance
