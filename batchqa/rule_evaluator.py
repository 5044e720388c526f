"""Compliance evaluation of a measured value against a standard's target expression.

Target expressions are free text. For numeric data types they are classified by the
first matching pattern, in this order:
  1. range            "2.5-3.5"
  2. upper bound      "<= 2.0" / "≤ 2.0"
  3. lower bound      ">= 2.0" / "≥ 2.0"
  4. labeled max      "max: 5"
  5. labeled min      "Min: 0.1"
  6. exact numeric    "5" (absolute tolerance 0.0001)
Free-text data types compare the raw strings exactly.

The evaluator never raises: anything it cannot interpret is NON_COMPLIANT.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Literal

COMPLIANT = "COMPLIANT"
NON_COMPLIANT = "NON_COMPLIANT"
NOT_APPLICABLE = "NOT_APPLICABLE"
VERDICTS = (COMPLIANT, NON_COMPLIANT, NOT_APPLICABLE)

Verdict = Literal["COMPLIANT", "NON_COMPLIANT", "NOT_APPLICABLE"]

NUMERIC_DATA_TYPES = frozenset({"FLOAT", "INTEGER", "PERCENTAGE"})
EXACT_MATCH_TOLERANCE = 0.0001

_NUMBER = r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"
_NUMBER_RE = re.compile(_NUMBER)
_RANGE_RE = re.compile(rf"({_NUMBER})\s*[-–]\s*({_NUMBER})")

_UPPER_BOUND_OPERATORS = ("≤", "<=")
_LOWER_BOUND_OPERATORS = ("≥", ">=")


@dataclass(frozen=True)
class RuleEvaluation:
    verdict: Verdict
    rule: str
    bounds: dict[str, float]
    parse_error: str | None = None


def is_numeric_data_type(data_type: str | None) -> bool:
    return str(data_type or "").strip().upper() in NUMERIC_DATA_TYPES


def parse_number(text: str | None) -> float | None:
    """Read the leading number of a measured/target value ("6.8 pH" -> 6.8).

    Returns None instead of raising when no finite number leads the text.
    """
    if text is None:
        return None
    match = _NUMBER_RE.match(str(text).strip())
    if match is None:
        return None
    value = float(match.group())
    if not math.isfinite(value):
        return None
    return value


def _number_after(expression: str, marker_end: int) -> float | None:
    match = _NUMBER_RE.search(expression, marker_end)
    if match is None:
        return None
    return parse_number(match.group())


def _find_operator(expression: str, operators: tuple[str, ...]) -> int | None:
    for op in operators:
        idx = expression.find(op)
        if idx >= 0:
            return idx + len(op)
    return None


def _find_label(expression: str, label: str) -> int | None:
    idx = expression.lower().find(label)
    if idx < 0:
        return None
    return idx + len(label)


def _compare(rule: str, bounds: dict[str, float], actual: float) -> Verdict:
    if rule == "range":
        ok = bounds["min"] <= actual <= bounds["max"]
    elif rule in {"upper_bound", "labeled_max"}:
        ok = actual <= bounds["max"]
    elif rule in {"lower_bound", "labeled_min"}:
        ok = actual >= bounds["min"]
    else:
        ok = abs(actual - bounds["target"]) < EXACT_MATCH_TOLERANCE
    return COMPLIANT if ok else NON_COMPLIANT


def _classify_numeric(expression: str) -> tuple[str, dict[str, float] | None]:
    range_match = _RANGE_RE.search(expression)
    if range_match is not None:
        low = parse_number(range_match.group(1))
        high = parse_number(range_match.group(2))
        if low is not None and high is not None:
            return "range", {"min": low, "max": high}

    end = _find_operator(expression, _UPPER_BOUND_OPERATORS)
    if end is not None:
        bound = _number_after(expression, end)
        return "upper_bound", None if bound is None else {"max": bound}

    end = _find_operator(expression, _LOWER_BOUND_OPERATORS)
    if end is not None:
        bound = _number_after(expression, end)
        return "lower_bound", None if bound is None else {"min": bound}

    end = _find_label(expression, "max:")
    if end is not None:
        bound = _number_after(expression, end)
        return "labeled_max", None if bound is None else {"max": bound}

    end = _find_label(expression, "min:")
    if end is not None:
        bound = _number_after(expression, end)
        return "labeled_min", None if bound is None else {"min": bound}

    target = parse_number(expression)
    return "exact_numeric", None if target is None else {"target": target}


def evaluate_detailed(
    data_type: str | None,
    target_expression: str | None,
    actual_value: str | None,
) -> RuleEvaluation:
    if target_expression is None or not str(target_expression).strip():
        return RuleEvaluation(verdict=NOT_APPLICABLE, rule="none", bounds={})

    expression = str(target_expression)
    actual_raw = "" if actual_value is None else str(actual_value)

    if not is_numeric_data_type(data_type):
        verdict: Verdict = COMPLIANT if actual_raw == expression else NON_COMPLIANT
        return RuleEvaluation(verdict=verdict, rule="exact_text", bounds={})

    rule, bounds = _classify_numeric(expression)
    if bounds is None:
        return RuleEvaluation(
            verdict=NON_COMPLIANT,
            rule=rule,
            bounds={},
            parse_error="target_unparsable",
        )
    actual = parse_number(actual_raw)
    if actual is None:
        return RuleEvaluation(
            verdict=NON_COMPLIANT,
            rule=rule,
            bounds=bounds,
            parse_error="actual_unparsable",
        )
    return RuleEvaluation(verdict=_compare(rule, bounds, actual), rule=rule, bounds=bounds)


def evaluate(
    data_type: str | None,
    target_expression: str | None,
    actual_value: str | None,
) -> Verdict:
    return evaluate_detailed(data_type, target_expression, actual_value).verdict
