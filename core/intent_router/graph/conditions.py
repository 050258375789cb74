"""
Edge conditions - When an edge lets its target run.

Condition values:
- None / "on_success": source succeeded (a failed source propagates
  UpstreamFailure to the target)
- "on_failure": source failed; the explicit alternate path
- "always": source reached any outcome
- anything else: an expression over the source's result, evaluated with
  simpleeval (SAFE SUBSET ONLY)

Expression names:
    result / output   the source node's result value
    context           the execution context
    results           map of node id -> result value for successful nodes
    true/false/null   JSON-style literals

Examples:
    "result['score'] > 0.8"
    "len(output['items']) == 0"
    "context['region'] == 'eu' and result['approved']"
"""

import logging
from enum import StrEnum
from typing import Any

from simpleeval import EvalWithCompoundTypes

logger = logging.getLogger(__name__)


class EdgeCondition(StrEnum):
    """How an edge's condition is interpreted."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"
    EXPRESSION = "expression"


_KEYWORDS = {
    "on_success": EdgeCondition.ON_SUCCESS,
    "success": EdgeCondition.ON_SUCCESS,
    "on_failure": EdgeCondition.ON_FAILURE,
    "failure": EdgeCondition.ON_FAILURE,
    "always": EdgeCondition.ALWAYS,
}

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}


def classify(condition: str | None) -> EdgeCondition:
    """Map a raw edge condition to its kind."""
    if condition is None or not condition.strip():
        return EdgeCondition.ON_SUCCESS
    return _KEYWORDS.get(condition.strip().lower(), EdgeCondition.EXPRESSION)


def evaluate_expression(
    expression: str,
    result: Any,
    context: dict[str, Any] | None = None,
    results: dict[str, Any] | None = None,
) -> bool:
    """
    Evaluate a condition expression against a source node's result.

    Returns False (and logs a warning) when the expression cannot be
    evaluated, so a broken condition never lets its target run.
    """
    names = {
        "result": result,
        "output": result,
        "context": context or {},
        "results": results or {},
        "true": True,
        "false": False,
        "null": None,
        "none": None,
        "True": True,
        "False": False,
        "None": None,
    }
    try:
        evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
        return bool(evaluator.eval(expression))
    except Exception as e:
        logger.warning(f"Condition evaluation failed for {expression!r}: {e}")
        return False
