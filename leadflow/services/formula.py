"""Arithmetic formula evaluation for calculated fields.

Session values are substituted for whole-word field names, then the
resulting expression is evaluated only if it is plain arithmetic.
"""

import ast
import logging
import operator
import re
from typing import Optional

from leadflow.services.conditions import to_text

logger = logging.getLogger(__name__)

ARITHMETIC_ONLY = re.compile(r"^[\d\s+\-*/.()]+$")

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def substitute_fields(formula: str, data: dict) -> str:
    expression = formula
    for key, value in data.items():
        expression = re.sub(rf"\b{re.escape(key)}\b", lambda _m: to_text(value), expression)
    return expression


def _eval_node(node):
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_eval_node(node.left), _eval_node(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_formula(formula: str, data: dict) -> Optional[float]:
    """Evaluate ``formula`` with ``data`` substituted in. Returns None if it isn't arithmetic."""
    try:
        expression = substitute_fields(formula, data)
        if not ARITHMETIC_ONLY.match(expression):
            return None
        return _eval_node(ast.parse(expression, mode="eval"))
    except (SyntaxError, ValueError, ZeroDivisionError, TypeError, RecursionError) as e:
        logger.error(f"Formula evaluation error for {formula!r}: {e}")
        return None
