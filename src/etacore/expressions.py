"""Restricted expression interpreter for special-effect and non-linear formulas.

Formulas are plain Python expressions over named arrays, e.g.
``"mo(simo_1, Xmo_1) * Xme_1"`` or ``"b1 * exp(b2 * x)"``.  They are parsed
once with :mod:`ast`, checked against a small whitelist of node types and
then interpreted against a variable binding; nothing is passed to
``eval``.
"""

from __future__ import annotations

import ast
import functools
import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable

import jax
import jax.numpy as jnp
import jax.scipy.special as jsp
import jax.scipy.stats as jss

from etacore.exceptions import ExpressionError, PredictorError, UnknownFunctionError
from etacore.linalg import mo

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Namespace
# ---------------------------------------------------------------------------

DEFAULT_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": jnp.abs,
    "cos": jnp.cos,
    "exp": jnp.exp,
    "expm1": jnp.expm1,
    "fmax": jnp.maximum,
    "fmin": jnp.minimum,
    "inv_logit": jax.nn.sigmoid,
    "log": jnp.log,
    "log1p": jnp.log1p,
    "logit": jsp.logit,
    "mo": mo,
    "Phi": jss.norm.cdf,
    "pow": jnp.power,
    "sin": jnp.sin,
    "sqrt": jnp.sqrt,
    "square": jnp.square,
    "tanh": jnp.tanh,
}

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
    ast.MatMult: operator.matmul,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Call,
    ast.Name,
    ast.Constant,
    ast.keyword,
    ast.Load,
    *_BINARY_OPS,
    *_UNARY_OPS,
    *_COMPARE_OPS,
)


# ---------------------------------------------------------------------------
# Compiled expression
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Expression:
    """A parsed, validated formula.

    Use :func:`compile_expression` rather than constructing directly.
    """

    source: str
    tree: ast.Expression

    @property
    def variables(self) -> frozenset[str]:
        """Names used as values (not as called functions)."""
        called = {
            id(node.func) for node in ast.walk(self.tree) if isinstance(node, ast.Call)
        }
        return frozenset(
            node.id
            for node in ast.walk(self.tree)
            if isinstance(node, ast.Name) and id(node) not in called
        )

    @property
    def functions(self) -> frozenset[str]:
        """Names of all called functions."""
        return frozenset(
            node.func.id for node in ast.walk(self.tree) if isinstance(node, ast.Call)
        )

    def evaluate(
        self,
        variables: dict[str, Any],
        functions: dict[str, Callable[..., Any]] | None = None,
    ) -> Any:
        """Evaluate against *variables*.

        *functions* extends (and may override) :data:`DEFAULT_FUNCTIONS`.

        Raises
        ------
        UnknownFunctionError
            If the formula calls a function missing from the namespace.
        ExpressionError
            For unknown variables and any other evaluation failure.
        """
        namespace = dict(DEFAULT_FUNCTIONS)
        if functions:
            namespace.update(functions)
        try:
            return _interpret(self.tree.body, variables, namespace)
        except PredictorError:
            raise
        except Exception as exc:
            raise ExpressionError(f"Error evaluating {self.source!r}: {exc}") from exc


@functools.lru_cache(maxsize=256)
def compile_expression(source: str) -> Expression:
    """Parse and validate *source*.

    Raises ``ExpressionError`` on syntax errors or disallowed constructs
    (attribute access, subscripts, lambdas, ...).
    """
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid formula {source!r}: {exc.msg}") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported syntax {type(node).__name__} in formula {source!r}"
            )
        if isinstance(node, ast.Call) and not isinstance(node.func, ast.Name):
            raise ExpressionError(f"Only named functions can be called in {source!r}")
        if isinstance(node, ast.keyword) and node.arg is None:
            raise ExpressionError(f"Keyword unpacking is not allowed in {source!r}")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float)):
            raise ExpressionError(
                f"Only numeric constants are allowed in {source!r}, got {node.value!r}"
            )
    logger.debug("Compiled formula %r", source)
    return Expression(source=source, tree=tree)


def evaluate_expression(
    source: str,
    variables: dict[str, Any],
    functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    """Compile (cached) and evaluate *source* in one call."""
    return compile_expression(source).evaluate(variables, functions)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _interpret(
    node: ast.AST,
    variables: dict[str, Any],
    functions: dict[str, Callable[..., Any]],
) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        try:
            return variables[node.id]
        except KeyError:
            raise ExpressionError(f"object {node.id!r} not found") from None
    if isinstance(node, ast.BinOp):
        left = _interpret(node.left, variables, functions)
        right = _interpret(node.right, variables, functions)
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_interpret(node.operand, variables, functions))
    if isinstance(node, ast.Compare):
        left = _interpret(node.left, variables, functions)
        result = None
        for op, comparator in zip(node.ops, node.comparators):
            right = _interpret(comparator, variables, functions)
            step = _COMPARE_OPS[type(op)](left, right)
            result = step if result is None else jnp.logical_and(result, step)
            left = right
        return result
    if isinstance(node, ast.Call):
        name = node.func.id
        if name not in functions:
            raise UnknownFunctionError(name)
        args = [_interpret(arg, variables, functions) for arg in node.args]
        kwargs = {
            kw.arg: _interpret(kw.value, variables, functions) for kw in node.keywords
        }
        return functions[name](*args, **kwargs)
    raise ExpressionError(f"Unsupported syntax {type(node).__name__}")
