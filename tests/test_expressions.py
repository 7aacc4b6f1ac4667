"""Tests for the expressions module."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from etacore.exceptions import ExpressionError, UnknownFunctionError
from etacore.expressions import compile_expression, evaluate_expression


class TestCompile:
    def test_variables_and_functions(self):
        expr = compile_expression("b1 * exp(b2 * x) + mo(simo_1, Xmo_1)")
        assert expr.variables == {"b1", "b2", "x", "simo_1", "Xmo_1"}
        assert expr.functions == {"exp", "mo"}

    def test_cached(self):
        assert compile_expression("a + b") is compile_expression("a + b")

    @pytest.mark.parametrize(
        "source",
        ["x.T", "x[0]", "lambda: 1", "'text'", "[a, b]", "f(**kw)", "np.exp(x)"],
    )
    def test_disallowed_syntax(self, source):
        with pytest.raises(ExpressionError):
            compile_expression(source)

    def test_syntax_error(self):
        with pytest.raises(ExpressionError, match="Invalid formula"):
            compile_expression("a +")


class TestEvaluate:
    def test_arithmetic(self):
        result = evaluate_expression(
            "-a + b * 2 - c / 4 + a ** 2",
            {"a": jnp.array([1.0, 2.0]), "b": jnp.array([3.0, 4.0]), "c": 8.0},
        )
        np.testing.assert_allclose(np.asarray(result), [4.0, 8.0])

    def test_builtin_functions(self):
        result = evaluate_expression("inv_logit(x) + sqrt(y)", {"x": 0.0, "y": 4.0})
        np.testing.assert_allclose(float(result), 2.5)

    def test_chained_comparison(self):
        result = evaluate_expression("0 < x < 2", {"x": jnp.array([-1.0, 1.0, 3.0])})
        np.testing.assert_array_equal(np.asarray(result), [False, True, False])

    def test_two_argument_function(self):
        result = evaluate_expression("pow(x, 2)", {"x": jnp.array([3.0])})
        np.testing.assert_allclose(np.asarray(result), [9.0])

    def test_keyword_arguments(self):
        result = evaluate_expression(
            "scale(a, by=3)", {"a": jnp.array([2.0])}, {"scale": lambda v, by=1.0: v * by}
        )
        np.testing.assert_allclose(np.asarray(result), [6.0])

    def test_unknown_function(self):
        with pytest.raises(UnknownFunctionError) as excinfo:
            evaluate_expression("a * my_fun(a)", {"a": 1.0})
        assert excinfo.value.function_name == "my_fun"
        assert "functions=" in str(excinfo.value)

    def test_user_function(self):
        result = evaluate_expression(
            "a * my_fun(a)", {"a": jnp.array([2.0])}, {"my_fun": lambda v: v + 1}
        )
        np.testing.assert_allclose(np.asarray(result), [6.0])

    def test_user_function_overrides_builtin(self):
        result = evaluate_expression("exp(a)", {"a": 1.0}, {"exp": lambda v: v * 10})
        assert float(result) == 10.0

    def test_unknown_variable(self):
        with pytest.raises(ExpressionError, match="'z' not found") as excinfo:
            evaluate_expression("a + z", {"a": 1.0})
        assert not isinstance(excinfo.value, UnknownFunctionError)

    def test_other_failures_wrapped(self):
        with pytest.raises(ExpressionError, match="Error evaluating"):
            evaluate_expression("a @ b", {"a": jnp.ones((2, 3)), "b": jnp.ones((2, 3))})
