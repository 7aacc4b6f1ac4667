"""Tests for the predictor module."""

from __future__ import annotations

import jax.numpy as jnp
import jax.random as jr
import numpy as np
import pytest

from etacore.config import PredictorConfig
from etacore.draws import (
    AutocorDraws,
    CategorySpecificDraws,
    Draws,
    FixedDraws,
    GaussianProcessDraws,
    GroupDraws,
    NonlinearDraws,
    SmoothDraws,
    SmoothTermDraws,
    SpecialDraws,
)
from etacore.exceptions import (
    MissingCollaboratorError,
    PointwiseEvaluationError,
    UnknownFunctionError,
    VariableTypeMismatchError,
)
from etacore.autocorrelation import predictor_arma
from etacore.gaussian_process import evaluate_gp
from etacore.predictor import (
    LinearPredictor,
    NonlinearPredictor,
    predictor,
    resolve_predictor,
)
from etacore.terms import FixedEffects, Offset

S, N = 2, 4


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fe():
    X = jnp.array([[1.0, 0.5], [1.0, -1.0], [1.0, 2.0], [1.0, 0.0]])
    return FixedDraws(X=X, b=jnp.array([[0.1, 1.0], [-0.2, 0.5]]))


@pytest.fixture
def re():
    Z = jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 0.0], [0.0, 1.0]])
    return GroupDraws(Z={"g": Z}, r={"g": jnp.array([[0.3, -0.3], [1.0, 2.0]])})


@pytest.fixture
def sp():
    return SpecialDraws(
        calls=["mo(simo_1, Xmo_1)"],
        bsp=jnp.array([[1.0], [0.5]]),
        simo=[jnp.array([[0.4, 0.6], [0.5, 0.5]])],
        Xmo=[jnp.array([0, 1, 2, 1])],
    )


@pytest.fixture
def sm():
    return SmoothDraws(terms=[SmoothTermDraws(Zs=[jnp.eye(N)], s=[jnp.arange(8.0).reshape(S, N)])])


@pytest.fixture
def gp():
    return GaussianProcessDraws(
        sdgp=jnp.array([1.0, 0.5]),
        lscale=jnp.array([[0.8], [1.2]]),
        x=jnp.array([
            [0.1, 0.2, 0.3],
            [0.4, -0.5, 0.6],
            [-0.7, 0.8, 0.9],
            [1.0, 0.0, -1.0],
        ]),
        zgp=jnp.array([[0.5, -0.3, 1.1], [-0.2, 0.9, 0.4]]),
        slambda=jnp.array([[0.5], [1.0], [1.5]]),
    )


@pytest.fixture
def offset():
    return jnp.array([0.1, 0.2, 0.3, 0.4])


@pytest.fixture
def full_draws(fe, re, sp, sm, gp, offset):
    return Draws(nsamples=S, nobs=N, fe=fe, re=re, sp=sp, sm=sm, gp=[gp], offset=offset)


def _alone(name, full_draws):
    """Draws carrying only the term *name* of *full_draws*."""
    kwargs = {name: getattr(full_draws, name)}
    return Draws(nsamples=S, nobs=N, **kwargs)


# ---------------------------------------------------------------------------
# Linear predictor
# ---------------------------------------------------------------------------


class TestLinearPredictor:
    def test_empty_draws_are_zero(self):
        result = predictor(Draws(nsamples=3, nobs=5))
        assert result.shape == (3, 5)
        np.testing.assert_array_equal(np.asarray(result), 0.0)

    def test_sum_of_terms(self, full_draws):
        names = ["fe", "re", "sp", "sm", "gp", "offset"]
        parts = [np.asarray(predictor(_alone(name, full_draws))) for name in names]
        np.testing.assert_allclose(
            np.asarray(predictor(full_draws)), np.sum(parts, axis=0), rtol=1e-10
        )

    @pytest.mark.parametrize("dropped", ["fe", "re", "sp", "sm", "offset"])
    def test_dropping_a_term(self, full_draws, dropped):
        without = Draws(nsamples=S, nobs=N, **{
            name: getattr(full_draws, name)
            for name in ["fe", "re", "sp", "sm", "gp", "offset"]
            if name != dropped
        })
        diff = np.asarray(predictor(full_draws)) - np.asarray(predictor(without))
        np.testing.assert_allclose(
            diff, np.asarray(predictor(_alone(dropped, full_draws))), atol=1e-12
        )

    def test_subset(self, fe, re, sp, sm, offset):
        draws = Draws(nsamples=S, nobs=N, fe=fe, re=re, sp=sp, sm=sm, offset=offset)
        i = jnp.array([3, 0])
        full = np.asarray(predictor(draws))
        np.testing.assert_allclose(np.asarray(predictor(draws, i)), full[:, [3, 0]])

    def test_gp_pointwise_rejected(self, full_draws):
        with pytest.raises(PointwiseEvaluationError):
            predictor(full_draws, jnp.array([0, 1]))

    def test_offset_length_mismatch(self, fe):
        draws = Draws(nsamples=S, nobs=N, fe=fe, offset=jnp.array([0.1, 0.2, 0.3]))
        with pytest.raises(VariableTypeMismatchError, match="offset"):
            predictor(draws)

    def test_autocorrelation_after_additive_terms(self, fe):
        Y = jnp.array([1.0, 2.0, 0.5, 1.5])
        J_lag = jnp.array([1, 1, 1, 1])
        phi = jnp.array([[0.5], [-0.3]])
        ac = AutocorDraws(classes=frozenset({"arma"}), ar=phi, Y=Y, J_lag=J_lag)
        draws = Draws(nsamples=S, nobs=N, fe=fe, ac=ac)
        additive = predictor(Draws(nsamples=S, nobs=N, fe=fe))
        np.testing.assert_allclose(
            np.asarray(predictor(draws)),
            np.asarray(predictor_arma(additive, ar=phi, Y=Y, J_lag=J_lag)),
        )

    def test_sample_response_forwarded(self, fe):
        Y = jnp.array([1.0, jnp.nan, 0.5, 1.5])
        ac = AutocorDraws(
            classes=frozenset({"arma"}), ar=jnp.array([[0.5], [-0.3]]), Y=Y,
            J_lag=jnp.array([1, 1, 1, 1]),
        )
        draws = Draws(nsamples=S, nobs=N, fe=fe, ac=ac)
        calls = []

        def sample_response(n, eta):
            calls.append(n)
            return jnp.zeros(eta.shape[0])

        with pytest.raises(MissingCollaboratorError):
            predictor(draws)
        predictor(draws, sample_response=sample_response)
        assert calls == [1]

    def test_category_specific_last(self, fe):
        Xcs = jnp.array([[1.0], [0.0], [2.0], [1.0]])
        bcs = jnp.array([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0]])
        err = jnp.ones((S, N))
        draws = Draws(
            nsamples=S, nobs=N, fe=fe,
            ac=AutocorDraws(classes=frozenset({"arma"}), err=err),
            cs=CategorySpecificDraws(Xcs=Xcs, bcs=bcs, nthres=[2, 3]),
        )
        result = np.asarray(predictor(draws))
        assert result.shape == (S, N, 3)
        base = np.asarray(predictor(Draws(nsamples=S, nobs=N, fe=fe))) + 1.0
        for k in range(3):
            expected = base + np.asarray(bcs)[:, [k]] * np.asarray(Xcs)[:, 0]
            np.testing.assert_allclose(result[:, :, k], expected)

    def test_exact_gp_uses_rng_key(self):
        gp = GaussianProcessDraws(
            sdgp=jnp.array([1.0, 2.0]),
            lscale=jnp.array([[1.0], [0.7]]),
            x=jnp.array([[0.0], [1.0], [2.5]]),
            x_new=jnp.array([[0.5], [1.5], [3.0]]),
            yL=jnp.array([[0.1, 0.2, 0.3], [1.0, -1.0, 0.5]]),
        )
        draws = Draws(nsamples=S, nobs=3, gp=[gp])
        with pytest.raises(MissingCollaboratorError):
            predictor(draws)
        key = jr.PRNGKey(7)
        np.testing.assert_array_equal(
            np.asarray(predictor(draws, rng_key=key)),
            np.asarray(predictor(draws, rng_key=key)),
        )

    def test_threaded_matches_sequential(self, full_draws):
        sequential = predictor(full_draws)
        threaded = predictor(full_draws, config=PredictorConfig(max_workers=3))
        np.testing.assert_allclose(np.asarray(threaded), np.asarray(sequential))

    def test_custom_terms(self, full_draws, offset):
        result = LinearPredictor(terms=[Offset()]).evaluate(full_draws)
        np.testing.assert_allclose(np.asarray(result), np.tile(np.asarray(offset), (S, 1)))

    def test_custom_term_subclass(self, fe):
        class Doubled(FixedEffects):
            def evaluate(self, draws, i, context):
                return 2 * super().evaluate(draws, i, context)

        draws = Draws(nsamples=S, nobs=N, fe=fe)
        result = LinearPredictor(terms=[Doubled()]).evaluate(draws)
        np.testing.assert_allclose(np.asarray(result), 2 * np.asarray(predictor(draws)))

    def test_gp_contribution(self, gp):
        draws = Draws(nsamples=S, nobs=N, gp=[gp])
        np.testing.assert_allclose(np.asarray(predictor(draws)), np.asarray(evaluate_gp(gp)))


# ---------------------------------------------------------------------------
# Non-linear predictor
# ---------------------------------------------------------------------------


class TestNonlinearPredictor:
    @pytest.fixture
    def nl_draws(self):
        return NonlinearDraws(
            nsamples=S, nobs=3, nlform="b1 * exp(b2 * x)",
            used_nlpars=["b1", "b2"], C={"x": jnp.array([0.0, 1.0, 2.0])},
        )

    @pytest.fixture
    def parameters(self):
        values = {
            "b1": jnp.array([[1.0, 2.0, 3.0], [0.5, 0.5, 0.5]]),
            "b2": jnp.array([[0.1, 0.1, 0.1], [-1.0, 0.0, 1.0]]),
        }

        def get_parameter(name, i):
            value = values[name]
            return value if i is None else value[:, i]

        return values, get_parameter

    def test_formula(self, nl_draws, parameters):
        values, get_parameter = parameters
        result = predictor(nl_draws, get_parameter=get_parameter)
        x = np.array([0.0, 1.0, 2.0])
        expected = np.asarray(values["b1"]) * np.exp(np.asarray(values["b2"]) * x)
        assert result.shape == (S, 3)
        np.testing.assert_allclose(np.asarray(result), expected)

    def test_subset(self, nl_draws, parameters):
        _, get_parameter = parameters
        full = np.asarray(predictor(nl_draws, get_parameter=get_parameter))
        i = jnp.array([0, 2])
        part = np.asarray(predictor(nl_draws, i, get_parameter=get_parameter))
        np.testing.assert_allclose(part, full[:, [0, 2]])

    def test_unknown_function(self, nl_draws, parameters):
        _, get_parameter = parameters
        nl_draws.nlform = "b1 * my_fun(b2 * x)"
        with pytest.raises(UnknownFunctionError, match="my_fun"):
            predictor(nl_draws, get_parameter=get_parameter)
        result = predictor(
            nl_draws, get_parameter=get_parameter, functions={"my_fun": jnp.exp},
        )
        assert result.shape == (S, 3)

    def test_missing_parameter_provider(self, nl_draws):
        with pytest.raises(MissingCollaboratorError, match="get_parameter"):
            predictor(nl_draws)

    def test_scalar_formula_broadcast(self, parameters):
        _, get_parameter = parameters
        draws = NonlinearDraws(nsamples=S, nobs=3, nlform="2", used_nlpars=["b1"])
        result = predictor(draws, get_parameter=get_parameter)
        np.testing.assert_array_equal(np.asarray(result), np.full((S, 3), 2.0))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_linear(self):
        assert isinstance(resolve_predictor(Draws(nsamples=1, nobs=1)), LinearPredictor)

    def test_nonlinear(self):
        draws = NonlinearDraws(nsamples=1, nobs=1, nlform="a")
        assert isinstance(resolve_predictor(draws), NonlinearPredictor)

    def test_config_passed(self):
        config = PredictorConfig(nug=1e-6)
        assert resolve_predictor(Draws(nsamples=1, nobs=1), config).config is config

    def test_unknown_draws(self):
        with pytest.raises(TypeError, match="No predictor registered"):
            resolve_predictor({"fe": None})
