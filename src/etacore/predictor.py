"""Linear predictor aggregators.

Two variants share the :class:`Predictor` interface:

* :class:`LinearPredictor` sums the additive terms, then applies
  autocorrelation and category-specific effects;
* :class:`NonlinearPredictor` combines named non-linear parameters
  through a user formula.

:func:`predictor` picks the variant from the type of the draws.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, ClassVar

import jax
import jax.numpy as jnp

from etacore.autocorrelation import ResponseSampler, predictor_ac
from etacore.config import PredictorConfig, resolve_config
from etacore.draws import Draws, NonlinearDraws, subset_cols
from etacore.exceptions import MissingCollaboratorError
from etacore.expressions import compile_expression
from etacore.terms import EvaluationContext, TermEvaluator, additive_terms, predictor_cs

logger = logging.getLogger(__name__)

ParameterProvider = Callable[[str, Any], Any]
"""``get_parameter(name, i) -> (S, n)`` predictor of a non-linear parameter."""


class Predictor(ABC):
    """Computes the linear predictor for one kind of draws bundle.

    Register a variant by subclassing with the ``draws_type`` it handles::

        class MyPredictor(Predictor, draws_type=MyDraws):
            ...
    """

    _registry: ClassVar[dict[type, type[Predictor]]] = {}

    def __init_subclass__(cls, *, draws_type: type | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if draws_type is not None:
            Predictor._registry[draws_type] = cls

    def __init__(self, config: PredictorConfig | None = None) -> None:
        self.config = resolve_config(config)

    @abstractmethod
    def evaluate(self, draws: Any, i: Any = None, **kwargs: Any) -> jnp.ndarray:
        """Return the ``(S, n)`` (or ``(S, n, T)``) predictor."""


def resolve_predictor(draws: Any, config: PredictorConfig | None = None) -> Predictor:
    """Return the predictor variant registered for ``type(draws)``."""
    for draws_type, klass in Predictor._registry.items():
        if isinstance(draws, draws_type):
            return klass(config)
    raise TypeError(
        f"No predictor registered for {type(draws).__name__}. "
        f"Available: {sorted(t.__name__ for t in Predictor._registry)}"
    )


def predictor(
    draws: Draws | NonlinearDraws,
    i: Any = None,
    *,
    config: PredictorConfig | None = None,
    **kwargs: Any,
) -> jnp.ndarray:
    """Compute the linear predictor of *draws*.

    Parameters
    ----------
    draws
        :class:`~etacore.draws.Draws` for additive predictors or
        :class:`~etacore.draws.NonlinearDraws` for non-linear ones.
    i
        Optional integer indices of the observations to evaluate.
    config
        Numerical settings; defaults to :class:`PredictorConfig`.
    **kwargs
        Forwarded to the variant's ``evaluate`` (``sample_response``,
        ``rng_key``, ``functions``, ``get_parameter``).

    Examples
    --------
    ```python
    eta = predictor(draws)                       # (S, N)
    eta = predictor(draws, i=jnp.array([0, 3]))  # (S, 2)
    ```
    """
    return resolve_predictor(draws, config).evaluate(draws, i, **kwargs)


# ---------------------------------------------------------------------------
# Additive variant
# ---------------------------------------------------------------------------


class LinearPredictor(Predictor, draws_type=Draws):
    """``eta = fe + re + sp + sm + gp + offset``, then ARMA/CAR, then cs."""

    def __init__(
        self,
        config: PredictorConfig | None = None,
        terms: list[TermEvaluator] | None = None,
    ) -> None:
        super().__init__(config)
        self.terms = additive_terms() if terms is None else list(terms)

    def evaluate(
        self,
        draws: Draws,
        i: Any = None,
        *,
        sample_response: ResponseSampler | None = None,
        rng_key: jax.Array | None = None,
        functions: dict[str, Callable[..., Any]] | None = None,
    ) -> jnp.ndarray:
        """Compute the additive predictor.

        Parameters
        ----------
        sample_response
            Imputes missing responses inside the ARMA recursion.
        rng_key
            Seeds exact GP predictions at new locations.
        functions
            Extra functions available to special-effect formulas.
        """
        nobs = draws.nobs if i is None else len(i)
        logger.debug(
            "Computing linear predictor for %d draws x %d observations",
            draws.nsamples, nobs,
        )
        context = EvaluationContext(config=self.config, rng_key=rng_key, functions=functions)
        eta = jnp.zeros((draws.nsamples, nobs))
        for contribution in self._contributions(draws, i, context):
            eta = eta + contribution
        # some autocorrelation structures depend on eta
        eta = predictor_ac(eta, draws, i, sample_response=sample_response)
        # last, as it may return a 3-D array
        return predictor_cs(eta, draws, i)

    def _contributions(
        self, draws: Draws, i: Any, context: EvaluationContext,
    ) -> list[jnp.ndarray | float]:
        if self.config.max_workers == 1:
            return [term.evaluate(draws, i, context) for term in self.terms]
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = [pool.submit(term.evaluate, draws, i, context) for term in self.terms]
            return [future.result() for future in futures]


# ---------------------------------------------------------------------------
# Non-linear variant
# ---------------------------------------------------------------------------


class NonlinearPredictor(Predictor, draws_type=NonlinearDraws):
    """Evaluates a non-linear formula over parameter predictors and covariates."""

    def evaluate(
        self,
        draws: NonlinearDraws,
        i: Any = None,
        *,
        get_parameter: ParameterProvider | None = None,
        functions: dict[str, Callable[..., Any]] | None = None,
    ) -> jnp.ndarray:
        """Bind parameters and covariates, then evaluate ``draws.nlform``.

        The result takes the shape of the first bound variable.

        Raises
        ------
        UnknownFunctionError
            If the formula calls a function that is neither built in nor
            passed via *functions*.
        ExpressionError
            For any other evaluation failure.
        """
        if get_parameter is None:
            raise MissingCollaboratorError(
                "Non-linear predictors need a get_parameter collaborator."
            )
        expression = compile_expression(draws.nlform)
        variables: dict[str, Any] = {}
        for nlpar in draws.used_nlpars:
            variables[nlpar] = jnp.asarray(get_parameter(nlpar, i))
        for name, values in draws.C.items():
            variables[name] = subset_cols(values, i)
        logger.debug(
            "Evaluating non-linear formula %r with %d bound variables",
            draws.nlform, len(variables),
        )
        eta = jnp.asarray(expression.evaluate(variables, functions))
        if not variables:
            return eta
        shape = jnp.shape(next(iter(variables.values())))
        if eta.size == math.prod(shape):
            return jnp.reshape(eta, shape)
        return jnp.broadcast_to(eta, shape)
