"""Term evaluators, one per kind of predictor term.

Each evaluator turns the draws of its term type into an ``(S, n)``
contribution, or the scalar ``0`` when the term type is absent.  The
additive evaluators register themselves by name and are summed by
:class:`~etacore.predictor.LinearPredictor` in :data:`ADDITIVE_ORDER`.
Category-specific effects are not additive: they expand the predictor
to three dimensions and are applied last.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Iterator

import jax
import jax.numpy as jnp

from etacore.config import PredictorConfig
from etacore.draws import Draws, subset_cols, subset_rows
from etacore.exceptions import PredictorError, VariableTypeMismatchError
from etacore.expressions import evaluate_expression
from etacore.gaussian_process import predictor_gp
from etacore.linalg import fixed_product, random_product

logger = logging.getLogger(__name__)

_TYPE_HINT = (
    "Perhaps you transformed numeric variables to factors or vice versa "
    "within the model formula? If yes, please convert your variables "
    "beforehand. Or did you set a predictor variable to NaN?"
)

_GROUP_HINT = (
    "Perhaps you transformed numeric variables to factors or vice versa "
    "within the model formula? If yes, please convert your variables "
    "beforehand. Or did you use a grouping factor also for a different "
    "purpose? If yes, please make sure that its factor levels are correct "
    "also in the new data you may have provided."
)


@contextmanager
def _type_mismatch_guard(what: str, hint: str = _TYPE_HINT) -> Iterator[None]:
    try:
        yield
    except PredictorError:
        raise
    except (TypeError, ValueError) as exc:
        raise VariableTypeMismatchError(
            f"Something went wrong while computing {what} ({exc}). {hint}"
        ) from exc


def _nobs(draws: Draws, i: Any) -> int:
    return draws.nobs if i is None else len(i)


@dataclass(frozen=True)
class EvaluationContext:
    """Per-call settings shared by all evaluators.

    ``rng_key`` seeds the random draws of exact GPs at new locations and
    ``functions`` extends the namespace of special-effect formulas.
    """

    config: PredictorConfig = field(default_factory=PredictorConfig)
    rng_key: jax.Array | None = None
    functions: dict[str, Callable[..., Any]] | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TermEvaluator(ABC):
    """Evaluates one additive term type.

    Register a custom evaluator by subclassing with a ``name`` keyword::

        class MyTerm(TermEvaluator, name="my_term"):
            ...
    """

    _registry: ClassVar[dict[str, type[TermEvaluator]]] = {}
    term_name: ClassVar[str]

    def __init_subclass__(cls, *, name: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if name is not None:
            cls.term_name = name
            TermEvaluator._registry[name] = cls

    @classmethod
    def from_name(cls, name: str) -> TermEvaluator:
        if name not in cls._registry:
            raise ValueError(
                f"Unknown TermEvaluator type: {name!r}. "
                f"Available: {sorted(cls._registry)}"
            )
        return cls._registry[name]()

    @abstractmethod
    def evaluate(
        self, draws: Draws, i: Any, context: EvaluationContext,
    ) -> jnp.ndarray | float:
        """Return the ``(S, n)`` contribution, or ``0`` if absent."""


# ---------------------------------------------------------------------------
# Additive evaluators
# ---------------------------------------------------------------------------


class FixedEffects(TermEvaluator, name="fe"):
    """Overall effects ``b @ X.T``."""

    def evaluate(self, draws, i, context):
        fe = draws.fe
        if fe is None or jnp.shape(fe.X)[-1] == 0:
            return 0
        with _type_mismatch_guard("overall effects"):
            return fixed_product(subset_rows(fe.X, i), fe.b)


class GroupEffects(TermEvaluator, name="re"):
    """Group-level effects summed over grouping factors."""

    def evaluate(self, draws, i, context):
        re = draws.re
        eta = 0
        if re is None:
            return eta
        for group, r in re.r.items():
            with _type_mismatch_guard(f"group-level effects of {group!r}", _GROUP_HINT):
                eta = eta + random_product(subset_rows(re.Z[group], i), r)
        return eta


class SpecialEffects(TermEvaluator, name="sp"):
    """Monotonic, measurement-error and covariate terms.

    Each term's formula is evaluated against the bound special variables
    and multiplied by its coefficient plus any group-level deviation.
    """

    def evaluate(self, draws, i, context):
        sp = draws.sp
        if sp is None or not sp.calls:
            return 0
        variables: dict[str, Any] = {}
        for j, (simplex, Xmo) in enumerate(zip(sp.simo, sp.Xmo), start=1):
            variables[f"Xmo_{j}"] = subset_rows(Xmo, i)
            variables[f"simo_{j}"] = simplex
        for j, Xme in enumerate(sp.Xme, start=1):
            variables[f"Xme_{j}"] = subset_cols(Xme, i)
        for name, Yl in sp.Yl.items():
            variables[name] = subset_cols(Yl, i)
        for j, Csp in enumerate(sp.Csp, start=1):
            variables[f"Csp_{j}"] = subset_cols(Csp, i)

        shape = (draws.nsamples, _nobs(draws, i))
        bsp = jnp.asarray(sp.bsp)
        re = draws.re
        eta = jnp.zeros(shape)
        for j, (name, call) in enumerate(zip(sp.names, sp.calls)):
            r = 0
            if re is not None:
                for group, rsp in re.rsp.get(name, {}).items():
                    with _type_mismatch_guard(
                        f"group-level effects of {name!r} in {group!r}", _GROUP_HINT
                    ):
                        r = r + random_product(subset_rows(re.Zsp[group], i), rsp)
            value = evaluate_expression(call, variables, context.functions)
            with _type_mismatch_guard(f"special effect {call!r}"):
                eta = eta + jnp.broadcast_to((bsp[:, j][:, None] + r) * value, shape)
        return eta


class SmoothEffects(TermEvaluator, name="sm"):
    """Spline terms: fixed basis plus every penalized basis block."""

    def evaluate(self, draws, i, context):
        sm = draws.sm
        eta = 0
        if sm is None:
            return eta
        with _type_mismatch_guard("smooth terms"):
            if sm.Xs is not None and sm.bs is not None and jnp.shape(sm.Xs)[-1] > 0:
                eta = eta + fixed_product(subset_rows(sm.Xs, i), sm.bs)
            for term in sm.terms:
                for Zs, s in zip(term.Zs, term.s):
                    eta = eta + fixed_product(subset_rows(Zs, i), s)
        return eta


class GaussianProcesses(TermEvaluator, name="gp"):
    """Gaussian-process terms; full data only."""

    def evaluate(self, draws, i, context):
        return predictor_gp(draws, i, config=context.config, rng_key=context.rng_key)


class Offset(TermEvaluator, name="offset"):
    """Known offset, identical across draws."""

    def evaluate(self, draws, i, context):
        if draws.offset is None:
            return 0
        offset = jnp.asarray(subset_rows(draws.offset, i))
        with _type_mismatch_guard("the offset"):
            return jnp.broadcast_to(offset, (draws.nsamples, _nobs(draws, i)))


ADDITIVE_ORDER: tuple[str, ...] = ("fe", "re", "sp", "sm", "gp", "offset")


def additive_terms() -> list[TermEvaluator]:
    """Instances of the built-in additive evaluators in summation order."""
    return [TermEvaluator.from_name(name) for name in ADDITIVE_ORDER]


# ---------------------------------------------------------------------------
# Category-specific effects
# ---------------------------------------------------------------------------


def predictor_expand(eta: jnp.ndarray, nthres: int) -> jnp.ndarray:
    """Repeat a 2-D ``(S, n)`` predictor across ``nthres`` thresholds."""
    eta = jnp.asarray(eta)
    if eta.ndim == 2:
        eta = jnp.repeat(eta[:, :, None], nthres, axis=2)
    return eta


def predictor_cs(eta: jnp.ndarray, draws: Draws, i: Any = None) -> jnp.ndarray:
    """Add category-specific effects, returning ``(S, n, T)``.

    Returns *eta* unchanged when the model has neither category-specific
    coefficients nor category-specific group-level effects.
    """
    cs = draws.cs
    re = draws.re
    if cs is not None and (cs.Xcs is None) != (cs.bcs is None):
        raise ValueError("Xcs and bcs must either both be None or both be matrices")
    has_b = cs is not None and cs.bcs is not None
    has_r = re is not None and bool(re.rcs)
    if not has_b and not has_r:
        return eta
    if cs is None:
        raise ValueError(
            "category-specific group-level effects require CategorySpecificDraws "
            "to specify the number of thresholds"
        )
    nthres = cs.max_thres
    rcs = None
    if has_r:
        rcs = []
        for k in range(nthres):
            r_k = 0
            for group, per_thres in re.rcs.items():
                with _type_mismatch_guard(
                    f"category-specific group-level effects of {group!r}", _GROUP_HINT
                ):
                    r_k = r_k + random_product(subset_rows(re.Zcs[group], i), per_thres[k])
            rcs.append(r_k)
    X = None if cs.Xcs is None else subset_rows(cs.Xcs, i)
    with _type_mismatch_guard("category-specific effects"):
        return category_specific(eta, X, cs.bcs, nthres, rcs)


def category_specific(
    eta: jnp.ndarray,
    X: Any,
    b: Any,
    nthres: int,
    r: list[Any] | None = None,
) -> jnp.ndarray:
    """Expand *eta* to ``(S, n, nthres)`` and add threshold-specific effects.

    ``b`` is ``(S, K * nthres)``; threshold ``k`` uses columns
    ``k, k + nthres, k + 2 * nthres, ...``.  ``r[k]`` is the summed
    group-level contribution of threshold ``k``.
    """
    if (X is None) != (b is None):
        raise ValueError("X and b must either both be None or both be matrices")
    eta = predictor_expand(eta, nthres)
    if X is not None:
        X = jnp.asarray(X)
        b = jnp.asarray(b)
        if X.ndim != 2 or b.ndim != 2:
            raise ValueError(
                f"X and b must be matrices, got shapes {X.shape} and {b.shape}"
            )
        if b.shape[1] != X.shape[1] * nthres:
            raise ValueError(
                f"b must have {X.shape[1] * nthres} columns for {X.shape[1]} "
                f"predictors and {nthres} thresholds, got {b.shape[1]}"
            )
        columns = jnp.arange(0, nthres * X.shape[1], nthres)
        Xt = X.T
    for k in range(nthres):
        if X is not None:
            eta = eta.at[:, :, k].add(b[:, columns + k] @ Xt)
        if r is not None:
            eta = eta.at[:, :, k].add(r[k])
    logger.debug("Expanded predictor to %d thresholds", nthres)
    return eta
