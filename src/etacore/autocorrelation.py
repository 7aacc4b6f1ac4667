"""Autocorrelation structures applied to an already accumulated predictor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import jax.numpy as jnp

from etacore.draws import Draws, subset_cols, subset_rows
from etacore.exceptions import MissingCollaboratorError, PointwiseEvaluationError
from etacore.linalg import random_product

logger = logging.getLogger(__name__)

ResponseSampler = Callable[[int, jnp.ndarray], Any]
"""``sample_response(n, eta) -> (S,)`` response draws for observation ``n``."""


def predictor_ac(
    eta: jnp.ndarray,
    draws: Draws,
    i: Any = None,
    *,
    sample_response: ResponseSampler | None = None,
) -> jnp.ndarray:
    """Add ARMA and CAR effects to *eta*.

    ARMA structures read the predictor accumulated so far, so this must
    run after all additive terms.
    """
    ac = draws.ac
    if ac is None:
        return eta
    if ac.has("arma"):
        if ac.err is not None:
            eta = eta + subset_cols(ac.err, i)
        else:
            if i is not None:
                raise PointwiseEvaluationError(
                    "Pointwise evaluation is not possible for ARMA models."
                )
            eta = predictor_arma(
                eta, ar=ac.ar, ma=ac.ma, Y=ac.Y, J_lag=ac.J_lag,
                sample_response=sample_response,
            )
    if ac.has("car"):
        eta = eta + random_product(subset_rows(ac.Zcar, i), ac.rcar)
    return eta


# ---------------------------------------------------------------------------
# Explicit ARMA recursion
# ---------------------------------------------------------------------------


@dataclass
class ResidualWindow:
    """The last ``max_lag`` residuals per draw, newest in the last column."""

    residuals: jnp.ndarray

    @classmethod
    def empty(cls, nsamples: int, max_lag: int) -> ResidualWindow:
        return cls(jnp.zeros((nsamples, max_lag)))

    @property
    def max_lag(self) -> int:
        return self.residuals.shape[1]

    def push(self, residual: jnp.ndarray) -> None:
        """Append the newest residual, dropping the oldest."""
        self.residuals = jnp.concatenate(
            [self.residuals[:, 1:], jnp.reshape(residual, (-1, 1))], axis=1
        )

    def lagged(self, n_lags: int) -> jnp.ndarray:
        """``(S, max_lag)`` lag matrix: column ``j`` is the residual ``j + 1``
        steps back for ``j < n_lags`` and zero otherwise."""
        newest_first = self.residuals[:, ::-1]
        return jnp.where(jnp.arange(self.max_lag) < n_lags, newest_first, 0.0)


def predictor_arma(
    eta: jnp.ndarray,
    ar: Any = None,
    ma: Any = None,
    Y: Any = None,
    J_lag: Any = None,
    *,
    sample_response: ResponseSampler | None = None,
) -> jnp.ndarray:
    """Add ARMA effects to an ``(S, N)`` predictor.

    Observations are processed strictly in order.  Residuals are taken
    against the predictor before the AR term is added.  Missing
    responses (``NaN`` in *Y*) are imputed with *sample_response*, which
    sees the predictor updated up to and including that observation.
    AR and MA orders beyond ``max(J_lag)`` are ignored.
    """
    if ar is None and ma is None:
        return eta
    eta = jnp.asarray(eta)
    Y = jnp.asarray(Y, dtype=eta.dtype)
    J_lag = [int(j) for j in jnp.asarray(J_lag).tolist()]
    missing = jnp.isnan(Y).tolist()
    n_missing = sum(missing)
    if n_missing and sample_response is None:
        raise MissingCollaboratorError(
            "The response has missing values, so predicting the ARMA terms "
            "requires a sample_response collaborator."
        )
    if n_missing:
        logger.info("Imputing %d missing responses during the ARMA recursion", n_missing)

    max_lag = max(max(J_lag, default=0), 1)
    Kar = 0 if ar is None else min(jnp.shape(ar)[1], max_lag)
    Kma = 0 if ma is None else min(jnp.shape(ma)[1], max_lag)
    if Kar:
        ar = jnp.asarray(ar)[:, :Kar]
    if Kma:
        ma = jnp.asarray(ma)[:, :Kma]

    window = ResidualWindow.empty(eta.shape[0], max_lag)
    lagged = window.lagged(0)
    for n in range(Y.shape[0]):
        if Kma:
            eta = eta.at[:, n].add(jnp.sum(ma * lagged[:, :Kma], axis=1))
        eta_before_ar = eta[:, n]
        if Kar:
            eta = eta.at[:, n].add(jnp.sum(ar * lagged[:, :Kar], axis=1))
        if missing[n]:
            y = jnp.asarray(sample_response(n, eta), dtype=eta.dtype)
        else:
            y = Y[n]
        window.push(y - eta_before_ar)
        lagged = window.lagged(J_lag[n])
    return eta
