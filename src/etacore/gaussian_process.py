"""Gaussian-process contributions to the linear predictor.

Three evaluation modes, chosen per term:

* exact GP at the fitted locations: ``L(draw) @ zgp(draw)``;
* exact GP at new locations: one draw from the GP posterior predictive
  given the old-data predictor ``yL``;
* approximate (reduced-rank) GP: spectral-density-scaled coefficients
  projected through a fixed eigenbasis.

Per-draw covariance work is batched over the draw axis with
``jax.vmap``; Cholesky failures are retried with escalating jitter.
"""

from __future__ import annotations

import logging
from typing import Any

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.scipy.linalg as jsl
import numpyro.distributions as dist

from etacore.config import PredictorConfig, resolve_config
from etacore.draws import ByFactorGaussianProcess, Draws, GaussianProcessDraws
from etacore.exceptions import MissingCollaboratorError, PointwiseEvaluationError
from etacore.linalg import as_locations, cov_exp_quad, jittered_cholesky, spd_cov_exp_quad

logger = logging.getLogger(__name__)


def predictor_gp(
    draws: Draws,
    i: Any = None,
    *,
    config: PredictorConfig | None = None,
    rng_key: jax.Array | None = None,
) -> jnp.ndarray | float:
    """Sum of all GP terms as an ``(S, N)`` matrix, or ``0`` without GPs.

    By-factor terms write each level's prediction into that level's
    observations (``Igp``); observations of no level get zero.
    """
    if not draws.gp:
        return 0
    if i is not None:
        raise PointwiseEvaluationError(
            "Pointwise evaluation is not supported for Gaussian processes."
        )
    config = resolve_config(config)
    eta = jnp.zeros((draws.nsamples, draws.nobs))
    for k, term in enumerate(draws.gp):
        term_key = None if rng_key is None else jr.fold_in(rng_key, k)
        if isinstance(term, ByFactorGaussianProcess):
            for j, level in enumerate(term.levels):
                if level.Igp is None or len(level.Igp) == 0:
                    continue
                level_key = None if term_key is None else jr.fold_in(term_key, j)
                contribution = evaluate_gp(level, config=config, rng_key=level_key)
                eta = eta.at[:, jnp.asarray(level.Igp)].add(contribution)
        else:
            eta = eta + evaluate_gp(term, config=config, rng_key=term_key)
    return eta


def evaluate_gp(
    gp: GaussianProcessDraws,
    *,
    config: PredictorConfig | None = None,
    rng_key: jax.Array | None = None,
) -> jnp.ndarray:
    """Evaluate a single GP term → ``(S, n)`` after ``Cgp``/``Jgp``."""
    config = resolve_config(config)
    if gp.approximate:
        eta = predict_gp_approx(gp.x, gp.sdgp, gp.lscale, gp.zgp, gp.slambda)
    else:
        nug = config.nug if gp.nug is None else gp.nug
        if gp.x_new is not None:
            if rng_key is None:
                raise MissingCollaboratorError(
                    "Predicting an exact Gaussian process at new locations draws "
                    "from its posterior predictive; pass rng_key."
                )
            eta = predict_gp_new(
                gp.x_new, gp.yL, gp.x, gp.sdgp, gp.lscale,
                nug=nug, rng_key=rng_key, config=config,
            )
        else:
            eta = predict_gp_old(gp.x, gp.sdgp, gp.lscale, gp.zgp, nug=nug, config=config)
    if gp.Cgp is not None:
        eta = eta * jnp.asarray(gp.Cgp)[None, :]
    if gp.Jgp is not None:
        eta = eta[:, jnp.asarray(gp.Jgp)]
    return eta


# ---------------------------------------------------------------------------
# Exact GPs
# ---------------------------------------------------------------------------


def _draw_params(sdgp: Any, lscale: Any) -> tuple[jnp.ndarray, jnp.ndarray]:
    sdgp = jnp.reshape(jnp.asarray(sdgp), (-1,))
    lscale = jnp.reshape(jnp.asarray(lscale), (sdgp.shape[0], -1))
    return sdgp, lscale


def _batched_cov(x: jnp.ndarray, x_new: jnp.ndarray | None, sdgp, lscale) -> jnp.ndarray:
    return jax.vmap(lambda s, l: cov_exp_quad(x, x_new, sdgp=s, lscale=l))(sdgp, lscale)


def predict_gp_old(
    x: Any,
    sdgp: Any,
    lscale: Any,
    zgp: Any,
    *,
    nug: float,
    config: PredictorConfig | None = None,
) -> jnp.ndarray:
    """Exact GP at the fitted locations: ``L @ zgp`` per draw → ``(S, M)``."""
    config = resolve_config(config)
    x = as_locations(x)
    sdgp, lscale = _draw_params(sdgp, lscale)
    cov = _batched_cov(x, None, sdgp, lscale)
    chol = jittered_cholesky(
        cov, nug, growth=config.jitter_growth, max_retries=config.max_jitter_retries
    )
    return jnp.einsum("smk,sk->sm", chol, jnp.asarray(zgp))


def _conditional_moments(chol, yL, k_old_new, k_new_new):
    """Posterior-predictive mean and covariance for one draw."""
    w = jsl.solve_triangular(chol, yL, lower=True)
    alpha = jsl.solve_triangular(chol.T, w, lower=False)
    mean = k_old_new.T @ alpha
    v = jsl.solve_triangular(chol, k_old_new, lower=True)
    cov = k_new_new - v.T @ v
    return mean, cov


def predict_gp_new(
    x_new: Any,
    yL: Any,
    x: Any,
    sdgp: Any,
    lscale: Any,
    *,
    nug: float,
    rng_key: jax.Array,
    config: PredictorConfig | None = None,
) -> jnp.ndarray:
    """Exact GP at new locations → ``(S, M_new)``.

    For each draw the old-data covariance is factored, the old predictor
    ``yL`` is conditioned on, and one sample is drawn from the resulting
    multivariate normal at ``x_new``.
    """
    config = resolve_config(config)
    x = as_locations(x)
    x_new = as_locations(x_new)
    sdgp, lscale = _draw_params(sdgp, lscale)
    retry = {"growth": config.jitter_growth, "max_retries": config.max_jitter_retries}

    chol = jittered_cholesky(_batched_cov(x, None, sdgp, lscale), nug, **retry)
    k_old_new = _batched_cov(x, x_new, sdgp, lscale)
    k_new_new = _batched_cov(x_new, None, sdgp, lscale)
    mean, cov = jax.vmap(_conditional_moments)(chol, jnp.asarray(yL), k_old_new, k_new_new)
    scale_tril = jittered_cholesky(cov, nug, **retry)
    logger.debug("Sampling GP at %d new locations for %d draws", x_new.shape[0], sdgp.shape[0])
    return dist.MultivariateNormal(loc=mean, scale_tril=scale_tril).sample(rng_key)


# ---------------------------------------------------------------------------
# Approximate GPs
# ---------------------------------------------------------------------------


def predict_gp_approx(
    x: Any,
    sdgp: Any,
    lscale: Any,
    zgp: Any,
    slambda: Any,
) -> jnp.ndarray:
    """Reduced-rank GP: ``(sqrt(spd) * zgp) @ x.T`` → ``(S, N)``.

    Deterministic; old and new data are handled identically since ``x``
    already holds the eigenfunctions evaluated at the requested points.
    """
    spd = jnp.sqrt(spd_cov_exp_quad(slambda, sdgp, lscale))
    return (spd * jnp.asarray(zgp)) @ as_locations(x).T
