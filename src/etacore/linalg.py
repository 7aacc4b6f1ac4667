"""Numeric workhorses shared by the term evaluators.

All functions are vectorized over posterior draws where noted and carry
no orchestration logic.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import jax.numpy as jnp
from jax.experimental import sparse

from etacore.exceptions import CovarianceNotPositiveDefiniteError, MonotonicRangeError

logger = logging.getLogger(__name__)

Array = Any


# ---------------------------------------------------------------------------
# Linear terms
# ---------------------------------------------------------------------------


def fixed_product(X: Array, b: Array) -> jnp.ndarray:
    """``b @ X.T`` for design ``X (n, K)`` and draws ``b (S, K)`` → ``(S, n)``."""
    X = jnp.asarray(X)
    b = jnp.asarray(b)
    if X.ndim != 2 or b.ndim != 2:
        raise ValueError(
            f"X and b must be matrices, got shapes {X.shape} and {b.shape}"
        )
    return b @ X.T


def random_product(Z: Array, r: Array) -> jnp.ndarray:
    """``r @ Z.T`` for a (possibly sparse) design ``Z (n, L)`` → dense ``(S, n)``."""
    r = jnp.asarray(r)
    if isinstance(Z, sparse.BCOO):
        out = (Z @ r.T).T
        return out.todense() if isinstance(out, sparse.BCOO) else out
    return r @ jnp.asarray(Z).T


# ---------------------------------------------------------------------------
# Monotonic effects
# ---------------------------------------------------------------------------


def mo(simplex: Array, X: Array) -> jnp.ndarray:
    """Monotonic transform of an ordinal covariate.

    Parameters
    ----------
    simplex
        ``(S, D)`` draws of a simplex; each row sums to 1.
    X
        Integer covariate values in ``{0, ..., D}``.

    Returns
    -------
    ``(S, len(X))`` array equal to ``D * cumsum([0, simplex])[:, X]``.
    """
    simplex = jnp.asarray(simplex)
    X = jnp.asarray(X)
    if simplex.ndim != 2:
        raise ValueError(f"simplex must be a (S, D) matrix, got shape {simplex.shape}")
    D = simplex.shape[1]
    if bool(jnp.any(X != jnp.round(X))):
        raise MonotonicRangeError("monotonic covariates must be integer valued")
    if bool(jnp.any((X < 0) | (X > D))):
        raise MonotonicRangeError(
            f"monotonic covariate values must lie in [0, {D}], "
            f"got range [{X.min()}, {X.max()}]"
        )
    zeros = jnp.zeros((simplex.shape[0], 1), dtype=simplex.dtype)
    cumulative = jnp.concatenate([zeros, jnp.cumsum(simplex, axis=1)], axis=1)
    return D * cumulative[:, X.astype(jnp.int32)]


# ---------------------------------------------------------------------------
# Gaussian-process kernels
# ---------------------------------------------------------------------------


def as_locations(x: Array) -> jnp.ndarray:
    """Coerce GP inputs to a ``(M, D)`` matrix."""
    x = jnp.asarray(x)
    if x.ndim == 1:
        return x[:, None]
    return x


def cov_exp_quad(
    x: Array,
    x_new: Array | None = None,
    *,
    sdgp: Array,
    lscale: Array,
) -> jnp.ndarray:
    """Exponentiated-quadratic covariance for a single posterior draw.

    ``lscale`` holds one length-scale (isotropic) or one per input
    dimension.  Returns ``(M, M_new)``.
    """
    x = as_locations(x)
    x_new = x if x_new is None else as_locations(x_new)
    lscale = jnp.atleast_1d(lscale)
    diff = x[:, None, :] - x_new[None, :, :]
    scaled = jnp.sum(diff**2 / (2 * lscale**2), axis=-1)
    return sdgp**2 * jnp.exp(-scaled)


def spd_cov_exp_quad(slambda: Array, sdgp: Array, lscale: Array) -> jnp.ndarray:
    """Spectral density of the exponentiated-quadratic kernel.

    Vectorized over draws: ``sdgp (S,)``, ``lscale (S, 1)`` or ``(S, D)``
    and square-rooted eigenvalues ``slambda (B, D)``.  Returns ``(S, B)``.
    """
    slambda = as_locations(slambda)
    D = slambda.shape[1]
    sdgp = jnp.reshape(jnp.asarray(sdgp), (-1,))
    lscale = jnp.reshape(jnp.asarray(lscale), (sdgp.shape[0], -1))
    lscale = jnp.broadcast_to(lscale, (sdgp.shape[0], D))
    constant = sdgp**2 * math.sqrt(2 * math.pi) ** D * jnp.prod(lscale, axis=1)
    exponent = -0.5 * (lscale**2) @ (slambda**2).T
    return constant[:, None] * jnp.exp(exponent)


def jittered_cholesky(
    cov: Array,
    nug: float,
    *,
    growth: float = 10.0,
    max_retries: int = 8,
) -> jnp.ndarray:
    """Lower Cholesky factor of ``cov + jitter * I``.

    Works on a single matrix or a batch ``(..., M, M)``.  Matrices whose
    factorization fails (non-finite factor) are refactored with the
    jitter multiplied by *growth*, at most *max_retries* times; the
    remaining matrices keep their first factor.
    """
    cov = jnp.asarray(cov)
    eye = jnp.eye(cov.shape[-1], dtype=cov.dtype)
    jitter = nug
    chol = jnp.linalg.cholesky(cov + jitter * eye)
    failed = _failed_factorizations(chol)
    retries = 0
    while bool(jnp.any(failed)):
        if retries >= max_retries:
            raise CovarianceNotPositiveDefiniteError(jitter, retries)
        retries += 1
        jitter *= growth
        logger.warning(
            "Cholesky factorization failed for %d covariance matrices; "
            "retrying with jitter %g (attempt %d/%d)",
            int(jnp.sum(failed)), jitter, retries, max_retries,
        )
        retry = jnp.linalg.cholesky(cov + jitter * eye)
        chol = jnp.where(failed[..., None, None], retry, chol)
        failed = _failed_factorizations(chol)
    return chol


def _failed_factorizations(chol: jnp.ndarray) -> jnp.ndarray:
    return ~jnp.all(jnp.isfinite(chol), axis=(-2, -1))
