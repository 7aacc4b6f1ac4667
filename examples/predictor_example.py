"""Predictor tutorial: a walkthrough of the term types and both aggregators.

Demonstrates:
  1. FixedDraws / GroupDraws: overall and group-level effects
  2. SpecialDraws: a monotonic effect written as a formula
  3. GaussianProcessDraws: an approximate GP term
  4. AutocorDraws: an AR(1) recursion with a missing response
  5. CategorySpecificDraws: threshold-specific effects (3-D output)
  6. NonlinearDraws: a user formula over parameter predictors

Run:
    uv run examples/predictor_example.py
"""

import jax.numpy as jnp
import jax.random as jr
import numpy as np

from etacore import (
    AutocorDraws,
    CategorySpecificDraws,
    Draws,
    FixedDraws,
    GaussianProcessDraws,
    GroupDraws,
    NonlinearDraws,
    PredictorConfig,
    SpecialDraws,
    predictor,
)

# ==========================================================================
# Sample draws
# ==========================================================================
# 100 posterior draws for 6 observations in 2 groups.

S, N = 100, 6
key = jr.PRNGKey(0)
keys = jr.split(key, 8)

X = jnp.column_stack([jnp.ones(N), jnp.linspace(-1.0, 1.0, N)])
Z = jnp.array([[1.0, 0.0]] * 3 + [[0.0, 1.0]] * 3)


# ==========================================================================
# 1. Overall and group-level effects
# ==========================================================================

fe = FixedDraws(X=X, b=jr.normal(keys[0], (S, 2)))
re = GroupDraws(Z={"site": Z}, r={"site": 0.3 * jr.normal(keys[1], (S, 2))})

eta = predictor(Draws(nsamples=S, nobs=N, fe=fe, re=re))
print(f"fe + re: shape {eta.shape}, mean per observation {np.round(eta.mean(0), 3)}")
print()


# ==========================================================================
# 2. Monotonic effect
# ==========================================================================
# An ordinal covariate with 3 categories; the simplex has 2 entries.

simplex = jr.dirichlet(keys[2], jnp.ones(2), (S,))
sp = SpecialDraws(
    calls=["mo(simo_1, Xmo_1)"],
    bsp=0.5 + 0.1 * jr.normal(keys[3], (S, 1)),
    simo=[simplex],
    Xmo=[jnp.array([0, 0, 1, 1, 2, 2])],
)
eta = predictor(Draws(nsamples=S, nobs=N, sp=sp))
print(f"monotonic effect by category: {np.round(eta.mean(0), 3)}")
print()


# ==========================================================================
# 3. Approximate Gaussian process
# ==========================================================================
# Four basis functions of a one-dimensional Hilbert-space approximation.

B = 4
L = 1.5
t = jnp.linspace(-1.0, 1.0, N)
slambda = (jnp.arange(1, B + 1) * jnp.pi / (2 * L))[:, None]
phi = jnp.sin(slambda[:, 0] * (t[:, None] + L)) / jnp.sqrt(L)
gp = GaussianProcessDraws(
    sdgp=jnp.abs(jr.normal(keys[4], (S,))),
    lscale=jnp.full((S, 1), 0.5),
    x=phi,
    zgp=jr.normal(keys[5], (S, B)),
    slambda=slambda,
)
eta = predictor(Draws(nsamples=S, nobs=N, gp=[gp]))
print(f"approximate GP: sd across draws {np.round(eta.std(0), 3)}")
print()


# ==========================================================================
# 4. AR(1) with a missing response
# ==========================================================================
# The missing value is imputed by a caller-supplied sampler.

Y = jnp.array([0.2, 0.5, jnp.nan, 0.1, -0.3, 0.0])
ac = AutocorDraws(
    classes=frozenset({"arma"}),
    ar=jnp.full((S, 1), 0.6),
    Y=Y,
    J_lag=jnp.ones(N, dtype=int),
)


def sample_response(n, eta):
    return eta[:, n] + 0.1 * jr.normal(jr.fold_in(keys[6], n), (eta.shape[0],))


eta = predictor(Draws(nsamples=S, nobs=N, fe=fe, ac=ac), sample_response=sample_response)
print(f"fe + AR(1): {np.round(eta.mean(0), 3)}")
print()


# ==========================================================================
# 5. Category-specific effects
# ==========================================================================
# Three thresholds; the result gains a trailing threshold axis.

cs = CategorySpecificDraws(Xcs=X[:, 1:], bcs=jr.normal(keys[7], (S, 3)), nthres=3)
eta = predictor(
    Draws(nsamples=S, nobs=N, fe=fe, cs=cs),
    config=PredictorConfig(max_workers=2),
)
print(f"category-specific: shape {eta.shape}")
print()


# ==========================================================================
# 6. Non-linear formula
# ==========================================================================
# Parameter predictors come from a caller-supplied provider.

parameters = {"b1": jnp.full((S, N), 2.0), "b2": jnp.full((S, N), -0.5)}
nl = NonlinearDraws(
    nsamples=S,
    nobs=N,
    nlform="b1 * exp(b2 * x)",
    used_nlpars=["b1", "b2"],
    C={"x": jnp.arange(N, dtype=float)},
)
eta = predictor(nl, get_parameter=lambda name, i: parameters[name])
print(f"b1 * exp(b2 * x): {np.round(eta[0], 3)}")
