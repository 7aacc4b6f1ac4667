"""Posterior draws and design matrices consumed by the predictor engine.

Everything here is produced by the caller (typically from a fitted model)
and only read by the engine.  Arrays may be ``jax.Array`` or anything
``jnp.asarray`` accepts; group-level design matrices may additionally be
``jax.experimental.sparse.BCOO`` matrices.

Shapes use ``S`` for posterior draws, ``N`` for observations and ``i``
for an optional integer index array selecting a subset of observations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import jax.numpy as jnp
from jax.experimental import sparse

Array = Any


# ---------------------------------------------------------------------------
# Observation subsetting
# ---------------------------------------------------------------------------


def subset_rows(x: Array, i: Array | None) -> Array:
    """Select observation rows of a design matrix or data vector."""
    if i is None:
        return x
    if isinstance(x, sparse.BCOO):
        return _subset_sparse_rows(x, i)
    return jnp.asarray(x)[jnp.asarray(i)]


def _subset_sparse_rows(x: sparse.BCOO, i: Array) -> sparse.BCOO:
    """Row subset of a 2-D BCOO matrix built from its stored entries.

    Repeated indices repeat rows. Padding entries never match a row.
    """
    i = jnp.asarray(i)
    match = x.indices[None, :, 0] == i[:, None]
    rows, entries = jnp.nonzero(match)
    indices = jnp.stack([rows.astype(x.indices.dtype), x.indices[entries, 1]], axis=1)
    return sparse.BCOO((x.data[entries], indices), shape=(i.shape[0], x.shape[1]))


def subset_cols(x: Array, i: Array | None) -> Array:
    """Select observation columns of an ``(S, N)`` draws matrix.

    One-dimensional inputs are data vectors and are indexed directly.
    """
    if i is None:
        return x
    x = jnp.asarray(x)
    if x.ndim == 1:
        return x[jnp.asarray(i)]
    return x[:, jnp.asarray(i)]


# ---------------------------------------------------------------------------
# Per-term draws
# ---------------------------------------------------------------------------


@dataclass
class FixedDraws:
    """Overall effects: design ``X (N, K)`` and coefficients ``b (S, K)``."""

    X: Array
    b: Array


@dataclass
class GroupDraws:
    """Group-level effects, keyed by grouping factor.

    ``Z[g]`` is the ``(N, L)`` design and ``r[g]`` the ``(S, L)`` draws of
    group ``g``.  ``rsp`` holds group-level draws of special effects keyed
    by special-effect name then group (design in ``Zsp``), and ``rcs``
    holds one ``(S, L)`` matrix per threshold for category-specific
    group-level effects (design in ``Zcs``).
    """

    Z: dict[str, Array] = field(default_factory=dict)
    r: dict[str, Array] = field(default_factory=dict)
    Zsp: dict[str, Array] = field(default_factory=dict)
    rsp: dict[str, dict[str, Array]] = field(default_factory=dict)
    Zcs: dict[str, Array] = field(default_factory=dict)
    rcs: dict[str, list[Array]] = field(default_factory=dict)


@dataclass
class SpecialDraws:
    """Special effects: monotonic, measurement-error and covariate terms.

    ``calls[j]`` is the expression of special term ``j`` and ``bsp[:, j]``
    its coefficient draws; ``names[j]`` keys its group-level draws in
    :attr:`GroupDraws.rsp`.  The expression sees ``simo_{k}``/``Xmo_{k}``
    (monotonic simplexes and covariates), ``Xme_{k}`` (latent covariate
    draws), ``Csp_{k}`` (auxiliary covariates) and every key of ``Yl``,
    with ``k`` counting from 1.
    """

    calls: list[str]
    bsp: Array
    names: list[str] = field(default_factory=list)
    simo: list[Array] = field(default_factory=list)
    Xmo: list[Array] = field(default_factory=list)
    Xme: list[Array] = field(default_factory=list)
    Yl: dict[str, Array] = field(default_factory=dict)
    Csp: list[Array] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.names:
            self.names = [f"sp_{j + 1}" for j in range(len(self.calls))]
        if len(self.names) != len(self.calls):
            raise ValueError(
                f"names and calls must have the same length: "
                f"{len(self.names)} != {len(self.calls)}"
            )
        if len(self.simo) != len(self.Xmo):
            raise ValueError("every monotonic simplex needs a matching Xmo covariate")


@dataclass
class SmoothTermDraws:
    """Penalized basis blocks of one smooth term, paired with their draws."""

    Zs: list[Array]
    s: list[Array]


@dataclass
class SmoothDraws:
    """Spline terms: shared fixed basis ``Xs``/``bs`` plus per-term blocks."""

    Xs: Array | None = None
    bs: Array | None = None
    terms: list[SmoothTermDraws] = field(default_factory=list)


@dataclass
class GaussianProcessDraws:
    """One Gaussian-process term.

    Exact GPs carry locations ``x (M, D)`` and either ``zgp (S, M)``
    (predicting at ``x``) or ``x_new (M_new, D)`` with the old-data
    predictor ``yL (S, M)``.  Approximate GPs carry eigenfunction values
    ``x (N, B)``, square-rooted eigenvalues ``slambda (B, D)`` and
    ``zgp (S, B)``.

    ``Cgp`` scales the output columns, ``Jgp`` maps unique locations back
    to observations and ``Igp`` lists the observations owned by one level
    of a by-factor term.
    """

    sdgp: Array
    lscale: Array
    x: Array
    zgp: Array | None = None
    x_new: Array | None = None
    yL: Array | None = None
    slambda: Array | None = None
    nug: float | None = None
    Cgp: Array | None = None
    Jgp: Array | None = None
    Igp: Array | None = None

    @property
    def approximate(self) -> bool:
        return self.slambda is not None


@dataclass
class ByFactorGaussianProcess:
    """A GP term replicated per level of a categorical ``by`` variable."""

    levels: list[GaussianProcessDraws]


@dataclass
class CategorySpecificDraws:
    """Category-specific effects.

    ``bcs`` is ``(S, K * T)`` with threshold ``k`` of predictor ``c`` in
    column ``c * T + k``, where ``T = max(nthres)``.
    """

    Xcs: Array | None
    bcs: Array | None
    nthres: int | list[int]

    @property
    def max_thres(self) -> int:
        if isinstance(self.nthres, int):
            return self.nthres
        return int(max(self.nthres))


@dataclass
class AutocorDraws:
    """Autocorrelation structures.

    ``classes`` names the structures present (``"arma"``, ``"car"``).
    ARMA is given either as latent residuals ``err (S, N)`` or through
    ``ar (S, p)``/``ma (S, q)`` together with the response ``Y (N,)``
    (``NaN`` where missing) and the per-observation lag counts ``J_lag``.
    """

    classes: frozenset[str] = frozenset()
    err: Array | None = None
    ar: Array | None = None
    ma: Array | None = None
    Y: Array | None = None
    J_lag: Array | None = None
    Zcar: Array | None = None
    rcar: Array | None = None

    def has(self, cls: str) -> bool:
        return cls in self.classes


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


@dataclass
class Draws:
    """All draws needed for an additive linear predictor.

    Each term field is optional; absent terms contribute zero.
    """

    nsamples: int
    nobs: int
    fe: FixedDraws | None = None
    re: GroupDraws | None = None
    sp: SpecialDraws | None = None
    sm: SmoothDraws | None = None
    gp: list[GaussianProcessDraws | ByFactorGaussianProcess] = field(default_factory=list)
    cs: CategorySpecificDraws | None = None
    ac: AutocorDraws | None = None
    offset: Array | None = None


@dataclass
class NonlinearDraws:
    """Draws for a predictor defined by a non-linear formula.

    ``nlform`` is evaluated with every name in ``used_nlpars`` bound to
    that parameter's ``(S, n)`` predictor and every key of ``C`` bound to
    the covariate values.
    """

    nsamples: int
    nobs: int
    nlform: str
    used_nlpars: list[str] = field(default_factory=list)
    C: dict[str, Array] = field(default_factory=dict)
