"""Numerical settings shared by the predictor aggregators."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class PredictorConfig(BaseModel):
    """Configuration for a predictor evaluation.

    Parameters
    ----------
    nug : float
        Diagonal jitter added to Gaussian-process covariance matrices
        when a term does not carry its own ``nug``.
    jitter_growth : float
        Factor by which the jitter grows after each failed Cholesky
        factorization.  Must be greater than 1.
    max_jitter_retries : int
        Number of escalated retries before the factorization failure
        becomes fatal.  The largest jitter tried is
        ``nug * jitter_growth ** max_jitter_retries``.
    max_workers : int
        Threads used to evaluate the additive terms.  ``1`` evaluates
        them sequentially in the calling thread.

    Examples
    --------
    ```python
    PredictorConfig()                                # defaults
    PredictorConfig(nug=1e-8, max_jitter_retries=3)  # stricter retry cap
    ```
    """

    nug: float = Field(1e-11, gt=0)
    jitter_growth: float = 10.0
    max_jitter_retries: int = Field(8, ge=0)
    max_workers: int = Field(1, ge=1)

    model_config = {"frozen": True}

    @field_validator("jitter_growth")
    @classmethod
    def _growth_above_one(cls, v: float) -> float:
        if v <= 1.0:
            raise ValueError(f"jitter_growth must be > 1, got {v}")
        return v


def resolve_config(config: PredictorConfig | None) -> PredictorConfig:
    """Return *config*, defaulting to :class:`PredictorConfig`."""
    if config is not None:
        return config
    return PredictorConfig()
