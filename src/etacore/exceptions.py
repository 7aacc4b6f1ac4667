"""Error types raised while computing linear predictors."""

from __future__ import annotations


class PredictorError(Exception):
    """Base class for all etacore errors."""


class VariableTypeMismatchError(PredictorError):
    """A design or coefficient matrix has incompatible dimensions.

    Almost always caused by a covariate whose numeric/categorical type
    differs between the fitting data and the prediction data, or by a
    covariate that is missing.
    """


class PointwiseEvaluationError(PredictorError, NotImplementedError):
    """Evaluation on an observation subset was requested for a term
    that couples all observations."""


class CovarianceNotPositiveDefiniteError(PredictorError):
    """Cholesky factorization failed even after jitter escalation."""

    def __init__(self, jitter: float, retries: int) -> None:
        self.jitter = jitter
        self.retries = retries
        super().__init__(
            "The Gaussian process covariance matrix is not positive definite. "
            f"Factorization still failed after {retries} retries with a "
            f"final jitter of {jitter:g}. Setting 'nug' above {jitter:g} may help."
        )


class ExpressionError(PredictorError):
    """A special-effect or non-linear formula could not be evaluated."""


class UnknownFunctionError(ExpressionError):
    """A formula calls a function that is not available."""

    def __init__(self, function_name: str) -> None:
        self.function_name = function_name
        super().__init__(
            f"could not find function {function_name!r}. Most likely this is "
            "because the formula uses a function that was only defined when "
            "the model was fitted. If this is a user-defined function, pass "
            "a vectorized implementation via functions={...} and try again."
        )


class MonotonicRangeError(PredictorError, ValueError):
    """A monotonic covariate lies outside the range of its simplex."""


class MissingCollaboratorError(PredictorError):
    """A required injected callable was not supplied."""
