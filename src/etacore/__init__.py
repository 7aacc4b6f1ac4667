"""etacore: linear predictors of Bayesian regression models across posterior draws."""

__version__ = "0.1.0"

from etacore.config import PredictorConfig
from etacore.exceptions import (
    CovarianceNotPositiveDefiniteError,
    ExpressionError,
    MissingCollaboratorError,
    MonotonicRangeError,
    PointwiseEvaluationError,
    PredictorError,
    UnknownFunctionError,
    VariableTypeMismatchError,
)
from etacore.draws import (
    AutocorDraws,
    ByFactorGaussianProcess,
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
from etacore.expressions import compile_expression, evaluate_expression
from etacore.linalg import (
    cov_exp_quad,
    fixed_product,
    jittered_cholesky,
    mo,
    random_product,
    spd_cov_exp_quad,
)
from etacore.gaussian_process import evaluate_gp, predictor_gp
from etacore.autocorrelation import ResidualWindow, predictor_ac, predictor_arma
from etacore.terms import (
    EvaluationContext,
    TermEvaluator,
    category_specific,
    predictor_cs,
    predictor_expand,
)
from etacore.predictor import (
    LinearPredictor,
    NonlinearPredictor,
    Predictor,
    predictor,
    resolve_predictor,
)
