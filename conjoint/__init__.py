"""
conjoint - preference estimands from conjoint choice data

Marginal means, AMCEs, individual part-worths with range importance and
share simulations, computed the same way from OLS/LPM coefficients,
multinomial-logit fits, bootstrap ensembles or Bayesian posterior draws.
"""

from conjoint.models import (
    Alternative,
    AnalysisSettings,
    Attribute,
    ChoiceTask,
    Estimand,
    EstimandKind,
    Observation,
    StudyConfig,
    UtilityDraw,
)
from conjoint.errors import (
    ChoiceDataError,
    ConfigurationError,
    ConjointError,
    DegenerateInputError,
    DrawAlignmentError,
    InsufficientDrawsError,
    ResamplingFailure,
)
from conjoint.design import (
    AttributeSpace,
    build_grid,
    build_paired_grid,
    flatten_to_long,
)
from conjoint.aggregation import (
    amce,
    attribute_importance,
    individual_part_worths,
    marginal_means,
)
from conjoint.intervals import percentile_interval
from conjoint.resampling import BootstrapResult, bootstrap
from conjoint.estimation import (
    AnalyticModel,
    PosteriorModel,
    ProbabilityModel,
    ResampledModel,
    estimate_all,
    estimate_amces,
    estimate_importance,
    estimate_marginal_means,
    estimate_shares,
)

__version__ = "0.1.0"

__all__ = [
    "Alternative",
    "AnalysisSettings",
    "Attribute",
    "ChoiceTask",
    "Estimand",
    "EstimandKind",
    "Observation",
    "StudyConfig",
    "UtilityDraw",
    "ChoiceDataError",
    "ConfigurationError",
    "ConjointError",
    "DegenerateInputError",
    "DrawAlignmentError",
    "InsufficientDrawsError",
    "ResamplingFailure",
    "AttributeSpace",
    "build_grid",
    "build_paired_grid",
    "flatten_to_long",
    "amce",
    "attribute_importance",
    "individual_part_worths",
    "marginal_means",
    "percentile_interval",
    "BootstrapResult",
    "bootstrap",
    "AnalyticModel",
    "PosteriorModel",
    "ProbabilityModel",
    "ResampledModel",
    "estimate_all",
    "estimate_amces",
    "estimate_importance",
    "estimate_marginal_means",
    "estimate_shares",
]
