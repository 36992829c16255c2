"""
Probability models and the estimand builders written against them.

A ``ProbabilityModel`` is anything that can produce an ensemble of
per-alternative choice probabilities over the balanced grid of an
``AttributeSpace``.  Three variants cover the estimation paradigms:

- ``AnalyticModel`` — a point fit with coefficients and (optionally) their
  covariance matrix, e.g. OLS / linear probability or frequentist logit.
  Interval draws come from parametric simulation of N(beta, Sigma)
  (Krinsky & Robb, 1986).
- ``PosteriorModel`` — posterior draws of the coefficients from a Bayesian
  fit; one prediction per draw.
- ``ResampledModel`` — a ``fit_predict`` callable re-run on cluster
  bootstrap resamples, for fits without usable post-estimation tooling.

Marginal means, AMCEs and shares are computed per ensemble member and then
reduced with percentile intervals, so every paradigm shares the same
aggregation code.
"""

# Import modules
from __future__ import annotations

import abc
import logging
import threading
from typing import Mapping, Sequence

import numpy as np
from numpy.typing import NDArray

from conjoint.aggregation import (
    Link,
    amce,
    choice_shares,
    importance_from_part_worths,
    marginal_means,
    part_worth_draws,
    predict_grid,
)
from conjoint.cache import EnsembleCache
from conjoint.design import AttributeSpace
from conjoint.errors import ConfigurationError
from conjoint.intervals import collect_columns, summarize
from conjoint.models import (
    INTERCEPT,
    AnalysisSettings,
    Alternative,
    Attribute,
    Estimand,
    EstimandKind,
    Observation,
    UtilityDraw,
)
from conjoint.resampling import BootstrapResult, FitPredict, bootstrap, describe_callable

logger = logging.getLogger(__name__)

Predictions = dict[Alternative, float]

# =====================================================================
# Model capability
# =====================================================================


class ProbabilityModel(abc.ABC):
    """Source of per-alternative choice probabilities over a balanced grid."""

    @abc.abstractmethod
    def prediction_draws(self, space: AttributeSpace) -> list[Predictions]:
        """One prediction mapping per ensemble member (a single one for a point fit)."""

    def point_predictions(self, space: AttributeSpace) -> Predictions:
        """Ensemble-mean prediction for every alternative."""
        draws = self.prediction_draws(space)
        columns = collect_columns(draws)
        return {alt: float(np.mean(ps)) for alt, ps in columns.items()}


class AnalyticModel(ProbabilityModel):
    """
    Point coefficients with an optional covariance matrix.

    Parameters
    ----------
    coefficients : UtilityDraw
        Point estimates for every non-reference level (and the intercept).
    covariance : square array or None
        Covariance of the coefficients, ordered as
        ``space.parameter_index(include_intercept=include_intercept)``.
        Without it only point estimates are available.
    link : "identity", "logistic" or "logit"
    n_simulations : number of N(beta, Sigma) draws for intervals
    """

    def __init__(
        self,
        coefficients: UtilityDraw,
        covariance: NDArray[np.float64] | None = None,
        *,
        link: Link = "identity",
        n_simulations: int = 1000,
        include_intercept: bool = False,
        seed: int | None = None,
    ) -> None:
        self.coefficients = coefficients
        self.covariance = None if covariance is None else np.asarray(covariance, dtype=float)
        self.link = link
        self.n_simulations = n_simulations
        self.include_intercept = include_intercept
        self.seed = seed
        self._simulated: dict[tuple[tuple[str, str], ...], list[UtilityDraw]] = {}

    def _vector(self, space: AttributeSpace) -> NDArray[np.float64]:
        values = []
        for name, level in space.parameter_index(include_intercept=self.include_intercept):
            if name == INTERCEPT:
                values.append(self.coefficients.intercept)
            else:
                attr = space.attribute(name)
                values.append(self.coefficients.utility(name, level, attr.reference_level))
        return np.array(values)

    def _from_vector(self, space: AttributeSpace, vector: NDArray[np.float64], draw: int) -> UtilityDraw:
        values: dict[str, dict[str, float]] = {}
        intercept = self.coefficients.intercept
        for (name, level), v in zip(space.parameter_index(include_intercept=self.include_intercept), vector):
            if name == INTERCEPT:
                intercept = float(v)
            else:
                values.setdefault(name, {})[level] = float(v)
        return UtilityDraw(values=values, intercept=intercept, draw=draw)

    def simulated_coefficients(self, space: AttributeSpace) -> list[UtilityDraw]:
        """
        Coefficient draws from N(beta, Sigma).

        Simulated once per parameter layout and reused, so every estimand
        computed from this model shares the same ensemble.
        """
        if self.covariance is None:
            return [self.coefficients]
        layout = tuple(space.parameter_index(include_intercept=self.include_intercept))
        if layout not in self._simulated:
            self._simulated[layout] = self._simulate(space)
        return list(self._simulated[layout])

    def _simulate(self, space: AttributeSpace) -> list[UtilityDraw]:
        beta = self._vector(space)
        if self.covariance.shape != (beta.size, beta.size):
            raise ConfigurationError(
                f"Covariance has shape {self.covariance.shape}; expected "
                f"({beta.size}, {beta.size}) for parameters "
                f"{space.parameter_index(include_intercept=self.include_intercept)}"
            )
        rng = np.random.default_rng(self.seed)
        sims = rng.multivariate_normal(beta, self.covariance, size=self.n_simulations)
        return [self._from_vector(space, row, i) for i, row in enumerate(sims)]

    def point_predictions(self, space: AttributeSpace) -> Predictions:
        return predict_grid(self.coefficients, space, link=self.link)

    def prediction_draws(self, space: AttributeSpace) -> list[Predictions]:
        return [predict_grid(d, space, link=self.link) for d in self.simulated_coefficients(space)]

    def coefficient_draws(self, space: AttributeSpace) -> list[UtilityDraw]:
        return self.simulated_coefficients(space)


class PosteriorModel(ProbabilityModel):
    """Posterior draws of population-level coefficients."""

    def __init__(self, draws: Sequence[UtilityDraw], *, link: Link = "logit") -> None:
        if not draws:
            raise ConfigurationError("PosteriorModel needs at least one draw")
        self.draws = list(draws)
        self.link = link

    def prediction_draws(self, space: AttributeSpace) -> list[Predictions]:
        return [predict_grid(d, space, link=self.link) for d in self.draws]

    def coefficient_draws(self, space: AttributeSpace) -> list[UtilityDraw]:
        return list(self.draws)


class ResampledModel(ProbabilityModel):
    """
    Bootstrap ensemble of a ``fit_predict`` collaborator.

    The bootstrap runs once per model instance; later calls reuse the result.
    """

    def __init__(
        self,
        observations: Sequence[Observation],
        fit_predict: FitPredict,
        *,
        settings: AnalysisSettings | None = None,
        cache: EnsembleCache | None = None,
        model_spec: str = "",
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.observations = list(observations)
        self.fit_predict = fit_predict
        self.settings = settings or AnalysisSettings()
        self.cache = cache
        self.model_spec = model_spec or describe_callable(fit_predict)
        self.cancel_event = cancel_event
        self.result: BootstrapResult | None = None

    def run(self, space: AttributeSpace) -> BootstrapResult:
        if self.result is None:
            s = self.settings
            self.result = bootstrap(
                self.observations,
                self.fit_predict,
                space.grid(),
                n_resamples=s.n_resamples,
                seed=s.seed,
                n_jobs=s.n_jobs,
                executor=s.executor,
                time_budget=s.time_budget,
                cancel_event=self.cancel_event,
                cache=self.cache,
                model_spec=self.model_spec,
            )
        return self.result

    def prediction_draws(self, space: AttributeSpace) -> list[Predictions]:
        return self.run(space).predictions


# =====================================================================
# Estimand builders
# =====================================================================


def _marginal_mean_estimands(
    draws: Sequence[Predictions],
    attr: Attribute,
    alpha: float,
) -> list[Estimand]:
    columns = collect_columns([marginal_means(p, attr) for p in draws])
    return [
        summarize(columns[lv], alpha, kind=EstimandKind.MARGINAL_MEAN, attribute=attr.name, level=lv)
        for lv in attr.levels
    ]


def _amce_estimands(
    draws: Sequence[Predictions],
    attr: Attribute,
    alpha: float,
) -> list[Estimand]:
    ref = attr.reference_level
    columns = collect_columns([amce(marginal_means(p, attr), ref) for p in draws])
    out: list[Estimand] = []
    for lv in attr.levels:
        if lv == ref:
            # Exactly zero in every draw; no interval to speak of
            out.append(Estimand(
                kind=EstimandKind.AMCE, attribute=attr.name, level=lv,
                reference_level=ref, estimate=0.0, n_draws=len(draws),
            ))
        else:
            out.append(summarize(
                columns[lv], alpha, kind=EstimandKind.AMCE,
                attribute=attr.name, level=lv, reference_level=ref,
            ))
    return out


def estimate_marginal_means(
    model: ProbabilityModel,
    space: AttributeSpace,
    attribute: str,
    alpha: float = 0.05,
) -> list[Estimand]:
    """Marginal mean (with interval when the model has an ensemble) per level."""
    attr = space.attribute(attribute)
    return _marginal_mean_estimands(model.prediction_draws(space), attr, alpha)


def estimate_amces(
    model: ProbabilityModel,
    space: AttributeSpace,
    attribute: str,
    alpha: float = 0.05,
) -> list[Estimand]:
    """AMCE of every level against the attribute's reference level."""
    attr = space.attribute(attribute)
    return _amce_estimands(model.prediction_draws(space), attr, alpha)


def estimate_all(
    model: ProbabilityModel,
    space: AttributeSpace,
    alpha: float = 0.05,
) -> dict[str, dict[str, list[Estimand]]]:
    """
    ``{attribute: {"marginal_means": [...], "amces": [...]}}`` for every attribute.

    Both tables come from one prediction ensemble, so each AMCE equals the
    difference of the matching marginal means draw by draw.
    """
    draws = model.prediction_draws(space)
    return {
        attr.name: {
            "marginal_means": _marginal_mean_estimands(draws, attr, alpha),
            "amces": _amce_estimands(draws, attr, alpha),
        }
        for attr in space.attributes
    }


def estimate_importance(
    draws: Sequence[UtilityDraw],
    space: AttributeSpace,
    respondent: str,
    alpha: float = 0.05,
    *,
    population: Sequence[UtilityDraw] | None = None,
) -> list[Estimand]:
    """Importance of each attribute for one respondent, summarised over draws."""
    mine = [d for d in draws if d.respondent_id == respondent]
    if not mine:
        raise ConfigurationError(f"No draws for respondent '{respondent}'")
    combined = part_worth_draws(mine, space.attributes, population=population)
    per_draw = [importance_from_part_worths(d.values, who=respondent) for d in combined]
    columns = collect_columns(per_draw)
    return [
        summarize(
            columns[name], alpha, kind=EstimandKind.IMPORTANCE,
            attribute=name, respondent_id=respondent,
        )
        for name in space.names
    ]


def estimate_shares(
    coefficient_draws: Sequence[UtilityDraw],
    market: Sequence[Mapping[str, str]],
    space: AttributeSpace,
    alpha: float = 0.05,
) -> list[Estimand]:
    """Simulated choice share of each product in *market*, one estimand per product."""
    alternatives = [space.alternative(levels) for levels in market]
    per_draw = [choice_shares(d, alternatives, space.attributes) for d in coefficient_draws]
    out: list[Estimand] = []
    for j, alt in enumerate(alternatives):
        out.append(summarize(
            [shares[j] for shares in per_draw], alpha,
            kind=EstimandKind.SHARE, level=str(alt),
        ))
    return out
