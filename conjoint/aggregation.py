"""
Aggregation of model output into conjoint estimands.

Three families of functions live here, all pure and all working on the
explicit records from :mod:`conjoint.models`:

1. **Prediction** — turn one ``UtilityDraw`` into choice probabilities over
   the balanced grid (single alternatives for linear-probability and binary
   logit models, the paired grid for multinomial logit).
2. **Causal estimands** — marginal means grouped by one attribute, and
   AMCEs as differences from the reference level.
3. **Preference estimands** — individual part-worths (population draws plus
   individual deviations, joined on an explicit ``(chain, draw)`` key),
   range-based attribute importance, and market share simulation.

The balanced grid from :mod:`conjoint.design` is a precondition for
marginalisation: marginal means over an unbalanced set of predictions are
biased towards over-represented level combinations.
"""

# Import modules
from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Literal, Mapping, Sequence

import numpy as np

from conjoint.design import AttributeSpace
from conjoint.errors import ConfigurationError, DegenerateInputError, DrawAlignmentError
from conjoint.models import Alternative, Attribute, UtilityDraw

logger = logging.getLogger(__name__)

Link = Literal["identity", "logistic", "logit"]
PartWorths = dict[str, dict[str, float]]

# =====================================================================
# Prediction
# =====================================================================


def _logistic(x: float) -> float:
    """Overflow-safe inverse logit."""
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


def alternative_utility(
    draw: UtilityDraw,
    alternative: Alternative,
    attributes: Sequence[Attribute],
) -> float:
    """Intercept plus the utility of every level in *alternative*."""
    total = draw.intercept
    for attr in attributes:
        total += draw.utility(attr.name, alternative.level_of(attr.name), attr.reference_level)
    return total


def predict_alternatives(
    draw: UtilityDraw,
    grid: Sequence[Alternative],
    attributes: Sequence[Attribute],
    *,
    link: Literal["identity", "logistic"] = "identity",
) -> dict[Alternative, float]:
    """
    Predicted choice probability of each alternative judged on its own.

    ``identity`` is the linear probability model (the linear predictor *is*
    the probability); ``logistic`` applies the inverse logit.
    """
    if link not in ("identity", "logistic"):
        raise ConfigurationError(f"Link '{link}' cannot be applied to single alternatives")
    out: dict[Alternative, float] = {}
    for alt in grid:
        u = alternative_utility(draw, alt, attributes)
        out[alt] = u if link == "identity" else _logistic(u)
    return out


def predict_pairs(
    draw: UtilityDraw,
    pairs: Sequence[tuple[Alternative, Alternative]],
    attributes: Sequence[Attribute],
) -> dict[tuple[Alternative, Alternative], float]:
    """
    Multinomial-logit probability that the first alternative of each pair
    is chosen over the second.
    """
    cache: dict[Alternative, float] = {}

    def util(alt: Alternative) -> float:
        if alt not in cache:
            cache[alt] = alternative_utility(draw, alt, attributes)
        return cache[alt]

    return {(a, b): _logistic(util(a) - util(b)) for a, b in pairs}


def collapse_pairs(
    pair_predictions: Mapping[tuple[Alternative, Alternative], float],
) -> dict[Alternative, float]:
    """
    Average each first-position alternative over all of its opponents.

    On the paired grid every alternative meets the same set of opponents, so
    the result is a balanced per-alternative mapping whose marginal means
    equal those of the paired grid itself.
    """
    grouped: dict[Alternative, list[float]] = defaultdict(list)
    for (first, _), p in pair_predictions.items():
        grouped[first].append(p)
    return {alt: math.fsum(ps) / len(ps) for alt, ps in grouped.items()}


def predict_grid(draw: UtilityDraw, space: AttributeSpace, *, link: Link = "logit") -> dict[Alternative, float]:
    """Balanced per-alternative predictions for one draw under *link*."""
    if link == "logit":
        return collapse_pairs(predict_pairs(draw, space.paired_grid(), space.attributes))
    return predict_alternatives(draw, space.grid(), space.attributes, link=link)


# =====================================================================
# Marginal means and AMCEs
# =====================================================================


def marginal_means(
    predicted_probabilities: Mapping[Alternative, float],
    group_by: Attribute,
) -> dict[str, float]:
    """
    Mean predicted probability for each level of *group_by*.

    All other attributes are averaged out; this only yields a marginal mean
    when the predictions cover a balanced grid.  Levels with unequal row
    counts are rejected since they can only come from an unbalanced grid.
    """
    grouped: dict[str, list[float]] = {lv: [] for lv in group_by.levels}
    for alt, p in predicted_probabilities.items():
        level = alt.level_of(group_by.name)
        if level not in grouped:
            raise ConfigurationError(
                f"Prediction for undeclared level '{level}' of attribute '{group_by.name}'"
            )
        grouped[level].append(float(p))

    counts = {lv: len(ps) for lv, ps in grouped.items()}
    if len(set(counts.values())) != 1 or 0 in counts.values():
        raise DegenerateInputError(
            f"Predictions are not balanced over attribute '{group_by.name}': rows per level {counts}"
        )

    # fsum keeps the result independent of grid order
    return {lv: math.fsum(ps) / len(ps) for lv, ps in grouped.items()}


def amce(marginal_means_by_level: Mapping[str, float], reference_level: str) -> dict[str, float]:
    """Difference of each level's marginal mean from the reference level's."""
    if reference_level not in marginal_means_by_level:
        raise ConfigurationError(
            f"Reference level '{reference_level}' not found among {list(marginal_means_by_level)}"
        )
    base = marginal_means_by_level[reference_level]
    return {
        lv: 0.0 if lv == reference_level else mm - base
        for lv, mm in marginal_means_by_level.items()
    }


# =====================================================================
# Individual part-worths and importance
# =====================================================================


def _index_population(population: Sequence[UtilityDraw]) -> dict[tuple[int | None, int | None], UtilityDraw]:
    indexed: dict[tuple[int | None, int | None], UtilityDraw] = {}
    for pop in population:
        if pop.key in indexed:
            raise DrawAlignmentError(f"Population draw key {pop.key} appears more than once")
        indexed[pop.key] = pop
    return indexed


def part_worth_draws(
    draws: Sequence[UtilityDraw],
    attributes: Sequence[Attribute],
    *,
    population: Sequence[UtilityDraw] | None = None,
) -> list[UtilityDraw]:
    """
    Complete per-respondent utility records, one per respondent and draw.

    Every level of every attribute is filled in, with the reference level
    set to 0.  When *population* is given, each individual draw is treated
    as a deviation and added to the population draw carrying the same
    ``(chain, draw)`` key.  Every respondent must cover exactly the
    population's keys, once each.
    """
    pop_index = _index_population(population) if population is not None else None

    seen: dict[str, set[tuple[int | None, int | None]]] = defaultdict(set)
    combined: list[UtilityDraw] = []
    for d in draws:
        if d.respondent_id is None:
            raise ConfigurationError(f"Individual draw {d.key} has no respondent_id")
        if d.key in seen[d.respondent_id]:
            raise DrawAlignmentError(
                f"Respondent '{d.respondent_id}' has more than one draw with key {d.key}"
            )
        seen[d.respondent_id].add(d.key)

        base: UtilityDraw | None = None
        if pop_index is not None:
            base = pop_index.get(d.key)
            if base is None:
                raise DrawAlignmentError(
                    f"Respondent '{d.respondent_id}' draw {d.key} has no matching population draw"
                )

        values: PartWorths = {}
        for attr in attributes:
            ref = attr.reference_level
            values[attr.name] = {}
            for lv in attr.levels:
                if lv == ref:
                    values[attr.name][lv] = 0.0
                    continue
                u = d.utility(attr.name, lv, ref)
                if base is not None:
                    u += base.utility(attr.name, lv, ref)
                values[attr.name][lv] = u

        intercept = d.intercept + (base.intercept if base is not None else 0.0)
        combined.append(
            UtilityDraw(
                values=values,
                intercept=intercept,
                draw=d.draw,
                chain=d.chain,
                respondent_id=d.respondent_id,
            )
        )

    if pop_index is not None:
        expected = set(pop_index)
        for rid, keys in seen.items():
            missing = expected - keys
            if missing:
                sample = sorted(missing, key=str)[:5]
                raise DrawAlignmentError(
                    f"Respondent '{rid}' is missing {len(missing)} population draw(s), e.g. {sample}"
                )

    return combined


def individual_part_worths(
    draws: Sequence[UtilityDraw],
    attributes: Sequence[Attribute],
    *,
    population: Sequence[UtilityDraw] | None = None,
) -> dict[str, PartWorths]:
    """
    Part-worth utilities per respondent: ``{respondent: {attr: {level: u}}}``.

    Respondents with several draws get the per-level mean across draws.
    """
    by_respondent: dict[str, list[UtilityDraw]] = defaultdict(list)
    for d in part_worth_draws(draws, attributes, population=population):
        by_respondent[d.respondent_id].append(d)

    result: dict[str, PartWorths] = {}
    for rid, rdraws in by_respondent.items():
        result[rid] = {
            attr.name: {
                lv: math.fsum(d.values[attr.name][lv] for d in rdraws) / len(rdraws)
                for lv in attr.levels
            }
            for attr in attributes
        }
    return result


def importance_from_part_worths(part_worths: Mapping[str, Mapping[str, float]], *, who: str = "") -> dict[str, float]:
    """Share of the total utility range attributable to each attribute."""
    ranges = {
        attr: max(levels.values()) - min(levels.values())
        for attr, levels in part_worths.items()
    }
    total = math.fsum(ranges.values())
    if total <= 0.0:
        raise DegenerateInputError(
            f"Total part-worth range is zero{' for respondent ' + repr(who) if who else ''}; "
            "importance is undefined"
        )
    return {attr: r / total for attr, r in ranges.items()}


def attribute_importance(part_worths: Mapping[str, PartWorths], respondent: str) -> dict[str, float]:
    """
    Range-based importance of each attribute for one respondent.

    Importances are non-negative and sum to 1.
    """
    if respondent not in part_worths:
        raise ConfigurationError(f"No part-worths for respondent '{respondent}'")
    return importance_from_part_worths(part_worths[respondent], who=respondent)


# =====================================================================
# Share simulation
# =====================================================================


def choice_shares(
    draw: UtilityDraw,
    market: Sequence[Alternative],
    attributes: Sequence[Attribute],
) -> list[float]:
    """Multinomial-logit choice shares of the alternatives in *market*."""
    if len(market) < 2:
        raise ConfigurationError("A market needs at least 2 alternatives")
    utilities = np.array([alternative_utility(draw, alt, attributes) for alt in market])
    utilities -= np.max(utilities)
    exp_u = np.exp(utilities)
    return [float(s) for s in exp_u / np.sum(exp_u)]


def share_by_level(shares: Mapping[Alternative, float], attribute: Attribute) -> dict[str, float]:
    """Total share held by the alternatives carrying each level of *attribute*."""
    grouped: dict[str, list[float]] = {lv: [] for lv in attribute.levels}
    for alt, s in shares.items():
        level = alt.level_of(attribute.name)
        if level not in grouped:
            raise ConfigurationError(
                f"Share for undeclared level '{level}' of attribute '{attribute.name}'"
            )
        grouped[level].append(s)
    return {lv: math.fsum(ss) for lv, ss in grouped.items()}
