"""
Data models for conjoint estimand computation.

These Pydantic models define the attribute/level structure of a study, the
alternatives and observations built from it, the utility draws returned by
a model-fitting collaborator, and the estimand records handed to the
presentation layer.
"""

# Import modules
from __future__ import annotations
import enum
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from conjoint.errors import ConfigurationError

# Reserved attribute name used for the model intercept in draw files
INTERCEPT = "(Intercept)"

# ------------------------------------------------------------------
# Study structure
# ------------------------------------------------------------------

class Attribute(BaseModel):
    """A categorical factor with ordered levels and a reference level."""

    model_config = ConfigDict(frozen=True)

    name: str
    levels: list[str]
    reference: str | None = None
    label: str | None = None

    @property
    def reference_level(self) -> str:
        """The explicit reference level, or the first declared level."""
        if self.reference is not None:
            return self.reference
        if not self.levels:
            raise ConfigurationError(f"Attribute '{self.name}' declares no levels")
        return self.levels[0]

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Attribute):
            return self.name == other.name and self.levels == other.levels
        return NotImplemented


class Alternative(BaseModel):
    """One product profile: exactly one level for every attribute."""

    model_config = ConfigDict(frozen=True)

    levels: dict[str, str] = Field(
        description="Mapping of attribute name -> level"
    )

    def level_of(self, attribute: str) -> str:
        try:
            return self.levels[attribute]
        except KeyError:
            raise ConfigurationError(
                f"Alternative {self.levels} has no level for attribute '{attribute}'"
            ) from None

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.levels.items())))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Alternative):
            return self.levels == other.levels
        return NotImplemented

    def __str__(self) -> str:
        return ", ".join(f"{a}={lv}" for a, lv in self.levels.items())


class ChoiceTask(BaseModel):
    """A set of alternatives shown together; at most one is chosen."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    respondent_id: str | None = None
    alternatives: list[Alternative] = Field(min_length=2)
    chosen_index: int | None = None


class Observation(BaseModel):
    """One row of observed choice data."""

    model_config = ConfigDict(frozen=True)

    respondent_id: str
    task_id: str
    alternative_id: str
    levels: dict[str, str]
    chosen: bool

    @property
    def alternative(self) -> Alternative:
        return Alternative(levels=self.levels)


# ------------------------------------------------------------------
# Model output
# ------------------------------------------------------------------

class UtilityDraw(BaseModel):
    """
    Per-level utilities from one model fit, posterior draw or resample.

    ``values`` maps attribute -> level -> utility.  Reference levels may be
    omitted, in which case they are taken to be 0.
    """

    model_config = ConfigDict(frozen=True)

    values: dict[str, dict[str, float]]
    intercept: float = 0.0
    draw: int | None = None
    chain: int | None = None
    respondent_id: str | None = None

    @property
    def key(self) -> tuple[int | None, int | None]:
        """Identifier used to join population and individual draws."""
        return (self.chain, self.draw)

    def utility(self, attribute: str, level: str, reference: str) -> float:
        """Return the utility of *level*; an absent reference level is 0."""
        stored = self.values.get(attribute, {})
        if level in stored:
            return stored[level]
        if level == reference:
            return 0.0
        who = f" (respondent '{self.respondent_id}')" if self.respondent_id else ""
        raise ConfigurationError(
            f"Draw {self.key}{who} has no utility for {attribute}={level}"
        )


class EstimandKind(str, enum.Enum):
    """The quantities this package computes."""

    MARGINAL_MEAN = "marginal_mean"
    AMCE = "amce"
    IMPORTANCE = "importance"
    SHARE = "share"


class Estimand(BaseModel):
    """A computed quantity with an optional percentile interval."""

    kind: EstimandKind
    attribute: str | None = None
    level: str | None = None
    reference_level: str | None = None
    respondent_id: str | None = None
    estimate: float
    lower: float | None = None
    upper: float | None = None
    conf_level: float | None = None
    n_draws: int | None = None

    @property
    def has_interval(self) -> bool:
        return self.lower is not None and self.upper is not None


# ------------------------------------------------------------------
# Study configuration (loaded from YAML)
# ------------------------------------------------------------------

class AnalysisSettings(BaseModel):
    """Parameters that control estimation and resampling."""

    alpha: float = Field(default=0.05, gt=0.0, lt=1.0)
    n_resamples: int = Field(default=500, ge=2)
    seed: int | None = None
    n_jobs: int = Field(default=1, ge=1)
    executor: Literal["thread", "process"] = "thread"
    # Seconds; the resampling loop stops cooperatively once exceeded
    time_budget: float | None = Field(default=None, gt=0.0)
    link: Literal["identity", "logistic", "logit"] = "logit"
    # Draws from N(beta, Sigma) for coefficient-only models
    n_simulations: int = Field(default=1000, ge=2)
    cache_dir: Path | None = None


class StudyConfig(BaseModel):
    """Top-level study configuration, typically loaded from a YAML file."""

    name: str
    description: str = ""
    attributes: list[Attribute] = Field(min_length=1)
    settings: AnalysisSettings = Field(default_factory=AnalysisSettings)
    # Product profiles for choice-share simulation
    market: list[dict[str, str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_unique_attribute_names(self) -> "StudyConfig":
        names = [a.name for a in self.attributes]
        if len(names) != len(set(names)):
            raise ValueError("Attribute names must be unique")
        return self

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, path: str | Path) -> "StudyConfig":
        """Load a study configuration from a YAML file."""
        path = Path(path)
        with path.open() as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"{path.name} is not valid YAML: {exc}") from exc
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid study config {path.name}: {exc}") from exc
