"""
Exception taxonomy for conjoint estimand computation.

Every error message names the offending attribute, level, respondent id or
resample index so that a failing pipeline can be diagnosed without re-running
it.
"""

from __future__ import annotations


class ConjointError(Exception):
    """Base class for all errors raised by the ``conjoint`` package."""


class ConfigurationError(ConjointError, ValueError):
    """Malformed attribute/level declarations or inconsistent inputs."""


class DrawAlignmentError(ConfigurationError):
    """Population and individual draws cannot be matched by (chain, draw)."""


class ChoiceDataError(ConjointError, ValueError):
    """Observed choice data violates the task structure."""


class DegenerateInputError(ConjointError, ArithmeticError):
    """An aggregate is mathematically undefined for the given input."""


class InsufficientDrawsError(ConjointError, ValueError):
    """Fewer than two usable draws were supplied for interval estimation."""


class ResamplingFailure(ConjointError, RuntimeError):
    """Too many bootstrap resamples failed (or too few completed)."""

    def __init__(
        self,
        message: str,
        *,
        n_failed: int,
        n_attempted: int,
        n_requested: int,
        messages: list[str] | None = None,
    ) -> None:
        self.n_failed = n_failed
        self.n_attempted = n_attempted
        self.n_requested = n_requested
        self.messages = list(messages or [])
        detail = f"{message} ({n_failed} failed of {n_attempted} attempted, {n_requested} requested)"
        if self.messages:
            detail += "; sample failures: " + "; ".join(self.messages)
        super().__init__(detail)
