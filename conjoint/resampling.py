"""
Cluster (respondent-level) bootstrap for prediction ensembles.

Used when a model offers no analytic variance for its predictions, e.g. a
multinomial logit fitted by a library without post-estimation support.  Each
resample draws respondents with replacement, hands the resampled
observations to a ``fit_predict(observations, grid)`` collaborator and keeps
the returned per-alternative probabilities.

Determinism: every resample index gets its own generator spawned from
``numpy.random.SeedSequence(seed)``, so resample membership depends only on
``(seed, index, observations)``, never on the number of workers or the order
in which resamples finish.

Failure policy: a resample whose fit raises is logged, recorded and dropped,
never retried.  The call raises ``ResamplingFailure`` when more than half of
the attempted resamples failed, or when cooperative cancellation (time
budget or cancel event) stopped the loop before half of the requested
resamples were attempted.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Sequence

import numpy as np

from conjoint.cache import EnsembleCache, cache_key, dataset_fingerprint, grid_fingerprint
from conjoint.errors import ConfigurationError, ResamplingFailure
from conjoint.models import Alternative, Observation

logger = logging.getLogger(__name__)

FitPredict = Callable[[list[Observation], list[Alternative]], Mapping[Alternative, float]]

# Fraction of resamples that must succeed / complete
MIN_VALID_FRACTION = 0.5

# =====================================================================
# Result containers
# =====================================================================


@dataclass
class ResampleFailureRecord:
    """A resample whose fit or prediction failed."""

    index: int
    message: str


@dataclass
class BootstrapResult:
    """Ensemble of predictions from successful resamples, in index order."""

    predictions: list[dict[Alternative, float]]
    indices: list[int]
    memberships: dict[int, list[str]]
    failures: list[ResampleFailureRecord]
    n_requested: int
    n_attempted: int
    cancelled: bool = False
    from_cache: bool = False
    elapsed: float = field(default=0.0, compare=False)

    @property
    def n_succeeded(self) -> int:
        return len(self.predictions)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def completed_fraction(self) -> float:
        """Share of requested resamples that were attempted."""
        return self.n_attempted / self.n_requested if self.n_requested else 0.0

    @property
    def failure_fraction(self) -> float:
        return self.n_failed / self.n_attempted if self.n_attempted else 0.0


# =====================================================================
# Resampling
# =====================================================================


def group_by_cluster(
    observations: Sequence[Observation],
    cluster_key: str = "respondent_id",
) -> dict[str, list[Observation]]:
    """Observations per cluster id, clusters in order of first appearance."""
    groups: dict[str, list[Observation]] = {}
    for obs in observations:
        try:
            cid = getattr(obs, cluster_key)
        except AttributeError:
            raise ConfigurationError(f"Observations have no cluster field '{cluster_key}'") from None
        groups.setdefault(cid, []).append(obs)
    return groups


def resample_clusters(
    groups: Mapping[str, Sequence[Observation]],
    rng: np.random.Generator,
    cluster_key: str = "respondent_id",
) -> tuple[list[Observation], list[str]]:
    """
    Draw as many clusters as there are, with replacement.

    Each drawn copy becomes a synthetic cluster ``"<id>#<k>"`` carrying the
    complete original task set, so a respondent drawn twice appears as two
    independent respondents.  Returns the resampled observations and the
    drawn original cluster ids.
    """
    cluster_ids = list(groups)
    picks = rng.integers(0, len(cluster_ids), size=len(cluster_ids))
    drawn = [cluster_ids[i] for i in picks]

    resampled: list[Observation] = []
    for k, cid in enumerate(drawn):
        synthetic = f"{cid}#{k}"
        resampled.extend(
            obs.model_copy(update={cluster_key: synthetic}) for obs in groups[cid]
        )
    return resampled, drawn


def resample_seeds(seed: int | None, n_resamples: int) -> list[np.random.SeedSequence]:
    """One independent child seed per resample index."""
    return np.random.SeedSequence(seed).spawn(n_resamples)


def resample_memberships(
    observations: Sequence[Observation],
    n_resamples: int,
    seed: int | None,
    cluster_key: str = "respondent_id",
) -> list[list[str]]:
    """Drawn cluster ids of every resample, without fitting anything."""
    groups = group_by_cluster(observations, cluster_key)
    return [
        resample_clusters(groups, np.random.default_rng(child), cluster_key)[1]
        for child in resample_seeds(seed, n_resamples)
    ]


def describe_callable(fn: Callable[..., Any]) -> str:
    """``"module:qualname"`` of *fn*, used to tell fitters apart in the cache."""
    module = getattr(fn, "__module__", None) or type(fn).__module__
    name = getattr(fn, "__qualname__", None) or repr(fn)
    return f"{module}:{name}"


def _run_one(
    index: int,
    groups: Mapping[str, Sequence[Observation]],
    child_seed: np.random.SeedSequence,
    fit_predict: FitPredict,
    grid: list[Alternative],
    cluster_key: str,
) -> tuple[int, list[str], dict[Alternative, float] | None, str | None]:
    """Fit and predict one resample; errors are returned, not raised."""
    rng = np.random.default_rng(child_seed)
    sample, drawn = resample_clusters(groups, rng, cluster_key)
    try:
        raw = fit_predict(sample, grid)
        predictions = {alt: float(p) for alt, p in raw.items()}
    except Exception as exc:
        return index, drawn, None, f"{type(exc).__name__}: {exc}"
    bad = [str(alt) for alt, p in predictions.items() if not math.isfinite(p)]
    if bad:
        return index, drawn, None, f"non-finite prediction for {bad[0]}"
    if not predictions:
        return index, drawn, None, "fit_predict returned no predictions"
    return index, drawn, predictions, None


# =====================================================================
# Bootstrap driver
# =====================================================================


def bootstrap(
    observations: Sequence[Observation],
    fit_predict: FitPredict,
    grid: Sequence[Alternative],
    *,
    n_resamples: int = 500,
    seed: int | None = None,
    cluster_key: str = "respondent_id",
    n_jobs: int = 1,
    executor: Literal["thread", "process"] = "thread",
    time_budget: float | None = None,
    cancel_event: threading.Event | None = None,
    cache: EnsembleCache | None = None,
    model_spec: str = "",
) -> BootstrapResult:
    """
    Run a cluster bootstrap and collect per-resample predictions.

    Parameters
    ----------
    observations : observed choice rows (never mutated)
    fit_predict : ``(resampled_observations, grid) -> {alternative: probability}``
    grid : balanced grid handed to every ``fit_predict`` call
    n_resamples : number of resamples requested
    seed : base seed; identical seeds give identical resample membership
    cluster_key : observation field identifying the resampling unit
    n_jobs : worker count; ``> 1`` runs resamples in a thread or process pool
    executor : ``"thread"`` or ``"process"`` (process pools need a picklable
        ``fit_predict``)
    time_budget : seconds after which no new resamples are started
    cancel_event : set it from another thread to stop cooperatively
    cache : optional ensemble cache; only complete runs are stored
    model_spec : description of the model, part of the cache key; defaults to
        the module and qualified name of ``fit_predict``

    Returns
    -------
    BootstrapResult
    """
    if n_resamples < 1:
        raise ConfigurationError(f"n_resamples must be positive, got {n_resamples}")
    if n_jobs < 1:
        raise ConfigurationError(f"n_jobs must be positive, got {n_jobs}")

    groups = group_by_cluster(observations, cluster_key)
    if not groups:
        raise ConfigurationError("Cannot bootstrap an empty set of observations")
    grid = list(grid)

    key: str | None = None
    if cache is not None:
        key = cache_key(
            dataset_fingerprint(observations),
            model_spec or describe_callable(fit_predict),
            seed,
            n_resamples,
            grid_digest=grid_fingerprint(grid),
            cluster_key=cluster_key,
        )
        hit = cache.load(key)
        if hit is not None:
            logger.info("Loaded %d bootstrap predictions from cache", len(hit["predictions"]))
            return BootstrapResult(
                predictions=hit["predictions"],
                indices=hit["indices"],
                memberships={int(k): v for k, v in hit["memberships"].items()},
                failures=[ResampleFailureRecord(**f) for f in hit["failures"]],
                n_requested=hit["n_requested"],
                n_attempted=hit["n_attempted"],
                from_cache=True,
            )

    children = resample_seeds(seed, n_resamples)
    start = time.monotonic()
    deadline = start + time_budget if time_budget is not None else None

    def should_stop() -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    logger.info(
        "Cluster bootstrap: %d resamples of %d clusters (%d observations), %d worker(s)",
        n_resamples, len(groups), len(observations), n_jobs,
    )

    outcomes: dict[int, tuple[int, list[str], dict[Alternative, float] | None, str | None]] = {}
    cancelled = False
    report_every = max(1, n_resamples // 10)

    if n_jobs == 1:
        for i, child in enumerate(children):
            if should_stop():
                cancelled = True
                break
            outcomes[i] = _run_one(i, groups, child, fit_predict, grid, cluster_key)
            if (i + 1) % report_every == 0:
                logger.info("  completed %d/%d resamples", i + 1, n_resamples)
    else:
        pool_cls: type[Executor] = ProcessPoolExecutor if executor == "process" else ThreadPoolExecutor
        with pool_cls(max_workers=n_jobs) as pool:
            futures = {
                pool.submit(_run_one, i, groups, child, fit_predict, grid, cluster_key): i
                for i, child in enumerate(children)
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                for fut in done:
                    outcomes[futures[fut]] = fut.result()
                    if len(outcomes) % report_every == 0:
                        logger.info("  completed %d/%d resamples", len(outcomes), n_resamples)
                if pending and should_stop():
                    cancelled = True
                    for fut in pending:
                        fut.cancel()
                    running = [f for f in pending if not f.cancelled()]
                    for fut in wait(running).done:
                        outcomes[futures[fut]] = fut.result()
                    break

    predictions: list[dict[Alternative, float]] = []
    indices: list[int] = []
    failures: list[ResampleFailureRecord] = []
    memberships: dict[int, list[str]] = {}
    for i in sorted(outcomes):
        _, drawn, preds, error = outcomes[i]
        memberships[i] = drawn
        if preds is None:
            logger.warning("Resample %d failed: %s", i, error)
            failures.append(ResampleFailureRecord(index=i, message=error or "unknown error"))
        else:
            predictions.append(preds)
            indices.append(i)

    result = BootstrapResult(
        predictions=predictions,
        indices=indices,
        memberships=memberships,
        failures=failures,
        n_requested=n_resamples,
        n_attempted=len(outcomes),
        cancelled=cancelled,
        elapsed=time.monotonic() - start,
    )
    _check_validity(result)

    if cancelled:
        logger.warning(
            "Bootstrap stopped early: %d/%d resamples attempted (%.0f%%)",
            result.n_attempted, n_resamples, 100 * result.completed_fraction,
        )
    logger.info(
        "Bootstrap finished: %d succeeded, %d failed in %.1fs",
        result.n_succeeded, result.n_failed, result.elapsed,
    )

    if cache is not None and key is not None and not cancelled:
        cache.store(key, _cache_entry(result))
    return result


def _check_validity(result: BootstrapResult) -> None:
    samples = [f"resample {f.index}: {f.message}" for f in result.failures[:5]]
    if result.completed_fraction < MIN_VALID_FRACTION:
        raise ResamplingFailure(
            "Bootstrap cancelled before half of the resamples completed",
            n_failed=result.n_failed,
            n_attempted=result.n_attempted,
            n_requested=result.n_requested,
            messages=samples,
        )
    if result.n_succeeded == 0 or result.failure_fraction > 1 - MIN_VALID_FRACTION:
        raise ResamplingFailure(
            "More than half of the bootstrap resamples failed to fit",
            n_failed=result.n_failed,
            n_attempted=result.n_attempted,
            n_requested=result.n_requested,
            messages=samples,
        )


def _cache_entry(result: BootstrapResult) -> dict[str, Any]:
    return {
        "predictions": result.predictions,
        "indices": result.indices,
        "memberships": {str(k): v for k, v in result.memberships.items()},
        "failures": [{"index": f.index, "message": f.message} for f in result.failures],
        "n_requested": result.n_requested,
        "n_attempted": result.n_attempted,
    }
