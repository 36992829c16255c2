"""
Advisory on-disk cache for expensive prediction ensembles.

Entries are keyed by a SHA-256 digest of (dataset fingerprint, model
specification, seed, number of resamples, grid, cluster field) and stored as
JSON under ``<directory>/<digest>.json``.  A missing, unreadable or corrupt
entry is a cache miss; failed writes are logged and ignored.  Deleting the directory
only costs recomputation.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from conjoint.models import Alternative, Observation

logger = logging.getLogger(__name__)

CACHE_FORMAT = 2


def dataset_fingerprint(observations: Sequence[Observation]) -> str:
    """Digest of the observations, independent of row order."""
    rows = sorted(
        json.dumps(o.model_dump(), sort_keys=True) for o in observations
    )
    h = hashlib.sha256()
    for row in rows:
        h.update(row.encode())
        h.update(b"\n")
    return h.hexdigest()


def grid_fingerprint(grid: Sequence[Alternative]) -> str:
    """Digest of the grid's level mappings, in grid order."""
    payload = json.dumps([sorted(alt.levels.items()) for alt in grid])
    return hashlib.sha256(payload.encode()).hexdigest()


def cache_key(
    fingerprint: str,
    model_spec: str,
    seed: int | None,
    n_resamples: int,
    *,
    grid_digest: str = "",
    cluster_key: str = "respondent_id",
) -> str:
    """Entry key; every input that changes the ensemble is part of it."""
    payload = json.dumps(
        {
            "data": fingerprint,
            "model": model_spec,
            "seed": seed,
            "n": n_resamples,
            "grid": grid_digest,
            "cluster": cluster_key,
            "v": CACHE_FORMAT,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def _serialize_predictions(predictions: Sequence[dict[Alternative, float]]) -> list[list[Any]]:
    return [
        [[dict(alt.levels), p] for alt, p in pred.items()]
        for pred in predictions
    ]


def _deserialize_predictions(payload: list[list[Any]]) -> list[dict[Alternative, float]]:
    return [
        {Alternative(levels=levels): float(p) for levels, p in pred}
        for pred in payload
    ]


class EnsembleCache:
    """Store and retrieve bootstrap ensembles on disk."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> dict[str, Any] | None:
        """Return the cached entry for *key*, or ``None`` on a miss."""
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            with path.open() as f:
                raw = json.load(f)
            if raw.get("format") != CACHE_FORMAT:
                logger.warning("Ignoring cache entry %s with format %r", path.name, raw.get("format"))
                return None
            raw["predictions"] = _deserialize_predictions(raw["predictions"])
            return raw
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None

    def store(self, key: str, entry: dict[str, Any]) -> Path | None:
        """Write *entry*; returns the path written, or ``None`` on failure."""
        payload = dict(entry)
        payload["format"] = CACHE_FORMAT
        payload["predictions"] = _serialize_predictions(entry["predictions"])
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload))
            tmp.replace(path)
            return path
        except OSError as exc:
            logger.warning("Could not write cache entry %s: %s", path, exc)
            return None

    def clear(self) -> int:
        """Delete all entries; returns how many were removed."""
        if not self.directory.is_dir():
            return 0
        removed = 0
        for f in self.directory.glob("*.json"):
            f.unlink()
            removed += 1
        return removed
