"""
Data persistence for conjoint estimand computation.

Handles reading of:
- **Observations** — cleaned choice data, one CSV row per alternative shown:
  ``respondent_id, task_id, alternative_id, <attribute columns...>, chosen``.
- **Utility draws** — long CSV with ``draw, attribute, level, value`` and
  optional ``chain`` and ``respondent_id`` columns.  The reserved attribute
  ``(Intercept)`` carries the intercept.
- **Covariance** — labelled square CSV of coefficient covariances.

and writing of estimand tables as JSON or CSV.  Writes use the fallback
pattern (target path → system temp dir → console).
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import numpy as np
from numpy.typing import NDArray

from conjoint.design import AttributeSpace
from conjoint.errors import ChoiceDataError, ConfigurationError
from conjoint.models import INTERCEPT, Attribute, ChoiceTask, Estimand, Observation, UtilityDraw

logger = logging.getLogger(__name__)

OBSERVATION_COLUMNS = ("respondent_id", "task_id", "alternative_id", "chosen")
DRAW_COLUMNS = ("draw", "attribute", "level", "value")

_TRUE = {"1", "true", "t", "yes", "y"}
_FALSE = {"0", "false", "f", "no", "n"}


def _safe_write(path: Path, content: str, *, console: Any = None) -> Path | None:
    """
    Write *content* to *path*, falling back to ``/tmp`` then stdout.

    Returns the path that was actually written, or ``None`` if we had to
    print to the console instead.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    except (OSError, TimeoutError) as exc:
        logger.warning("Could not write %s: %s", path, exc)

    import tempfile

    fallback = Path(tempfile.gettempdir()) / path.name
    try:
        fallback.write_text(content)
        logger.warning("Wrote %s instead", fallback)
        return fallback
    except OSError:
        if console is not None:
            console.print("[yellow]Could not write file. Printing content:[/yellow]")
            console.print(content)
        return None


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


# ------------------------------------------------------------------
# Observations
# ------------------------------------------------------------------

def _parse_bool(value: str, *, where: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ChoiceDataError(f"Cannot read chosen flag {value!r} ({where})")


def validate_observations(
    observations: Sequence[Observation],
    attributes: Sequence[Attribute],
) -> list[ChoiceTask]:
    """
    Check declared levels and that every task has exactly one chosen row
    and at least two alternatives.

    Returns the tasks, in order of first appearance, with alternatives in
    row order.
    """
    declared = {a.name: set(a.levels) for a in attributes}
    tasks: dict[tuple[str, str], list[Observation]] = defaultdict(list)
    for obs in observations:
        for name, levels in declared.items():
            level = obs.levels.get(name)
            if level is None:
                raise ChoiceDataError(
                    f"Respondent '{obs.respondent_id}' task '{obs.task_id}' has no value for '{name}'"
                )
            if level not in levels:
                raise ChoiceDataError(
                    f"Respondent '{obs.respondent_id}' task '{obs.task_id}': "
                    f"level '{level}' is not declared for attribute '{name}'"
                )
        tasks[(obs.respondent_id, obs.task_id)].append(obs)

    choice_tasks: list[ChoiceTask] = []
    for (rid, tid), rows in tasks.items():
        if len(rows) < 2:
            raise ChoiceDataError(f"Respondent '{rid}' task '{tid}' has a single alternative")
        n_chosen = sum(o.chosen for o in rows)
        if n_chosen != 1:
            raise ChoiceDataError(
                f"Respondent '{rid}' task '{tid}' has {n_chosen} chosen alternatives; expected exactly 1"
            )
        choice_tasks.append(
            ChoiceTask(
                task_id=tid,
                respondent_id=rid,
                alternatives=[o.alternative for o in rows],
                chosen_index=next(i for i, o in enumerate(rows) if o.chosen),
            )
        )
    return choice_tasks


def load_observations(path: str | Path, attributes: Sequence[Attribute]) -> list[Observation]:
    """Read and validate an observations CSV."""
    path = Path(path)
    names = [a.name for a in attributes]
    with path.open(newline="") as f:
        reader = csv.DictReader(f)
        header = reader.fieldnames or []
        missing = [c for c in (*OBSERVATION_COLUMNS, *names) if c not in header]
        if missing:
            raise ChoiceDataError(f"{path.name} is missing column(s) {missing}")
        observations = [
            Observation(
                respondent_id=row["respondent_id"],
                task_id=row["task_id"],
                alternative_id=row["alternative_id"],
                levels={n: row[n] for n in names},
                chosen=_parse_bool(row["chosen"], where=f"{path.name} line {reader.line_num}"),
            )
            for row in reader
        ]
    choice_tasks = validate_observations(observations, attributes)
    logger.info(
        "Loaded %d observations (%d tasks) from %d respondents (%s)",
        len(observations), len(choice_tasks), len({o.respondent_id for o in observations}), path.name,
    )
    return observations


# ------------------------------------------------------------------
# Utility draws
# ------------------------------------------------------------------

def load_draws(path: str | Path) -> list[UtilityDraw]:
    """
    Read a long-format draws CSV into ``UtilityDraw`` records.

    Rows are grouped by ``(respondent_id, chain, draw)``; record order
    follows first appearance in the file.
    """
    path = Path(path)
    grouped: dict[tuple[str | None, int | None, int], dict[str, Any]] = {}
    with path.open(newline="") as f:
        reader = csv.DictReader(f)
        header = reader.fieldnames or []
        missing = [c for c in DRAW_COLUMNS if c not in header]
        if missing:
            raise ConfigurationError(f"{path.name} is missing column(s) {missing}")
        for row in reader:
            where = f"{path.name} line {reader.line_num}"
            try:
                draw = int(row["draw"])
                chain = int(row["chain"]) if row.get("chain") not in (None, "") else None
                value = float(row["value"])
            except ValueError as exc:
                raise ConfigurationError(f"Bad numeric value ({where}): {exc}") from None
            rid = row.get("respondent_id") or None
            entry = grouped.setdefault((rid, chain, draw), {"values": {}, "intercept": 0.0})
            if row["attribute"] == INTERCEPT:
                entry["intercept"] = value
            else:
                entry["values"].setdefault(row["attribute"], {})[row["level"]] = value

    draws = [
        UtilityDraw(values=e["values"], intercept=e["intercept"], draw=d, chain=c, respondent_id=r)
        for (r, c, d), e in grouped.items()
    ]
    logger.info("Loaded %d draws from %s", len(draws), path.name)
    return draws


# ------------------------------------------------------------------
# Coefficient covariance
# ------------------------------------------------------------------

def parameter_label(attribute: str, level: str) -> str:
    """Column label of a coefficient in covariance files."""
    return INTERCEPT if attribute == INTERCEPT else f"{attribute}={level}"


def load_covariance(path: str | Path, space: AttributeSpace) -> tuple[NDArray[np.float64], bool]:
    """
    Read a labelled coefficient covariance matrix.

    The CSV has a ``parameter`` column followed by one column per
    coefficient; labels are ``attribute=level`` or ``(Intercept)`` and rows
    must follow the column order.  The matrix is returned reordered to
    ``space.parameter_index(...)``, together with whether it covers the
    intercept.
    """
    path = Path(path)
    with path.open(newline="") as f:
        rows = list(csv.reader(f))
    if not rows or not rows[0] or rows[0][0] != "parameter":
        raise ConfigurationError(f"{path.name} must start with a 'parameter' header column")
    labels = rows[0][1:]
    body = rows[1:]
    if [r[0] for r in body] != labels or any(len(r) != len(labels) + 1 for r in body):
        raise ConfigurationError(f"{path.name} is not a square matrix with matching row and column labels")
    try:
        matrix = np.array([[float(v) for v in r[1:]] for r in body], dtype=float)
    except ValueError as exc:
        raise ConfigurationError(f"Bad numeric value in {path.name}: {exc}") from None

    include_intercept = INTERCEPT in labels
    expected = [parameter_label(a, lv) for a, lv in space.parameter_index(include_intercept=include_intercept)]
    missing = [p for p in expected if p not in labels]
    extra = [p for p in labels if p not in expected]
    if missing or extra:
        raise ConfigurationError(
            f"{path.name} parameters do not match the study: missing {missing}, unexpected {extra}"
        )
    if not np.allclose(matrix, matrix.T):
        raise ConfigurationError(f"{path.name} is not symmetric")

    order = [labels.index(p) for p in expected]
    logger.info("Loaded %dx%d covariance from %s", len(order), len(order), path.name)
    return matrix[np.ix_(order, order)], include_intercept


# ------------------------------------------------------------------
# Estimands
# ------------------------------------------------------------------

ESTIMAND_FIELDS = (
    "kind", "attribute", "level", "reference_level", "respondent_id",
    "estimate", "lower", "upper", "conf_level", "n_draws",
)


def estimands_to_json(estimands: Sequence[Estimand], *, indent: int = 2, **meta: Any) -> str:
    payload = {
        "timestamp": _timestamp(),
        **meta,
        "estimands": [e.model_dump(mode="json") for e in estimands],
    }
    return json.dumps(payload, indent=indent, ensure_ascii=False)


def estimands_to_csv(estimands: Sequence[Estimand]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(ESTIMAND_FIELDS)
    for e in estimands:
        row = e.model_dump(mode="json")
        writer.writerow(["" if row[k] is None else row[k] for k in ESTIMAND_FIELDS])
    return buf.getvalue()


def save_estimands(
    estimands: Sequence[Estimand],
    path: str | Path,
    *,
    console: Any = None,
    **meta: Any,
) -> Path | None:
    """Save estimands as ``.json`` (with *meta*) or ``.csv``, chosen by suffix."""
    path = Path(path)
    if path.suffix.lower() == ".csv":
        content = estimands_to_csv(estimands)
    elif path.suffix.lower() == ".json":
        content = estimands_to_json(estimands, **meta)
    else:
        raise ConfigurationError(f"Unsupported output format '{path.suffix}' (use .json or .csv)")
    return _safe_write(path, content, console=console)


def load_estimands(path: str | Path) -> list[Estimand]:
    """Load estimands saved as JSON by :func:`save_estimands`."""
    with Path(path).open() as f:
        payload = json.load(f)
    return [Estimand.model_validate(e) for e in payload["estimands"]]
