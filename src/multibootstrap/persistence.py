"""Saving and loading bootstrap inputs and results.

Two kinds of artefact outlive a run:

* **Candidate data sets** — resampling a large repeated-measures data
  set thousands of times is slow, so the candidates can be pickled
  once (:func:`save_datasets`) and fed back through
  ``multi_bootstrap(..., datasets=load_datasets(path))``.  Pickling
  goes through pandas, which keeps dtypes (categoricals included)
  intact.
* **Results** — a JSON document of ``result.to_dict()``
  (:func:`save_result`) and a directory of tidy CSV tables for
  downstream plotting (:func:`save_tables`).
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pandas as pd

from ._results import MultiBootstrapResult

logger = logging.getLogger(__name__)

PathLike = str | os.PathLike[str]


def save_datasets(datasets: Iterable[pd.DataFrame], path: PathLike) -> Path:
    """Pickle candidate data sets to *path*.

    Args:
        datasets: Candidate data sets, in order.
        path: Destination file; parent directories are created.

    Returns:
        The resolved destination path.
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    frames = list(datasets)
    pd.to_pickle(frames, out)
    logger.debug("saved %d data sets to %s", len(frames), out)
    return out


def load_datasets(path: PathLike) -> list[pd.DataFrame]:
    """Load candidate data sets written by :func:`save_datasets`.

    Raises:
        TypeError: If the file does not hold a list of DataFrames.
    """
    obj = pd.read_pickle(Path(path))
    if not isinstance(obj, list) or not all(isinstance(d, pd.DataFrame) for d in obj):
        msg = f"{path} does not contain a list of DataFrames."
        raise TypeError(msg)
    return obj


def save_result(result: Any, path: PathLike, *, indent: int = 2) -> Path:
    """Write ``result.to_dict()`` as JSON.

    Works for any result object with a ``to_dict`` method.  Outcome
    levels that JSON cannot represent natively are written as strings.
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as fh:
        json.dump(result.to_dict(), fh, indent=indent, default=str)
    return out


def _slug(value: Any) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", str(value)).strip("_") or "level"


def save_tables(
    result: MultiBootstrapResult,
    directory: PathLike,
    probabilities: pd.DataFrame | None = None,
) -> dict[str, Path]:
    """Write the result's tidy tables as CSV files.

    Files written:

    * ``coefficients_ref_<level>.csv`` — one per reference level;
    * ``comparisons.csv`` — merged pairwise comparisons;
    * ``failures.csv`` — every failed attempt of every run;
    * ``probabilities.csv`` — when *probabilities* is given.

    Returns:
        Mapping of table name to written path.
    """
    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    for view in result.views:
        name = f"coefficients_ref_{_slug(view.reference_level)}"
        path = out / f"{name}.csv"
        view.distribution.to_frame().to_csv(path)
        written[name] = path

    path = out / "comparisons.csv"
    result.comparisons.to_csv(path, index=False)
    written["comparisons"] = path

    if result.log is not None:
        audit = result.log.to_frame()
        failures = audit.loc[audit["reason"].notna()]
    else:
        failures = pd.DataFrame(
            columns=["label", "index", "status", "reason", "message", "elapsed"]
        )
    path = out / "failures.csv"
    failures.to_csv(path, index=False)
    written["failures"] = path

    if probabilities is not None:
        path = out / "probabilities.csv"
        probabilities.to_csv(path, index=False)
        written["probabilities"] = path

    logger.debug("wrote %d tables to %s", len(written), out)
    return written


__all__ = ["load_datasets", "save_datasets", "save_result", "save_tables"]
