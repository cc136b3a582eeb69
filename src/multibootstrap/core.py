"""Cluster-bootstrap multinomial regression — the end-to-end pipeline.

:func:`multi_bootstrap` wires the pieces together:

1. **Validate** the outcome (at least three levels) and the requested
   reference levels.
2. **Resample once** — ``n_sets`` cluster-bootstrap candidates are
   drawn up front (or supplied by the caller, e.g. loaded with
   :func:`~multibootstrap.persistence.load_datasets`) and the same
   sequence is reused for every reference level.
3. **Fit until B** — for each reference level a
   :class:`~multibootstrap.engine.BootstrapOrchestrator` fits the
   original data set, then candidates in order until ``B`` converge.
4. **Aggregate** each run into a coefficient distribution.
5. **Merge** the reference-level views into one pairwise comparison
   table.

Why more than one reference level
---------------------------------
A single multinomial fit expresses every level against one reference,
so it estimates only ``K − 1`` of the ``K(K−1)/2`` pairwise contrasts
directly.  Refitting with the first and the last level as reference
(the default) covers ``2K − 3`` pairs directly; the rest are derived
draw by draw (see :func:`~multibootstrap.probabilities.merge_comparisons`).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd

from ._compat import DataFrameLike, _ensure_datasets, _ensure_pandas_df
from ._config import get_default_n_boot
from ._context import RunLog
from ._errors import ResampleInputError
from ._results import MultiBootstrapResult, ReferenceFit
from .aggregation import aggregate_coefficients
from .engine import BootstrapOrchestrator
from .fitting import (
    GuardedFitter,
    MNLogitFitter,
    ModelFitter,
    outcome_levels,
    split_formula,
)
from .probabilities import merge_comparisons
from .resampling import generate_bootstrap_datasets, recommended_n_sets

logger = logging.getLogger(__name__)


def _resolve_reference_levels(
    levels: tuple[Any, ...],
    reference_levels: Sequence[Any] | None,
) -> tuple[Any, ...]:
    if reference_levels is None:
        # The two most extreme levels of the canonical order.
        return (levels[0], levels[-1])
    refs: list[Any] = []
    for ref in reference_levels:
        if ref not in levels:
            msg = f"reference level {ref!r} is not one of {list(levels)}."
            raise ValueError(msg)
        if ref not in refs:
            refs.append(ref)
    if not refs:
        msg = "reference_levels must name at least one level."
        raise ValueError(msg)
    return tuple(refs)


def multi_bootstrap(
    data: DataFrameLike,
    formula: str,
    id_col: str,
    *,
    n_boot: int | None = None,
    n_sets: int | None = None,
    reference_levels: Sequence[Any] | None = None,
    fitter: ModelFitter | None = None,
    datasets: Iterable[DataFrameLike] | None = None,
    random_state: int | np.random.Generator | None = None,
    confidence_level: float = 0.95,
    n_jobs: int | None = None,
    timeout: float | None = None,
    max_attempts: int | None = None,
    label: str = "multi_bootstrap",
    fit_options: Mapping[str, Any] | None = None,
) -> MultiBootstrapResult:
    """Cluster-bootstrap a multinomial logistic regression.

    Args:
        data: Original data set, one row per record.  Accepts pandas
            or Polars DataFrames.
        formula: ``"outcome ~ terms"`` (patsy syntax on the right).
        id_col: Subject-identifier column; subjects are the unit of
            resampling.
        n_boot: Successful fits ``B`` per reference level.  Defaults
            to :func:`~multibootstrap._config.get_default_n_boot`.
        n_sets: Candidate data sets to generate.  Defaults to
            :func:`~multibootstrap.resampling.recommended_n_sets`.
            Ignored when *datasets* is given.
        reference_levels: Reference levels to fit, primary first.
            Defaults to the first and the last outcome level.
        fitter: External fitting capability.  Defaults to
            :class:`~multibootstrap.fitting.MNLogitFitter`.
        datasets: Pre-generated candidates (e.g. from
            :func:`~multibootstrap.persistence.load_datasets`).
        random_state: Seed or generator for resampling.
        confidence_level: Nominal two-sided coverage of every interval.
        n_jobs: Worker processes for bootstrap refits.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Cap on examined candidates per reference level.
        label: Label keying every log record of this run.
        fit_options: Extra options forwarded to ``fitter.fit``.

    Returns:
        :class:`~multibootstrap._results.MultiBootstrapResult`.

    Raises:
        ValueError: If the formula, outcome or reference levels are
            invalid.
        ResampleInputError: If the data cannot be cluster-resampled.
        OriginalFitFailure: If the original data set does not fit for
            some reference level.
        AggregationError: If a run produced no successful fit.
    """
    df = _ensure_pandas_df(data, name="data")
    outcome, _ = split_formula(formula)
    if outcome not in df.columns:
        msg = f"outcome column '{outcome}' not found in data."
        raise ValueError(msg)
    if id_col not in df.columns:
        msg = f"id column '{id_col}' not found in data."
        raise ResampleInputError(msg)

    levels = outcome_levels(df[outcome])
    if len(levels) < 3:
        msg = (
            f"outcome '{outcome}' has {len(levels)} level(s); multinomial "
            f"regression requires at least 3."
        )
        raise ValueError(msg)
    refs = _resolve_reference_levels(levels, reference_levels)

    if n_boot is None:
        n_boot = get_default_n_boot()
    if fitter is None:
        fitter = MNLogitFitter()

    if datasets is None:
        if n_sets is None:
            n_sets = recommended_n_sets(n_boot)
        candidates = generate_bootstrap_datasets(df, id_col, n_sets, random_state)
    else:
        candidates = _ensure_datasets(datasets)
        n_sets = len(candidates)
    if n_sets < n_boot:
        logger.warning(
            "[%s] only %d candidate data sets for B=%d; a shortfall is likely.",
            label,
            n_sets,
            n_boot,
        )

    log = RunLog(label=label)
    views: list[ReferenceFit] = []
    for ref in refs:
        guarded = GuardedFitter(
            fitter,
            formula,
            reference_level=ref,
            levels=levels,
            options=dict(fit_options or {}),
        )
        orchestrator = BootstrapOrchestrator(
            guarded,
            n_boot,
            n_jobs=n_jobs,
            timeout=timeout,
            max_attempts=max_attempts,
            label=f"{label}[ref={ref}]",
        )
        boot = orchestrator.run(df, candidates)
        distribution = aggregate_coefficients(
            boot.successes,
            confidence_level=confidence_level,
            original=boot.original,
        )
        assert boot.original.model is not None
        views.append(
            ReferenceFit(
                model=boot.original.model,
                distribution=distribution,
                bootstrap=boot,
            )
        )
        if boot.log is not None:
            log.extend(boot.log)
            log.extra[f"state[{ref}]"] = boot.state.value

    comparisons = merge_comparisons(views, confidence_level)
    result = MultiBootstrapResult(
        label=label,
        formula=formula,
        id_col=id_col,
        n_boot=n_boot,
        n_sets=n_sets,
        levels=levels,
        views=tuple(views),
        comparisons=comparisons,
        confidence_level=confidence_level,
        log=log,
    )
    logger.info(
        "[%s] %d reference level(s), %d failed attempt(s) in total, complete=%s",
        label,
        len(views),
        result.n_failed,
        result.is_complete,
    )
    return result


__all__ = ["multi_bootstrap"]
