"""Coefficient aggregation — from B converged fits to a distribution.

Every converged bootstrap fit contributes one coefficient vector.
Stacked, they form the ``(B, P)`` empirical distribution from which
point estimates, standard errors and intervals are read:

* **Point estimate** — the column mean of the draws.
* **Covariance** — the empirical covariance with ``ddof = 1``.  It
  feeds the delta method in :mod:`multibootstrap.probabilities`.
* **Percentile interval** — the ``α/2`` and ``1 − α/2`` empirical
  quantiles of each column (2.5 / 97.5 for 95 % coverage).  No
  normality is assumed.
* **Normal interval** (``method="normal"``) — ``mean ± z·sd``, useful
  as a comparison when the percentile bounds look unstable.

Percentile bounds are read from the tails, so with fewer than
:data:`~multibootstrap._config.MIN_RECOMMENDED_BOOT` draws they rest
on a handful of extreme values; such inputs are accepted but warned
about.

Layout checks
~~~~~~~~~~~~~
Averaging vectors whose positions mean different things would produce
silently wrong numbers, so every fit must report exactly the same
coefficient names (and therefore length) as the first fit and, when
given, as the original-data fit.  A mismatch raises
:class:`~multibootstrap._errors.AggregationError`.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from typing import Literal

import numpy as np
from scipy import stats as _sp_stats

from ._config import MIN_RECOMMENDED_BOOT
from ._errors import AggregationError
from ._results import CoefficientDistribution, FitAttempt, FittedModel

logger = logging.getLogger(__name__)

_METHODS = ("percentile", "normal")


def _as_model(fit: FitAttempt | FittedModel) -> FittedModel:
    if isinstance(fit, FittedModel):
        return fit
    if fit.model is None:
        msg = f"fit at index {fit.index} did not converge and cannot be aggregated."
        raise AggregationError(msg)
    return fit.model


def percentile_bounds(
    draws: np.ndarray,
    confidence_level: float = 0.95,
) -> tuple[np.ndarray, np.ndarray]:
    """Empirical ``α/2`` and ``1 − α/2`` quantiles along axis 0.

    Args:
        draws: Array whose first axis indexes bootstrap draws.
        confidence_level: Nominal two-sided coverage.

    Returns:
        ``(lower, upper)``, each shaped like ``draws[0]``; all NaN when
        there are no draws.
    """
    draws = np.asarray(draws, dtype=float)
    if draws.shape[0] == 0:
        return np.full(draws.shape[1:], np.nan), np.full(draws.shape[1:], np.nan)
    alpha = 1.0 - confidence_level
    lower = np.percentile(draws, 100.0 * alpha / 2.0, axis=0)
    upper = np.percentile(draws, 100.0 * (1.0 - alpha / 2.0), axis=0)
    return lower, upper


def _check_confidence_level(confidence_level: float) -> None:
    if not 0.0 < confidence_level < 1.0:
        msg = f"confidence_level must be in (0, 1), got {confidence_level}."
        raise ValueError(msg)


def aggregate_coefficients(
    fits: Sequence[FitAttempt | FittedModel],
    *,
    confidence_level: float = 0.95,
    method: Literal["percentile", "normal"] = "percentile",
    original: FitAttempt | FittedModel | None = None,
) -> CoefficientDistribution:
    """Aggregate converged fits into a :class:`CoefficientDistribution`.

    Args:
        fits: Converged bootstrap fits (attempts or bare models), in
            the order they should appear as rows of the draw matrix.
        confidence_level: Nominal two-sided coverage of the interval.
        method: ``"percentile"`` (default) or ``"normal"``.
        original: Original-data fit.  When given, its coefficient
            names define the expected layout and its estimate is
            stored alongside the bootstrap summaries.  With no *fits*
            the result has zero draws and NaN summaries, so a run whose
            every candidate failed still reports in the original layout.

    Returns:
        :class:`~multibootstrap._results.CoefficientDistribution`.

    Raises:
        AggregationError: If *fits* is empty and no *original* gives
            the layout, if it contains a failed attempt, or if the fits
            disagree on coefficient names or lengths.
        ValueError: If *method* or *confidence_level* is invalid.
    """
    if method not in _METHODS:
        msg = f"method must be one of {_METHODS}, got {method!r}."
        raise ValueError(msg)
    _check_confidence_level(confidence_level)

    models = [_as_model(f) for f in fits]
    if not models and original is None:
        msg = "cannot aggregate zero successful fits without the original layout."
        raise AggregationError(msg)

    anchor = _as_model(original) if original is not None else models[0]
    names = tuple(anchor.coef_names)
    for i, model in enumerate(models):
        if len(model.coefficients) != len(names):
            msg = (
                f"fit {i} has {len(model.coefficients)} coefficients, "
                f"expected {len(names)}."
            )
            raise AggregationError(msg)
        if tuple(model.coef_names) != names:
            diff = sorted(set(model.coef_names).symmetric_difference(names))
            msg = (
                f"fit {i} coefficient names differ from the expected layout"
                + (f" ({diff[:5]})." if diff else " (order differs).")
            )
            raise AggregationError(msg)

    n_draws = len(models)
    if n_draws < MIN_RECOMMENDED_BOOT:
        warnings.warn(
            f"only {n_draws} bootstrap draws; at least {MIN_RECOMMENDED_BOOT} "
            f"are recommended for stable interval bounds.",
            UserWarning,
            stacklevel=2,
        )

    draws = np.array([m.coefficients for m in models], dtype=float).reshape(
        n_draws, len(names)
    )
    mean = draws.mean(axis=0) if n_draws else np.full(len(names), np.nan)
    if n_draws > 1:
        cov = np.atleast_2d(np.cov(draws, rowvar=False, ddof=1))
    else:
        # Fewer than two draws have no spread; NaN keeps that visible downstream.
        cov = np.full((len(names), len(names)), np.nan)

    if method == "percentile":
        lower, upper = percentile_bounds(draws, confidence_level)
    else:
        z = _sp_stats.norm.ppf(1.0 - (1.0 - confidence_level) / 2.0)
        sd = np.sqrt(np.clip(np.diag(cov), 0.0, None))
        lower, upper = mean - z * sd, mean + z * sd

    logger.debug(
        "aggregated %d draws of %d coefficients (%s, %.3g)",
        n_draws,
        len(names),
        method,
        confidence_level,
    )

    return CoefficientDistribution(
        names=names,
        draws=draws,
        mean=mean,
        cov=cov,
        lower=np.asarray(lower, dtype=float),
        upper=np.asarray(upper, dtype=float),
        confidence_level=confidence_level,
        method=method,
        original=(
            np.asarray(anchor.coefficients, dtype=float)
            if original is not None
            else None
        ),
        terms=anchor.terms,
        levels=anchor.nonreference_levels,
        reference_level=anchor.reference_level,
    )


__all__ = ["aggregate_coefficients", "percentile_bounds"]
