"""Predicted probabilities and pairwise comparisons from bootstrap fits.

Predicted probabilities
~~~~~~~~~~~~~~~~~~~~~~~
For a covariate profile with design vector ``x`` and non-reference
coefficient vectors ``β₁ … β_{K−1}`` the multinomial model gives

    η_j = x·β_j          (η = 0 for the reference level)
    p_k = exp(η_k) / Σ_j exp(η_j)

Point probabilities are the softmax at the **bootstrap-mean**
coefficients.  Their uncertainty is propagated with the delta method:

    ∂p_k / ∂β_j = p_k (δ_kj − p_j) x          (j non-reference)
    Var(p_k)    ≈ gᵀ Σ g

where ``g`` stacks those gradients in the coefficient layout and ``Σ``
is the bootstrap covariance.  Normal bounds ``p ± z·se`` are clipped
to ``[0, 1]``.  With ``scale="logit"`` the interval is built for
``logit(p_k)`` (gradient divided by ``p_k (1 − p_k)``) and
back-transformed, which keeps it inside ``(0, 1)`` without clipping.
``method="percentile"`` skips the linearisation entirely: the softmax
is evaluated at every bootstrap draw and empirical quantiles are read
off.

Combining reference-level views
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Fitting the same bootstrap with several reference levels gives several
*views* of one model.  Each view is aggregated from its own set of
converged candidates, so views agree only approximately.  A level's
probability is best described by a view in which it owns a
coefficient block.  :func:`combine_reference_fits` therefore takes

* point probabilities from the **primary** (first) view, so they sum
  to exactly one per profile, and
* each level's interval from the first view in which that level is
  *not* the reference (falling back to the primary view when every
  view uses it as the reference).

:func:`merge_comparisons` does the same for the coefficient space:
every unordered pair of levels is reported exactly once per term,
preferring a *direct* estimate (a view whose reference is one member
of the pair) and otherwise deriving the contrast ``β_a − β_b`` draw by
draw from the primary view.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Literal

import numpy as np
import pandas as pd
import patsy
from scipy import stats as _sp_stats
from scipy.special import expit, softmax

from ._compat import DataFrameLike, _ensure_pandas_df
from ._results import CoefficientDistribution, FittedModel, ReferenceFit
from .aggregation import _check_confidence_level, percentile_bounds
from .fitting import split_formula

logger = logging.getLogger(__name__)

_METHODS = ("delta", "percentile")
_SCALES = ("probability", "logit")

# Probabilities this close to 0 or 1 have no usable logit-scale variance.
_LOGIT_EPS = 1e-12


# ------------------------------------------------------------------ #
# Covariate profiles
# ------------------------------------------------------------------ #


def _typical_value(values: pd.Series) -> Any:
    """Mean of a numeric column, most frequent value otherwise."""
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(
        values
    ):
        return float(values.mean())
    counts = values.value_counts(sort=True, dropna=True)
    if counts.empty:
        return np.nan
    return counts.index[0]


def _grid(values: pd.Series, n_points: int) -> list[Any]:
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(
        values
    ):
        lo, hi = float(values.min()), float(values.max())
        return list(np.linspace(lo, hi, n_points))
    if isinstance(values.dtype, pd.CategoricalDtype):
        return list(values.cat.categories)
    return list(pd.unique(values.dropna()))


def make_profiles(
    data: DataFrameLike,
    vary: str,
    values: Sequence[Any] | None = None,
    at: Mapping[str, Any] | None = None,
    n_points: int = 20,
) -> pd.DataFrame:
    """Build covariate profiles that vary one column.

    Every column of *data* appears in the result.  *vary* runs over
    *values* (by default ``n_points`` evenly spaced points across its
    observed range, or its observed levels for non-numeric columns).
    Every other numeric column is held at its mean and every other
    column at its most frequent value, unless *at* fixes it.

    Categorical dtypes are preserved, so patsy codes the profiles with
    the same levels as the fitting data.

    Args:
        data: The data set the model was fitted on.
        vary: Column to vary across profiles.
        values: Explicit values for *vary*.
        at: Fixed values for other columns.
        n_points: Grid size when *values* is not given.

    Returns:
        One row per profile.

    Raises:
        ValueError: If *vary* or a key of *at* is not a column, or
            *n_points* < 1.
    """
    df = _ensure_pandas_df(data, name="data")
    at = dict(at or {})
    unknown = [c for c in [vary, *at] if c not in df.columns]
    if unknown:
        msg = f"column(s) {unknown} not found in data."
        raise ValueError(msg)
    if values is None and n_points < 1:
        msg = f"n_points must be at least 1, got {n_points}."
        raise ValueError(msg)

    grid = list(values) if values is not None else _grid(df[vary], n_points)
    columns: dict[str, Any] = {}
    for col in df.columns:
        if col == vary:
            columns[col] = grid
        elif col in at:
            columns[col] = [at[col]] * len(grid)
        else:
            columns[col] = [_typical_value(df[col])] * len(grid)

    profiles = pd.DataFrame(columns, columns=list(df.columns))
    for col in df.columns:
        if isinstance(df[col].dtype, pd.CategoricalDtype):
            profiles[col] = pd.Categorical(
                profiles[col],
                categories=df[col].cat.categories,
                ordered=df[col].cat.ordered,
            )
    return profiles


# ------------------------------------------------------------------ #
# Linear predictor and softmax
# ------------------------------------------------------------------ #


def design_matrix(model: FittedModel, profiles: DataFrameLike) -> np.ndarray:
    """Design vectors ``(n, p)`` of *profiles* in *model*'s column layout.

    Uses the model's patsy ``DesignInfo`` when it is attached.  A model
    that crossed a process boundary has lost it, so the right-hand side
    of its formula is re-evaluated and checked against its columns.

    Raises:
        ValueError: If the profiles do not produce the model's columns.
    """
    df = _ensure_pandas_df(profiles, name="profiles")
    if model.design_info is not None:
        (X,) = patsy.build_design_matrices(
            [model.design_info], df, NA_action="raise", return_type="dataframe"
        )
    else:
        _, rhs = split_formula(model.formula)
        X = patsy.dmatrix(rhs, df, NA_action="raise", return_type="dataframe")
    if tuple(X.columns) != tuple(model.terms):
        msg = (
            f"profiles produce design columns {list(X.columns)}, "
            f"expected {list(model.terms)}."
        )
        raise ValueError(msg)
    return np.asarray(X, dtype=float)


def _full_eta(model: FittedModel, eta: np.ndarray) -> np.ndarray:
    """Insert the reference level's zero column; columns follow ``model.levels``."""
    ref = list(model.levels).index(model.reference_level)
    return np.insert(eta, ref, 0.0, axis=-1)


def softmax_probabilities(
    model: FittedModel,
    X: np.ndarray,
    coefficients: np.ndarray | None = None,
) -> np.ndarray:
    """Softmax probabilities for design rows *X*.

    Args:
        model: Fit supplying the layout (levels, reference, terms).
        X: Design matrix ``(n, p)``.
        coefficients: Flat vector ``(P,)`` or draw matrix ``(B, P)``.
            Defaults to the model's own estimate.

    Returns:
        ``(n, K)`` for a vector, ``(B, n, K)`` for a draw matrix.
        Columns follow ``model.levels``.
    """
    beta = model.coef_matrix(coefficients)
    if beta.ndim == 2:
        eta = X @ beta
    else:
        eta = np.einsum("it,btj->bij", X, beta)
    return softmax(_full_eta(model, eta), axis=-1)


def probability_gradient(
    model: FittedModel,
    X: np.ndarray,
    coefficients: np.ndarray | None = None,
) -> np.ndarray:
    """Analytic gradient of every probability w.r.t. the coefficients.

    Returns:
        ``(n, K, P)`` array; ``[i, k]`` is ``∂p_k / ∂θ`` at profile
        ``i`` in the flattened equation-major coefficient layout.
    """
    probs = softmax_probabilities(model, X, coefficients)  # (n, K)
    nonref = [
        i for i, lv in enumerate(model.levels) if lv != model.reference_level
    ]
    K = probs.shape[1]
    # jac[i, k, j] = p_k (δ_kj − p_j) for the non-reference levels j.
    delta = np.eye(K)[:, nonref]  # (K, K−1)
    jac = probs[:, :, None] * (delta[None, :, :] - probs[:, None, nonref])
    grad = np.einsum("ikj,it->ikjt", jac, X)  # (n, K, K−1, p)
    n, _, k1, p = grad.shape
    return grad.reshape(n, K, k1 * p)


def predict_probabilities(
    model: FittedModel,
    distribution: CoefficientDistribution,
    profiles: DataFrameLike,
    *,
    confidence_level: float = 0.95,
    method: Literal["delta", "percentile"] = "delta",
    scale: Literal["probability", "logit"] = "probability",
) -> pd.DataFrame:
    """Predicted probabilities with intervals for every profile and level.

    Args:
        model: Original-data fit (layout and ``DesignInfo``).
        distribution: Bootstrap distribution in *model*'s layout.
        profiles: Covariate profiles (see :func:`make_profiles`).
        confidence_level: Nominal two-sided coverage.
        method: ``"delta"`` (default) or ``"percentile"``.
        scale: ``"probability"`` (default) or ``"logit"``; only used
            by the delta method.

    Returns:
        Tidy table with one row per (profile, level): ``profile``, the
        columns that vary across profiles, ``level``, ``probability``,
        ``se``, ``lower``, ``upper`` and ``reference``.

    Raises:
        ValueError: On an unknown *method* / *scale*, an invalid
            *confidence_level*, or a distribution whose layout does not
            match *model*.
    """
    if method not in _METHODS:
        msg = f"method must be one of {_METHODS}, got {method!r}."
        raise ValueError(msg)
    if scale not in _SCALES:
        msg = f"scale must be one of {_SCALES}, got {scale!r}."
        raise ValueError(msg)
    _check_confidence_level(confidence_level)
    if tuple(distribution.names) != tuple(model.coef_names):
        msg = "distribution coefficient layout does not match the model."
        raise ValueError(msg)

    df = _ensure_pandas_df(profiles, name="profiles")
    X = design_matrix(model, df)
    probs = softmax_probabilities(model, X, distribution.mean)  # (n, K)

    if method == "delta":
        grad = probability_gradient(model, X, distribution.mean)  # (n, K, P)
        var = np.einsum("ikp,pq,ikq->ik", grad, distribution.cov, grad)
        se = np.sqrt(np.clip(var, 0.0, None))
        z = _sp_stats.norm.ppf(1.0 - (1.0 - confidence_level) / 2.0)
        if scale == "logit":
            p = np.clip(probs, _LOGIT_EPS, 1.0 - _LOGIT_EPS)
            logit = np.log(p / (1.0 - p))
            se_logit = se / (p * (1.0 - p))
            lower = expit(logit - z * se_logit)
            upper = expit(logit + z * se_logit)
        else:
            lower = np.clip(probs - z * se, 0.0, 1.0)
            upper = np.clip(probs + z * se, 0.0, 1.0)
    else:
        draws = softmax_probabilities(model, X, distribution.draws)  # (B, n, K)
        lower, upper = percentile_bounds(draws, confidence_level)
        se = draws.std(axis=0, ddof=1) if draws.shape[0] > 1 else np.full_like(
            probs, np.nan
        )

    return _tidy(df, model, probs, se, lower, upper)


def _tidy(
    profiles: pd.DataFrame,
    model: FittedModel,
    probs: np.ndarray,
    se: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
) -> pd.DataFrame:
    n, K = probs.shape
    varying = [c for c in profiles.columns if profiles[c].nunique(dropna=False) > 1]
    frame = pd.DataFrame(
        {
            "profile": np.repeat(np.arange(n), K),
            "level": list(model.levels) * n,
            "probability": probs.ravel(),
            "se": se.ravel(),
            "lower": lower.ravel(),
            "upper": upper.ravel(),
            "reference": [model.reference_level] * (n * K),
        }
    )
    for col in reversed(varying):
        frame.insert(1, col, np.repeat(profiles[col].to_numpy(), K))
    return frame


# ------------------------------------------------------------------ #
# Combining reference-level views
# ------------------------------------------------------------------ #


def _check_views(views: Sequence[ReferenceFit]) -> None:
    if not views:
        msg = "at least one reference-level view is required."
        raise ValueError(msg)
    first = views[0].model
    for view in views[1:]:
        if set(view.model.levels) != set(first.levels) or view.model.terms != first.terms:
            msg = (
                f"view with reference {view.reference_level!r} does not share "
                f"the outcome levels and design columns of the primary view."
            )
            raise ValueError(msg)


def combine_reference_fits(
    views: Sequence[ReferenceFit],
    profiles: DataFrameLike,
    *,
    confidence_level: float = 0.95,
    method: Literal["delta", "percentile"] = "delta",
    scale: Literal["probability", "logit"] = "probability",
) -> pd.DataFrame:
    """Predicted-probability table combined across reference-level views.

    Point probabilities come from the primary view (``views[0]``), so
    they sum to one for every profile.  Each level's ``se`` / ``lower``
    / ``upper`` come from the first view whose reference is a different
    level; the ``reference`` column records which view that was.

    Args:
        views: Reference-level views, primary first.
        profiles: Covariate profiles.
        confidence_level: Nominal two-sided coverage.
        method: ``"delta"`` or ``"percentile"``.
        scale: ``"probability"`` or ``"logit"``.

    Returns:
        Tidy table as returned by :func:`predict_probabilities`, with
        levels in the primary view's canonical order.
    """
    _check_views(views)
    tables = [
        predict_probabilities(
            v.model,
            v.distribution,
            profiles,
            confidence_level=confidence_level,
            method=method,
            scale=scale,
        )
        for v in views
    ]
    combined = tables[0].copy()
    for level in views[0].model.levels:
        source = next(
            (i for i, v in enumerate(views) if v.reference_level != level), 0
        )
        if source == 0:
            continue
        mask = combined["level"] == level
        other = tables[source]
        other_rows = other.loc[other["level"] == level]
        for col in ("se", "lower", "upper", "reference"):
            combined.loc[mask, col] = other_rows[col].to_numpy()
    return combined


def merge_comparisons(
    views: Sequence[ReferenceFit],
    confidence_level: float = 0.95,
) -> pd.DataFrame:
    """Every pairwise level comparison exactly once per term.

    Each view is keyed by the unordered level pairs it estimates
    directly (its reference against each other level).  Pairs covered
    by several views keep the first; pairs covered by none are derived
    as ``β_a − β_b`` from the primary view's draws.

    Args:
        views: Reference-level views, primary first.
        confidence_level: Nominal two-sided coverage of the percentile
            intervals.

    Returns:
        One row per (pair, term) with ``level``, ``baseline``,
        ``term``, ``estimate`` (bootstrap mean of the log-odds of
        ``level`` versus ``baseline``), ``se``, ``lower``, ``upper``,
        ``source`` (``"direct"`` or ``"derived"``) and ``reference``
        (the view it was read from).  ``K(K−1)/2`` pairs per term.
    """
    _check_views(views)
    _check_confidence_level(confidence_level)
    primary = views[0]
    levels = list(primary.model.levels)
    terms = list(primary.model.terms)

    chosen: dict[frozenset[Any], tuple[Any, Any, ReferenceFit, str]] = {}
    for view in views:
        ref = view.reference_level
        for level in view.model.nonreference_levels:
            key = frozenset((level, ref))
            if key not in chosen:
                chosen[key] = (level, ref, view, "direct")
    for a, b in itertools.combinations(levels, 2):
        key = frozenset((a, b))
        if key not in chosen:
            chosen[key] = (b, a, primary, "derived")

    rows: list[dict[str, Any]] = []
    for a, b in itertools.combinations(levels, 2):
        level, baseline, view, source = chosen[frozenset((a, b))]
        draws = view.distribution.contrast(level, baseline)  # (B, p)
        lower, upper = percentile_bounds(draws, confidence_level)
        mean = draws.mean(axis=0) if draws.shape[0] else np.full(len(terms), np.nan)
        sd = draws.std(axis=0, ddof=1) if draws.shape[0] > 1 else np.full_like(
            mean, np.nan
        )
        for t, term in enumerate(terms):
            rows.append(
                {
                    "level": level,
                    "baseline": baseline,
                    "term": term,
                    "estimate": mean[t],
                    "se": sd[t],
                    "lower": lower[t],
                    "upper": upper[t],
                    "source": source,
                    "reference": view.reference_level,
                }
            )

    n_derived = sum(1 for *_, s in chosen.values() if s == "derived")
    logger.debug(
        "merged %d level pairs (%d derived) across %d view(s)",
        len(chosen),
        n_derived,
        len(views),
    )
    return pd.DataFrame(
        rows,
        columns=[
            "level",
            "baseline",
            "term",
            "estimate",
            "se",
            "lower",
            "upper",
            "source",
            "reference",
        ],
    )


__all__ = [
    "combine_reference_fits",
    "design_matrix",
    "make_profiles",
    "merge_comparisons",
    "predict_probabilities",
    "probability_gradient",
    "softmax_probabilities",
]
