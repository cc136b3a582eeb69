"""Model-fitting protocol, the default multinomial fitter, and guarded fits.

The multinomial solver is an external, black-box capability that may
fail.  This module draws a hard line around it:

* :class:`ModelFitter` — the protocol every fitter implements: given a
  formula, a data set and a reference outcome level, return a
  :class:`~multibootstrap._results.FittedModel` or raise.
* :class:`MNLogitFitter` — the default fitter, backed by statsmodels
  ``MNLogit`` with a patsy design matrix.
* :func:`guarded_fit` / :class:`GuardedFitter` — wrap exactly one fit
  attempt and turn *every* failure mode into a
  :class:`~multibootstrap._results.FitAttempt` with a classified
  :class:`~multibootstrap._results.FailureReason`, never an exception.

Warning escalation
~~~~~~~~~~~~~~~~~~
A fit that "succeeds" with a caveat (a ``ConvergenceWarning``, a
``HessianInversionWarning``, a NumPy overflow ``RuntimeWarning``) is
not trusted.  :func:`escalated_warnings` turns warnings into
exceptions for the duration of one attempt and restores the previous
filters on every exit path, so one attempt's policy never leaks into
the next.  ``warnings.catch_warnings`` mutates interpreter-global
state; concurrent attempts therefore run in separate worker
*processes* (see :mod:`multibootstrap.engine`), where the filter state
is process-local.

``DeprecationWarning``, ``PendingDeprecationWarning`` and
``FutureWarning`` are left alone: they describe library maintenance,
not the quality of a particular fit.

Coefficient layout
~~~~~~~~~~~~~~~~~~
The reference level is always coded 0 for statsmodels, so
``MNLogitResults.params`` is ``(p, K−1)`` with one column per
non-reference level in canonical order.  It is flattened
equation-major (``params.T.ravel()``), which is also the row order of
``cov_params()``.
"""

from __future__ import annotations

import contextlib
import time
import warnings
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd
import patsy
from statsmodels.discrete.discrete_model import MNLogit
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from statsmodels.tools.sm_exceptions import (
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from ._errors import FitFailure
from ._results import FailureReason, FitAttempt, FittedModel

_MAINTENANCE_WARNINGS: tuple[type[Warning], ...] = (
    DeprecationWarning,
    PendingDeprecationWarning,
    FutureWarning,
)

# ------------------------------------------------------------------ #
# Formula helpers
# ------------------------------------------------------------------ #


def split_formula(formula: str) -> tuple[str, str]:
    """Split ``"y ~ x1 + x2"`` into ``("y", "x1 + x2")``.

    The left-hand side must be a bare column name: the outcome is
    recoded to integer categories here rather than by patsy.

    Raises:
        ValueError: If the formula has no ``~`` or an empty side.
    """
    lhs, sep, rhs = formula.partition("~")
    outcome, rhs = lhs.strip(), rhs.strip()
    if not sep or not outcome or not rhs:
        msg = f"formula must look like 'outcome ~ terms', got {formula!r}."
        raise ValueError(msg)
    return outcome, rhs


def outcome_levels(values: pd.Series) -> tuple[Any, ...]:
    """Canonical level order of an outcome column.

    Categorical columns keep their declared category order; anything
    else is sorted (falling back to first appearance when the values
    are not mutually comparable).
    """
    if isinstance(values.dtype, pd.CategoricalDtype):
        return tuple(values.cat.categories)
    uniques = pd.unique(values.dropna())
    try:
        return tuple(sorted(uniques))
    except TypeError:
        return tuple(uniques)


# ------------------------------------------------------------------ #
# ModelFitter protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class ModelFitter(Protocol):
    """Interface of the external multinomial fitting capability.

    Implementations must be stateless across calls and picklable, so
    that the orchestrator can ship them to worker processes.
    """

    @property
    def name(self) -> str: ...

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        reference_level: Any = None,
        *,
        levels: tuple[Any, ...] | None = None,
        terms: tuple[str, ...] | None = None,
        **options: Any,
    ) -> FittedModel:
        """Fit one model, or raise.

        Args:
            formula: ``"outcome ~ terms"``.
            data: Data set to fit.
            reference_level: Outcome level every log-odds is expressed
                against.  ``None`` selects the first canonical level.
            levels: Canonical outcome levels to enforce.  Bootstrap
                fits pass the original fit's levels so a resample
                missing a level fails instead of silently changing
                the coefficient layout.
            terms: Expected design columns, enforced the same way.
            **options: Fit-control options (e.g. ``maxiter``).
        """
        ...


# ------------------------------------------------------------------ #
# MNLogitFitter
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MNLogitFitter:
    """statsmodels ``MNLogit`` fitter with a patsy design matrix.

    Attributes:
        method: statsmodels optimiser (``"newton"`` by default).
        maxiter: Iteration cap; a fit hitting it is non-converged.
    """

    method: str = "newton"
    maxiter: int = 100

    @property
    def name(self) -> str:
        return "mnlogit"

    def fit(
        self,
        formula: str,
        data: pd.DataFrame,
        reference_level: Any = None,
        *,
        levels: tuple[Any, ...] | None = None,
        terms: tuple[str, ...] | None = None,
        **options: Any,
    ) -> FittedModel:
        """Fit a multinomial logit and detach the result from statsmodels."""
        outcome, rhs = split_formula(formula)
        if outcome not in data.columns:
            msg = f"outcome column '{outcome}' not found in data."
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)

        y = data[outcome]
        if y.isna().any():
            msg = f"outcome column '{outcome}' contains missing values."
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)

        levels = tuple(levels) if levels is not None else outcome_levels(y)
        if len(levels) < 3:
            msg = (
                f"multinomial regression requires >= 3 outcome levels, "
                f"got {len(levels)}."
            )
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)
        if reference_level is None:
            reference_level = levels[0]
        if reference_level not in levels:
            msg = f"reference level {reference_level!r} is not one of {list(levels)}."
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)

        present = set(pd.unique(y))
        absent = [lv for lv in levels if lv not in present]
        if absent:
            msg = f"outcome level(s) {absent} absent from data set."
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)
        unknown = present.difference(levels)
        if unknown:
            msg = f"unexpected outcome level(s) {sorted(map(str, unknown))}."
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)

        # Reference first so statsmodels treats it as the base category.
        ordered = (reference_level,) + tuple(lv for lv in levels if lv != reference_level)
        codes = (
            y.astype(object).map({lv: i for i, lv in enumerate(ordered)}).to_numpy(dtype=int)
        )

        try:
            X = patsy.dmatrix(rhs, data, NA_action="raise", return_type="dataframe")
        except patsy.PatsyError as exc:
            raise FitFailure(str(exc), FailureReason.MALFORMED_INPUT) from exc

        if terms is not None and tuple(X.columns) != tuple(terms):
            missing = [t for t in terms if t not in X.columns]
            extra = [c for c in X.columns if c not in terms]
            msg = (
                f"design columns differ from the original fit "
                f"(missing {missing}, extra {extra})."
            )
            raise FitFailure(msg, FailureReason.MALFORMED_INPUT)

        maxiter = int(options.get("maxiter", self.maxiter))
        method = options.get("method", self.method)
        results = MNLogit(codes, X).fit(method=method, maxiter=maxiter, disp=0)

        retvals = getattr(results, "mle_retvals", None) or {}
        if not retvals.get("converged", True):
            msg = f"{method} did not converge in {maxiter} iterations."
            raise FitFailure(msg, FailureReason.NON_CONVERGENCE)

        params = np.asarray(results.params, dtype=float)  # (p, K−1)
        coefficients = params.T.ravel()  # equation-major
        cov = np.asarray(results.cov_params(), dtype=float)
        if not (np.all(np.isfinite(coefficients)) and np.all(np.isfinite(cov))):
            msg = "non-finite coefficients or covariance."
            raise FitFailure(msg, FailureReason.NUMERICAL_ERROR)

        return FittedModel(
            formula=formula,
            outcome=outcome,
            terms=tuple(X.columns),
            levels=levels,
            reference_level=reference_level,
            coefficients=coefficients,
            cov=cov,
            log_likelihood=float(results.llf),
            n_obs=int(X.shape[0]),
            n_iter=retvals.get("iterations"),
            design_info=X.design_info,
        )


# ------------------------------------------------------------------ #
# Guarded fitting
# ------------------------------------------------------------------ #


@contextlib.contextmanager
def escalated_warnings() -> Iterator[None]:
    """Raise every fit-quality warning as an exception inside the block.

    The previous filter list is restored on exit, including when the
    block raises.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        # Inserted after "error", so these take precedence.
        for category in _MAINTENANCE_WARNINGS:
            warnings.simplefilter("default", category=category)
        yield


def classify_failure(exc: BaseException) -> FailureReason:
    """Map an exception raised by a fitter to a :class:`FailureReason`."""
    if isinstance(exc, FitFailure):
        return exc.reason
    if isinstance(exc, SmConvergenceWarning):
        return FailureReason.NON_CONVERGENCE
    if isinstance(
        exc,
        (
            HessianInversionWarning,
            PerfectSeparationWarning,
            PerfectSeparationError,
            np.linalg.LinAlgError,
            ArithmeticError,
            RuntimeWarning,
        ),
    ):
        return FailureReason.NUMERICAL_ERROR
    if isinstance(exc, TimeoutError):
        return FailureReason.TIMEOUT
    if isinstance(exc, (patsy.PatsyError, KeyError, ValueError, TypeError)):
        return FailureReason.MALFORMED_INPUT
    return FailureReason.NUMERICAL_ERROR


def _describe(exc: BaseException) -> str:
    if isinstance(exc, FitFailure):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


def guarded_fit(
    fitter: ModelFitter,
    formula: str,
    data: pd.DataFrame,
    reference_level: Any = None,
    *,
    escalate_warnings: bool = True,
    index: int | None = None,
    **options: Any,
) -> FitAttempt:
    """Run exactly one fit attempt and classify its outcome.

    Never raises for fit problems: fitter exceptions, explicit
    non-convergence and (with *escalate_warnings*) any warning become
    a failed :class:`~multibootstrap._results.FitAttempt` carrying the
    diagnostic text.

    Args:
        fitter: External fitting capability.
        formula: ``"outcome ~ terms"``.
        data: Data set to fit.
        reference_level: Reference outcome level.
        escalate_warnings: Treat warnings emitted during the fit as
            failures.
        index: Candidate position, recorded on the attempt.
        **options: Forwarded to ``fitter.fit``.

    Returns:
        A converged or failed :class:`~multibootstrap._results.FitAttempt`.
    """
    start = time.perf_counter()
    scope = escalated_warnings() if escalate_warnings else contextlib.nullcontext()
    try:
        with scope:
            model = fitter.fit(formula, data, reference_level, **options)
    except Exception as exc:  # noqa: BLE001
        return FitAttempt.failure(
            classify_failure(exc),
            _describe(exc),
            index=index,
            elapsed=time.perf_counter() - start,
        )
    return FitAttempt.success(model, index=index, elapsed=time.perf_counter() - start)


@dataclass(frozen=True)
class GuardedFitter:
    """A fitter bound to one formula, reference level and option set.

    Calling the instance on a data set performs one
    :func:`guarded_fit`.  Instances are picklable (provided the
    wrapped fitter is), so the orchestrator can ship them to worker
    processes.

    Use :meth:`pin` after the original fit so that every bootstrap fit
    enforces the original outcome levels and design columns.
    """

    fitter: ModelFitter
    formula: str
    reference_level: Any = None
    levels: tuple[Any, ...] | None = None
    terms: tuple[str, ...] | None = None
    escalate_warnings: bool = True
    options: dict[str, Any] = field(default_factory=dict)

    def __call__(self, data: pd.DataFrame, index: int | None = None) -> FitAttempt:
        return guarded_fit(
            self.fitter,
            self.formula,
            data,
            self.reference_level,
            escalate_warnings=self.escalate_warnings,
            index=index,
            levels=self.levels,
            terms=self.terms,
            **self.options,
        )

    def pin(self, model: FittedModel) -> GuardedFitter:
        """Return a copy enforcing *model*'s levels, reference and columns."""
        return replace(
            self,
            reference_level=model.reference_level,
            levels=model.levels,
            terms=model.terms,
        )


__all__ = [
    "GuardedFitter",
    "MNLogitFitter",
    "ModelFitter",
    "classify_failure",
    "escalated_warnings",
    "guarded_fit",
    "outcome_levels",
    "split_formula",
]
