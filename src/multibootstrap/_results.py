"""Typed result objects for cluster-bootstrap runs.

Every object produced by a run is a frozen dataclass: a fit attempt,
the per-reference bootstrap outcome, the aggregated coefficient
distribution and the merged multi-reference result.  Fields are read
as attributes (``result.n_failed``) or by key (``result["n_failed"]``),
and ``to_dict()`` yields plain Python values that ``json.dumps``
accepts, with NaN written as ``null`` and enums as their values.

Coefficient layout
~~~~~~~~~~~~~~~~~~
A multinomial model with design columns ``t₁ … t_p`` and outcome
levels ``ℓ₀ (reference), ℓ₁ … ℓ_{K−1}`` has ``P = p·(K−1)``
coefficients.  They are stored **equation-major** — all terms for
``ℓ₁``, then all terms for ``ℓ₂`` … — which is the order statsmodels
uses for ``MNLogit.cov_params()``.  Names are ``"<term>:<level>"``.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ._context import RunLog

# ------------------------------------------------------------------ #
# JSON conversion
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Convert arrays, NumPy scalars, enums and nested results to JSON types."""
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, np.ndarray):
        return _numpy_to_python(obj.tolist())
    if isinstance(obj, np.generic):
        obj = obj.item()
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, float):
        return None if math.isnan(obj) else obj
    if isinstance(obj, dict):
        return {str(k): _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_to_python(item) for item in obj]
    if isinstance(obj, _DictAccessMixin):
        return obj.to_dict()
    return obj


# ------------------------------------------------------------------ #
# Key access and serialisation
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Key-based access and ``to_dict()`` for the result dataclasses.

    ``_SERIALIZERS`` maps a field name to a converter applied before the
    generic JSON conversion (frames, nested results).
    ``_EXCLUDE_FROM_DICT`` names fields left out entirely, such as the
    fitted model's patsy ``DesignInfo`` or the run log.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        if key not in self:
            raise KeyError(key)
        return getattr(self, key)

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default) if key in self else default

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Return the non-excluded fields as JSON-ready Python values."""
        out: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            convert = self._SERIALIZERS.get(f.name)
            val = getattr(self, f.name)
            out[f.name] = _numpy_to_python(convert(val) if convert else val)
        return out


# ------------------------------------------------------------------ #
# Enumerations
# ------------------------------------------------------------------ #


class AttemptStatus(enum.Enum):
    """Outcome of one guarded fit attempt."""

    CONVERGED = "converged"
    FAILED = "failed"


class FailureReason(enum.Enum):
    """Why a fit attempt was classified as failed."""

    NON_CONVERGENCE = "non_convergence"
    NUMERICAL_ERROR = "numerical_error"
    MALFORMED_INPUT = "malformed_input"
    TIMEOUT = "timeout"


class SearchState(enum.Enum):
    """States of the fit-until-B-successes loop.

    ``SEARCHING`` is the only non-terminal state.  A run ends in
    ``SATISFIED`` (B successes), ``EXHAUSTED`` (candidate supply ran
    out first), ``BUDGET_EXHAUSTED`` (the caller's attempt budget ran
    out first) or ``FATAL_ABORTED`` (the original fit failed).
    """

    SEARCHING = "searching"
    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FATAL_ABORTED = "fatal_aborted"


# ------------------------------------------------------------------ #
# FittedModel
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FittedModel(_DictAccessMixin):
    """A converged multinomial fit, detached from the solver object.

    ``design_info`` (a patsy ``DesignInfo``) is the model's
    linear-predictor metadata: it turns new covariate rows into design
    vectors with exactly the columns in :attr:`terms`.  Patsy objects
    cannot be pickled, so the field is dropped when a model crosses a
    process boundary; only the original-data fit, which is always
    produced in the calling process, needs it.
    """

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"design_info"})

    formula: str
    """Formula the model was fitted with."""

    outcome: str
    """Name of the outcome column."""

    terms: tuple[str, ...]
    """Design-matrix column names, length ``p``."""

    levels: tuple[Any, ...]
    """All outcome levels in their canonical order."""

    reference_level: Any
    """Level every log-odds is expressed against."""

    coefficients: np.ndarray
    """Flattened equation-major coefficient vector, shape ``(P,)``."""

    cov: np.ndarray
    """Model-based covariance of :attr:`coefficients`, ``(P, P)``."""

    log_likelihood: float = float("nan")
    """Maximised log-likelihood."""

    n_obs: int = 0
    """Number of records used."""

    n_iter: int | None = None
    """Solver iterations, when reported."""

    design_info: Any = field(default=None, repr=False, compare=False)
    """patsy ``DesignInfo`` for building prediction design vectors."""

    # ---- Pickling --------------------------------------------------

    def __getstate__(self) -> dict[str, Any]:
        state = {f.name: getattr(self, f.name) for f in fields(self)}
        state["design_info"] = None
        return state

    def __setstate__(self, state: dict[str, Any]) -> None:
        for key, val in state.items():
            object.__setattr__(self, key, val)

    # ---- Layout helpers --------------------------------------------

    @property
    def nonreference_levels(self) -> tuple[Any, ...]:
        """Levels with their own linear predictor, in canonical order."""
        return tuple(lv for lv in self.levels if lv != self.reference_level)

    @property
    def coef_names(self) -> list[str]:
        """``"<term>:<level>"`` names matching :attr:`coefficients`."""
        return [f"{t}:{lv}" for lv in self.nonreference_levels for t in self.terms]

    def coef_matrix(self, coefficients: np.ndarray | None = None) -> np.ndarray:
        """Reshape a flat coefficient vector to ``(p, K−1)``.

        Args:
            coefficients: Flat vector (or ``(B, P)`` matrix) in this
                model's layout.  Defaults to :attr:`coefficients`.

        Returns:
            ``(p, K−1)`` for a vector input, ``(B, p, K−1)`` for a
            matrix input.
        """
        beta = self.coefficients if coefficients is None else np.asarray(coefficients)
        p = len(self.terms)
        k1 = len(self.nonreference_levels)
        if beta.ndim == 1:
            return beta.reshape(k1, p).T
        return beta.reshape(beta.shape[0], k1, p).transpose(0, 2, 1)


# ------------------------------------------------------------------ #
# FitAttempt
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitAttempt(_DictAccessMixin):
    """Immutable outcome of one guarded model-fit attempt."""

    status: AttemptStatus
    """``CONVERGED`` or ``FAILED``."""

    model: FittedModel | None = None
    """The fitted model when converged."""

    reason: FailureReason | None = None
    """Failure classification when failed."""

    message: str = ""
    """Captured error / warning text when failed."""

    index: int | None = None
    """Position in the candidate sequence (``None`` for the original)."""

    elapsed: float = 0.0
    """Wall-clock seconds spent on the attempt."""

    @property
    def converged(self) -> bool:
        return self.status is AttemptStatus.CONVERGED

    @classmethod
    def success(
        cls, model: FittedModel, *, index: int | None = None, elapsed: float = 0.0
    ) -> FitAttempt:
        return cls(AttemptStatus.CONVERGED, model=model, index=index, elapsed=elapsed)

    @classmethod
    def failure(
        cls,
        reason: FailureReason,
        message: str,
        *,
        index: int | None = None,
        elapsed: float = 0.0,
    ) -> FitAttempt:
        return cls(
            AttemptStatus.FAILED,
            reason=reason,
            message=message,
            index=index,
            elapsed=elapsed,
        )


# ------------------------------------------------------------------ #
# BootstrapResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BootstrapResult(_DictAccessMixin):
    """Product of one orchestrated bootstrap run.

    Returned by :meth:`~multibootstrap.engine.BootstrapOrchestrator.run`.
    A shortfall (fewer than ``n_boot`` successes) is a result state,
    never an exception: check :attr:`shortfall` or :attr:`is_complete`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "successes": lambda fits: [f.model.coefficients for f in fits],
    }
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"log"})

    label: str
    """Caller-supplied run label."""

    n_boot: int
    """Requested number of successful fits ``B``."""

    original: FitAttempt
    """Converged fit on the unperturbed data set."""

    successes: tuple[FitAttempt, ...]
    """Converged bootstrap fits in candidate-index order, length ≤ B."""

    n_failed: int
    """Failed attempts encountered while searching."""

    n_examined: int
    """Candidates whose outcome was counted (successes + failures)."""

    state: SearchState
    """Terminal state of the search."""

    failures: tuple[FitAttempt, ...] = ()
    """Failed attempts, for aggregate failure reporting."""

    log: RunLog | None = field(default=None, repr=False, compare=False)
    """Per-attempt audit log.  Excluded from ``to_dict()``."""

    @property
    def n_success(self) -> int:
        return len(self.successes)

    @property
    def shortfall(self) -> int:
        """How many successes short of ``n_boot`` the run ended."""
        return max(self.n_boot - self.n_success, 0)

    @property
    def is_complete(self) -> bool:
        return self.shortfall == 0

    @property
    def reference_level(self) -> Any:
        return self.original.model.reference_level  # type: ignore[union-attr]

    @property
    def failure_messages(self) -> list[str]:
        """``"[index] reason: message"`` strings for every failure."""
        return [
            f"[{f.index}] {f.reason.value if f.reason else 'unknown'}: {f.message}"
            for f in self.failures
        ]

    def coefficient_matrix(self) -> np.ndarray:
        """Stack successful coefficient vectors into ``(n_success, P)``."""
        if not self.successes:
            p = len(self.original.model.coefficients)  # type: ignore[union-attr]
            return np.empty((0, p))
        return np.vstack([f.model.coefficients for f in self.successes])  # type: ignore[union-attr]


# ------------------------------------------------------------------ #
# CoefficientDistribution
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CoefficientDistribution(_DictAccessMixin):
    """Empirical bootstrap distribution of a coefficient vector.

    Every row of :attr:`draws` follows :attr:`names`, which is the
    original-data fit's coefficient ordering.
    """

    names: tuple[str, ...]
    """Coefficient names, length ``P``."""

    draws: np.ndarray
    """Bootstrap coefficient matrix ``(B, P)``."""

    mean: np.ndarray
    """Column means ``(P,)`` — the bootstrap point estimates."""

    cov: np.ndarray
    """Empirical covariance ``(P, P)`` of :attr:`draws` (ddof 1)."""

    lower: np.ndarray
    """Lower interval bound per coefficient."""

    upper: np.ndarray
    """Upper interval bound per coefficient."""

    confidence_level: float
    """Nominal two-sided coverage (e.g. 0.95)."""

    method: str
    """``"percentile"`` or ``"normal"``."""

    original: np.ndarray | None = None
    """Original-data estimate ``(P,)``, when supplied."""

    terms: tuple[str, ...] = ()
    """Design columns, when the layout is known."""

    levels: tuple[Any, ...] = ()
    """Non-reference outcome levels, when the layout is known."""

    reference_level: Any = None
    """Reference outcome level, when the layout is known."""

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    @property
    def se(self) -> np.ndarray:
        """Bootstrap standard errors (square root of the covariance diagonal)."""
        return np.sqrt(np.clip(np.diag(self.cov), 0.0, None))

    def to_frame(self) -> pd.DataFrame:
        """Per-coefficient summary table indexed by coefficient name.

        ``estimate`` is the bootstrap mean, matching the comparison
        tables; ``original`` is the original-data fit (NaN when absent).
        """
        original = (
            self.original
            if self.original is not None
            else np.full(len(self.names), np.nan)
        )
        frame = pd.DataFrame(
            {
                "estimate": self.mean,
                "se": self.se,
                "lower": self.lower,
                "upper": self.upper,
                "original": original,
            },
            index=pd.Index(list(self.names), name="coefficient"),
        )
        return frame

    def term_draws(self, level: Any) -> np.ndarray:
        """Draws ``(B, p)`` of the log-odds coefficients of *level* vs the reference.

        The reference level itself has identically-zero coefficients.

        Raises:
            KeyError: If *level* is not an outcome level of this layout.
        """
        p = len(self.terms)
        if level == self.reference_level:
            return np.zeros((self.n_draws, p))
        try:
            k = list(self.levels).index(level)
        except ValueError:
            raise KeyError(level) from None
        return self.draws[:, k * p : (k + 1) * p]

    def contrast(self, level_a: Any, level_b: Any) -> np.ndarray:
        """Draws ``(B, p)`` of the log-odds of *level_a* versus *level_b*."""
        return self.term_draws(level_a) - self.term_draws(level_b)


# ------------------------------------------------------------------ #
# ReferenceFit
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ReferenceFit(_DictAccessMixin):
    """One reference-level view of the same bootstrap.

    Refitting the bootstrap with a different reference level
    re-expresses the same multinomial model: the coefficients of one
    view are linear contrasts of another's.  Views are what
    :func:`~multibootstrap.probabilities.combine_reference_fits` and
    :func:`~multibootstrap.probabilities.merge_comparisons` combine.
    """

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"model"})

    model: FittedModel
    """Original-data fit with this view's reference level."""

    distribution: CoefficientDistribution
    """Bootstrap distribution of this view's coefficients."""

    bootstrap: BootstrapResult | None = field(default=None, repr=False)
    """The orchestrated run the distribution was aggregated from."""

    @property
    def reference_level(self) -> Any:
        return self.model.reference_level


# ------------------------------------------------------------------ #
# MultiBootstrapResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MultiBootstrapResult(_DictAccessMixin):
    """Product of :func:`~multibootstrap.core.multi_bootstrap`.

    Holds one :class:`ReferenceFit` per reference level, all fitted on
    the same candidate sequence, and the pairwise comparison table
    merged across them.  Predicted probabilities are computed on
    demand with :meth:`predict`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "comparisons": lambda df: df.to_dict(orient="records"),
    }
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"log"})

    label: str
    """Caller-supplied run label."""

    formula: str
    """Model formula."""

    id_col: str
    """Subject-identifier column."""

    n_boot: int
    """Requested number of successful fits per reference level."""

    n_sets: int
    """Number of candidate data sets available."""

    levels: tuple[Any, ...]
    """Outcome levels in canonical order."""

    views: tuple[ReferenceFit, ...]
    """One view per reference level; the first is the primary view."""

    comparisons: pd.DataFrame = field(compare=False)
    """Pairwise level comparisons, ``K(K−1)/2`` per term."""

    confidence_level: float = 0.95
    """Nominal coverage used for every interval."""

    log: RunLog | None = field(default=None, repr=False, compare=False)
    """Combined audit log of every run.  Excluded from ``to_dict()``."""

    @property
    def primary(self) -> ReferenceFit:
        return self.views[0]

    @property
    def reference_levels(self) -> tuple[Any, ...]:
        return tuple(v.reference_level for v in self.views)

    @property
    def n_failed(self) -> int:
        """Failed attempts summed over every reference level."""
        return sum(v.bootstrap.n_failed for v in self.views if v.bootstrap is not None)

    @property
    def is_complete(self) -> bool:
        return all(v.bootstrap is None or v.bootstrap.is_complete for v in self.views)

    def view(self, reference_level: Any) -> ReferenceFit:
        """The view fitted with *reference_level*.

        Raises:
            KeyError: If no view uses that reference level.
        """
        for v in self.views:
            if v.reference_level == reference_level:
                return v
        raise KeyError(reference_level)

    def coefficient_table(self, reference_level: Any = None) -> pd.DataFrame:
        """Coefficient summary of one view (the primary by default)."""
        v = self.primary if reference_level is None else self.view(reference_level)
        return v.distribution.to_frame()

    def predict(
        self,
        profiles: Any,
        *,
        confidence_level: float | None = None,
        method: str = "delta",
        scale: str = "probability",
    ) -> pd.DataFrame:
        """Predicted probabilities combined across the reference views.

        See :func:`~multibootstrap.probabilities.combine_reference_fits`.
        """
        from .probabilities import combine_reference_fits

        return combine_reference_fits(
            self.views,
            profiles,
            confidence_level=(
                self.confidence_level if confidence_level is None else confidence_level
            ),
            method=method,  # type: ignore[arg-type]
            scale=scale,  # type: ignore[arg-type]
        )


__all__ = [
    "AttemptStatus",
    "BootstrapResult",
    "CoefficientDistribution",
    "FailureReason",
    "FitAttempt",
    "FittedModel",
    "MultiBootstrapResult",
    "ReferenceFit",
    "SearchState",
]
