"""Error taxonomy.

Only two conditions are fatal to a bootstrap run: the original data
set failing to fit (:class:`OriginalFitFailure`) and successful fits
disagreeing on coefficient layout (:class:`AggregationError`).
Per-attempt problems (:class:`FitFailure`) are raised inside the fitter
boundary and always absorbed by :func:`~multibootstrap.fitting.guarded_fit`.

A shortfall of successful fits is *not* an exception; see
:attr:`~multibootstrap._results.BootstrapResult.shortfall`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._results import FailureReason, FitAttempt


class MultiBootstrapError(Exception):
    """Base class for all package errors."""


class ResampleInputError(MultiBootstrapError, ValueError):
    """The original data set cannot be cluster-resampled."""


class FitFailure(MultiBootstrapError, RuntimeError):
    """A single model-fit attempt failed.

    Attributes:
        reason: Classified failure reason.
    """

    def __init__(self, message: str, reason: FailureReason) -> None:
        super().__init__(message)
        self.reason = reason


class OriginalFitFailure(MultiBootstrapError, RuntimeError):
    """The unperturbed data set could not be fitted.

    A model that cannot fit its own source data cannot ground a
    bootstrap, so the run aborts before any candidate is examined.

    Attributes:
        attempt: The failed :class:`~multibootstrap._results.FitAttempt`.
        label: Caller-supplied run label.
    """

    def __init__(self, attempt: FitAttempt, label: str = "") -> None:
        prefix = f"[{label}] " if label else ""
        super().__init__(
            f"{prefix}original data set failed to fit "
            f"({attempt.reason.value if attempt.reason else 'unknown'}): "
            f"{attempt.message}"
        )
        self.attempt = attempt
        self.label = label


class AggregationError(MultiBootstrapError, ValueError):
    """Successful fits do not share a coefficient layout."""


__all__ = [
    "AggregationError",
    "FitFailure",
    "MultiBootstrapError",
    "OriginalFitFailure",
    "ResampleInputError",
]
