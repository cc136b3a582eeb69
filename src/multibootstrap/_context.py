"""Run log — mutable accumulator of per-attempt outcomes.

A :class:`RunLog` travels with one bootstrap run, collecting one
:class:`AttemptRecord` per fit attempt (the original fit included) as
outcomes arrive.  It backs the human-readable audit trail: every
completed run reports how many attempts failed and why, even when the
run reached its target.

Lifecycle::

    ┌───────────────────────────────────────────────┐
    │  BootstrapOrchestrator.run(original, cands)   │
    │  ├─ log = RunLog(label)                       │
    │  ├─ log.record(original_attempt)              │
    │  ├─ for each counted candidate:               │
    │  │   └─ log.record(attempt)                   │
    │  ├─ log.state = terminal SearchState          │
    │  └─ BootstrapResult(..., log=log)             │
    └───────────────────────────────────────────────┘

    # Later:
    print_failure_log(result)        # reads result.log
    result.log.to_frame()            # tidy audit table

The log is **not** part of the JSON result artefact: the failure
messages it would carry are already on ``BootstrapResult.failures``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pandas as pd

if TYPE_CHECKING:
    from ._results import FitAttempt, SearchState


@dataclass(frozen=True)
class AttemptRecord:
    """One line of the audit trail."""

    label: str
    index: int | None
    status: str
    reason: str | None
    message: str
    elapsed: float

    def format(self) -> str:
        where = "original" if self.index is None else f"candidate {self.index}"
        if self.reason is None:
            return f"[{self.label}] {where}: {self.status} ({self.elapsed:.3f}s)"
        return (
            f"[{self.label}] {where}: {self.status} "
            f"({self.reason}) {self.message}"
        )


@dataclass
class RunLog:
    """Mutable accumulator of attempt outcomes for one labelled run."""

    label: str = "bootstrap"
    """Caller-supplied run label used as the key for every record."""

    records: list[AttemptRecord] = field(default_factory=list)
    """Outcome records in the order they were counted."""

    state: SearchState | None = None
    """Terminal state, set when the run ends."""

    extra: dict[str, Any] = field(default_factory=dict)
    """Free-form run metadata (reference level, worker count, …)."""

    def record(self, attempt: FitAttempt) -> AttemptRecord:
        """Append the outcome of *attempt* and return the new record."""
        rec = AttemptRecord(
            label=self.label,
            index=attempt.index,
            status=attempt.status.value,
            reason=attempt.reason.value if attempt.reason is not None else None,
            message=attempt.message,
            elapsed=attempt.elapsed,
        )
        self.records.append(rec)
        return rec

    def extend(self, other: RunLog) -> None:
        """Append every record of *other* (used to merge per-reference logs)."""
        self.records.extend(other.records)

    @property
    def n_success(self) -> int:
        return sum(1 for r in self.records if r.index is not None and r.reason is None)

    @property
    def n_failed(self) -> int:
        return sum(1 for r in self.records if r.index is not None and r.reason is not None)

    def messages(self) -> list[str]:
        """Formatted failure lines, original-fit failure included."""
        return [r.format() for r in self.records if r.reason is not None]

    def to_frame(self) -> pd.DataFrame:
        """Tidy audit table, one row per attempt."""
        return pd.DataFrame(
            [
                {
                    "label": r.label,
                    "index": r.index,
                    "status": r.status,
                    "reason": r.reason,
                    "message": r.message,
                    "elapsed": r.elapsed,
                }
                for r in self.records
            ],
            columns=["label", "index", "status", "reason", "message", "elapsed"],
        )


__all__ = ["AttemptRecord", "RunLog"]
