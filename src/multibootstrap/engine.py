"""Bootstrap orchestrator — fit until ``B`` successes.

The :class:`BootstrapOrchestrator` owns the retry loop of the cluster
bootstrap:

1. **Original fit** — fit the unperturbed data set first.  If it
   fails, the run aborts with
   :class:`~multibootstrap._errors.OriginalFitFailure` before any
   candidate is examined; there is no retry for the original fit.
2. **Candidate loop** — walk the pre-generated bootstrap data sets in
   order.  A converged fit is appended to the successes; a failed fit
   increments the failure count and the loop moves on.  Individual
   failures never abort the run.
3. **Termination** — stop as soon as ``B`` successes are collected,
   when the candidate supply runs out, or when the caller's attempt
   budget is spent.
4. **Report** — original fit, successes (≤ B, index order), failure
   count, examined count and the terminal state.  A shortfall is a
   reportable result state, not an exception.

State machine
~~~~~~~~~~~~~
::

                 observe(converged), n_success == B
     SEARCHING ───────────────────────────────────────▶ SATISFIED
         │  │
         │  └──── examined == max_attempts ──────────▶ BUDGET_EXHAUSTED
         │
         └─────── candidate supply ends ─────────────▶ EXHAUSTED

     original fit failed ────────────────────────────▶ FATAL_ABORTED

Parallelism
~~~~~~~~~~~
Bootstrap refits share no mutable state, so with ``n_jobs != 1`` they
are dispatched to a process pool (joblib's bundled ``loky`` reusable
executor) in **bounded batches** of one candidate per worker.  Within
a batch outcomes are consumed in candidate-index order and counted
exactly as the sequential loop would count them, so the earliest-index
successes are the ones kept and the parallel result equals the
sequential one.  Work beyond ``B`` is bounded by one batch width.

Processes rather than threads: each fit escalates warnings to errors
via ``warnings.catch_warnings``, which mutates interpreter-global
filter state.  In a worker process that state is private to the
attempt running there.

Timeouts
~~~~~~~~
With ``timeout`` set, every attempt runs in the pool (even with one
worker) and an attempt without a result ``timeout`` seconds after its
submission is recorded as failed with reason ``timeout``.  Its worker
cannot be interrupted, so the pool is torn down (``kill_workers``) and
replaced before the next batch.

Process start-up and the statsmodels import cost seconds, far more
than a typical fit.  Every executor is therefore warmed before timed
work is submitted: each worker runs :func:`_warm_worker` once, which
imports this module (and with it the fitting stack) on unpickling.
The clock then covers only the fit and its transfer.
"""

from __future__ import annotations

import itertools
import logging
import os
import time
from collections.abc import Iterable, Iterator
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

import pandas as pd
from joblib import effective_n_jobs
from joblib.externals.loky import get_reusable_executor

from ._config import get_n_jobs
from ._context import RunLog
from ._errors import OriginalFitFailure
from ._results import (
    BootstrapResult,
    FailureReason,
    FitAttempt,
    SearchState,
)
from .fitting import GuardedFitter, classify_failure

logger = logging.getLogger(__name__)

_WARM_HOLD = 0.05
_WARM_ROUNDS = 3


def _warm_worker(hold: float) -> int:
    """Keep one worker busy briefly so a sibling takes the next warm task."""
    time.sleep(hold)
    return os.getpid()


# ------------------------------------------------------------------ #
# Search state machine
# ------------------------------------------------------------------ #


@dataclass
class _Search:
    """Bounded fit-until-B state machine."""

    n_boot: int
    max_attempts: int | None = None
    successes: list[FitAttempt] = field(default_factory=list)
    failures: list[FitAttempt] = field(default_factory=list)
    state: SearchState = SearchState.SEARCHING

    @property
    def n_examined(self) -> int:
        return len(self.successes) + len(self.failures)

    @property
    def remaining_budget(self) -> int | None:
        if self.max_attempts is None:
            return None
        return self.max_attempts - self.n_examined

    def observe(self, attempt: FitAttempt) -> SearchState:
        if self.state is not SearchState.SEARCHING:
            msg = f"cannot observe an attempt in terminal state {self.state.value}."
            raise RuntimeError(msg)
        if attempt.converged:
            self.successes.append(attempt)
        else:
            self.failures.append(attempt)

        if len(self.successes) >= self.n_boot:
            self.state = SearchState.SATISFIED
        elif self.max_attempts is not None and self.n_examined >= self.max_attempts:
            self.state = SearchState.BUDGET_EXHAUSTED
        return self.state

    def exhaust(self) -> None:
        if self.state is SearchState.SEARCHING:
            self.state = SearchState.EXHAUSTED


# ------------------------------------------------------------------ #
# BootstrapOrchestrator
# ------------------------------------------------------------------ #


class BootstrapOrchestrator:
    """Drive guarded fits over bootstrap candidates until ``B`` succeed.

    The orchestrator keeps no state across :meth:`run` calls; every
    result is owned by the caller.

    Attributes:
        fitter: Guarded fitter bound to the formula, reference level
            and fit options.
        n_boot: Target number of successful fits ``B``.
        n_jobs: Worker processes (``1`` = in-process sequential,
            ``-1`` = one per CPU).
        timeout: Per-attempt timeout in seconds, or ``None``.
        max_attempts: Cap on examined candidates (successes +
            failures), or ``None``.
        label: Caller-supplied label keying log records.
    """

    def __init__(
        self,
        fitter: GuardedFitter,
        n_boot: int,
        *,
        n_jobs: int | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        label: str = "bootstrap",
    ) -> None:
        if n_boot < 1:
            msg = f"n_boot must be at least 1, got {n_boot}."
            raise ValueError(msg)
        if timeout is not None and timeout <= 0:
            msg = f"timeout must be positive, got {timeout}."
            raise ValueError(msg)
        if max_attempts is not None and max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {max_attempts}."
            raise ValueError(msg)

        self.fitter = fitter
        self.n_boot = n_boot
        self.n_jobs = get_n_jobs() if n_jobs is None else n_jobs
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.label = label

    @property
    def n_workers(self) -> int:
        return int(effective_n_jobs(self.n_jobs))

    @property
    def uses_pool(self) -> bool:
        return self.n_workers != 1 or self.timeout is not None

    # ---- Public entry point ----------------------------------------

    def run(
        self,
        original: pd.DataFrame,
        candidates: Iterable[pd.DataFrame],
    ) -> BootstrapResult:
        """Fit *original*, then candidates in order until ``B`` succeed.

        Args:
            original: The unperturbed data set.
            candidates: Pre-generated bootstrap data sets, consumed in
                order (a generator is fine).

        Returns:
            :class:`~multibootstrap._results.BootstrapResult`.  Check
            ``result.shortfall`` for fewer than ``B`` successes.

        Raises:
            OriginalFitFailure: If the original data set fails to fit.
                No candidate is examined in that case.
        """
        log = RunLog(label=self.label)
        log.extra["n_boot"] = self.n_boot
        log.extra["n_workers"] = self.n_workers

        original_attempt = self.fitter(original)
        log.record(original_attempt)
        if not original_attempt.converged:
            log.state = SearchState.FATAL_ABORTED
            logger.error(
                "[%s] original fit failed (%s): %s",
                self.label,
                original_attempt.reason.value if original_attempt.reason else "unknown",
                original_attempt.message,
            )
            raise OriginalFitFailure(original_attempt, self.label)

        model = original_attempt.model
        assert model is not None
        log.extra["reference_level"] = model.reference_level
        fit_one = self.fitter.pin(model)

        search = _Search(self.n_boot, self.max_attempts)
        attempts = (
            self._pooled_attempts(fit_one, candidates, search)
            if self.uses_pool
            else self._sequential_attempts(fit_one, candidates)
        )
        try:
            for attempt in attempts:
                state = search.observe(attempt)
                log.record(attempt)
                if attempt.converged:
                    logger.debug(
                        "[%s] candidate %s converged (%.3fs)",
                        self.label,
                        attempt.index,
                        attempt.elapsed,
                    )
                else:
                    logger.debug(
                        "[%s] candidate %s failed (%s): %s",
                        self.label,
                        attempt.index,
                        attempt.reason.value if attempt.reason else "unknown",
                        attempt.message,
                    )
                if state is not SearchState.SEARCHING:
                    break
            else:
                search.exhaust()
        finally:
            close = getattr(attempts, "close", None)
            if close is not None:
                close()

        log.state = search.state
        result = BootstrapResult(
            label=self.label,
            n_boot=self.n_boot,
            original=original_attempt,
            successes=tuple(search.successes),
            n_failed=len(search.failures),
            n_examined=search.n_examined,
            state=search.state,
            failures=tuple(search.failures),
            log=log,
        )

        logger.info(
            "[%s] reference=%r: %d/%d successes, %d failures, %d examined (%s)",
            self.label,
            model.reference_level,
            result.n_success,
            self.n_boot,
            result.n_failed,
            result.n_examined,
            result.state.value,
        )
        if result.shortfall:
            logger.warning(
                "[%s] bootstrap shortfall: %d of %d successes (%s); "
                "supply more candidates or proceed with fewer draws.",
                self.label,
                result.n_success,
                self.n_boot,
                result.state.value,
            )
        return result

    # ---- Attempt producers -----------------------------------------

    def _sequential_attempts(
        self,
        fit_one: GuardedFitter,
        candidates: Iterable[pd.DataFrame],
    ) -> Iterator[FitAttempt]:
        for index, data in enumerate(candidates):
            yield fit_one(data, index)

    def _pooled_attempts(
        self,
        fit_one: GuardedFitter,
        candidates: Iterable[pd.DataFrame],
        search: _Search,
    ) -> Iterator[FitAttempt]:
        """Yield attempts in index order from bounded process-pool batches.

        The consumer updates *search* between yields, so each batch is
        sized from the state left by the previous one.
        """
        width = self.n_workers
        numbered = enumerate(candidates)
        warmed = None
        while True:
            size = width
            budget = search.remaining_budget
            if budget is not None:
                size = min(size, budget)
            batch = list(itertools.islice(numbered, size))
            if not batch:
                return

            # Returns the live pool, or a fresh one if the previous
            # pool was shut down or broken by a crashed worker.
            executor = get_reusable_executor(max_workers=width)
            if executor is not warmed:
                self._warm(executor, width)
                warmed = executor
            submitted = [
                (index, time.monotonic(), executor.submit(fit_one, data, index))
                for index, data in batch
            ]
            timed_out = False
            try:
                for index, started, future in submitted:
                    attempt = self._collect(future, index, started)
                    if attempt.reason is FailureReason.TIMEOUT:
                        timed_out = True
                    yield attempt
            finally:
                if timed_out:
                    # Stuck workers would block every later batch and run.
                    logger.debug("[%s] replacing pool after attempt timeout", self.label)
                    executor.shutdown(wait=False, kill_workers=True)

    def _warm(self, executor, width: int) -> set[int]:
        """Start every worker of *executor* and load the fitting stack there."""
        pids: set[int] = set()
        for round_ in range(_WARM_ROUNDS):
            hold = _WARM_HOLD * 2**round_
            futures = [executor.submit(_warm_worker, hold) for _ in range(width)]
            pids.update(f.result() for f in futures)
            if len(pids) >= width:
                break
        logger.debug("[%s] warmed %d worker(s)", self.label, len(pids))
        return pids

    def _collect(self, future: Future, index: int, started: float) -> FitAttempt:
        wait = None
        if self.timeout is not None:
            wait = max(started + self.timeout - time.monotonic(), 0.0)
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            future.cancel()
            return FitAttempt.failure(
                FailureReason.TIMEOUT,
                f"no result within {self.timeout}s",
                index=index,
                elapsed=time.monotonic() - started,
            )
        except Exception as exc:  # noqa: BLE001
            # Worker crashes (e.g. a killed process) are per-attempt failures.
            return FitAttempt.failure(
                classify_failure(exc),
                f"{type(exc).__name__}: {exc}",
                index=index,
                elapsed=time.monotonic() - started,
            )


__all__ = ["BootstrapOrchestrator"]
