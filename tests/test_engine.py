"""Unit tests for BootstrapOrchestrator.

The scripted fitter below decides each outcome from a marker column,
so the retry loop can be checked attempt by attempt without depending
on when a real solver happens to fail.  Worker processes import it
from this module, so it also drives the pooled timeout path.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future

import numpy as np
import pandas as pd
import pytest

from multibootstrap import (
    FailureReason,
    FitFailure,
    FittedModel,
    MNLogitFitter,
    OriginalFitFailure,
    SearchState,
)
from multibootstrap.engine import BootstrapOrchestrator
from multibootstrap.fitting import GuardedFitter
from multibootstrap.resampling import generate_bootstrap_datasets

# ------------------------------------------------------------------ #
# Scripted fitter
# ------------------------------------------------------------------ #


class _ScriptedFitter:
    name = "scripted"

    def fit(self, formula, data, reference_level=None, *, levels=None, terms=None, **options):
        mode = data["mode"].iloc[0]
        if mode == "fail":
            raise FitFailure("scripted non-convergence", FailureReason.NON_CONVERGENCE)
        if mode == "singular":
            raise np.linalg.LinAlgError("Singular matrix")
        if mode == "slow":
            time.sleep(_SLOW_FIT_SECONDS)
        value = float(data["value"].iloc[0])
        return FittedModel(
            formula=formula,
            outcome="y",
            terms=("Intercept",),
            levels=("A", "B", "C"),
            reference_level="A",
            coefficients=np.array([value, -value]),
            cov=np.eye(2),
        )


def _frames(modes):
    return [pd.DataFrame({"mode": [m], "value": [float(i)]}) for i, m in enumerate(modes)]


_SLOW_FIT_SECONDS = 60.0

_ORIGINAL = pd.DataFrame({"mode": ["ok"], "value": [-1.0]})


def _orchestrator(n_boot, **kwargs):
    guarded = GuardedFitter(_ScriptedFitter(), "y ~ 1")
    kwargs.setdefault("n_jobs", 1)
    return BootstrapOrchestrator(guarded, n_boot, **kwargs)


class _TrackedSupply:
    """Iterable that records how many candidates were pulled."""

    def __init__(self, frames):
        self.frames = frames
        self.pulled = 0

    def __iter__(self):
        for frame in self.frames:
            self.pulled += 1
            yield frame


# ------------------------------------------------------------------ #
# Construction
# ------------------------------------------------------------------ #


class TestConstruction:
    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"n_boot": 0}, "n_boot"),
            ({"n_boot": 5, "timeout": 0}, "timeout"),
            ({"n_boot": 5, "max_attempts": 0}, "max_attempts"),
        ],
    )
    def test_validation(self, kwargs, match):
        guarded = GuardedFitter(_ScriptedFitter(), "y ~ 1")
        with pytest.raises(ValueError, match=match):
            BootstrapOrchestrator(guarded, **kwargs)

    def test_sequential_by_default(self):
        assert not _orchestrator(3).uses_pool

    def test_timeout_forces_pool(self):
        assert _orchestrator(3, timeout=5.0).uses_pool

    def test_parallel_uses_pool(self):
        orch = _orchestrator(3, n_jobs=2)
        assert orch.n_workers == 2
        assert orch.uses_pool


# ------------------------------------------------------------------ #
# Retry loop
# ------------------------------------------------------------------ #


class TestRetryLoop:
    def test_stops_at_b_successes(self):
        result = _orchestrator(3).run(_ORIGINAL, _frames(["ok"] * 6))
        assert result.state is SearchState.SATISFIED
        assert result.n_success == 3
        assert result.n_examined == 3
        assert result.n_failed == 0
        assert [a.index for a in result.successes] == [0, 1, 2]

    def test_examines_b_plus_f(self):
        modes = ["ok", "fail", "ok", "singular", "ok", "ok"]
        result = _orchestrator(3).run(_ORIGINAL, _frames(modes))
        assert result.is_complete
        assert result.n_failed == 2
        assert result.n_examined == 3 + 2
        assert [a.index for a in result.successes] == [0, 2, 4]
        reasons = [a.reason for a in result.failures]
        assert reasons == [FailureReason.NON_CONVERGENCE, FailureReason.NUMERICAL_ERROR]

    def test_successes_keep_candidate_order(self):
        result = _orchestrator(2).run(_ORIGINAL, _frames(["fail", "ok", "ok"]))
        np.testing.assert_array_equal(
            result.coefficient_matrix(), np.array([[1.0, -1.0], [2.0, -2.0]])
        )

    def test_shortfall_is_a_result_state(self):
        result = _orchestrator(5).run(_ORIGINAL, _frames(["ok", "fail", "ok", "ok"]))
        assert result.state is SearchState.EXHAUSTED
        assert result.n_success == 3
        assert result.shortfall == 2
        assert not result.is_complete
        assert result.n_examined == 4

    def test_shortfall_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="multibootstrap.engine"):
            _orchestrator(3, label="short").run(_ORIGINAL, _frames(["ok"]))
        assert any(
            "[short] bootstrap shortfall" in r.getMessage() for r in caplog.records
        )

    def test_empty_supply(self):
        result = _orchestrator(2).run(_ORIGINAL, [])
        assert result.state is SearchState.EXHAUSTED
        assert result.n_examined == 0

    def test_attempt_budget(self):
        modes = ["fail", "ok", "fail", "ok", "ok", "ok"]
        result = _orchestrator(4, max_attempts=3).run(_ORIGINAL, _frames(modes))
        assert result.state is SearchState.BUDGET_EXHAUSTED
        assert result.n_examined == 3
        assert result.n_success == 1
        assert result.n_failed == 2

    def test_budget_not_hit_when_satisfied_first(self):
        result = _orchestrator(2, max_attempts=2).run(_ORIGINAL, _frames(["ok", "ok"]))
        assert result.state is SearchState.SATISFIED

    def test_supply_not_overconsumed(self):
        supply = _TrackedSupply(_frames(["ok"] * 10))
        _orchestrator(3).run(_ORIGINAL, supply)
        assert supply.pulled == 3

    def test_deterministic(self):
        modes = ["ok", "fail", "ok", "ok", "singular", "ok"]
        a = _orchestrator(3).run(_ORIGINAL, _frames(modes))
        b = _orchestrator(3).run(_ORIGINAL, _frames(modes))
        assert [x.index for x in a.successes] == [x.index for x in b.successes]
        assert a.n_examined == b.n_examined


class TestOriginalFit:
    def test_fatal_before_any_candidate(self):
        supply = _TrackedSupply(_frames(["ok"] * 3))
        bad = pd.DataFrame({"mode": ["singular"], "value": [0.0]})
        with pytest.raises(OriginalFitFailure) as info:
            _orchestrator(2, label="fatal").run(bad, supply)
        assert supply.pulled == 0
        assert info.value.attempt.reason is FailureReason.NUMERICAL_ERROR
        assert "[fatal]" in str(info.value)
        assert "Singular matrix" in str(info.value)

    def test_original_recorded(self):
        result = _orchestrator(1).run(_ORIGINAL, _frames(["ok"]))
        assert result.original.converged
        assert result.original.index is None
        assert result.reference_level == "A"


class TestRunLog:
    def test_records_every_counted_attempt(self):
        modes = ["ok", "fail", "ok"]
        result = _orchestrator(2, label="audit").run(_ORIGINAL, _frames(modes))
        log = result.log
        assert log.label == "audit"
        assert log.state is SearchState.SATISFIED
        # Original fit plus every examined candidate.
        assert len(log.records) == 1 + result.n_examined
        assert log.n_success == 2
        assert log.n_failed == 1
        assert log.messages() == ["[audit] candidate 1: failed (non_convergence) scripted non-convergence"]

    def test_failure_messages_on_complete_run(self):
        result = _orchestrator(1).run(_ORIGINAL, _frames(["fail", "ok"]))
        assert result.is_complete
        assert result.failure_messages == ["[0] non_convergence: scripted non-convergence"]

    def test_debug_record_per_attempt(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="multibootstrap.engine"):
            _orchestrator(2, label="dbg").run(_ORIGINAL, _frames(["ok", "fail", "ok"]))
        per_attempt = [
            r for r in caplog.records
            if r.levelno == logging.DEBUG and r.getMessage().startswith("[dbg] candidate")
        ]
        assert len(per_attempt) == 3

    def test_to_frame(self):
        result = _orchestrator(1).run(_ORIGINAL, _frames(["fail", "ok"]))
        frame = result.log.to_frame()
        assert list(frame["status"]) == ["converged", "failed", "converged"]

    def test_to_dict_is_plain(self):
        result = _orchestrator(1).run(_ORIGINAL, _frames(["ok"]))
        d = result.to_dict()
        assert d["state"] == "satisfied"
        assert d["successes"] == [[0.0, -0.0]]
        assert "log" not in d


# ------------------------------------------------------------------ #
# Timeouts and worker outcomes
# ------------------------------------------------------------------ #


class TestCollect:
    def test_timeout_becomes_failed_attempt(self):
        orch = _orchestrator(1, timeout=0.05)
        pending: Future = Future()
        attempt = orch._collect(pending, 7, time.monotonic())
        assert attempt.reason is FailureReason.TIMEOUT
        assert attempt.index == 7
        assert "0.05" in attempt.message

    def test_worker_crash_becomes_failed_attempt(self):
        orch = _orchestrator(1, timeout=1.0)
        broken: Future = Future()
        broken.set_exception(np.linalg.LinAlgError("Singular matrix"))
        attempt = orch._collect(broken, 2, time.monotonic())
        assert attempt.reason is FailureReason.NUMERICAL_ERROR
        assert "Singular matrix" in attempt.message


# ------------------------------------------------------------------ #
# Parallel dispatch
# ------------------------------------------------------------------ #


class TestParallel:
    def test_parallel_matches_sequential(self, clustered_data):
        guarded = GuardedFitter(MNLogitFitter(), "y ~ x", reference_level="A")
        candidates = generate_bootstrap_datasets(clustered_data, "id", 8, random_state=5)

        seq = BootstrapOrchestrator(guarded, 5, n_jobs=1).run(clustered_data, candidates)
        par = BootstrapOrchestrator(guarded, 5, n_jobs=2).run(clustered_data, candidates)

        assert [a.index for a in par.successes] == [a.index for a in seq.successes]
        assert par.n_examined == seq.n_examined
        assert par.state is seq.state
        np.testing.assert_allclose(par.coefficient_matrix(), seq.coefficient_matrix())

    def test_parallel_respects_budget(self, clustered_data):
        guarded = GuardedFitter(MNLogitFitter(), "y ~ x", reference_level="A")
        candidates = generate_bootstrap_datasets(clustered_data, "id", 6, random_state=5)
        result = BootstrapOrchestrator(guarded, 6, n_jobs=2, max_attempts=3).run(
            clustered_data, candidates
        )
        assert result.n_examined == 3
        assert result.state is SearchState.BUDGET_EXHAUSTED


class TestPooledTimeout:
    def test_only_slow_candidate_times_out(self):
        modes = ["ok", "slow", "ok", "ok", "ok"]
        result = _orchestrator(3, n_jobs=2, timeout=3.0, label="pool").run(
            _ORIGINAL, _frames(modes)
        )
        assert result.state is SearchState.SATISFIED
        assert [a.index for a in result.successes] == [0, 2, 3]
        assert [(a.index, a.reason) for a in result.failures] == [
            (1, FailureReason.TIMEOUT)
        ]

    def test_fast_fits_survive_cold_pool(self, clustered_data):
        # A fresh pool pays process start-up and imports before any fit.
        from joblib.externals.loky import get_reusable_executor

        get_reusable_executor(max_workers=2).shutdown(wait=True, kill_workers=True)
        guarded = GuardedFitter(MNLogitFitter(), "y ~ x", reference_level="A")
        result = BootstrapOrchestrator(guarded, 3, n_jobs=2, timeout=2.0).run(
            clustered_data, [clustered_data] * 4
        )
        assert result.state is SearchState.SATISFIED
        assert result.n_failed == 0

    def test_warm_starts_every_worker(self):
        from joblib.externals.loky import get_reusable_executor

        orch = _orchestrator(1, n_jobs=2)
        pids = orch._warm(get_reusable_executor(max_workers=2), 2)
        assert len(pids) == 2
