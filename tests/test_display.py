"""Tests for the ASCII display functions."""

from __future__ import annotations

import pytest

from conftest import simulate_repeated_measures
from multibootstrap import (
    make_profiles,
    multi_bootstrap,
    print_bootstrap_summary,
    print_comparison_table,
    print_failure_log,
    print_probability_table,
)


@pytest.fixture(scope="module")
def small_run():
    data = simulate_repeated_measures(seed=4)
    result = multi_bootstrap(data, "y ~ x", "id", n_boot=30, n_sets=40, random_state=0)
    return data, result


class TestBootstrapSummary:
    def test_header_and_panels(self, small_run, capsys):
        _, result = small_run
        print_bootstrap_summary(result)
        out = capsys.readouterr().out
        assert "Cluster Bootstrap Multinomial Regression" in out
        assert "y ~ x" in out
        assert out.count("Reference:") == 2
        assert "x:B" in out
        assert "[95%" in out

    def test_line_width(self, small_run, capsys):
        _, result = small_run
        print_bootstrap_summary(result)
        lines = capsys.readouterr().out.splitlines()
        assert max(len(line) for line in lines) <= 80

    def test_custom_title(self, small_run, capsys):
        _, result = small_run
        print_bootstrap_summary(result, title="My Run")
        assert "My Run" in capsys.readouterr().out


class TestComparisonTable:
    def test_every_pair_listed(self, small_run, capsys):
        _, result = small_run
        print_comparison_table(result)
        out = capsys.readouterr().out
        for level, baseline in zip(result.comparisons["level"], result.comparisons["baseline"]):
            assert f"{level} vs {baseline}" in out
        assert "derived" in out
        assert "direct" in out


class TestFailureLog:
    def test_count_always_reported(self, small_run, capsys):
        _, result = small_run
        print_failure_log(result)
        out = capsys.readouterr().out
        assert f"{'Failed attempts:':<24}{result.n_failed}" in out

    def test_single_run(self, small_run, capsys):
        _, result = small_run
        print_failure_log(result.primary.bootstrap)
        assert "Failed attempts:" in capsys.readouterr().out


class TestProbabilityTable:
    def test_blocks_per_profile(self, small_run, capsys):
        data, result = small_run
        table = result.predict(make_profiles(data, "x", n_points=3))
        print_probability_table(table)
        out = capsys.readouterr().out
        assert out.count("Profile ") == 3
        assert "x=" in out
        assert "Predicted Probabilities" in out
