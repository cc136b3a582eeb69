"""Formatted ASCII table display utilities for cluster-bootstrap results.

The tables mirror the statsmodels summary style: a run panel on top
(label, formula, requested and achieved draws, terminal state) and a
per-coefficient panel underneath with the original estimate, the
bootstrap mean and standard error, and the interval bounds.

Every run reports its failures, even when it reached its target:
the summary shows the failure count per reference level and
:func:`print_failure_log` lists the messages.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING, Any

import pandas as pd

if TYPE_CHECKING:
    from ._results import BootstrapResult, MultiBootstrapResult, ReferenceFit

_W = 80


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(val: Any, width: int = 10, digits: int = 4) -> str:
    """Right-aligned number, ``'N/A'`` for missing values."""
    if val is None or (isinstance(val, float) and val != val):  # nan check
        return f"{'N/A':>{width}}"
    try:
        return f"{float(val):>{width}.{digits}f}"
    except (TypeError, ValueError):
        return f"{str(val):>{width}}"


def _title(title: str) -> None:
    print("=" * _W)
    for line in textwrap.wrap(title, width=_W - 2):
        print(f"{line:^{_W}}")
    print("=" * _W)


def _pair(left_label: str, left: Any, right_label: str = "", right: Any = "") -> None:
    col1, col2 = 40, 38
    left_str = f"{left_label:<16}{_truncate(str(left), col1 - 16):<{col1 - 16}}"
    right_str = f"{right_label:>{col2 - 11}} {str(right):>10}" if right_label else ""
    print(f"{left_str}{right_str}")


def _view_panel(view: ReferenceFit) -> None:
    boot = view.bootstrap
    print("-" * _W)
    _pair("Reference:", view.reference_level, "Draws:", view.distribution.n_draws)
    if boot is not None:
        _pair("State:", boot.state.value, "Failures:", boot.n_failed)
        _pair("Requested B:", boot.n_boot, "Examined:", boot.n_examined)
    print("-" * _W)

    # Coefficient (26) | Estimate | Boot SE | Lower | Upper | Original
    # 26 + 5 * 10 + 4 = 80
    dist = view.distribution
    pct = f"{dist.confidence_level * 100:g}%"
    print(
        f"{'Coefficient':<26}{'Estimate':>10}{'Boot SE':>11}"
        f"{'[' + pct:>11}{'CI]':>11}{'Original':>11}"
    )
    print("-" * _W)
    table = dist.to_frame()
    for name, row in table.iterrows():
        print(
            f"{_truncate(str(name), 25):<26}"
            f"{_fmt(row['estimate'])} {_fmt(row['se'])} "
            f"{_fmt(row['lower'])} {_fmt(row['upper'])} {_fmt(row['original'])}"
        )


def print_bootstrap_summary(
    result: MultiBootstrapResult,
    *,
    title: str = "Cluster Bootstrap Multinomial Regression",
) -> None:
    """Print the run header and one coefficient panel per reference level.

    Args:
        result: Result of :func:`~multibootstrap.multi_bootstrap`.
        title: Title for the output table.
    """
    _title(title)
    _pair("Label:", result.label, "Candidates:", result.n_sets)
    _pair("Formula:", result.formula, "Requested B:", result.n_boot)
    _pair("Subject id:", result.id_col, "Failures:", result.n_failed)
    _pair(
        "Levels:",
        ", ".join(map(str, result.levels)),
        "Complete:",
        "yes" if result.is_complete else "no",
    )
    for view in result.views:
        _view_panel(view)

    notes: list[str] = []
    for view in result.views:
        boot = view.bootstrap
        if boot is not None and boot.shortfall:
            notes.append(
                f"Reference {view.reference_level!r}: only {boot.n_success} of "
                f"{boot.n_boot} fits converged ({boot.state.value}); supply "
                f"more candidate data sets or proceed with fewer draws."
            )
    if notes:
        print("-" * _W)
        print("Notes")
        print("-" * _W)
        for note in notes:
            print(textwrap.fill(f"  [!] {note}", width=_W, subsequent_indent=" " * 6))
    print("=" * _W)
    print()


def print_comparison_table(
    result: MultiBootstrapResult,
    *,
    title: str = "Pairwise Level Comparisons (log-odds)",
) -> None:
    """Print every pairwise level comparison, grouped by pair.

    ``derived`` rows were computed from the primary view's draws rather
    than read from a fit with one of the two levels as reference.
    """
    _title(title)
    pct = f"{result.confidence_level * 100:g}%"
    print(
        f"{'Term':<24}{'Estimate':>10} {'SE':>10} {'[' + pct:>10} {'CI]':>10}"
        f"  {'Source':<12}"
    )
    comparisons = result.comparisons
    for (level, baseline), group in comparisons.groupby(
        ["level", "baseline"], sort=False
    ):
        print("-" * _W)
        print(f"{_truncate(f'{level} vs {baseline}', _W)}")
        for _, row in group.iterrows():
            print(
                f"  {_truncate(str(row['term']), 21):<22}"
                f"{_fmt(row['estimate'])} {_fmt(row['se'])} "
                f"{_fmt(row['lower'])} {_fmt(row['upper'])}  {row['source']:<12}"
            )
    print("=" * _W)
    print()


def print_failure_log(
    result: MultiBootstrapResult | BootstrapResult,
    *,
    max_lines: int | None = None,
    title: str = "Failed Fit Attempts",
) -> None:
    """Print the count and diagnostic message of every failed attempt.

    Args:
        result: A multi-reference or single-run result.
        max_lines: Cap on listed messages (the count is always exact).
        title: Title for the output table.
    """
    _title(title)
    log = result.log
    messages = log.messages() if log is not None else []
    n_failed = result.n_failed
    print(f"{'Failed attempts:':<24}{n_failed}")
    if not messages:
        print("No failed attempts.")
    else:
        print("-" * _W)
        shown = messages if max_lines is None else messages[:max_lines]
        for line in shown:
            print(textwrap.fill(line, width=_W, subsequent_indent=" " * 4))
        hidden = len(messages) - len(shown)
        if hidden:
            print(f"... {hidden} more")
    print("=" * _W)
    print()


def print_probability_table(
    table: pd.DataFrame,
    *,
    title: str = "Predicted Probabilities",
) -> None:
    """Print a predicted-probability table, one block per profile.

    Args:
        table: Output of :func:`~multibootstrap.predict_probabilities`
            or :meth:`MultiBootstrapResult.predict`.
        title: Title for the output table.
    """
    _title(title)
    fixed = {"profile", "level", "probability", "se", "lower", "upper", "reference"}
    covariates = [c for c in table.columns if c not in fixed]
    print(
        f"{'Level':<22}{'Prob':>10} {'SE':>10} {'Lower':>10} {'Upper':>10}"
        f"  {'Reference':<14}"
    )
    for profile, group in table.groupby("profile", sort=True):
        print("-" * _W)
        first = group.iloc[0]
        desc = ", ".join(f"{c}={_short(first[c])}" for c in covariates)
        print(_truncate(f"Profile {profile}" + (f": {desc}" if desc else ""), _W))
        for _, row in group.iterrows():
            print(
                f"  {_truncate(str(row['level']), 19):<20}"
                f"{_fmt(row['probability'])} {_fmt(row['se'])} "
                f"{_fmt(row['lower'])} {_fmt(row['upper'])}  "
                f"{_truncate(str(row['reference']), 14):<14}"
            )
    print("=" * _W)
    print()


def _short(val: Any) -> str:
    if isinstance(val, float):
        return f"{val:.4g}"
    return str(val)


__all__ = [
    "print_bootstrap_summary",
    "print_comparison_table",
    "print_failure_log",
    "print_probability_table",
]
