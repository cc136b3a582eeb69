"""Shared fixtures: simulated repeated-measures multinomial data."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest


def simulate_repeated_measures(
    n_subjects: int = 50,
    n_records: int = 3,
    n_levels: int = 4,
    seed: int = 0,
    slope: float = 0.6,
    subject_sd: float = 0.3,
) -> pd.DataFrame:
    """Clustered multinomial data with known linear predictors.

    Level ``k`` (``k = 1 … K−1``) has log-odds ``slope·(k/K)·x`` plus a
    subject-level random intercept against level ``A``.  Each subject
    has *n_records* rows with their own ``x`` and a subject-level group
    ``g``.
    """
    rng = np.random.default_rng(seed)
    labels = [chr(ord("A") + k) for k in range(n_levels)]
    ids = np.repeat([f"s{i:03d}" for i in range(n_subjects)], n_records)
    x = rng.standard_normal(n_subjects * n_records)
    g = np.repeat(rng.choice(["ctl", "trt"], size=n_subjects), n_records)
    u = np.repeat(
        rng.normal(0.0, subject_sd, size=(n_subjects, n_levels - 1)), n_records, axis=0
    )
    ks = np.arange(1, n_levels) / n_levels
    eta = np.column_stack([np.zeros(len(x)), slope * np.outer(x, ks) + u])
    probs = np.exp(eta - eta.max(axis=1, keepdims=True))
    probs /= probs.sum(axis=1, keepdims=True)
    draws = np.array([rng.choice(n_levels, p=p) for p in probs])
    return pd.DataFrame(
        {
            "id": ids,
            "x": x,
            "g": g,
            "y": [labels[d] for d in draws],
        }
    )


@pytest.fixture()
def make_data():
    """Factory fixture returning :func:`simulate_repeated_measures`."""
    return simulate_repeated_measures


@pytest.fixture()
def clustered_data():
    """50 subjects × 3 records, four outcome levels A–D."""
    return simulate_repeated_measures()
