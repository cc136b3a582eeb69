"""
Cluster bootstrap for a repeated-measures multinomial outcome
Simulated study: 60 participants, 4 sessions each, 4 unordered choices

Demonstrates:
- Generating the candidate data sets once and caching them on disk
  (``generate_bootstrap_datasets`` / ``save_datasets`` / ``load_datasets``)
- ``multi_bootstrap`` with the default first/last reference levels
- Coefficient, pairwise-comparison and failure tables
- Predicted probabilities across a covariate with delta-method and
  percentile intervals
- Writing JSON / CSV artefacts for downstream plotting
"""

import logging
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd

from multibootstrap import (
    generate_bootstrap_datasets,
    load_datasets,
    make_profiles,
    multi_bootstrap,
    print_bootstrap_summary,
    print_comparison_table,
    print_failure_log,
    print_probability_table,
    recommended_n_sets,
    save_datasets,
    save_result,
    save_tables,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

# ============================================================================
# Simulate data
# ============================================================================

rng = np.random.default_rng(2024)
n_subjects, n_sessions = 60, 4
choices = ["walk", "bike", "bus", "car"]

ids = np.repeat([f"p{i:02d}" for i in range(n_subjects)], n_sessions)
distance = rng.gamma(shape=2.0, scale=2.5, size=n_subjects * n_sessions)
rain = rng.random(n_subjects * n_sessions) < 0.3
habit = np.repeat(rng.normal(0.0, 0.5, size=(n_subjects, 3)), n_sessions, axis=0)

# Linear predictors against "walk".
eta = np.column_stack(
    [
        np.zeros(len(ids)),
        -0.5 + 0.15 * distance - 0.8 * rain + habit[:, 0],
        -1.5 + 0.30 * distance + 0.4 * rain + habit[:, 1],
        -2.5 + 0.45 * distance + 0.9 * rain + habit[:, 2],
    ]
)
probs = np.exp(eta - eta.max(axis=1, keepdims=True))
probs /= probs.sum(axis=1, keepdims=True)
mode = [choices[rng.choice(4, p=p)] for p in probs]

data = pd.DataFrame(
    {
        "participant": ids,
        "distance": distance,
        "rain": np.where(rain, "yes", "no"),
        "mode": pd.Categorical(mode, categories=choices),
    }
)
print(data["mode"].value_counts().to_string())

# ============================================================================
# Resample once and cache
# ============================================================================

n_boot = 300
n_sets = recommended_n_sets(n_boot)
datasets = generate_bootstrap_datasets(data, "participant", n_sets, random_state=7)

cache = Path(tempfile.mkdtemp()) / "mode_choice_sets.pkl"
save_datasets(datasets, cache)
datasets = load_datasets(cache)

# ============================================================================
# Fit
# ============================================================================

result = multi_bootstrap(
    data,
    "mode ~ distance + rain",
    "participant",
    n_boot=n_boot,
    datasets=datasets,
    n_jobs=2,
    label="mode_choice",
)

print_bootstrap_summary(result, title="Travel Mode Choice (walk / car references)")
print_comparison_table(result)
print_failure_log(result, max_lines=10)

# ============================================================================
# Predicted probabilities over distance, dry vs rainy days
# ============================================================================

for weather in ("no", "yes"):
    profiles = make_profiles(
        data, "distance", values=[1.0, 3.0, 6.0, 10.0], at={"rain": weather}
    )
    table = result.predict(profiles)
    print_probability_table(table, title=f"Predicted Mode Shares (rain={weather})")

    by_percentile = result.predict(profiles, method="percentile")
    widest = (by_percentile["upper"] - by_percentile["lower"]).max()
    print(f"Widest percentile interval (rain={weather}): {widest:.3f}")

# ============================================================================
# Artefacts
# ============================================================================

out_dir = cache.parent / "tables"
save_result(result, cache.parent / "mode_choice.json")
written = save_tables(result, out_dir, probabilities=table)
for name, path in written.items():
    print(f"{name:<24} {path}")

assert result.is_complete
