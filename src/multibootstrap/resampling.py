"""Cluster-bootstrap resampling of repeated-measures data sets.

Why resample clusters
---------------------
With repeated observations per subject, records of the same subject
are correlated.  Resampling individual records would break that
dependence and understate the sampling variability of every
coefficient.  The cluster bootstrap instead treats the *subject* as
the unit of resampling:

1. Draw, with replacement, as many subject identifiers as there are
   unique subjects in the original data.  Draws are uniform over the
   **set** of identifiers, so a subject with many records is not
   over-weighted by the draw itself.
2. For every draw append **all** records of that subject, in their
   original relative order.

A subject drawn ``m`` times therefore contributes ``m`` contiguous,
order-preserved copies of its record block.  No record is fabricated
or altered — resampling only reorders and duplicates whole blocks.

Vectorised block gathering
~~~~~~~~~~~~~~~~~~~~~~~~~~
The subject → rows map is computed once per original data set.  Rows
are grouped by subject with a stable ``argsort`` of the factorised ids,
so each subject occupies a contiguous slice ``order[start:start+count]``
whose internal order matches the original.  A resample is then a single
fancy-index gather:

    lengths = count[draws]
    rows    = order[repeat(start[draws], lengths) + within_block_offset]

with no Python loop over subjects.

Headroom
~~~~~~~~
Because some bootstrap data sets will fail to fit, more candidates than
the target ``B`` should be generated up front
(:func:`recommended_n_sets`, ``ceil(1.25·B)`` by default) so the
orchestrator rarely needs a second resampling pass.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._compat import DataFrameLike, _ensure_pandas_df
from ._config import DEFAULT_HEADROOM
from ._errors import ResampleInputError


def recommended_n_sets(n_boot: int, headroom: float = DEFAULT_HEADROOM) -> int:
    """Number of candidate data sets to generate for *n_boot* successes.

    Args:
        n_boot: Target number of successful fits ``B``.
        headroom: Multiplier ≥ 1 covering expected non-convergence.

    Returns:
        ``ceil(n_boot * headroom)``.

    Raises:
        ValueError: If *n_boot* < 1 or *headroom* < 1.
    """
    if n_boot < 1:
        msg = f"n_boot must be at least 1, got {n_boot}."
        raise ValueError(msg)
    if headroom < 1.0:
        msg = f"headroom must be >= 1, got {headroom}."
        raise ValueError(msg)
    return math.ceil(n_boot * headroom)


@dataclass(frozen=True)
class _ClusterIndex:
    """Subject → contiguous row-block map for one original data set."""

    subjects: np.ndarray
    """Unique subject ids in order of first appearance."""

    order: np.ndarray
    """Row positions grouped by subject, original order within subject."""

    starts: np.ndarray
    """Start of each subject's block in :attr:`order`."""

    counts: np.ndarray
    """Number of records per subject."""

    @classmethod
    def build(cls, data: pd.DataFrame, id_col: str) -> _ClusterIndex:
        if id_col not in data.columns:
            msg = f"id column '{id_col}' not found in data."
            raise ResampleInputError(msg)
        if len(data) == 0:
            msg = "cannot resample an empty data set."
            raise ResampleInputError(msg)

        codes, subjects = pd.factorize(data[id_col], sort=False)
        if np.any(codes < 0):
            msg = f"id column '{id_col}' contains missing values."
            raise ResampleInputError(msg)
        if len(subjects) == 0:
            msg = "data set has zero subjects."
            raise ResampleInputError(msg)

        # Stable sort keeps each subject's records in their original
        # relative order inside its block.
        order = np.argsort(codes, kind="stable")
        counts = np.bincount(codes, minlength=len(subjects))
        starts = np.concatenate([[0], np.cumsum(counts)[:-1]])
        return cls(
            subjects=np.asarray(subjects),
            order=order,
            starts=starts,
            counts=counts,
        )

    @property
    def n_subjects(self) -> int:
        return len(self.subjects)

    def rows_for(self, draws: np.ndarray) -> np.ndarray:
        """Row positions for the drawn subject codes, block by block."""
        lengths = self.counts[draws]
        total = int(lengths.sum())
        block_starts = np.repeat(self.starts[draws], lengths)
        # Offset of each output row within its own block: 0, 1, …, len−1.
        first_out = np.repeat(np.cumsum(lengths) - lengths, lengths)
        within = np.arange(total) - first_out
        return self.order[block_starts + within]


def cluster_resample(
    data: DataFrameLike,
    id_col: str,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """Draw one cluster-bootstrap data set.

    Args:
        data: Original data set with one row per record.
        id_col: Name of the subject-identifier column.
        rng: NumPy random generator.

    Returns:
        A new DataFrame (fresh ``RangeIndex``) built from whole subject
        blocks of *data*.

    Raises:
        ResampleInputError: On empty data, a missing id column,
            missing ids, or zero subjects.
    """
    df = _ensure_pandas_df(data, name="data")
    index = _ClusterIndex.build(df, id_col)
    draws = rng.integers(0, index.n_subjects, size=index.n_subjects)
    return df.iloc[index.rows_for(draws)].reset_index(drop=True)


def generate_bootstrap_datasets(
    data: DataFrameLike,
    id_col: str,
    n_sets: int,
    random_state: int | np.random.Generator | None = None,
    *,
    return_ids: bool = False,
) -> list[pd.DataFrame] | tuple[list[pd.DataFrame], list[np.ndarray]]:
    """Generate *n_sets* independent cluster-bootstrap data sets.

    The original data set is never mutated.  All data sets are drawn
    from one generator seeded by *random_state*, so the sequence is
    reproducible.

    Args:
        data: Original data set.
        id_col: Name of the subject-identifier column.
        n_sets: Number of data sets to produce (should exceed the
            target ``B``; see :func:`recommended_n_sets`).
        random_state: Seed or generator.
        return_ids: Also return, per data set, the drawn subject ids
            in draw order.

    Returns:
        List of DataFrames, or ``(datasets, drawn_ids)`` when
        *return_ids* is true.

    Raises:
        ResampleInputError: If *n_sets* < 1 or the data cannot be
            resampled.
    """
    if n_sets < 1:
        msg = f"n_sets must be at least 1, got {n_sets}."
        raise ResampleInputError(msg)

    df = _ensure_pandas_df(data, name="data")
    index = _ClusterIndex.build(df, id_col)
    rng = (
        random_state
        if isinstance(random_state, np.random.Generator)
        else np.random.default_rng(random_state)
    )

    # One (n_sets, n_subjects) draw keeps the sequence independent of
    # how the caller later slices it.
    all_draws = rng.integers(0, index.n_subjects, size=(n_sets, index.n_subjects))

    datasets = [
        df.iloc[index.rows_for(draws)].reset_index(drop=True) for draws in all_draws
    ]
    if return_ids:
        return datasets, [index.subjects[draws] for draws in all_draws]
    return datasets


__all__ = [
    "cluster_resample",
    "generate_bootstrap_datasets",
    "recommended_n_sets",
]
