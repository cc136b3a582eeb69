"""Tests for cluster-bootstrap resampling."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from multibootstrap import ResampleInputError
from multibootstrap.resampling import (
    cluster_resample,
    generate_bootstrap_datasets,
    recommended_n_sets,
)


@pytest.fixture()
def small_data():
    """Three subjects with unequal record counts and distinct rows."""
    return pd.DataFrame(
        {
            "id": ["a", "b", "a", "c", "b", "a"],
            "visit": [1, 1, 2, 1, 2, 3],
            "y": ["A", "B", "C", "A", "B", "C"],
        }
    )


class TestRecommendedNSets:
    def test_default_headroom(self):
        assert recommended_n_sets(200) == 250

    def test_rounds_up(self):
        assert recommended_n_sets(3, 1.1) == 4

    @pytest.mark.parametrize("n_boot,headroom", [(0, 1.25), (10, 0.9)])
    def test_invalid(self, n_boot, headroom):
        with pytest.raises(ValueError):
            recommended_n_sets(n_boot, headroom)


class TestClusterIntegrity:
    """Every subject's records appear together, complete and in order."""

    def test_blocks_are_whole_and_ordered(self, small_data):
        rng = np.random.default_rng(1)
        for _ in range(20):
            boot = cluster_resample(small_data, "id", rng)
            # Walk the resample block by block.
            pos = 0
            while pos < len(boot):
                subject = boot["id"].iloc[pos]
                expected = small_data.loc[small_data["id"] == subject]
                block = boot.iloc[pos : pos + len(expected)]
                assert (block["id"] == subject).all()
                assert block["visit"].tolist() == expected["visit"].tolist()
                assert block["y"].tolist() == expected["y"].tolist()
                pos += len(expected)

    def test_subject_count_matches_original(self, clustered_data):
        rng = np.random.default_rng(3)
        boot = cluster_resample(clustered_data, "id", rng)
        # 50 draws of 3-record subjects.
        assert len(boot) == len(clustered_data)

    def test_no_record_fabricated(self, clustered_data):
        rng = np.random.default_rng(4)
        boot = cluster_resample(clustered_data, "id", rng)
        original_rows = set(map(tuple, clustered_data.itertuples(index=False)))
        assert set(map(tuple, boot.itertuples(index=False))) <= original_rows

    def test_original_untouched(self, small_data):
        before = small_data.copy()
        cluster_resample(small_data, "id", np.random.default_rng(0))
        pd.testing.assert_frame_equal(small_data, before)

    def test_fresh_range_index(self, small_data):
        boot = cluster_resample(small_data, "id", np.random.default_rng(0))
        assert boot.index.equals(pd.RangeIndex(len(boot)))


class TestGenerateBootstrapDatasets:
    def test_count(self, clustered_data):
        sets = generate_bootstrap_datasets(clustered_data, "id", 7, random_state=0)
        assert len(sets) == 7
        assert all(isinstance(d, pd.DataFrame) for d in sets)

    def test_reproducible(self, clustered_data):
        a = generate_bootstrap_datasets(clustered_data, "id", 3, random_state=11)
        b = generate_bootstrap_datasets(clustered_data, "id", 3, random_state=11)
        for da, db in zip(a, b):
            pd.testing.assert_frame_equal(da, db)

    def test_seeds_differ(self, clustered_data):
        a = generate_bootstrap_datasets(clustered_data, "id", 1, random_state=1)
        b = generate_bootstrap_datasets(clustered_data, "id", 1, random_state=2)
        assert not a[0].equals(b[0])

    def test_return_ids_match_blocks(self, small_data):
        sets, ids = generate_bootstrap_datasets(
            small_data, "id", 5, random_state=0, return_ids=True
        )
        sizes = small_data.groupby("id").size()
        for data, drawn in zip(sets, ids):
            assert len(drawn) == 3
            assert len(data) == int(sizes.loc[list(drawn)].sum())
            # First record of the resample belongs to the first draw.
            assert data["id"].iloc[0] == drawn[0]

    def test_uniform_over_subjects(self):
        # One subject with 10 records, nine with 1: draws are per
        # subject, so the big subject is drawn ~1/10 of the time.
        df = pd.DataFrame({"id": ["big"] * 10 + [f"s{i}" for i in range(9)]})
        _, ids = generate_bootstrap_datasets(
            df, "id", 2000, random_state=0, return_ids=True
        )
        share = np.mean(np.concatenate(ids) == "big")
        assert abs(share - 0.1) < 0.01


class TestResampleErrors:
    def test_missing_id_column(self, small_data):
        with pytest.raises(ResampleInputError, match="not found"):
            generate_bootstrap_datasets(small_data, "subject", 2)

    def test_empty_data(self):
        with pytest.raises(ResampleInputError, match="empty"):
            generate_bootstrap_datasets(pd.DataFrame({"id": []}), "id", 2)

    def test_missing_ids(self, small_data):
        bad = small_data.copy()
        bad.loc[0, "id"] = None
        with pytest.raises(ResampleInputError, match="missing"):
            cluster_resample(bad, "id", np.random.default_rng(0))

    def test_n_sets_below_one(self, small_data):
        with pytest.raises(ResampleInputError, match="n_sets"):
            generate_bootstrap_datasets(small_data, "id", 0)

    def test_is_value_error(self, small_data):
        with pytest.raises(ValueError):
            generate_bootstrap_datasets(small_data, "nope", 1)
