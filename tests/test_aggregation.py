"""Tests for coefficient aggregation."""

from __future__ import annotations

import numpy as np
import pytest

from multibootstrap import AggregationError, FailureReason, FitAttempt, FittedModel
from multibootstrap.aggregation import aggregate_coefficients, percentile_bounds


def _model(coefficients, terms=("Intercept", "x"), levels=("A", "B", "C"), ref="A"):
    coefficients = np.asarray(coefficients, dtype=float)
    return FittedModel(
        formula="y ~ x",
        outcome="y",
        terms=terms,
        levels=levels,
        reference_level=ref,
        coefficients=coefficients,
        cov=np.eye(len(coefficients)),
    )


@pytest.fixture()
def draws():
    rng = np.random.default_rng(0)
    return rng.normal(loc=[1.0, -2.0, 0.5, 3.0], scale=[0.1, 0.2, 0.3, 0.4], size=(200, 4))


@pytest.fixture()
def fits(draws):
    return [FitAttempt.success(_model(row), index=i) for i, row in enumerate(draws)]


class TestAggregateCoefficients:
    def test_shapes_and_names(self, fits):
        dist = aggregate_coefficients(fits)
        assert dist.draws.shape == (200, 4)
        assert dist.names == ("Intercept:B", "x:B", "Intercept:C", "x:C")
        assert dist.cov.shape == (4, 4)
        assert dist.terms == ("Intercept", "x")
        assert dist.levels == ("B", "C")
        assert dist.reference_level == "A"

    def test_mean_and_covariance(self, fits, draws):
        dist = aggregate_coefficients(fits)
        np.testing.assert_allclose(dist.mean, draws.mean(axis=0))
        np.testing.assert_allclose(dist.cov, np.cov(draws, rowvar=False, ddof=1))
        np.testing.assert_allclose(dist.se, draws.std(axis=0, ddof=1))

    def test_percentile_bounds(self, fits, draws):
        dist = aggregate_coefficients(fits, confidence_level=0.95)
        np.testing.assert_allclose(dist.lower, np.percentile(draws, 2.5, axis=0))
        np.testing.assert_allclose(dist.upper, np.percentile(draws, 97.5, axis=0))
        assert np.all(dist.lower < dist.mean)
        assert np.all(dist.mean < dist.upper)

    def test_narrower_level_narrower_interval(self, fits):
        wide = aggregate_coefficients(fits, confidence_level=0.95)
        narrow = aggregate_coefficients(fits, confidence_level=0.80)
        assert np.all(narrow.upper - narrow.lower < wide.upper - wide.lower)

    def test_normal_method(self, fits, draws):
        dist = aggregate_coefficients(fits, method="normal")
        sd = draws.std(axis=0, ddof=1)
        np.testing.assert_allclose(dist.lower, draws.mean(axis=0) - 1.959964 * sd, rtol=1e-5)
        assert dist.method == "normal"

    def test_original_estimate_kept(self, fits):
        original = FitAttempt.success(_model([1.0, -2.0, 0.5, 3.0]))
        dist = aggregate_coefficients(fits, original=original)
        np.testing.assert_array_equal(dist.original, [1.0, -2.0, 0.5, 3.0])
        frame = dist.to_frame()
        assert list(frame.columns) == ["estimate", "se", "lower", "upper", "original"]
        assert frame.index.name == "coefficient"
        assert frame.loc["x:C", "original"] == 3.0

    def test_frame_estimate_is_bootstrap_mean(self, fits, draws):
        original = FitAttempt.success(_model([9.0, 9.0, 9.0, 9.0]))
        frame = aggregate_coefficients(fits, original=original).to_frame()
        np.testing.assert_allclose(frame["estimate"], draws.mean(axis=0))
        assert (frame["original"] == 9.0).all()

    def test_frame_original_missing(self, fits):
        assert aggregate_coefficients(fits).to_frame()["original"].isna().all()

    def test_accepts_bare_models(self, draws):
        dist = aggregate_coefficients([_model(row) for row in draws[:40]])
        assert dist.n_draws == 40

    def test_contrast(self, fits, draws):
        dist = aggregate_coefficients(fits)
        np.testing.assert_allclose(dist.contrast("C", "B"), draws[:, 2:] - draws[:, :2])
        np.testing.assert_allclose(dist.contrast("A", "C"), -draws[:, 2:])
        with pytest.raises(KeyError):
            dist.term_draws("Z")

    def test_to_dict_json_ready(self, fits):
        d = aggregate_coefficients(fits).to_dict()
        assert isinstance(d["mean"], list)
        assert isinstance(d["mean"][0], float)


class TestAggregationErrors:
    def test_no_fits(self):
        with pytest.raises(AggregationError, match="zero"):
            aggregate_coefficients([])

    def test_no_fits_with_original_is_empty(self):
        original = _model([1.0, -2.0, 0.5, 3.0])
        with pytest.warns(UserWarning, match="recommended"):
            dist = aggregate_coefficients([], original=original)
        assert dist.n_draws == 0
        assert dist.draws.shape == (0, 4)
        assert dist.names == ("Intercept:B", "x:B", "Intercept:C", "x:C")
        for arr in (dist.mean, dist.lower, dist.upper, dist.se):
            assert np.isnan(arr).all()
        assert dist.to_frame()["original"].tolist() == [1.0, -2.0, 0.5, 3.0]

    def test_percentile_bounds_without_draws(self):
        lo, hi = percentile_bounds(np.empty((0, 3)))
        assert lo.shape == hi.shape == (3,)
        assert np.isnan(lo).all() and np.isnan(hi).all()

    def test_failed_attempt(self, fits):
        failed = FitAttempt.failure(FailureReason.NUMERICAL_ERROR, "x", index=9)
        with pytest.raises(AggregationError, match="did not converge"):
            aggregate_coefficients([*fits, failed])

    def test_length_mismatch(self, fits):
        odd = FitAttempt.success(_model([1.0, 2.0], terms=("Intercept",)))
        with pytest.raises(AggregationError, match="coefficients"):
            aggregate_coefficients([*fits, odd])

    def test_name_mismatch(self, fits):
        renamed = FitAttempt.success(_model([0.0] * 4, terms=("Intercept", "z")))
        with pytest.raises(AggregationError, match="names differ"):
            aggregate_coefficients([*fits, renamed])

    def test_mismatch_with_original(self, fits):
        original = _model([0.0] * 4, levels=("A", "B", "C"), ref="C")
        with pytest.raises(AggregationError):
            aggregate_coefficients(fits, original=original)

    def test_invalid_method(self, fits):
        with pytest.raises(ValueError, match="method"):
            aggregate_coefficients(fits, method="bca")

    def test_invalid_confidence_level(self, fits):
        with pytest.raises(ValueError, match="confidence_level"):
            aggregate_coefficients(fits, confidence_level=95)


class TestSmallDraws:
    def test_warns_below_recommended(self, draws):
        with pytest.warns(UserWarning, match="recommended"):
            aggregate_coefficients([_model(row) for row in draws[:10]])

    def test_no_warning_at_recommended(self, draws, recwarn):
        aggregate_coefficients([_model(row) for row in draws[:30]])
        assert not [w for w in recwarn if issubclass(w.category, UserWarning)]

    def test_percentile_bounds_helper(self):
        data = np.arange(101, dtype=float)[:, None]
        lo, hi = percentile_bounds(data, 0.9)
        assert lo[0] == pytest.approx(5.0)
        assert hi[0] == pytest.approx(95.0)
