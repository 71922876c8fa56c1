"""
Unit tests for interpretability module.

Tests feature importance (native and permutation) and partial-dependence
profiles, including grouping and the read-only guarantee.
"""

import os
import sys
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../src"))

import matplotlib
matplotlib.use("Agg")

from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.linear_model import LogisticRegression
from sklearn.naive_bayes import GaussianNB

from interpretability import (
    feature_importance,
    partial_dependence,
    plot_feature_importance,
    plot_partial_dependence,
)


class SigmoidOfFirstColumn(ClassifierMixin, BaseEstimator):
    """Prediction depends only on column ``a``."""

    def fit(self, X, y=None):
        self.classes_ = np.array([0, 1])
        return self

    def predict_proba(self, X):
        p = 1.0 / (1.0 + np.exp(-X["a"].to_numpy()))
        return np.column_stack([1.0 - p, p])


@pytest.fixture
def training_frame():
    rng = np.random.default_rng(4)
    n = 400
    X = pd.DataFrame({
        "a": rng.normal(size=n),
        "b": rng.normal(size=n),
        "c": rng.normal(size=n),
    })
    y = pd.Series((2.0 * X["a"] + 0.3 * X["b"] + rng.normal(scale=0.5, size=n) > 0).astype(int))
    return X, y


class TestFeatureImportance:
    """Tests for feature_importance."""

    def test_native_importance_from_coefficients(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=LogisticRegression().fit(X, y))

        importance = feature_importance(fitted, X, y)

        assert list(importance.columns) == ["feature", "importance", "std", "method"]
        assert importance.loc[0, "feature"] == "a"
        assert (importance["method"] == "native").all()
        assert importance["importance"].is_monotonic_decreasing
        assert set(importance["feature"]) == {"a", "b", "c"}

    def test_permutation_when_no_native_importance(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=GaussianNB().fit(X, y))

        importance = feature_importance(fitted, X, y, n_repeats=3, seed=1)

        assert (importance["method"] == "permutation").all()
        assert importance.loc[0, "feature"] == "a"
        assert importance.loc[0, "importance"] > importance.loc[2, "importance"]

    def test_permutation_is_deterministic_for_seed(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=GaussianNB().fit(X, y))

        first = feature_importance(fitted, X, y, method="permutation", n_repeats=3, seed=7)
        second = feature_importance(fitted, X, y, method="permutation", n_repeats=3, seed=7)

        pd.testing.assert_frame_equal(first, second)

    def test_native_unavailable(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=GaussianNB().fit(X, y))
        with pytest.raises(ValueError, match="no native importance"):
            feature_importance(fitted, X, y, method="native")

    def test_permutation_requires_labels(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=GaussianNB().fit(X, y))
        with pytest.raises(ValueError, match="labels"):
            feature_importance(fitted, X, method="permutation")

    def test_unknown_method(self, training_frame):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=GaussianNB().fit(X, y))
        with pytest.raises(ValueError, match="Unknown importance method"):
            feature_importance(fitted, X, y, method="shap")


@pytest.fixture
def sigmoid_model(training_frame):
    X, y = training_frame
    return SimpleNamespace(estimator=SigmoidOfFirstColumn().fit(X, y))


class TestPartialDependence:
    """Tests for partial_dependence."""

    def test_profile_follows_the_model(self, training_frame, sigmoid_model):
        X, _ = training_frame

        profile = partial_dependence(sigmoid_model, X, "a", grid_resolution=10)

        assert list(profile.columns) == ["feature", "value", "group", "prediction"]
        assert len(profile) == 10
        assert (profile["group"] == "all").all()
        assert profile["value"].is_monotonic_increasing
        assert profile["prediction"].is_monotonic_increasing
        expected = 1.0 / (1.0 + np.exp(-profile["value"]))
        np.testing.assert_allclose(profile["prediction"], expected)

    def test_grid_is_evenly_spaced_over_inner_percentiles(self, training_frame, sigmoid_model):
        X, _ = training_frame

        profile = partial_dependence(sigmoid_model, X, "a", grid_resolution=5)
        values = profile["value"].to_numpy()

        assert len(values) == 5
        np.testing.assert_allclose(np.diff(values), np.diff(values)[0])
        assert X["a"].quantile(0.03) < values[0] < X["a"].quantile(0.07)
        assert X["a"].quantile(0.93) < values[-1] < X["a"].quantile(0.97)

    def test_ignored_feature_gives_flat_profile(self, training_frame, sigmoid_model):
        X, _ = training_frame

        profile = partial_dependence(sigmoid_model, X, "b")

        np.testing.assert_allclose(profile["prediction"], profile["prediction"].iloc[0])

    def test_constant_feature_gives_single_grid_value(self, training_frame, sigmoid_model):
        X, _ = training_frame
        X = X.assign(b=1.5)

        profile = partial_dependence(sigmoid_model, X, "b")

        assert list(profile["value"]) == [1.5]

    def test_few_distinct_values_are_used_directly(self, training_frame, sigmoid_model):
        X, _ = training_frame
        X = X.assign(a=np.tile([0.0, 1.0], len(X) // 2))

        profile = partial_dependence(sigmoid_model, X, "a")

        assert list(profile["value"]) == [0.0, 1.0]

    def test_integer_feature_is_profiled(self, training_frame, sigmoid_model):
        X, _ = training_frame
        X = X.assign(a=np.tile([0, 1, 2, 3], len(X) // 4))

        profile = partial_dependence(sigmoid_model, X, "a")

        assert list(profile["value"]) == [0.0, 1.0, 2.0, 3.0]
        assert X["a"].dtype.kind == "i"

    def test_missing_values_are_left_out_of_the_grid(self, training_frame, sigmoid_model):
        X, _ = training_frame
        X = X.assign(a=X["a"].mask(X.index % 10 == 0))

        profile = partial_dependence(sigmoid_model, X, "a", grid_resolution=6)

        assert len(profile) == 6
        assert profile["value"].notna().all()
        expected = 1.0 / (1.0 + np.exp(-profile["value"]))
        np.testing.assert_allclose(profile["prediction"], expected)

    def test_grouped_profile(self, training_frame, sigmoid_model):
        X, _ = training_frame
        groups = pd.Series(np.where(np.arange(len(X)) % 2 == 0, "Female", "Male"))

        profile = partial_dependence(sigmoid_model, X, "a", grid_resolution=4, groups=groups)

        assert set(profile["group"]) == {"Female", "Male"}
        assert len(profile) == 8
        female = profile[profile["group"] == "Female"]["value"].tolist()
        male = profile[profile["group"] == "Male"]["value"].tolist()
        assert female == male

    def test_grouped_profile_averages_within_each_group(self, training_frame):
        X, y = training_frame
        estimator = LogisticRegression().fit(X, y)
        groups = pd.Series(np.where(X["b"] > 0, "high", "low"))

        profile = partial_dependence(SimpleNamespace(estimator=estimator), X, "a", grid_resolution=3, groups=groups)

        high = profile[profile["group"] == "high"]["prediction"].to_numpy()
        low = profile[profile["group"] == "low"]["prediction"].to_numpy()
        assert (high > low).all()

    def test_does_not_modify_inputs(self, training_frame):
        X, y = training_frame
        estimator = LogisticRegression().fit(X, y)
        coef_before = estimator.coef_.copy()
        X_before = X.copy()

        partial_dependence(SimpleNamespace(estimator=estimator), X, "a")

        pd.testing.assert_frame_equal(X, X_before)
        np.testing.assert_array_equal(estimator.coef_, coef_before)

    def test_missing_feature(self, training_frame, sigmoid_model):
        X, _ = training_frame
        with pytest.raises(KeyError):
            partial_dependence(sigmoid_model, X, "HbA1c_level")

    def test_misaligned_groups(self, training_frame, sigmoid_model):
        X, _ = training_frame
        with pytest.raises(ValueError):
            partial_dependence(sigmoid_model, X, "a", groups=pd.Series(["x"] * 3))


class TestPlots:
    """Tests for the interpretability plots."""

    def test_plots_are_written(self, training_frame, tmp_path):
        X, y = training_frame
        fitted = SimpleNamespace(estimator=LogisticRegression().fit(X, y))
        importance = feature_importance(fitted, X, y)
        profile = partial_dependence(fitted, X, "a", grid_resolution=5)
        profile["original_value"] = profile["value"] * 10 + 100

        plot_feature_importance(importance, str(tmp_path / "importance.png"))
        plot_partial_dependence(profile, str(tmp_path / "pd.png"), x_label="a (original units)")

        assert (tmp_path / "importance.png").exists()
        assert (tmp_path / "pd.png").exists()
