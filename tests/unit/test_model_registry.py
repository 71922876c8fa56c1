"""
Unit tests for model registry module.

Tests hyperparameter points, search space dimensions and overrides, and the
estimators built by each model family.
"""

import os
import sys

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../src"))

from experiment_config import ConfigurationError
from model_registry import (
    DECISION_TREE,
    GRADIENT_BOOSTED_TREES,
    LOGISTIC_REGRESSION,
    NAIVE_BAYES,
    REGISTERED_FAMILIES,
    SVM_LINEAR,
    CategoricalDimension,
    ContinuousDimension,
    HyperparameterPoint,
    IntegerDimension,
    InvalidHyperparameterError,
    ModelRegistry,
    SearchSpace,
)


class TestHyperparameterPoint:
    """Tests for HyperparameterPoint identity."""

    def test_equal_values_are_equal_and_hash_alike(self):
        first = HyperparameterPoint(penalty=0.1, mixture=0.5)
        second = HyperparameterPoint({"mixture": 0.5, "penalty": 0.1})

        assert first == second
        assert hash(first) == hash(second)
        assert len({first, second}) == 1

    def test_different_values_are_distinct(self):
        assert HyperparameterPoint(cost=1.0) != HyperparameterPoint(cost=2.0)

    def test_numpy_scalars_are_converted(self):
        point = HyperparameterPoint(trees=np.int64(100))
        assert type(point["trees"]) is int
        assert point == HyperparameterPoint(trees=100)

    def test_mapping_interface(self):
        point = HyperparameterPoint(b=2, a=1)
        assert list(point) == ["a", "b"]
        assert point.as_dict() == {"a": 1, "b": 2}
        with pytest.raises(KeyError):
            point["c"]


class TestDimensions:
    """Tests for unit-interval mapping and membership."""

    def test_log_dimension_maps_midpoint_to_geometric_mean(self):
        dimension = ContinuousDimension("penalty", 1e-4, 1.0, log=True)
        assert dimension.from_unit(0.5) == pytest.approx(1e-2)
        assert dimension.to_unit(1e-2) == pytest.approx(0.5)

    def test_base_two_dimension(self):
        dimension = ContinuousDimension("cost", 2.0 ** -10, 2.0 ** 5, log=True, base=2.0)
        assert dimension.from_unit(0.0) == pytest.approx(2.0 ** -10)
        assert dimension.from_unit(1.0) == pytest.approx(2.0 ** 5)

    def test_integer_dimension_rounds(self):
        dimension = IntegerDimension("tree_depth", 1, 15)
        value = dimension.from_unit(0.33)
        assert isinstance(value, int)
        assert dimension.contains(value)
        assert not dimension.contains(3.5)

    def test_categorical_dimension(self):
        dimension = CategoricalDimension("kernel", ("linear", "rbf"))
        assert dimension.from_unit(0.1) == "linear"
        assert dimension.from_unit(1.0) == "rbf"
        assert dimension.contains("rbf")
        assert not dimension.contains("poly")

    def test_invalid_bounds(self):
        with pytest.raises(ConfigurationError):
            ContinuousDimension("x", 2.0, 1.0)
        with pytest.raises(ConfigurationError):
            ContinuousDimension("x", 0.0, 1.0, log=True)


class TestSearchSpace:
    """Tests for SearchSpace validation and overrides."""

    @pytest.fixture
    def space(self):
        return LOGISTIC_REGRESSION.default_space()

    def test_round_trip_through_unit_cube(self, space):
        point = space.from_unit([0.25, 0.75])
        np.testing.assert_allclose(space.to_unit(point), [0.25, 0.75])

    def test_validate_rejects_out_of_range(self, space):
        with pytest.raises(InvalidHyperparameterError, match="penalty"):
            space.validate(HyperparameterPoint(penalty=5.0, mixture=0.5))

    def test_validate_rejects_missing_dimension(self, space):
        with pytest.raises(InvalidHyperparameterError):
            space.validate(HyperparameterPoint(penalty=0.1))

    def test_bound_override_keeps_scale(self, space):
        overridden = space.with_overrides({"penalty": {"low": 1e-4, "high": 100.0}})
        assert overridden["penalty"].log
        assert overridden["penalty"].high == 100.0

    def test_scalar_override_fixes_dimension(self, space):
        overridden = space.with_overrides({"mixture": 1})
        assert overridden["mixture"] == CategoricalDimension("mixture", (1,))
        assert overridden.from_unit([0.5, 0.9])["mixture"] == 1

    def test_list_override_gives_levels(self, space):
        overridden = space.with_overrides({"mixture": [0.0, 0.5, 1.0]})
        assert overridden["mixture"].levels == (0.0, 0.5, 1.0)

    def test_override_of_unknown_dimension(self, space):
        with pytest.raises(ConfigurationError, match="unknown dimensions"):
            space.with_overrides({"alpha": 1.0})

    def test_override_missing_bound(self, space):
        with pytest.raises(ConfigurationError, match="missing bound"):
            space.with_overrides({"penalty": {"low": 1e-3}})


class TestModelFamilies:
    """Tests for the estimators each family builds."""

    @pytest.mark.parametrize("family", REGISTERED_FAMILIES, ids=lambda f: f.name)
    def test_builds_estimator_from_space_midpoint(self, family):
        space = family.default_space()
        point = space.from_unit([0.5] * len(space))

        estimator = family.build(point, seed=3)

        assert hasattr(estimator, "fit")
        assert hasattr(estimator, "predict_proba")

    def test_logistic_regression_parameters(self):
        model = LOGISTIC_REGRESSION.build(HyperparameterPoint(penalty=0.01, mixture=0.3), seed=1)
        assert model.C == pytest.approx(100.0)
        assert model.l1_ratio == pytest.approx(0.3)
        assert model.solver == "saga"

    def test_linear_svm_parameters(self):
        model = SVM_LINEAR.build(HyperparameterPoint(cost=2.0))
        assert model.kernel == "linear"
        assert model.C == 2.0
        assert model.probability

    def test_gradient_boosted_trees_parameters(self):
        point = HyperparameterPoint(
            trees=100, tree_depth=4, learn_rate=0.1, min_n=5,
            loss_reduction=0.01, sample_size=0.8, mtry=0.5,
        )
        model = GRADIENT_BOOSTED_TREES.build(point, seed=2)
        params = model.get_params()
        assert params["n_estimators"] == 100
        assert params["max_depth"] == 4
        assert params["colsample_bytree"] == 0.5

    def test_naive_bayes_parameters(self):
        model = NAIVE_BAYES.build(HyperparameterPoint(smoothness=1e-6))
        assert model.var_smoothing == 1e-6

    def test_decision_tree_parameters(self):
        point = HyperparameterPoint(cost_complexity=1e-3, tree_depth=5, min_n=10)
        model = DECISION_TREE.build(point, seed=0)
        assert model.max_depth == 5
        assert model.min_samples_split == 10

    def test_point_outside_space_is_rejected_at_build(self):
        with pytest.raises(InvalidHyperparameterError):
            DECISION_TREE.build(HyperparameterPoint(cost_complexity=1e-3, tree_depth=50, min_n=10))

    def test_build_checks_against_given_space(self):
        space = LOGISTIC_REGRESSION.default_space().with_overrides({"penalty": {"low": 1e-4, "high": 100.0}})
        point = HyperparameterPoint(penalty=50.0, mixture=0.5)

        with pytest.raises(InvalidHyperparameterError):
            LOGISTIC_REGRESSION.build(point)
        assert LOGISTIC_REGRESSION.build(point, space=space).C == pytest.approx(0.02)


class TestModelRegistry:
    """Tests for ModelRegistry."""

    def test_default_registry_holds_every_family_in_order(self):
        registry = ModelRegistry.from_config()
        assert registry.families == list(REGISTERED_FAMILIES)
        assert len(registry) == 5

    def test_subset_and_order_from_config(self):
        registry = ModelRegistry.from_config(["decision_tree", "naive_bayes"])
        assert registry.families == [DECISION_TREE, NAIVE_BAYES]
        assert registry.order_of(NAIVE_BAYES) == 1

    def test_space_overrides_from_config(self):
        registry = ModelRegistry.from_config(
            ["naive_bayes"], {"naive_bayes": {"smoothness": {"low": 1e-9, "high": 1e-3}}}
        )
        assert registry.space_for(NAIVE_BAYES)["smoothness"].low == 1e-9

    def test_unknown_family(self):
        with pytest.raises(ConfigurationError):
            ModelRegistry.from_config(["knn"])

    def test_space_for_unregistered_family(self):
        registry = ModelRegistry.from_config(["naive_bayes"])
        with pytest.raises(KeyError):
            registry.space_for(DECISION_TREE)

    def test_families_are_distinct(self):
        assert len(set(REGISTERED_FAMILIES)) == 5
        assert LOGISTIC_REGRESSION != DECISION_TREE
