"""
Unit tests for experiment tracking module.

Tests run creation, parameter/metric/artifact logging to the local MLflow
store, and querying closed runs.
"""

import os
import re
import sys
from datetime import datetime, timedelta
from unittest.mock import patch

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../src"))

from experiment_tracking import ExperimentTracker


@pytest.fixture
def tracker(tmp_path):
    return ExperimentTracker(str(tmp_path / "runs"))


def _closed_run(tracker, algorithm, metric, started=None, **parameters):
    if started is None:
        experiment_id = tracker.start_experiment("diabetes-model-selection", algorithm)
    else:
        with patch("experiment_tracking.datetime") as clock:
            clock.now.return_value = started
            experiment_id = tracker.start_experiment("diabetes-model-selection", algorithm)
    tracker.log_parameters(experiment_id, parameters)
    tracker.log_metrics(experiment_id, {"mean_roc_auc": metric})
    tracker.close_experiment(experiment_id)
    return experiment_id


def _only_run(tracker, experiment_id):
    runs = [r for r in tracker.load_runs() if r["experiment_id"] == experiment_id]
    assert len(runs) == 1
    return runs[0]


class TestStartExperiment:
    """Tests for start_experiment."""

    def test_creates_tracking_store(self, tmp_path):
        tracker = ExperimentTracker(str(tmp_path / "nested" / "runs"))
        tracker.start_experiment("exp", "naive_bayes")

        assert (tmp_path / "nested" / "runs").is_dir()
        assert tracker.tracking_uri.startswith("sqlite:///")
        assert (tmp_path / "nested" / "runs" / "mlflow.db").exists()

    def test_experiment_id_format(self, tracker):
        experiment_id = tracker.start_experiment("diabetes-model-selection", "decision_tree")
        assert re.fullmatch(r"decision_tree-\d{8}-\d{6}-[0-9a-f]{8}", experiment_id)

    def test_ids_are_unique(self, tracker):
        ids = {tracker.start_experiment("exp", "naive_bayes") for _ in range(20)}
        assert len(ids) == 20

    def test_optional_metadata_is_tagged(self, tracker):
        experiment_id = tracker.start_experiment(
            "exp", "naive_bayes", user="analyst", dataset_version="v2", code_version="abc123"
        )
        tracker.close_experiment(experiment_id)

        run = _only_run(tracker, experiment_id)

        assert run["user"] == "analyst"
        assert run["dataset_version"] == "v2"
        assert run["code_version"] == "abc123"

    def test_runs_share_one_mlflow_experiment_per_name(self, tracker):
        first = tracker.start_experiment("exp", "naive_bayes")
        second = tracker.start_experiment("exp", "decision_tree")
        tracker.close_experiment(first)
        tracker.close_experiment(second)

        experiment = tracker.client.get_experiment_by_name("exp")

        assert experiment is not None
        assert len(tracker.client.search_runs([experiment.experiment_id])) == 2


class TestLogging:
    """Tests for logging and closing a run."""

    def test_parameters_and_metrics_are_recorded(self, tracker):
        experiment_id = tracker.start_experiment("exp", "gradient_boosted_trees")
        tracker.log_parameters(experiment_id, {"trees": np.int64(300), "learn_rate": np.float64(0.05)})
        tracker.log_metrics(experiment_id, {"mean_roc_auc": np.float32(0.97), "std_err": 0.004})

        run_id = tracker.close_experiment(experiment_id)

        run = _only_run(tracker, experiment_id)
        assert run["run_id"] == run_id
        assert run["status"] == "FINISHED"
        assert run["experiment_name"] == "exp"
        assert run["algorithm"] == "gradient_boosted_trees"
        assert run["parameters"] == {"trees": "300", "learn_rate": "0.05"}
        assert run["metrics"]["mean_roc_auc"] == pytest.approx(0.97)
        assert run["metrics"]["std_err"] == pytest.approx(0.004)
        assert run["end_timestamp"] >= run["start_timestamp"]

    def test_artifacts_are_copied(self, tracker, tmp_path):
        artifact = tmp_path / "roc_curve.csv"
        artifact.write_text("fpr,tpr\n0,0\n1,1\n")
        experiment_id = tracker.start_experiment("exp", "naive_bayes")

        logged = tracker.log_artifacts(experiment_id, [str(artifact)])
        run_id = tracker.close_experiment(experiment_id)

        assert logged == ["roc_curve.csv"]
        assert _only_run(tracker, experiment_id)["artifacts"] == ["roc_curve.csv"]
        copy = tmp_path / "runs" / "artifacts" / "exp" / run_id / "artifacts" / "roc_curve.csv"
        assert copy.read_text() == artifact.read_text()

    def test_unknown_experiment(self, tracker):
        with pytest.raises(ValueError, match="not found"):
            tracker.log_metrics("missing", {"mean_roc_auc": 0.5})
        with pytest.raises(ValueError, match="not found"):
            tracker.log_parameters("missing", {"cost": 1.0})
        with pytest.raises(ValueError, match="not found"):
            tracker.close_experiment("missing")

    def test_closed_experiment_cannot_be_logged_to(self, tracker):
        experiment_id = tracker.start_experiment("exp", "naive_bayes")
        tracker.close_experiment(experiment_id)
        with pytest.raises(ValueError):
            tracker.log_metrics(experiment_id, {"mean_roc_auc": 0.5})


class TestQueryExperiments:
    """Tests for load_runs and query_experiments."""

    def test_only_closed_runs_are_loaded(self, tracker):
        _closed_run(tracker, "naive_bayes", 0.8)
        tracker.start_experiment("diabetes-model-selection", "decision_tree")

        runs = tracker.load_runs()

        assert [r["algorithm"] for r in runs] == ["naive_bayes"]

    def test_empty_store(self, tracker):
        assert tracker.load_runs() == []
        assert tracker.query_experiments(experiment_name="never-created") == []

    def test_filter_by_algorithm_and_metric(self, tracker):
        _closed_run(tracker, "naive_bayes", 0.80)
        best = _closed_run(tracker, "decision_tree", 0.95)
        _closed_run(tracker, "decision_tree", 0.90)

        results = tracker.query_experiments(algorithm="decision_tree", min_metric=0.93)

        assert [r["experiment_id"] for r in results] == [best]

    def test_filter_by_other_metric(self, tracker):
        experiment_id = tracker.start_experiment("diabetes-model-selection", "naive_bayes")
        tracker.log_metrics(experiment_id, {"mean_roc_auc": 0.9, "std_err": 0.02})
        tracker.close_experiment(experiment_id)

        assert tracker.query_experiments(min_metric=0.01, metric_name="std_err") != []
        assert tracker.query_experiments(min_metric=0.05, metric_name="std_err") == []

    def test_filter_by_hyperparameters(self, tracker):
        _closed_run(tracker, "decision_tree", 0.9, tree_depth=3)
        deep = _closed_run(tracker, "decision_tree", 0.9, tree_depth=7)

        results = tracker.query_experiments(hyperparameter_filters={"tree_depth": 7})

        assert [r["experiment_id"] for r in results] == [deep]

    def test_filter_by_date_and_order(self, tracker):
        old = _closed_run(tracker, "naive_bayes", 0.8, started=datetime(2024, 1, 10))
        middle = _closed_run(tracker, "naive_bayes", 0.8, started=datetime(2024, 3, 10))
        new = _closed_run(tracker, "naive_bayes", 0.8, started=datetime(2024, 6, 10))

        everything = tracker.query_experiments()
        window = tracker.query_experiments(start_date=datetime(2024, 2, 1), end_date=datetime(2024, 7, 1))

        assert [r["experiment_id"] for r in everything] == [new, middle, old]
        assert [r["experiment_id"] for r in window] == [new, middle]
        assert everything[-1]["start_timestamp"] == datetime(2024, 1, 10).isoformat()

    def test_recent_runs_fall_inside_a_window_around_now(self, tracker):
        recent = _closed_run(tracker, "naive_bayes", 0.8)
        now = datetime.now()

        inside = tracker.query_experiments(start_date=now - timedelta(hours=1), end_date=now + timedelta(hours=1))
        before = tracker.query_experiments(end_date=now - timedelta(hours=1))

        assert [r["experiment_id"] for r in inside] == [recent]
        assert before == []

    def test_filter_by_name_and_max_results(self, tracker):
        for _ in range(3):
            _closed_run(tracker, "naive_bayes", 0.8)
        other = tracker.start_experiment("other-study", "naive_bayes")
        tracker.close_experiment(other)

        assert len(tracker.query_experiments(experiment_name="diabetes-model-selection")) == 3
        assert len(tracker.query_experiments(max_results=2)) == 2
        assert len(tracker.load_runs()) == 4

    def test_missing_metric_is_filtered_out(self, tracker):
        experiment_id = tracker.start_experiment("exp", "naive_bayes")
        tracker.close_experiment(experiment_id)

        assert tracker.query_experiments(min_metric=0.0) == []

    def test_runs_are_visible_to_a_second_tracker(self, tracker):
        experiment_id = _closed_run(tracker, "naive_bayes", 0.8)

        reopened = ExperimentTracker(tracker.tracking_dir)

        assert [r["experiment_id"] for r in reopened.load_runs()] == [experiment_id]
