"""
Experiment tracking module for the model selection workflow.

This module provides the ExperimentTracker class for logging and versioning
experiment runs with MLflow in a local tracking directory (an SQLite backend
store plus one artifact directory per experiment). Each run gets a unique ID,
collects hyperparameters, metrics and artifact files, and is marked finished
when it is closed. Past runs can be queried with flexible filters.

Key capabilities:
    - Create experiment runs with unique IDs and automatic timestamps
    - Log hyperparameters, performance metrics, and artifact files
    - Query runs by date range, metric thresholds, family, or hyperparameter values

Example:
    from experiment_tracking import ExperimentTracker

    tracker = ExperimentTracker("runs")
    experiment_id = tracker.start_experiment(
        experiment_name="diabetes-model-selection",
        algorithm="gradient_boosted_trees",
        dataset_version="v1.0",
    )
    tracker.log_parameters(experiment_id, {"tree_depth": 7, "learn_rate": 0.05})
    tracker.log_metrics(experiment_id, {"mean_roc_auc": 0.97, "std_err": 0.004})
    tracker.close_experiment(experiment_id)
"""

import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from mlflow.entities import Metric, Param, Run, RunStatus
from mlflow.tracking import MlflowClient

logger = logging.getLogger(__name__)

BACKEND_FILE = "mlflow.db"
ARTIFACT_DIR = "artifacts"
METADATA_TAGS = ("user", "dataset_version", "code_version")


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _quoted(value: Any) -> str:
    return "'" + str(value).replace("'", "\\'") + "'"


class ExperimentTracker:
    """
    MLflow-backed experiment tracker.

    Runs are stored in ``<tracking_dir>/mlflow.db``; artifacts are copied to
    ``<tracking_dir>/artifacts/<experiment_name>/``. The run name is the
    experiment ID returned by ``start_experiment``.

    Example:
        tracker = ExperimentTracker("runs")
        experiment_id = tracker.start_experiment(
            experiment_name="diabetes-model-selection",
            algorithm="logistic_regression"
        )
        tracker.log_parameters(experiment_id, {"penalty": 0.01, "mixture": 0.5})
        tracker.log_metrics(experiment_id, {"mean_roc_auc": 0.96})
    """

    def __init__(self, tracking_dir: str = "experiments"):
        """
        Initialize ExperimentTracker.

        Args:
            tracking_dir: Directory holding the MLflow store and artifacts.
                Created if it does not exist.
        """
        self.tracking_dir = tracking_dir
        os.makedirs(tracking_dir, exist_ok=True)
        backend = Path(tracking_dir, BACKEND_FILE).resolve()
        self.tracking_uri = f"sqlite:///{backend.as_posix()}"
        self.client = MlflowClient(tracking_uri=self.tracking_uri)
        self._active_runs: Dict[str, str] = {}

    def _experiment(self, experiment_name: str) -> str:
        """Return the MLflow experiment ID for a name, creating it if needed."""
        experiment = self.client.get_experiment_by_name(experiment_name)
        if experiment is not None:
            return experiment.experiment_id
        location = Path(self.tracking_dir, ARTIFACT_DIR, experiment_name).resolve().as_uri()
        logger.info(f"Creating MLflow experiment '{experiment_name}' with artifacts in {location}")
        return self.client.create_experiment(experiment_name, artifact_location=location)

    def start_experiment(
        self,
        experiment_name: str,
        algorithm: str,
        user: Optional[str] = None,
        dataset_version: Optional[str] = None,
        code_version: Optional[str] = None
    ) -> str:
        """
        Create experiment run with unique ID.

        Args:
            experiment_name: Name of the experiment (e.g., "diabetes-model-selection")
            algorithm: Model family being used (e.g., "decision_tree")
            user: User running the experiment
            dataset_version: Version of the dataset being used
            code_version: Version of the code being used

        Returns:
            Unique experiment ID for this run
        """
        started = datetime.now()
        timestamp = started.strftime('%Y%m%d-%H%M%S')
        unique_id = str(uuid.uuid4())[:8]
        experiment_id = f"{algorithm}-{timestamp}-{unique_id}"

        tags = {"algorithm": algorithm}
        for key, value in zip(METADATA_TAGS, (user, dataset_version, code_version)):
            if value:
                tags[key] = value

        run = self.client.create_run(
            self._experiment(experiment_name),
            start_time=_millis(started),
            tags=tags,
            run_name=experiment_id,
        )
        self._active_runs[experiment_id] = run.info.run_id
        logger.debug(f"Started run {experiment_id} ({run.info.run_id})")
        return experiment_id

    def _run_id(self, experiment_id: str) -> str:
        if experiment_id not in self._active_runs:
            raise ValueError(f"Experiment {experiment_id} not found. Call start_experiment first.")
        return self._active_runs[experiment_id]

    def log_parameters(self, experiment_id: str, parameters: Dict[str, Any]) -> None:
        """
        Log hyperparameters for an experiment.

        MLflow stores parameter values as strings.

        Args:
            experiment_id: Unique experiment ID from start_experiment
            parameters: Dictionary of hyperparameters to log
        """
        run_id = self._run_id(experiment_id)
        params = [Param(str(name), str(value)) for name, value in parameters.items()]
        self.client.log_batch(run_id, params=params)

    def log_metrics(self, experiment_id: str, metrics: Dict[str, float]) -> None:
        """
        Log performance metrics for an experiment.

        Args:
            experiment_id: Unique experiment ID from start_experiment
            metrics: Dictionary of metrics to log (e.g., mean_roc_auc, std_err)
        """
        run_id = self._run_id(experiment_id)
        now = _millis(datetime.now())
        self.client.log_batch(
            run_id,
            metrics=[Metric(name, float(value), now, 0) for name, value in metrics.items()],
        )

    def log_artifacts(self, experiment_id: str, artifact_paths: List[str]) -> List[str]:
        """
        Copy artifact files into the run's artifact store.

        Args:
            experiment_id: Unique experiment ID from start_experiment
            artifact_paths: List of local file paths to copy

        Returns:
            Names of the logged artifacts, relative to the run's artifact root

        Example:
            names = tracker.log_artifacts(
                experiment_id,
                ["report/roc_curve.png", "report/test_metrics.yaml"]
            )
        """
        run_id = self._run_id(experiment_id)
        logged = []
        for artifact_path in artifact_paths:
            self.client.log_artifact(run_id, artifact_path)
            logged.append(os.path.basename(artifact_path))
        return logged

    def close_experiment(self, experiment_id: str) -> str:
        """
        Mark the run finished and release it.

        Args:
            experiment_id: Unique experiment ID to close.

        Returns:
            MLflow run ID of the closed run.
        """
        run_id = self._active_runs.pop(experiment_id, None)
        if run_id is None:
            raise ValueError(f"Experiment {experiment_id} not found. Call start_experiment first.")
        self.client.set_terminated(run_id, status=RunStatus.to_string(RunStatus.FINISHED))
        logger.debug(f"Closed experiment {experiment_id} ({run_id})")
        return run_id

    def _as_dict(self, run: Run, experiment_names: Dict[str, str]) -> Dict[str, Any]:
        tags = run.data.tags
        record = {
            "experiment_id": run.info.run_name,
            "run_id": run.info.run_id,
            "experiment_name": experiment_names.get(run.info.experiment_id),
            "algorithm": tags.get("algorithm"),
            "status": run.info.status,
            "start_timestamp": datetime.fromtimestamp(run.info.start_time / 1000).isoformat(),
            "parameters": dict(run.data.params),
            "metrics": dict(run.data.metrics),
            "artifacts": [f.path for f in self.client.list_artifacts(run.info.run_id)],
        }
        if run.info.end_time:
            record["end_timestamp"] = datetime.fromtimestamp(run.info.end_time / 1000).isoformat()
        for key in METADATA_TAGS:
            if key in tags:
                record[key] = tags[key]
        return record

    def load_runs(self, max_results: int = 1000) -> List[Dict[str, Any]]:
        """Return every closed run in the tracking store, most recent first."""
        return self.query_experiments(max_results=max_results)

    def query_experiments(
        self,
        experiment_name: Optional[str] = None,
        algorithm: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        min_metric: Optional[float] = None,
        metric_name: str = "mean_roc_auc",
        hyperparameter_filters: Optional[Dict[str, Any]] = None,
        max_results: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Query closed runs with filtering by date, metrics, and hyperparameters.

        The filters are translated into an MLflow search filter string.

        Args:
            experiment_name: Only runs of this experiment
            algorithm: Only runs of this model family
            start_date: Filter runs started on or after this date
            end_date: Filter runs started on or before this date
            min_metric: Filter runs with ``metric_name`` >= this value
            metric_name: Metric used by ``min_metric``
            hyperparameter_filters: Dictionary of exact hyperparameter values,
                compared as strings
            max_results: Maximum number of results to return

        Returns:
            List of run dictionaries, most recent first

        Example:
            results = tracker.query_experiments(
                algorithm="decision_tree",
                min_metric=0.95,
                hyperparameter_filters={"tree_depth": 7}
            )
        """
        experiments = self.client.search_experiments()
        if experiment_name:
            experiments = [e for e in experiments if e.name == experiment_name]
        if not experiments:
            return []
        experiment_names = {e.experiment_id: e.name for e in experiments}

        clauses = [f"attributes.status = {_quoted(RunStatus.to_string(RunStatus.FINISHED))}"]
        if algorithm:
            clauses.append(f"tags.algorithm = {_quoted(algorithm)}")
        if start_date:
            clauses.append(f"attributes.start_time >= {_millis(start_date)}")
        if end_date:
            clauses.append(f"attributes.start_time <= {_millis(end_date)}")
        if min_metric is not None:
            clauses.append(f"metrics.`{metric_name}` >= {float(min_metric)!r}")
        for name, value in (hyperparameter_filters or {}).items():
            clauses.append(f"params.`{name}` = {_quoted(value)}")
        filter_string = " and ".join(clauses)
        logger.debug(f"Searching runs: {filter_string}")

        runs = self.client.search_runs(
            list(experiment_names),
            filter_string=filter_string,
            max_results=max_results,
            order_by=["attributes.start_time DESC"],
        )
        return [self._as_dict(run, experiment_names) for run in runs]
