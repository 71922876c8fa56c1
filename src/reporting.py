"""
Report tables, plots and files for a finished model selection experiment.

This module provides the descriptive statistics table of the input dataset,
the ExperimentReport container returned by ``run_experiment``, and
``write_report``, which writes every table and figure of the analysis to an
output directory.

Example:
    from reporting import descriptive_statistics, write_report

    table = descriptive_statistics(dataset)
    paths = write_report(report, "report", comparator=comparator, evaluator=evaluator)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
import yaml

from algorithm_comparison import AlgorithmComparator, ComparisonResult
from data_partitioning import LabeledDataset
from experiment_config import ExperimentConfig
from hyperparameter_tuning import CandidateResult, TuningResult
from interpretability import plot_feature_importance, plot_partial_dependence
from model_evaluation import FinalEvaluator, FittedModel, HoldoutEvaluation
from search_strategies import RefinementResult

logger = logging.getLogger(__name__)


def descriptive_statistics(dataset: LabeledDataset) -> pd.DataFrame:
    """
    Summarize every feature overall and per label value.

    Numeric features get their mean, standard deviation and missing count;
    categorical features get the proportion of each level and the missing
    count.

    Args:
        dataset: Loaded dataset.

    Returns:
        DataFrame with ``feature`` and ``statistic`` columns followed by one
        column for all records and one per original label value.
    """
    frame = dataset.to_frame()
    label = dataset.label_name
    groups = [("overall", frame)]
    for value, subset in frame.groupby(label, sort=True):
        groups.append((f"{label}={value}", subset))

    rows: List[Dict[str, Any]] = []
    for column in dataset.feature_names:
        if pd.api.types.is_numeric_dtype(frame[column]) and not pd.api.types.is_bool_dtype(frame[column]):
            statistics = {
                "mean": lambda s: s.mean(),
                "std": lambda s: s.std(ddof=1),
                "missing": lambda s: s.isna().sum(),
            }
        else:
            levels = sorted(frame[column].dropna().unique().tolist(), key=str)
            statistics = {
                f"proportion[{level}]": (lambda s, level=level: (s == level).sum() / max(s.notna().sum(), 1))
                for level in levels
            }
            statistics["missing"] = lambda s: s.isna().sum()

        for name, function in statistics.items():
            row: Dict[str, Any] = {"feature": column, "statistic": name}
            for group_name, subset in groups:
                row[group_name] = float(function(subset[column]))
            rows.append(row)

    return pd.DataFrame(rows)


@dataclass
class ExperimentReport:
    """Everything produced by one run of the model selection workflow."""

    config: ExperimentConfig
    descriptive: pd.DataFrame
    comparison: ComparisonResult
    refinement: Optional[RefinementResult]
    candidates: TuningResult
    selected: CandidateResult
    fitted: FittedModel
    evaluation: HoldoutEvaluation
    importance: pd.DataFrame
    partial_dependence: Optional[pd.DataFrame] = None
    artifacts: List[str] = field(default_factory=list)

    @property
    def metric(self) -> str:
        return self.config.metric

    def summary(self) -> Dict[str, Any]:
        """Selection and test results as plain builtin types."""
        return {
            "selected_family": self.selected.family.name,
            "selected_hyperparameters": self.selected.point.as_dict(),
            f"cv_mean_{self.metric}": float(self.selected.mean),
            "cv_std_err": float(self.selected.std_err),
            "n_folds": int(self.selected.n_folds),
            "decision_threshold": float(self.evaluation.threshold),
            "test_metrics": {k: float(v) for k, v in self.evaluation.metrics.items()},
            "confusion_matrix": self.evaluation.confusion_matrix.tolist(),
        }


def plot_refinement_history(
    history: pd.DataFrame,
    save_path: str = "refinement_history.png",
    metric: str = "roc_auc",
) -> None:
    """Plot each refinement iteration's score and the best score so far."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(8, 5))
    if len(history):
        ax.scatter(history["iteration"], pd.to_numeric(history["score"]), label="Proposal", color="grey", alpha=0.7)
        ax.step(history["iteration"], history["best_score"], where="post", label="Best so far", color="steelblue")
    ax.set_xlabel("Iteration")
    ax.set_ylabel(f"Mean cross-validated {metric}")
    ax.set_title("Simulated annealing refinement")
    ax.legend()
    ax.grid(True)
    plt.tight_layout()
    plt.savefig(save_path)
    plt.close(fig)


def _write_frame(frame: pd.DataFrame, output_dir: str, filename: str, paths: List[str]) -> None:
    path = os.path.join(output_dir, filename)
    frame.to_csv(path, index=False)
    paths.append(path)


def write_report(
    report: ExperimentReport,
    output_dir: str,
    comparator: Optional[AlgorithmComparator] = None,
    evaluator: Optional[FinalEvaluator] = None,
) -> List[str]:
    """
    Write every table and figure of the experiment to ``output_dir``.

    Args:
        report: Results of ``run_experiment``.
        output_dir: Target directory, created if needed.
        comparator: Comparator used for the grid search; draws the family
            comparison chart when given.
        evaluator: Final evaluator; draws the confusion matrix and ROC plots
            when given.

    Returns:
        Paths of the written files.
    """
    os.makedirs(output_dir, exist_ok=True)
    paths: List[str] = []

    _write_frame(report.descriptive, output_dir, "descriptive_statistics.csv", paths)

    ranking = report.comparison.ranking.copy()
    if "best_params" in ranking.columns:
        ranking["best_params"] = ranking["best_params"].map(lambda p: "" if p is None else str(p))
    _write_frame(ranking, output_dir, "algorithm_ranking.csv", paths)
    if comparator is not None:
        path = os.path.join(output_dir, "algorithm_comparison.png")
        comparator.visualize_comparison(report.comparison.ranking, save_path=path)
        paths.append(path)

    _write_frame(report.candidates.to_frame(), output_dir, "candidates.csv", paths)
    excluded = TuningResult(report.candidates.excluded_candidates).to_frame()
    _write_frame(excluded, output_dir, "excluded_candidates.csv", paths)

    if report.refinement is not None:
        history = report.refinement.history_frame()
        _write_frame(history, output_dir, "refinement_history.csv", paths)
        path = os.path.join(output_dir, "refinement_history.png")
        plot_refinement_history(history, save_path=path, metric=report.metric)
        paths.append(path)

    _write_frame(report.importance, output_dir, "feature_importance.csv", paths)
    path = os.path.join(output_dir, "feature_importance.png")
    plot_feature_importance(report.importance, save_path=path)
    paths.append(path)

    if report.partial_dependence is not None:
        _write_frame(report.partial_dependence, output_dir, "partial_dependence.csv", paths)
        path = os.path.join(output_dir, "partial_dependence.png")
        plot_partial_dependence(report.partial_dependence, save_path=path)
        paths.append(path)

    _write_frame(report.evaluation.roc_frame(), output_dir, "roc_curve.csv", paths)
    if evaluator is not None:
        path = os.path.join(output_dir, "confusion_matrix.png")
        evaluator.plot_confusion_matrix(report.evaluation, save_path=path)
        paths.append(path)
        path = os.path.join(output_dir, "roc_curve.png")
        evaluator.plot_roc_curve(report.evaluation, save_path=path)
        paths.append(path)

    path = os.path.join(output_dir, "test_metrics.yaml")
    with open(path, "w") as f:
        yaml.safe_dump(report.summary(), f, sort_keys=False)
    paths.append(path)

    logger.info(f"Wrote {len(paths)} report artifacts to {output_dir}")
    return paths
