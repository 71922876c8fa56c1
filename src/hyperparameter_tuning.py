"""
Hyperparameter tuning module for the model selection workflow.

This module provides the TuningOrchestrator class, which evaluates candidate
hyperparameter points of one model family on every cross-validation fold.
For each (fold, candidate) pair it fits the feature pipeline on the fold's
training portion only, fits the model, and scores it on the fold's validation
portion. Pairs run in parallel in a worker pool scoped to the call; each task
reports its own failure instead of aborting its siblings. Scores are then
aggregated per candidate.

A candidate with any failed fold is excluded from selection. It is reported
with the failure reasons but never ranked on a partial mean.

Example:
    from execution_context import ExecutionContext
    from feature_engineering import FeaturePipelineSpec
    from hyperparameter_tuning import TuningOrchestrator
    from model_registry import LOGISTIC_REGRESSION, HyperparameterPoint

    orchestrator = TuningOrchestrator(FeaturePipelineSpec(), ExecutionContext(n_jobs=4))
    result = orchestrator.evaluate(
        LOGISTIC_REGRESSION,
        [HyperparameterPoint(penalty=0.01, mixture=0.5)],
        folds,
    )
    print(result.to_frame())
"""

import logging
import math
import time
import warnings
from concurrent import futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import delayed
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import (
    accuracy_score,
    average_precision_score,
    f1_score,
    roc_auc_score,
)

from data_partitioning import Fold
from execution_context import ExecutionContext
from feature_engineering import FeaturePipelineSpec
from model_registry import HyperparameterPoint, ModelFamily, SearchSpace

logger = logging.getLogger(__name__)


class ModelFitError(RuntimeError):
    """Raised when a fit is rejected, e.g. on non-convergence in strict mode."""


class NoCompleteCandidatesError(RuntimeError):
    """Raised when selection finds no candidate scored on every fold."""


# Metric name -> (function, takes probability scores)
METRICS: Dict[str, Tuple[Callable[..., float], bool]] = {
    "roc_auc": (roc_auc_score, True),
    "pr_auc": (average_precision_score, True),
    "accuracy": (accuracy_score, False),
    "f1": (lambda y_true, y_pred: f1_score(y_true, y_pred, zero_division=0), False),
}


def positive_scores(model: Any, X: Any) -> np.ndarray:
    """Return positive-class scores, preferring probabilities."""
    if hasattr(model, "predict_proba"):
        return np.asarray(model.predict_proba(X))[:, 1]
    return np.asarray(model.decision_function(X))


def score_model(model: Any, X: Any, y: Any, metric: str = "roc_auc") -> float:
    """
    Score a fitted model on held-out data.

    Args:
        model: Fitted estimator.
        X: Transformed validation features.
        y: Validation labels (0/1).
        metric: Name from ``METRICS``.

    Returns:
        The metric value.
    """
    function, uses_scores = METRICS[metric]
    if uses_scores:
        return float(function(y, positive_scores(model, X)))
    return float(function(y, model.predict(X)))


@dataclass(frozen=True)
class ScoreRecord:
    """Score of one candidate on one fold, or the reason it has none."""

    family: ModelFamily
    point: HyperparameterPoint
    fold_id: int
    score: Optional[float] = None
    error: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    fit_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.score is not None


@dataclass
class CandidateResult:
    """
    Aggregate of every fold score for one (family, point).

    Attributes:
        family: Model family evaluated.
        point: Hyperparameter point evaluated.
        fold_scores: Successful scores keyed by fold id.
        failed_folds: Error message keyed by fold id.
        n_folds: Number of folds the candidate was submitted to.
        order: Submission order, used as the final selection tie-break.
    """

    family: ModelFamily
    point: HyperparameterPoint
    fold_scores: Dict[int, float] = field(default_factory=dict)
    failed_folds: Dict[int, str] = field(default_factory=dict)
    n_folds: int = 0
    order: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_folds and len(self.fold_scores) == self.n_folds > 0

    @property
    def scores(self) -> np.ndarray:
        return np.array([self.fold_scores[k] for k in sorted(self.fold_scores)], dtype=float)

    @property
    def mean(self) -> float:
        return float(np.mean(self.scores)) if self.fold_scores else math.nan

    @property
    def variance(self) -> float:
        if len(self.fold_scores) < 2:
            return 0.0 if self.fold_scores else math.nan
        return float(np.var(self.scores, ddof=1))

    @property
    def std_err(self) -> float:
        if not self.fold_scores:
            return math.nan
        return math.sqrt(self.variance / len(self.fold_scores))

    @property
    def exclusion_reason(self) -> Optional[str]:
        if self.complete:
            return None
        if self.failed_folds:
            first = min(self.failed_folds)
            return (
                f"{len(self.failed_folds)}/{self.n_folds} folds failed "
                f"(fold {first}: {self.failed_folds[first]})"
            )
        return f"only {len(self.fold_scores)}/{self.n_folds} folds scored"

    def as_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "family": self.family.name,
            "mean": self.mean if self.complete else math.nan,
            "std_err": self.std_err if self.complete else math.nan,
            "variance": self.variance if self.complete else math.nan,
            "n_folds": self.n_folds,
            "n_failed": len(self.failed_folds),
            "complete": self.complete,
            "exclusion_reason": self.exclusion_reason,
        }
        row.update(self.point.as_dict())
        return row


@dataclass
class TuningResult:
    """All candidate aggregates from one or more tuning batches."""

    candidates: List[CandidateResult] = field(default_factory=list)

    @property
    def complete_candidates(self) -> List[CandidateResult]:
        return [c for c in self.candidates if c.complete]

    @property
    def excluded_candidates(self) -> List[CandidateResult]:
        return [c for c in self.candidates if not c.complete]

    def extend(self, other: "TuningResult") -> "TuningResult":
        return TuningResult(self.candidates + other.candidates)

    def for_family(self, family: ModelFamily) -> "TuningResult":
        return TuningResult([c for c in self.candidates if c.family == family])

    def best(self) -> CandidateResult:
        from algorithm_comparison import select_best

        return select_best(self.candidates)

    def to_frame(self) -> pd.DataFrame:
        if not self.candidates:
            return pd.DataFrame(columns=["family", "mean", "std_err", "n_folds", "complete"])
        return pd.DataFrame([c.as_row() for c in self.candidates])


def aggregate_records(
    records: Sequence[ScoreRecord],
    n_folds: int,
    order_offset: int = 0,
) -> TuningResult:
    """
    Group score records by candidate.

    Per-candidate scores and statistics do not depend on the order of
    ``records``; candidates are listed in order of first appearance.

    Args:
        records: Score records for any number of candidates.
        n_folds: Number of folds each candidate was submitted to.
        order_offset: Added to candidate positions to keep submission order
            unique across batches.
    """
    grouped: Dict[Tuple[ModelFamily, HyperparameterPoint], CandidateResult] = {}
    for record in records:
        key = (record.family, record.point)
        if key not in grouped:
            grouped[key] = CandidateResult(
                family=record.family, point=record.point, n_folds=n_folds
            )
        candidate = grouped[key]
        if record.succeeded:
            candidate.fold_scores[record.fold_id] = float(record.score)
        else:
            candidate.failed_folds[record.fold_id] = record.error or "no score"
        candidate.warnings.extend(w for w in record.warnings if w not in candidate.warnings)
    for position, candidate in enumerate(grouped.values()):
        candidate.order = order_offset + position
    return TuningResult(list(grouped.values()))


def _score_fold(
    family: ModelFamily,
    point: HyperparameterPoint,
    space: SearchSpace,
    fold: Fold,
    pipeline_spec: FeaturePipelineSpec,
    metric: str,
    seed: int,
    strict_convergence: bool,
) -> ScoreRecord:
    """Fit and score one (fold, candidate) pair, capturing any failure."""
    start_time = time.time()
    captured: List[str] = []
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            pipeline = pipeline_spec.build(seed=seed)
            X_fit, y_fit = pipeline.fit_resample(fold.train.X, fold.train.y)
            X_val = pipeline.transform(fold.validation.X)

            model = family.build(point, seed=seed, space=space)
            model.fit(X_fit, y_fit)
            score = score_model(model, X_val, fold.validation.y, metric)

        for warning in caught:
            if issubclass(warning.category, ConvergenceWarning):
                captured.append(str(warning.message).splitlines()[0])
        if captured and strict_convergence:
            raise ModelFitError(f"did not converge: {captured[0]}")
        if not np.isfinite(score):
            raise ModelFitError(f"non-finite {metric} score {score}")
    except Exception as e:
        return ScoreRecord(
            family=family,
            point=point,
            fold_id=fold.fold_id,
            error=f"{type(e).__name__}: {e}",
            warnings=tuple(captured),
            fit_seconds=time.time() - start_time,
        )
    return ScoreRecord(
        family=family,
        point=point,
        fold_id=fold.fold_id,
        score=score,
        warnings=tuple(captured),
        fit_seconds=time.time() - start_time,
    )


class TuningOrchestrator:
    """
    Cross-validated evaluation of candidate points for one model family.

    Args:
        pipeline_spec: Feature pipeline applied inside every fold.
        context: Execution context providing the worker pool and seeds.
        metric: Name of the selection metric (see ``METRICS``).
        tracker: Optional ExperimentTracker; each aggregated candidate is
            logged as one experiment.
        experiment_name: Name used when logging to the tracker.

    Example:
        orchestrator = TuningOrchestrator(FeaturePipelineSpec(), context)
        result = orchestrator.evaluate(DECISION_TREE, points, folds, space=space)
    """

    def __init__(
        self,
        pipeline_spec: FeaturePipelineSpec,
        context: ExecutionContext,
        metric: str = "roc_auc",
        tracker: Optional[Any] = None,
        experiment_name: str = "model-selection",
    ) -> None:
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'; known: {sorted(METRICS)}")
        self.pipeline_spec = pipeline_spec
        self.context = context
        self.metric = metric
        self.tracker = tracker
        self.experiment_name = experiment_name
        self._submitted = 0

    def evaluate(
        self,
        family: ModelFamily,
        candidates: Sequence[HyperparameterPoint],
        folds: Sequence[Fold],
        space: Optional[SearchSpace] = None,
        phase: str = "grid",
    ) -> TuningResult:
        """
        Score every candidate on every fold and aggregate per candidate.

        Args:
            family: Model family to fit.
            candidates: Hyperparameter points to evaluate.
            folds: Cross-validation folds.
            space: Search space the points belong to; defaults to the
                family's default space.
            phase: Label recorded with tracker runs ("grid", "refine").

        Returns:
            TuningResult with one CandidateResult per distinct candidate.
        """
        if not folds:
            raise ValueError("At least one fold is required")
        space = space or family.default_space()
        unique: List[HyperparameterPoint] = list(dict.fromkeys(candidates))
        if not unique:
            return TuningResult()

        tasks = [(point, fold) for point in unique for fold in folds]
        records = self._run_tasks(family, space, tasks)

        result = aggregate_records(records, n_folds=len(folds), order_offset=self._submitted)
        self._submitted += len(unique)

        for candidate in result.excluded_candidates:
            logger.warning(
                f"Excluding {family.name} candidate {candidate.point}: {candidate.exclusion_reason}"
            )
        for candidate in result.candidates:
            self._log_candidate(candidate, phase)
        return result

    def _run_tasks(
        self,
        family: ModelFamily,
        space: SearchSpace,
        tasks: List[Tuple[HyperparameterPoint, Fold]],
    ) -> List[ScoreRecord]:
        seeds = {fold.fold_id: self.context.seed_for(f"fit:{fold.fold_id}") for _, fold in tasks}
        records: List[ScoreRecord] = []
        with self.context.worker_pool() as parallel:
            try:
                for record in parallel(
                    delayed(_score_fold)(
                        family,
                        point,
                        space,
                        fold,
                        self.pipeline_spec,
                        self.metric,
                        seeds[fold.fold_id],
                        self.context.strict_convergence,
                    )
                    for point, fold in tasks
                ):
                    records.append(record)
            except (TimeoutError, futures.TimeoutError):
                # tasks that had not returned when the timeout tripped count as failures
                logger.warning(
                    f"{family.name}: a fit exceeded {self.context.fit_timeout}s; "
                    f"{len(tasks) - len(records)} pending task(s) marked as failed"
                )
                for point, fold in tasks[len(records):]:
                    records.append(ScoreRecord(
                        family=family,
                        point=point,
                        fold_id=fold.fold_id,
                        error=f"TimeoutError: exceeded {self.context.fit_timeout}s",
                    ))
        return records

    def _log_candidate(self, candidate: CandidateResult, phase: str) -> None:
        if self.tracker is None:
            return
        experiment_id = self.tracker.start_experiment(
            experiment_name=self.experiment_name,
            algorithm=candidate.family.name,
        )
        self.tracker.log_parameters(experiment_id, dict(candidate.point.as_dict(), phase=phase))
        metrics: Dict[str, float] = {f"fold_{k}": v for k, v in sorted(candidate.fold_scores.items())}
        if candidate.complete:
            metrics[f"mean_{self.metric}"] = candidate.mean
            metrics["std_err"] = candidate.std_err
        self.tracker.log_metrics(experiment_id, metrics)
        self.tracker.close_experiment(experiment_id)
