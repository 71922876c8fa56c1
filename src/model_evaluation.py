"""
Model evaluation module for the model selection workflow.

This module provides FinalEvaluator, which refits the selected configuration
on the entire training set and evaluates it exactly once on the untouched test
set, producing a confusion matrix at a fixed decision threshold, the ROC curve
and its AUC, plus the plotting helpers for those results.

Example:
    from model_evaluation import FinalEvaluator

    evaluator = FinalEvaluator(pipeline_spec, context)
    fitted = evaluator.fit_final(best.family, best.point, train, space=space)
    evaluation = evaluator.evaluate(fitted, test, threshold=0.5)
    evaluator.plot_confusion_matrix(evaluation, "confusion_matrix.png")
    evaluator.plot_roc_curve(evaluation, "roc_curve.png")
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
    roc_auc_score,
    roc_curve,
)

from data_partitioning import LabeledDataset
from execution_context import ExecutionContext
from feature_engineering import FeaturePipeline, FeaturePipelineSpec
from hyperparameter_tuning import positive_scores
from model_registry import HyperparameterPoint, ModelFamily, SearchSpace

logger = logging.getLogger(__name__)


class HoldoutReuseError(RuntimeError):
    """Raised when the held-out test set would be evaluated a second time."""


@dataclass
class FittedModel:
    """
    Feature pipeline and estimator fit together on one training set.

    Prediction methods accept raw feature frames and apply the fitted
    pipeline first.
    """

    family: ModelFamily
    point: HyperparameterPoint
    pipeline: FeaturePipeline
    estimator: Any

    @property
    def feature_names(self) -> List[str]:
        return list(self.pipeline.feature_names_)

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        return self.pipeline.transform(X)

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        """Positive-class scores for raw features."""
        return positive_scores(self.estimator, self.pipeline.transform(X))

    def predict(self, X: pd.DataFrame, threshold: float = 0.5) -> np.ndarray:
        return (self.predict_proba(X) >= threshold).astype(int)


@dataclass
class HoldoutEvaluation:
    """Held-out test results of the final model."""

    confusion_matrix: np.ndarray
    fpr: np.ndarray
    tpr: np.ndarray
    thresholds: np.ndarray
    auc: float
    metrics: Dict[str, float]
    threshold: float
    y_true: np.ndarray
    y_score: np.ndarray

    def roc_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"fpr": self.fpr, "tpr": self.tpr, "threshold": self.thresholds})

    def confusion_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.confusion_matrix,
            index=["true_0", "true_1"],
            columns=["pred_0", "pred_1"],
        )


def calculate_metrics(
    y_true: np.ndarray,
    y_score: np.ndarray,
    threshold: float = 0.5,
) -> Dict[str, float]:
    """
    Calculate the standard classification metrics at ``threshold``.

    Args:
        y_true: True labels (0/1).
        y_score: Predicted positive-class probabilities.
        threshold: Decision threshold for the label-based metrics.

    Returns:
        Dictionary with accuracy, precision, recall, f1_score and auc_roc.
        ``auc_roc`` is NaN when only one class is present.
    """
    y_pred = (np.asarray(y_score) >= threshold).astype(int)
    metrics = {
        "accuracy": accuracy_score(y_true, y_pred),
        "precision": precision_score(y_true, y_pred, zero_division=0),
        "recall": recall_score(y_true, y_pred, zero_division=0),
        "f1_score": f1_score(y_true, y_pred, zero_division=0),
    }
    if len(np.unique(y_true)) == 2:
        metrics["auc_roc"] = roc_auc_score(y_true, y_score)
    else:
        metrics["auc_roc"] = float("nan")
    return {name: float(value) for name, value in metrics.items()}


class FinalEvaluator:
    """
    Final fit on the full training set and a single test evaluation.

    One evaluator instance evaluates the test set at most once; a second call
    to ``evaluate`` raises HoldoutReuseError so test performance cannot feed
    back into selection.

    Args:
        pipeline_spec: Feature pipeline used during tuning.
        context: Execution context providing the final fit seed.
    """

    def __init__(self, pipeline_spec: FeaturePipelineSpec, context: ExecutionContext) -> None:
        self.pipeline_spec = pipeline_spec
        self.context = context
        self._evaluated = False

    def fit_final(
        self,
        family: ModelFamily,
        point: HyperparameterPoint,
        train: LabeledDataset,
        space: Optional[SearchSpace] = None,
    ) -> FittedModel:
        """
        Fit the feature pipeline and the model on the entire training set.

        Args:
            family: Selected model family.
            point: Selected hyperparameters.
            train: Full training dataset (not a fold).
            space: Search space the point was drawn from.

        Returns:
            The retained FittedModel.
        """
        seed = self.context.seed_for("final")
        pipeline = self.pipeline_spec.build(seed=seed)
        X_fit, y_fit = pipeline.fit_resample(train.X, train.y)
        estimator = family.build(point, seed=seed, space=space)
        estimator.fit(X_fit, y_fit)
        logger.info(
            f"Final {family.name} model fit on {len(X_fit)} records "
            f"({len(pipeline.feature_names_)} features) with {point}"
        )
        return FittedModel(family=family, point=point, pipeline=pipeline, estimator=estimator)

    def evaluate(
        self,
        fitted: FittedModel,
        test: LabeledDataset,
        threshold: float = 0.5,
    ) -> HoldoutEvaluation:
        """
        Predict once on the test set and compute the final metrics.

        Args:
            fitted: Model returned by ``fit_final``.
            test: Untouched test dataset.
            threshold: Decision threshold on the positive-class probability.

        Returns:
            HoldoutEvaluation with the confusion matrix, ROC curve and AUC.

        Raises:
            HoldoutReuseError: If this evaluator already evaluated a test set.
        """
        if self._evaluated:
            raise HoldoutReuseError(
                "The test set has already been evaluated; refit and re-selection "
                "after looking at test performance is not allowed"
            )
        self._evaluated = True

        y_true = test.y.to_numpy()
        y_score = fitted.predict_proba(test.X)
        y_pred = (y_score >= threshold).astype(int)

        cm = confusion_matrix(y_true, y_pred, labels=[0, 1])
        fpr, tpr, roc_thresholds = roc_curve(y_true, y_score)
        metrics = calculate_metrics(y_true, y_score, threshold)

        logger.info(f"Test evaluation at threshold {threshold}: {metrics}")
        logger.info(f"Confusion matrix (rows true 0/1, columns predicted 0/1):\n{cm}")
        return HoldoutEvaluation(
            confusion_matrix=cm,
            fpr=fpr,
            tpr=tpr,
            thresholds=roc_thresholds,
            auc=metrics["auc_roc"],
            metrics=metrics,
            threshold=threshold,
            y_true=y_true,
            y_score=y_score,
        )

    def plot_confusion_matrix(
        self,
        evaluation: HoldoutEvaluation,
        save_path: str = "confusion_matrix.png",
    ) -> None:
        """Generate and save a confusion matrix heatmap."""
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
        import seaborn as sns

        plt.figure(figsize=(6, 5))
        sns.heatmap(evaluation.confusion_matrix, annot=True, fmt="d", cmap="Blues")
        plt.title(f"Confusion Matrix (threshold {evaluation.threshold})")
        plt.ylabel("True Label")
        plt.xlabel("Predicted Label")
        plt.savefig(save_path)
        plt.close()

    def plot_roc_curve(
        self,
        evaluation: HoldoutEvaluation,
        save_path: str = "roc_curve.png",
    ) -> None:
        """Generate and save the test ROC curve."""
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        plt.figure(figsize=(6, 6))
        plt.plot(evaluation.fpr, evaluation.tpr, label=f"ROC Curve (AUC = {evaluation.auc:.3f})")
        plt.plot([0, 1], [0, 1], "k--", label="Random Classifier")
        plt.xlabel("False Positive Rate")
        plt.ylabel("True Positive Rate")
        plt.title("ROC Curve (test set)")
        plt.legend()
        plt.grid(True)
        plt.savefig(save_path)
        plt.close()
