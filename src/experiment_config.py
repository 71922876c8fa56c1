"""
Experiment configuration for the diabetes model selection workflow.

This module provides the ExperimentConfig dataclass holding every option the
workflow recognizes (split proportion, fold count, seeds, grid size, annealing
budget, decision threshold, worker pool size, ...), loading from YAML and
up-front validation so that configuration errors abort a run before any model
is fitted.

Example:
    from experiment_config import load_config

    config = load_config("configs/diabetes.yaml")
    config.validate()
    print(config.n_folds, config.grid_size)
"""

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml

SUPPORTED_METRICS: Tuple[str, ...] = ("roc_auc", "pr_auc", "accuracy", "f1")
PIPELINE_STEPS: Tuple[str, ...] = ("normalize", "one_hot", "zero_variance", "downsample")


class ConfigurationError(ValueError):
    """Raised when an experiment option is missing or out of range.

    Configuration errors are fatal: they are reported before any fitting
    begins and the run is aborted.
    """


@dataclass
class ExperimentConfig:
    """
    All recognized options of a model selection experiment.

    Attributes:
        data_path: CSV file holding the labeled records.
        label_column: Name of the two-category label column.
        positive_label: Label value treated as the positive class. When None,
            the larger of the two observed values is used.
        drop_incomplete: Drop records with missing feature values on load.
        train_fraction: Share of records assigned to the training split.
        n_folds: Number of stratified cross-validation folds.
        seed: Base seed from which every random stream is derived.
        grid_size: Number of space-filling design points per model family.
        refine_iterations: Iteration budget of the annealing refinement.
        stall_limit: Consecutive rejected proposals before refinement stops.
        cooling_coefficient: Annealing cooling coefficient.
        decision_threshold: Probability cut-off for the confusion matrix.
        n_jobs: Worker pool size; None means all logical cores.
        fit_timeout: Seconds allowed per fit/score task; None disables it.
        metric: Cross-validation metric used for selection.
        families: Model families to compare, in registration order.
        search_spaces: Per-family search space overrides.
        pipeline_steps: Ordered feature pipeline steps.
        pd_feature: Feature profiled with partial dependence.
        pd_group_by: Optional categorical covariate grouping the profile.
        output_dir: Directory receiving report artifacts.
        tracking_dir: Directory of the local MLflow tracking store, or None.
        strict_convergence: Treat convergence warnings as fit failures.
    """

    data_path: Optional[str] = None
    label_column: str = "diabetes"
    positive_label: Optional[Any] = None
    drop_incomplete: bool = True
    train_fraction: float = 0.75
    n_folds: int = 8
    seed: int = 42
    grid_size: int = 25
    refine_iterations: int = 40
    stall_limit: int = 10
    cooling_coefficient: float = 0.1
    decision_threshold: float = 0.5
    n_jobs: Optional[int] = None
    fit_timeout: Optional[float] = 600.0
    metric: str = "roc_auc"
    families: List[str] = field(default_factory=lambda: [
        "logistic_regression",
        "svm_linear",
        "gradient_boosted_trees",
        "naive_bayes",
        "decision_tree",
    ])
    search_spaces: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    pipeline_steps: List[str] = field(default_factory=lambda: list(PIPELINE_STEPS))
    pd_feature: Optional[str] = None
    pd_group_by: Optional[str] = None
    output_dir: str = "report"
    tracking_dir: Optional[str] = None
    strict_convergence: bool = False

    def validate(self) -> "ExperimentConfig":
        """
        Check every option and raise on the first invalid one.

        Returns:
            The config itself, so calls can be chained.

        Raises:
            ConfigurationError: If any option is invalid.
        """
        from model_registry import FAMILIES_BY_NAME

        if not 0.0 < self.train_fraction < 1.0:
            raise ConfigurationError(
                f"train_fraction must be in (0, 1), got {self.train_fraction}"
            )
        if self.n_folds < 2:
            raise ConfigurationError(f"n_folds must be at least 2, got {self.n_folds}")
        if self.grid_size < 1:
            raise ConfigurationError(f"grid_size must be positive, got {self.grid_size}")
        if self.refine_iterations < 0:
            raise ConfigurationError(
                f"refine_iterations must be non-negative, got {self.refine_iterations}"
            )
        if self.stall_limit < 1:
            raise ConfigurationError(f"stall_limit must be positive, got {self.stall_limit}")
        if self.cooling_coefficient <= 0:
            raise ConfigurationError(
                f"cooling_coefficient must be positive, got {self.cooling_coefficient}"
            )
        if not 0.0 <= self.decision_threshold <= 1.0:
            raise ConfigurationError(
                f"decision_threshold must be in [0, 1], got {self.decision_threshold}"
            )
        if self.n_jobs is not None and self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero")
        if self.fit_timeout is not None and self.fit_timeout <= 0:
            raise ConfigurationError(f"fit_timeout must be positive, got {self.fit_timeout}")
        if self.metric not in SUPPORTED_METRICS:
            raise ConfigurationError(
                f"metric must be one of {SUPPORTED_METRICS}, got '{self.metric}'"
            )
        if not self.families:
            raise ConfigurationError("at least one model family is required")
        unknown = [name for name in self.families if name not in FAMILIES_BY_NAME]
        if unknown:
            raise ConfigurationError(
                f"unknown model families {unknown}; known: {sorted(FAMILIES_BY_NAME)}"
            )
        for name in self.search_spaces:
            if name not in FAMILIES_BY_NAME:
                raise ConfigurationError(f"search_spaces refers to unknown family '{name}'")
        bad_steps = [step for step in self.pipeline_steps if step not in PIPELINE_STEPS]
        if bad_steps:
            raise ConfigurationError(
                f"unknown pipeline steps {bad_steps}; known: {list(PIPELINE_STEPS)}"
            )
        if not self.label_column:
            raise ConfigurationError("label_column is required")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Optional[str] = None, **overrides: Any) -> ExperimentConfig:
    """
    Load an ExperimentConfig from a YAML file, applying keyword overrides.

    Keys absent from the file keep their defaults. Overrides whose value is
    None are ignored so command-line flags can be passed through unchanged.

    Args:
        path: Path to a YAML mapping, or None to start from defaults.
        **overrides: Option values taking precedence over the file.

    Returns:
        The validated configuration.

    Raises:
        ConfigurationError: If the file is unreadable, not a mapping, holds
            unknown keys, or any value is invalid.

    Example:
        config = load_config("configs/diabetes.yaml", n_jobs=4)
    """
    values: Dict[str, Any] = {}
    if path is not None:
        if not os.path.exists(path):
            raise ConfigurationError(f"Configuration file not found: {path}")
        with open(path, "r", encoding="utf-8") as handle:
            try:
                loaded = yaml.safe_load(handle)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {path} must hold a mapping")
        values.update(loaded)

    values.update({key: value for key, value in overrides.items() if value is not None})

    known = {f.name for f in fields(ExperimentConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {unknown}")

    return ExperimentConfig(**values).validate()
