"""
End-to-end model selection experiment.

Loads the labeled records, splits off an untouched test set, compares every
registered model family with a space-filling grid search on stratified
cross-validation folds, refines the winning family with simulated annealing,
fits the selected configuration on the whole training set, evaluates it once
on the test set, and writes the report.

Usage:
    python src/run_experiment.py --config configs/diabetes.yaml --n-jobs 4
    python src/run_experiment.py --data diabetes.csv --label diabetes --output-dir report
"""

import argparse
import logging
import sys
from typing import List, Optional

import pandas as pd

from algorithm_comparison import AlgorithmComparator, select_best
from data_partitioning import DataValidationError, LabeledDataset, load_dataset, stratified_folds, stratified_split
from execution_context import ExecutionContext
from experiment_config import ConfigurationError, ExperimentConfig, load_config
from experiment_tracking import ExperimentTracker
from feature_engineering import FeaturePipelineSpec
from hyperparameter_tuning import NoCompleteCandidatesError, TuningOrchestrator
from interpretability import feature_importance, partial_dependence
from model_evaluation import FinalEvaluator, FittedModel
from model_registry import ModelRegistry
from reporting import ExperimentReport, descriptive_statistics, write_report
from search_strategies import SimulatedAnnealingSearch

logger = logging.getLogger(__name__)


def _check_analysis_columns(config: ExperimentConfig, dataset: LabeledDataset) -> None:
    features = dataset.X
    if config.pd_feature is not None:
        if config.pd_feature not in features.columns:
            raise ConfigurationError(f"pd_feature '{config.pd_feature}' is not a feature column")
        if not pd.api.types.is_numeric_dtype(features[config.pd_feature]):
            raise ConfigurationError(f"pd_feature '{config.pd_feature}' must be numeric")
    if config.pd_group_by is not None and config.pd_group_by not in features.columns:
        raise ConfigurationError(f"pd_group_by '{config.pd_group_by}' is not a feature column")


def _profile_feature(
    config: ExperimentConfig,
    fitted: FittedModel,
    importance: pd.DataFrame,
    raw_columns: List[str],
) -> Optional[str]:
    """Choose the feature to profile: configured, else the most important numeric one."""
    available = set(fitted.feature_names)
    if config.pd_feature is not None:
        if config.pd_feature not in available:
            logger.warning(
                f"pd_feature '{config.pd_feature}' was dropped by the feature pipeline; "
                f"skipping partial dependence"
            )
            return None
        return config.pd_feature
    for feature in importance["feature"]:
        if feature in raw_columns and feature not in fitted.pipeline.categories_:
            return feature
    return None


def run_experiment(
    config: ExperimentConfig,
    dataset: Optional[LabeledDataset] = None,
    tracker: Optional[ExperimentTracker] = None,
) -> ExperimentReport:
    """
    Execute the full selection workflow and write the report.

    Args:
        config: Experiment options; validated before any work starts.
        dataset: Pre-loaded records. When None, ``config.data_path`` is read.
        tracker: Experiment tracker. When None and ``config.tracking_dir`` is
            set, a local tracker is created there.

    Returns:
        ExperimentReport with every intermediate and final result.

    Raises:
        ConfigurationError: For invalid options.
        DataValidationError: For data that cannot support the analysis.
        NoCompleteCandidatesError: If no candidate was scored on every fold.
    """
    config.validate()
    context = ExecutionContext(
        n_jobs=config.n_jobs,
        seed=config.seed,
        fit_timeout=config.fit_timeout,
        strict_convergence=config.strict_convergence,
    )

    if dataset is None:
        if config.data_path is None:
            raise ConfigurationError("data_path is required when no dataset is given")
        dataset = load_dataset(
            config.data_path,
            label_column=config.label_column,
            positive_label=config.positive_label,
            drop_incomplete=config.drop_incomplete,
        )
    _check_analysis_columns(config, dataset)
    descriptive = descriptive_statistics(dataset)

    train, test = stratified_split(dataset, config.train_fraction, seed=context.seed_for("split"))
    folds = stratified_folds(train, config.n_folds, seed=context.seed_for("folds"))

    registry = ModelRegistry.from_config(config.families, config.search_spaces)
    pipeline_spec = FeaturePipelineSpec(steps=tuple(config.pipeline_steps))
    if tracker is None and config.tracking_dir:
        tracker = ExperimentTracker(config.tracking_dir)
    orchestrator = TuningOrchestrator(pipeline_spec, context, metric=config.metric, tracker=tracker)

    # Phase 1: space-filling grid search across every family
    comparator = AlgorithmComparator(orchestrator, context, grid_size=config.grid_size)
    comparison = comparator.compare_algorithms(registry, folds)
    grid_best = comparison.best()
    logger.info(
        f"Best family after grid search: {grid_best.family.name} "
        f"(mean {config.metric} {grid_best.mean:.4f})"
    )

    # Phase 2: annealing refinement of the winning family
    refinement = None
    candidates = comparison.all_candidates
    if config.refine_iterations > 0:
        annealer = SimulatedAnnealingSearch(
            orchestrator,
            context,
            max_iterations=config.refine_iterations,
            stall_limit=config.stall_limit,
            cooling_coefficient=config.cooling_coefficient,
        )
        refinement = annealer.run(
            grid_best.family, registry.space_for(grid_best.family), folds, start=grid_best
        )
        candidates = candidates.extend(refinement.evaluated)

    selected = select_best(candidates.candidates, registry.families)
    logger.info(
        f"Selected {selected.family.name} {selected.point}: mean {config.metric} "
        f"{selected.mean:.4f} (std err {selected.std_err:.4f})"
    )

    # Phase 3: final fit and the single test evaluation
    evaluator = FinalEvaluator(pipeline_spec, context)
    fitted = evaluator.fit_final(
        selected.family, selected.point, train, space=registry.space_for(selected.family)
    )
    evaluation = evaluator.evaluate(fitted, test, threshold=config.decision_threshold)

    X_train = fitted.transform(train.X)
    importance = feature_importance(fitted, X_train, train.y, seed=context.seed_for("importance"))
    profile = None
    feature = _profile_feature(config, fitted, importance, train.feature_names)
    if feature is not None:
        groups = train.X[config.pd_group_by] if config.pd_group_by else None
        profile = partial_dependence(fitted, X_train, feature, groups=groups)
        profile["original_value"] = fitted.pipeline.inverse_normalize(feature, profile["value"])

    report = ExperimentReport(
        config=config,
        descriptive=descriptive,
        comparison=comparison,
        refinement=refinement,
        candidates=candidates,
        selected=selected,
        fitted=fitted,
        evaluation=evaluation,
        importance=importance,
        partial_dependence=profile,
    )
    report.artifacts = write_report(report, config.output_dir, comparator=comparator, evaluator=evaluator)

    if tracker is not None:
        experiment_id = tracker.start_experiment(
            experiment_name="model-selection-final",
            algorithm=selected.family.name,
        )
        tracker.log_parameters(experiment_id, dict(selected.point.as_dict(), phase="final"))
        tracker.log_metrics(experiment_id, evaluation.metrics)
        tracker.log_artifacts(experiment_id, report.artifacts)
        tracker.close_experiment(experiment_id)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Compare and select diabetes risk classifiers")
    parser.add_argument("--config", default=None, help="Path to an experiment YAML file")
    parser.add_argument("--data", default=None, help="CSV file with the labeled records")
    parser.add_argument("--label", default=None, help="Name of the label column")
    parser.add_argument("--output-dir", default=None, help="Directory for report artifacts")
    parser.add_argument("--n-jobs", type=int, default=None, help="Worker pool size (default: all cores)")
    parser.add_argument("--seed", type=int, default=None, help="Base random seed")
    parser.add_argument("--tracking-dir", default=None, help="Directory of the local MLflow tracking store")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    try:
        config = load_config(
            args.config,
            data_path=args.data,
            label_column=args.label,
            output_dir=args.output_dir,
            n_jobs=args.n_jobs,
            seed=args.seed,
            tracking_dir=args.tracking_dir,
        )
        report = run_experiment(config)
    except (ConfigurationError, DataValidationError) as e:
        logger.error(f"Experiment aborted: {e}")
        return 2
    except NoCompleteCandidatesError as e:
        logger.error(f"Experiment failed: {e}")
        return 1

    summary = report.summary()
    logger.info(
        f"Done. Selected={summary['selected_family']} | "
        f"TestAUC={summary['test_metrics']['auc_roc']:.4f} | "
        f"TestAcc={summary['test_metrics']['accuracy']:.4f} | "
        f"Report={config.output_dir}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
