"""
Diabetes Model Selection: Core modules for comparing and tuning risk classifiers.

This package trains several off-the-shelf binary classifiers on a tabular
diabetes dataset, tunes them with a space-filling grid search followed by a
simulated-annealing refinement of the winning family, evaluates the selected
configuration once on a held-out test set, and reports interpretability
analyses of the final model.

Modules:
    experiment_config:     ExperimentConfig options loaded from YAML
    execution_context:     ExecutionContext with the worker pool and seeded random streams
    data_partitioning:     LabeledDataset loading, stratified split and stratified folds
    feature_engineering:   FeaturePipeline fit on training portions only
    model_registry:        Model families, search spaces and hyperparameter points
    hyperparameter_tuning: TuningOrchestrator for cross-validated candidate scoring
    search_strategies:     Space-filling grid search and simulated-annealing refinement
    algorithm_comparison:  AlgorithmComparator and the best-candidate selector
    model_evaluation:      FinalEvaluator for the final fit and single test evaluation
    interpretability:      Feature importance and partial dependence
    experiment_tracking:   ExperimentTracker logging runs to a local MLflow store
    reporting:             Descriptive statistics and report artifacts
    run_experiment:        End-to-end workflow and command-line entry point

Example:
    from experiment_config import load_config
    from run_experiment import run_experiment

    report = run_experiment(load_config("configs/diabetes.yaml"))
"""
