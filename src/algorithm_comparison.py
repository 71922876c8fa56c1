"""
Algorithm comparison module for the model selection workflow.

This module provides the AlgorithmComparator class, which runs the
space-filling grid search for every registered model family on the same
cross-validation folds and ranks the families by their best mean score, plus
the ``select_best`` selector used to pick a single configuration.

Example:
    from algorithm_comparison import AlgorithmComparator

    comparator = AlgorithmComparator(orchestrator, context, grid_size=25)
    comparison = comparator.compare_algorithms(registry, folds)
    print(comparison.ranking)
    comparator.visualize_comparison(comparison.ranking, save_path="comparison.png")
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from data_partitioning import Fold
from execution_context import ExecutionContext
from hyperparameter_tuning import (
    CandidateResult,
    NoCompleteCandidatesError,
    TuningOrchestrator,
    TuningResult,
)
from model_registry import ModelFamily, ModelRegistry
from search_strategies import SpaceFillingGridSearch

logger = logging.getLogger(__name__)


def select_best(
    candidates: Iterable[CandidateResult],
    family_order: Optional[Sequence[ModelFamily]] = None,
) -> CandidateResult:
    """
    Pick the candidate with the highest mean cross-validated score.

    Only candidates scored on every fold are eligible. Ties on the mean are
    broken by the lowest variance across folds, then by the family's position
    in ``family_order``, then by submission order.

    Args:
        candidates: Candidate aggregates from any number of tuning batches.
        family_order: Registration order of the families.

    Returns:
        The selected CandidateResult.

    Raises:
        NoCompleteCandidatesError: If no candidate is complete.
    """
    eligible = [c for c in candidates if c.complete]
    if not eligible:
        raise NoCompleteCandidatesError("No candidate was scored successfully on every fold")
    order = list(family_order or [])

    def rank(candidate: CandidateResult) -> Any:
        family_rank = order.index(candidate.family) if candidate.family in order else len(order)
        return (-candidate.mean, candidate.variance, family_rank, candidate.order)

    return min(eligible, key=rank)


@dataclass
class ComparisonResult:
    """Grid search results for every family plus the ranked summary."""

    results: Dict[ModelFamily, TuningResult] = field(default_factory=dict)
    ranking: pd.DataFrame = field(default_factory=pd.DataFrame)
    family_order: List[ModelFamily] = field(default_factory=list)

    @property
    def all_candidates(self) -> TuningResult:
        combined = TuningResult()
        for family in self.family_order:
            combined = combined.extend(self.results[family])
        return combined

    def best(self) -> CandidateResult:
        return select_best(self.all_candidates.candidates, self.family_order)

    def best_for(self, family: ModelFamily) -> CandidateResult:
        return select_best(self.results[family].candidates, self.family_order)


class AlgorithmComparator:
    """
    Compare model families on the same folds with a space-filling grid search.

    Args:
        orchestrator: TuningOrchestrator evaluating the candidates.
        context: Execution context (seeds for the designs).
        grid_size: Number of design points per family.

    Example:
        comparator = AlgorithmComparator(orchestrator, context)
        comparison = comparator.compare_algorithms(registry, folds)
    """

    def __init__(
        self,
        orchestrator: TuningOrchestrator,
        context: ExecutionContext,
        grid_size: int = 25,
    ) -> None:
        self.orchestrator = orchestrator
        self.grid_search = SpaceFillingGridSearch(orchestrator, context, size=grid_size)

    def compare_algorithms(
        self,
        registry: ModelRegistry,
        folds: Sequence[Fold],
    ) -> ComparisonResult:
        """
        Run the grid search for every family and rank the families.

        Args:
            registry: Families and search spaces to compare.
            folds: Cross-validation folds shared by all families.

        Returns:
            ComparisonResult whose ``ranking`` DataFrame has one row per
            family sorted by best mean score (families without a complete
            candidate last).
        """
        results: Dict[ModelFamily, TuningResult] = {}
        rows: List[Dict[str, Any]] = []
        for family, space in registry:
            result = self.grid_search.run(family, space, folds)
            results[family] = result

            row: Dict[str, Any] = {
                "algorithm": family.name,
                "label": family.label,
                "n_candidates": len(result.candidates),
                "n_excluded": len(result.excluded_candidates),
            }
            try:
                best = select_best(result.candidates, registry.families)
            except NoCompleteCandidatesError:
                row.update({
                    f"mean_{self.orchestrator.metric}": math.nan,
                    "std_err": math.nan,
                    "best_params": None,
                })
            else:
                row.update({
                    f"mean_{self.orchestrator.metric}": best.mean,
                    "std_err": best.std_err,
                    "best_params": best.point.as_dict(),
                })
            rows.append(row)

        metric_column = f"mean_{self.orchestrator.metric}"
        ranking = pd.DataFrame(rows)
        ranking["registration_order"] = np.arange(len(ranking))
        ranking = (
            ranking.sort_values(
                [metric_column, "registration_order"],
                ascending=[False, True],
                na_position="last",
            )
            .drop(columns="registration_order")
            .reset_index(drop=True)
        )
        ranking.insert(0, "rank", np.arange(1, len(ranking) + 1))
        logger.info(f"Model family ranking:\n{ranking[['rank', 'algorithm', metric_column]].to_string(index=False)}")
        return ComparisonResult(results=results, ranking=ranking, family_order=registry.families)

    def visualize_comparison(
        self,
        ranking: pd.DataFrame,
        save_path: str = "algorithm_comparison.png",
    ) -> None:
        """
        Bar chart of each family's best mean score with standard errors.

        Args:
            ranking: ``ComparisonResult.ranking``.
            save_path: File path to save the figure.
        """
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
        import seaborn as sns

        metric_column = f"mean_{self.orchestrator.metric}"
        data = ranking.dropna(subset=[metric_column])

        fig, ax = plt.subplots(figsize=(8, 5))
        sns.barplot(data=data, x="algorithm", y=metric_column, ax=ax, color="steelblue")
        ax.errorbar(
            x=np.arange(len(data)),
            y=data[metric_column],
            yerr=data["std_err"],
            fmt="none",
            ecolor="black",
            capsize=4,
        )
        ax.set_title(f"Best cross-validated {self.orchestrator.metric} per model family")
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=30)
        plt.tight_layout()
        plt.savefig(save_path)
        plt.close(fig)
