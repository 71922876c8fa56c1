"""
Search strategies over a model family's hyperparameter space.

Two strategies feed candidates to the TuningOrchestrator:

- SpaceFillingGridSearch: a Latin hypercube design chosen to maximize the
  minimum pairwise distance between points in the unit cube, evaluated once,
  before any feedback is available.
- SimulatedAnnealingSearch: local refinement seeded from the best grid point.
  Each iteration perturbs the current point, evaluates it on all folds and
  accepts it when it improves, or with a probability that shrinks as the loss
  grows and as iterations accumulate. The best point ever observed is
  returned.

Example:
    grid = SpaceFillingGridSearch(orchestrator, context, size=25)
    grid_result = grid.run(GRADIENT_BOOSTED_TREES, space, folds)

    annealer = SimulatedAnnealingSearch(orchestrator, context, max_iterations=40)
    refined = annealer.run(GRADIENT_BOOSTED_TREES, space, folds, grid_result.best())
    print(refined.best_point, refined.best_score)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist
from scipy.stats import qmc

from data_partitioning import Fold
from execution_context import ExecutionContext
from hyperparameter_tuning import CandidateResult, TuningOrchestrator, TuningResult
from model_registry import (
    CategoricalDimension,
    HyperparameterPoint,
    ModelFamily,
    SearchSpace,
)

logger = logging.getLogger(__name__)


def space_filling_design(
    space: SearchSpace,
    size: int,
    rng: np.random.Generator,
    n_restarts: int = 20,
) -> List[HyperparameterPoint]:
    """
    Generate up to ``size`` points spread evenly over ``space``.

    Several Latin hypercube designs are drawn and the one with the largest
    minimum pairwise distance in the unit cube is kept. Points that collapse
    to the same value after integer or categorical rounding are kept once.
    Points are returned sorted by their unit coordinates, so submission order
    (the last selection tie-break) favours low values of the first dimension.

    Args:
        space: Search space to cover.
        size: Number of design points.
        rng: Random generator; the design is deterministic for its seed.
        n_restarts: Number of candidate designs compared.

    Returns:
        Distinct hyperparameter points, sorted by unit coordinates.
    """
    if size < 1:
        raise ValueError(f"size must be positive, got {size}")
    if len(space) == 0:
        raise ValueError("Cannot build a design over an empty search space")

    best_design: Optional[np.ndarray] = None
    best_distance = -1.0
    for _ in range(max(1, n_restarts)):
        sampler = qmc.LatinHypercube(d=len(space), rng=rng)
        design = sampler.random(n=size)
        distance = float(pdist(design).min()) if size > 1 else 0.0
        if distance > best_distance:
            best_design, best_distance = design, distance

    # ascending along the first dimension, then the second, and so on
    best_design = best_design[np.lexsort(best_design.T[::-1])]
    points = [space.from_unit(row) for row in best_design]
    return list(dict.fromkeys(points))


class SpaceFillingGridSearch:
    """
    Initial exploration of one model family with a space-filling design.

    Args:
        orchestrator: Evaluates candidates on the folds.
        context: Source of the design's random stream.
        size: Number of design points (grid size).
    """

    def __init__(
        self,
        orchestrator: TuningOrchestrator,
        context: ExecutionContext,
        size: int = 25,
    ) -> None:
        self.orchestrator = orchestrator
        self.context = context
        self.size = size

    def candidates(self, family: ModelFamily, space: SearchSpace) -> List[HyperparameterPoint]:
        return space_filling_design(space, self.size, self.context.rng(f"grid:{family.name}"))

    def run(
        self,
        family: ModelFamily,
        space: SearchSpace,
        folds: Sequence[Fold],
    ) -> TuningResult:
        points = self.candidates(family, space)
        logger.info(f"Grid search: {family.name} with {len(points)} candidates x {len(folds)} folds")
        result = self.orchestrator.evaluate(family, points, folds, space=space, phase="grid")
        complete = result.complete_candidates
        if complete:
            best = max(complete, key=lambda c: c.mean)
            logger.info(
                f"Grid search: {family.name} best mean {self.orchestrator.metric} "
                f"{best.mean:.4f} at {best.point}"
            )
        else:
            logger.warning(f"Grid search: {family.name} produced no complete candidates")
        return result


@dataclass(frozen=True)
class RefinementStep:
    """One iteration of the annealing search."""

    iteration: int
    point: HyperparameterPoint
    score: Optional[float]
    decision: str
    accept_probability: float
    current_score: float
    best_score: float
    stall: int


@dataclass
class SearchState:
    """Mutable state of the annealing search."""

    current_point: HyperparameterPoint
    current_score: float
    best_point: HyperparameterPoint
    best_score: float
    best_candidate: CandidateResult
    iteration: int = 0
    stall: int = 0


@dataclass
class RefinementResult:
    """Outcome of a refinement run."""

    family: ModelFamily
    best_point: HyperparameterPoint
    best_score: float
    best_candidate: CandidateResult
    history: List[RefinementStep] = field(default_factory=list)
    evaluated: TuningResult = field(default_factory=TuningResult)
    stop_reason: str = ""

    def history_frame(self) -> pd.DataFrame:
        rows: List[Dict[str, Any]] = []
        for step in self.history:
            row: Dict[str, Any] = {
                "iteration": step.iteration,
                "score": step.score,
                "decision": step.decision,
                "accept_probability": step.accept_probability,
                "current_score": step.current_score,
                "best_score": step.best_score,
                "stall": step.stall,
            }
            row.update(step.point.as_dict())
            rows.append(row)
        return pd.DataFrame(rows)


class SimulatedAnnealingSearch:
    """
    Simulated-annealing refinement around the best grid point.

    Neighbors are drawn in the unit cube: every numeric dimension is moved by a
    random direction scaled to a radius that shrinks linearly from
    ``radius[1]`` to ``radius[0]`` over the iteration budget, and each
    categorical dimension switches level with probability ``flip``.

    A worse neighbor is accepted with probability
    ``exp(-cooling_coefficient * iteration * pct_loss)``, where ``pct_loss``
    is the percentage drop from the current score.

    Args:
        orchestrator: Evaluates each neighbor on every fold.
        context: Source of the search's random stream.
        max_iterations: Iteration budget.
        stall_limit: Stop after this many consecutive rejected proposals.
        cooling_coefficient: Cooling coefficient of the acceptance rule.
        radius: (minimum, maximum) neighborhood radius in the unit cube.
        flip: Probability of switching a categorical level.
        max_redraws: Redraws allowed when a proposal was already evaluated.
    """

    def __init__(
        self,
        orchestrator: TuningOrchestrator,
        context: ExecutionContext,
        max_iterations: int = 40,
        stall_limit: int = 10,
        cooling_coefficient: float = 0.1,
        radius: Tuple[float, float] = (0.05, 0.15),
        flip: float = 0.1,
        max_redraws: int = 25,
    ) -> None:
        if stall_limit < 1:
            raise ValueError(f"stall_limit must be positive, got {stall_limit}")
        if cooling_coefficient <= 0:
            raise ValueError(f"cooling_coefficient must be positive, got {cooling_coefficient}")
        if not 0 < radius[0] <= radius[1]:
            raise ValueError(f"radius must satisfy 0 < min <= max, got {radius}")
        self.orchestrator = orchestrator
        self.context = context
        self.max_iterations = max_iterations
        self.stall_limit = stall_limit
        self.cooling_coefficient = cooling_coefficient
        self.radius = radius
        self.flip = flip
        self.max_redraws = max_redraws

    def acceptance_probability(self, current: float, candidate: float, iteration: int) -> float:
        """Probability of accepting ``candidate`` when it does not improve ``current``."""
        if candidate > current:
            return 1.0
        pct_loss = (current - candidate) / max(abs(current), 1e-12) * 100.0
        return float(math.exp(-self.cooling_coefficient * iteration * pct_loss))

    def current_radius(self, iteration: int) -> float:
        low, high = self.radius
        if self.max_iterations <= 1:
            return high
        fraction = (iteration - 1) / (self.max_iterations - 1)
        return high - (high - low) * fraction

    def propose(
        self,
        space: SearchSpace,
        point: HyperparameterPoint,
        radius: float,
        rng: np.random.Generator,
    ) -> HyperparameterPoint:
        """Draw one neighbor of ``point``."""
        unit = space.to_unit(point)
        numeric = [
            i for i, d in enumerate(space.dimensions) if not isinstance(d, CategoricalDimension)
        ]
        if numeric:
            direction = rng.normal(size=len(numeric))
            norm = np.linalg.norm(direction)
            if norm > 0:
                step = direction / norm * radius * rng.uniform(0.5, 1.0)
                unit[numeric] = np.clip(unit[numeric] + step, 0.0, 1.0)

        values = space.from_unit(unit).as_dict()
        for dimension in space.dimensions:
            if isinstance(dimension, CategoricalDimension) and len(dimension.levels) > 1:
                if rng.uniform() < self.flip:
                    others = [lvl for lvl in dimension.levels if lvl != point[dimension.name]]
                    values[dimension.name] = others[int(rng.integers(len(others)))]
                else:
                    values[dimension.name] = point[dimension.name]
        return HyperparameterPoint(values)

    def run(
        self,
        family: ModelFamily,
        space: SearchSpace,
        folds: Sequence[Fold],
        start: CandidateResult,
    ) -> RefinementResult:
        """
        Refine ``start`` for up to ``max_iterations`` iterations.

        Args:
            family: Model family being refined.
            space: Its search space.
            folds: Cross-validation folds.
            start: Complete grid-search candidate to start from.

        Returns:
            RefinementResult holding the best point observed and the history.
        """
        if not start.complete:
            raise ValueError("Refinement must start from a complete candidate")
        rng = self.context.rng(f"anneal:{family.name}")
        state = SearchState(
            current_point=start.point,
            current_score=start.mean,
            best_point=start.point,
            best_score=start.mean,
            best_candidate=start,
        )
        seen: Dict[HyperparameterPoint, CandidateResult] = {start.point: start}
        history: List[RefinementStep] = []
        evaluated = TuningResult()
        stop_reason = "iteration budget exhausted"

        logger.info(
            f"Refinement: {family.name} from {start.point} "
            f"(mean {self.orchestrator.metric} {start.mean:.4f})"
        )
        for iteration in range(1, self.max_iterations + 1):
            state.iteration = iteration
            radius = self.current_radius(iteration)
            proposal = self.propose(space, state.current_point, radius, rng)
            redraws = 0
            while proposal in seen and redraws < self.max_redraws:
                proposal = self.propose(space, state.current_point, radius, rng)
                redraws += 1

            if proposal in seen:
                candidate = seen[proposal]
            else:
                batch = self.orchestrator.evaluate(family, [proposal], folds, space=space, phase="refine")
                evaluated = evaluated.extend(batch)
                candidate = batch.candidates[0]
                seen[proposal] = candidate

            probability = 0.0
            if not candidate.complete:
                decision = "failed"
                state.stall += 1
            elif candidate.mean > state.current_score:
                probability = 1.0
                decision = "improvement"
                state.current_point, state.current_score = proposal, candidate.mean
                state.stall = 0
            else:
                probability = self.acceptance_probability(
                    state.current_score, candidate.mean, iteration
                )
                if rng.uniform() < probability:
                    decision = "accepted"
                    state.current_point, state.current_score = proposal, candidate.mean
                else:
                    decision = "rejected"
                    state.stall += 1

            if candidate.complete and candidate.mean > state.best_score:
                state.best_point = proposal
                state.best_score = candidate.mean
                state.best_candidate = candidate
                decision = "new best"

            history.append(RefinementStep(
                iteration=iteration,
                point=proposal,
                score=candidate.mean if candidate.complete else None,
                decision=decision,
                accept_probability=probability,
                current_score=state.current_score,
                best_score=state.best_score,
                stall=state.stall,
            ))
            logger.info(
                f"Refinement iteration {iteration}: {decision} "
                f"score={history[-1].score} best={state.best_score:.4f} stall={state.stall}"
            )

            if state.stall >= self.stall_limit:
                stop_reason = f"{state.stall} consecutive proposals without acceptance"
                break

        logger.info(f"Refinement finished ({stop_reason}); best {state.best_score:.4f} at {state.best_point}")
        return RefinementResult(
            family=family,
            best_point=state.best_point,
            best_score=state.best_score,
            best_candidate=state.best_candidate,
            history=history,
            evaluated=evaluated,
            stop_reason=stop_reason,
        )
