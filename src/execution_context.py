"""
Execution context threaded through every tuning call.

Holds the worker pool size, the per-task timeout and the base seed. Random
streams are derived from the base seed by name, so each consumer (split,
folds, grid design, annealing, down-sampling, model seeds) draws from its own
reproducible generator without any process-wide random state.

Example:
    from execution_context import ExecutionContext

    context = ExecutionContext(n_jobs=4, seed=42)
    rng = context.rng("grid:logistic_regression")
    with context.worker_pool() as parallel:
        results = list(parallel(delayed(task)(x) for x in items))
"""

import logging
import os
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
from joblib import Parallel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """
    Resources and seeds for one experiment.

    Attributes:
        n_jobs: Worker count; None uses every logical core.
        seed: Base seed for all derived random streams.
        fit_timeout: Seconds allowed per task, or None for no limit. Only
            enforced when more than one worker is used.
        backend: joblib backend name.
        strict_convergence: Treat convergence warnings as fit failures.
    """

    n_jobs: Optional[int] = None
    seed: int = 42
    fit_timeout: Optional[float] = None
    backend: str = "loky"
    strict_convergence: bool = False

    @property
    def worker_count(self) -> int:
        if self.n_jobs is None:
            return os.cpu_count() or 1
        if self.n_jobs < 0:
            return max(1, (os.cpu_count() or 1) + 1 + self.n_jobs)
        return self.n_jobs

    def seed_for(self, stream: str) -> int:
        """Return a stable 32-bit seed for a named random stream."""
        sequence = np.random.SeedSequence([self.seed, zlib.crc32(stream.encode("utf-8"))])
        return int(sequence.generate_state(1)[0])

    def rng(self, stream: str) -> np.random.Generator:
        """Return a fresh generator for a named random stream."""
        return np.random.default_rng(self.seed_for(stream))

    @contextmanager
    def worker_pool(self) -> Iterator[Parallel]:
        """
        Start a worker pool for one batch of tuning work.

        The pool is torn down when the block exits, including when a task or
        the caller raises.

        Yields:
            A ``joblib.Parallel`` instance returning results as a generator in
            submission order.
        """
        workers = self.worker_count
        logger.debug(f"Starting worker pool with {workers} worker(s)")
        # timeouts only apply to tasks run in worker processes
        timeout = self.fit_timeout if workers > 1 else None
        with Parallel(
            n_jobs=workers,
            backend=self.backend,
            timeout=timeout,
            return_as="generator",
        ) as parallel:
            yield parallel
        logger.debug("Worker pool released")
