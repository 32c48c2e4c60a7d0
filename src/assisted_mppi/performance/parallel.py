"""
parallel.py - Parallel rollout evaluation for the MPPI optimizer

ParallelRollouts distributes the rollouts of one optimizer update over a
pool of worker threads.

Parallelism model
-----------------
Rollouts are independent given the sampled noise, which makes them
embarrassingly parallel.  The rollout indices are split into contiguous
chunks, one per worker, and every worker owns a private clone of the
dynamics and cost collaborators; no mutable collaborator state is shared
between threads.  Each worker writes only its own slots of the cost vector.

The executor is created once and reused by every update, so no threads are
spawned per control cycle.  It is shut down by ``close()``, on leaving a
``with`` block, or when the evaluator is garbage collected.

Threads rather than processes: collaborators are typically thin Python
wrappers around compiled kinematics and physics code that releases the GIL,
and a rollout reads the (large, shared) forecast cache by reference, which a
process pool would have to pickle on every update.
"""

from __future__ import annotations

import logging
import os
import weakref
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from assisted_mppi.control.interfaces import Cost, Dynamics

logger = logging.getLogger(__name__)

# rollout(dynamics, cost, index) -> total cost of rollout ``index``
RolloutFunction = Callable[[Dynamics, Cost, int], float]


class ParallelRollouts:
    """
    Evaluate rollouts on a pool of threads with per-worker collaborators.

    A rollout that raises is logged and assigned an infinite cost, which
    removes it from the importance weighting; the remaining rollouts are
    unaffected.

    Parameters
    ----------
    dynamics : Dynamics
        Template cloned once per worker.
    cost : Cost
        Template cloned once per worker.
    num_workers : int or None
        Number of worker threads. Defaults to ``os.cpu_count()``.
    """

    def __init__(self, dynamics: Dynamics, cost: Cost, num_workers: Optional[int] = None):
        self.num_workers = num_workers or os.cpu_count() or 4
        self._workers: List[Tuple[Dynamics, Cost]] = [
            (dynamics.copy(), cost.copy()) for _ in range(self.num_workers)
        ]
        self._executor: Optional[ThreadPoolExecutor] = None
        self._finalizer = None
        if self.num_workers > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_workers, thread_name_prefix="rollout"
            )
            self._finalizer = weakref.finalize(self, self._executor.shutdown, wait=False)
        self._closed = False

    def close(self) -> None:
        """Shut down the worker threads; later evaluations raise RuntimeError."""
        self._closed = True
        if self._finalizer is not None:
            self._executor.shutdown(wait=True)
            self._finalizer.detach()

    def __enter__(self) -> "ParallelRollouts":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def evaluate(self, rollout: RolloutFunction, count: int) -> np.ndarray:
        """
        Run ``rollout`` for indices ``0 .. count-1``.

        Parameters
        ----------
        rollout : callable
            ``rollout(dynamics, cost, index) -> float``.
        count : int
            Number of rollouts.

        Returns
        -------
        np.ndarray
            Shape ``(count,)`` total costs, ``inf`` for failed rollouts.
        """
        if self._closed:
            raise RuntimeError("ParallelRollouts has been closed")
        costs = np.full(count, np.inf)
        chunks = [c for c in np.array_split(np.arange(count), min(self.num_workers, count)) if len(c)]

        if len(chunks) <= 1:
            for chunk in chunks:
                self._run_chunk(0, chunk, rollout, costs)
            return costs

        futures = [
            self._executor.submit(self._run_chunk, worker, chunk, rollout, costs)
            for worker, chunk in enumerate(chunks)
        ]
        for future in futures:
            future.result()
        return costs

    def _run_chunk(
        self,
        worker: int,
        indices: Sequence[int],
        rollout: RolloutFunction,
        costs: np.ndarray,
    ) -> None:
        dynamics, cost = self._workers[worker]
        for index in indices:
            try:
                value = float(rollout(dynamics, cost, int(index)))
            except Exception as exc:
                logger.warning("Rollout %d failed: %s", index, exc)
                continue
            if not np.isfinite(value):
                logger.warning("Rollout %d produced a non-finite cost (%s)", index, value)
                continue
            costs[index] = value

    @property
    def workers(self) -> List[Tuple[Dynamics, Cost]]:
        """The per-worker ``(dynamics, cost)`` clones."""
        return list(self._workers)

    def __repr__(self) -> str:
        return f"ParallelRollouts(num_workers={self.num_workers})"
