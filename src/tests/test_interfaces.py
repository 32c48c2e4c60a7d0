"""
===============================================================================
ASSISTED MPPI - Collaborator Contract Test Suite
===============================================================================
Tests for the dynamics/cost contracts, the quadratic limit penalty and the
parallel rollout evaluator.
===============================================================================
"""

import sys
import os
import logging
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest

from assisted_mppi.control.interfaces import Cost, Dynamics, QuadraticPenalty
from assisted_mppi.performance.parallel import ParallelRollouts


# =============================================================================
# Collaborators for testing
# =============================================================================

class Integrator(Dynamics):
    def __init__(self):
        self.x = np.zeros(1)
        self.history = []

    def state_dof(self):
        return 1

    def control_dof(self):
        return 1

    def set(self, state):
        self.x = np.array(state, dtype=float)

    def step(self, control, dt):
        self.x = self.x + control * dt
        self.history.append(float(self.x[0]))
        return self.x


class ThreadRecordingCost(Cost):
    """Records which thread evaluated it."""

    def __init__(self):
        self.threads = set()
        self.resets = []

    def state_dof(self):
        return 1

    def control_dof(self):
        return 1

    def get(self, state, control, dt):
        self.threads.add(threading.get_ident())
        return float(state[0] ** 2)

    def reset(self, time):
        self.resets.append(time)


# =============================================================================
# Test: Contracts
# =============================================================================

class TestContracts:

    def test_default_copy_is_independent(self):
        dynamics = Integrator()
        dynamics.step(np.ones(1), 1.0)
        clone = dynamics.copy()
        clone.step(np.ones(1), 1.0)
        assert dynamics.history == [1.0]
        assert clone.history == [1.0, 2.0]

    def test_reset_is_optional(self):
        class Constant(Cost):
            def state_dof(self):
                return 1

            def control_dof(self):
                return 1

            def get(self, state, control, dt):
                return 1.0

        assert Constant().reset(3.0) is None

    def test_abstract_methods_enforced(self):
        with pytest.raises(TypeError):
            Dynamics()


# =============================================================================
# Test: QuadraticPenalty
# =============================================================================

class TestQuadraticPenalty:

    def test_zero_within_limit(self):
        penalty = QuadraticPenalty(limit=1.0, constant=10.0, quadratic=100.0)
        assert penalty(0.5) == 0.0
        assert penalty(1.0) == 0.0

    def test_upper_limit(self):
        penalty = QuadraticPenalty(limit=1.0, constant=10.0, quadratic=100.0)
        assert penalty.violation(1.5) == pytest.approx(0.5)
        assert penalty(1.5) == pytest.approx(10.0 + 100.0 * 0.25)

    def test_lower_limit(self):
        penalty = QuadraticPenalty(limit=0.2, constant=1.0, quadratic=4.0, upper=False)
        assert penalty(0.5) == 0.0
        assert penalty(0.0) == pytest.approx(1.0 + 4.0 * 0.04)


# =============================================================================
# Test: ParallelRollouts
# =============================================================================

class TestParallelRollouts:

    def test_workers_own_clones(self):
        dynamics, cost = Integrator(), ThreadRecordingCost()
        pool = ParallelRollouts(dynamics, cost, num_workers=3)
        workers = pool.workers
        assert len(workers) == 3
        ids = {id(d) for d, _ in workers} | {id(c) for _, c in workers}
        assert len(ids) == 6
        assert id(dynamics) not in ids

    def test_evaluates_every_rollout(self):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=4)

        def rollout(dynamics, cost, index):
            return float(index) * 2.0

        costs = pool.evaluate(rollout, 10)
        np.testing.assert_allclose(costs, 2.0 * np.arange(10))

    def test_single_worker_runs_inline(self):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=1)

        def rollout(dynamics, cost, index):
            cost.get(np.zeros(1), np.zeros(1), 0.1)
            return 0.0

        pool.evaluate(rollout, 5)
        assert pool.workers[0][1].threads == {threading.get_ident()}

    def test_more_workers_than_rollouts(self):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=8)
        costs = pool.evaluate(lambda d, c, i: 1.0, 3)
        np.testing.assert_allclose(costs, np.ones(3))

    def test_failures_become_infinite(self, caplog):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=2)

        def rollout(dynamics, cost, index):
            if index == 1:
                raise ValueError("diverged")
            if index == 2:
                return float("nan")
            return 1.0

        with caplog.at_level(logging.WARNING):
            costs = pool.evaluate(rollout, 4)
        assert costs[0] == 1.0 and costs[3] == 1.0
        assert np.isinf(costs[1]) and np.isinf(costs[2])
        assert "Rollout 1 failed: diverged" in caplog.text
        assert "non-finite" in caplog.text

    def test_worker_threads_reused_across_evaluations(self):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=3)

        def rollout(dynamics, cost, index):
            cost.get(np.zeros(1), np.zeros(1), 0.1)
            return 0.0

        for _ in range(10):
            pool.evaluate(rollout, 9)
        threads = set()
        for _, cost in pool.workers:
            threads |= cost.threads
        assert threading.get_ident() not in threads
        assert len(threads) <= 3
        pool.close()

    def test_close(self):
        with ParallelRollouts(Integrator(), ThreadRecordingCost(), num_workers=2) as pool:
            np.testing.assert_allclose(pool.evaluate(lambda d, c, i: 1.0, 4), np.ones(4))
        assert pool.closed
        with pytest.raises(RuntimeError):
            pool.evaluate(lambda d, c, i: 1.0, 4)

    def test_default_worker_count(self):
        pool = ParallelRollouts(Integrator(), ThreadRecordingCost())
        assert pool.num_workers == (os.cpu_count() or 4)
