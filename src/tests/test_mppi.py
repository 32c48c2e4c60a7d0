"""
===============================================================================
ASSISTED MPPI - Trajectory Optimizer Test Suite
===============================================================================
Tests for the MPPI trajectory optimizer: configuration checks, warm-start
shifting, rollout bank layout, failure handling, control bounds, continuous
time queries and end-to-end convergence on a simple tracking problem.

The dynamics and cost collaborators are implemented inline: a system whose
state is the last applied control, and a squared distance to a target.
===============================================================================
"""

import sys
import os
import logging

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from numpy.testing import assert_allclose

from assisted_mppi.control.interfaces import Cost, Dynamics
from assisted_mppi.control.mppi import NEGATED_ROLLOUT, ZERO_NOISE_ROLLOUT, Trajectory
from assisted_mppi.core.config import ConfigurationError, SmoothingConfig, TrajectoryConfig


# =============================================================================
# Collaborators for testing
# =============================================================================

class IdentityDynamics(Dynamics):
    """The state becomes the applied control."""

    def __init__(self, dof=1):
        self.dof = dof
        self.x = np.zeros(dof)

    def state_dof(self):
        return self.dof

    def control_dof(self):
        return self.dof

    def set(self, state):
        self.x = np.array(state, dtype=float)

    def step(self, control, dt):
        self.x = np.array(control, dtype=float)
        return self.x


class TargetCost(Cost):
    """Squared distance of the state to a fixed target."""

    def __init__(self, target, dof=1):
        self.target = np.full(dof, target, dtype=float)
        self.dof = dof

    def state_dof(self):
        return self.dof

    def control_dof(self):
        return self.dof

    def get(self, state, control, dt):
        return float(np.sum((state - self.target) ** 2))


class FragileCost(TargetCost):
    """Raises when the control leaves [-limit, limit]."""

    def __init__(self, target, limit):
        super().__init__(target)
        self.limit = limit

    def get(self, state, control, dt):
        if np.any(np.abs(control) > self.limit):
            raise ValueError("control out of range")
        return super().get(state, control, dt)


class BrokenCost(TargetCost):
    def get(self, state, control, dt):
        raise RuntimeError("cost model unavailable")


def make_config(**overrides):
    options = dict(
        covariance=[[0.25]],
        rollouts=20,
        keep_best_rollouts=0,
        step_size=0.1,
        horizon=1.0,
        cost_scale=1000.0,
        threads=1,
        seed=0,
    )
    options.update(overrides)
    return TrajectoryConfig(**options)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def trajectory():
    return Trajectory(IdentityDynamics(), TargetCost(1.0), make_config())


@pytest.fixture
def warmed(trajectory):
    """A trajectory improved by ten updates at t=0."""
    for _ in range(10):
        trajectory.update([0.0], 0.0)
    return trajectory


# =============================================================================
# Test: Construction
# =============================================================================

class TestConstruction:
    """Configuration checks at construction."""

    def test_dimensions(self, trajectory):
        assert trajectory.steps == 10
        assert trajectory.rollout_count == 22
        assert trajectory.trajectory.shape == (10, 1)
        assert_allclose(trajectory.trajectory, 0.0)

    def test_covariance_shape_mismatch(self):
        with pytest.raises(ConfigurationError) as info:
            Trajectory(IdentityDynamics(2), TargetCost(1.0, dof=2), make_config())
        assert info.value.diagnostics == ["invalid covariance dimensions (1, 1) expected (2, 2)"]

    @pytest.mark.parametrize("option, value", [
        ("rollouts", 0),
        ("step_size", 0.0),
        ("horizon", -1.0),
        ("keep_best_rollouts", 30),
    ])
    def test_create_rejects_invalid(self, option, value, caplog):
        with caplog.at_level(logging.ERROR):
            result = Trajectory.create(IdentityDynamics(), TargetCost(1.0), make_config(**{option: value}))
        assert result is None
        assert option in caplog.text

    def test_close_releases_workers(self):
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), make_config(threads=2))
        trajectory.update([0.0], 0.0)
        trajectory.close()
        with pytest.raises(RuntimeError):
            trajectory.update([0.0], 0.0)

    def test_dof_mismatch(self):
        with pytest.raises(ConfigurationError):
            Trajectory(IdentityDynamics(1), TargetCost(1.0, dof=2), make_config())

    def test_bounds_required(self):
        errors = make_config(control_bound=True).validate(1)
        assert "missing control_min" in errors
        assert "missing control_max" in errors

    def test_smoothing_window_checked(self):
        config = make_config(smoothing=SmoothingConfig(window=4, order=1))
        assert any("odd" in e for e in config.validate(1))
        config = make_config(smoothing=SmoothingConfig(window=11, order=1))
        assert any("exceeds" in e for e in config.validate(1))


# =============================================================================
# Test: Rollout bank
# =============================================================================

class TestRolloutBank:
    """Layout of the static, elite and sampled rollouts."""

    def test_static_rollouts(self, warmed):
        shifted = warmed.trajectory
        warmed.update([0.0], 0.0)
        assert_allclose(warmed.noise(ZERO_NOISE_ROLLOUT), 0.0)
        assert_allclose(warmed.noise(NEGATED_ROLLOUT), -shifted)

    def test_summary_kinds(self):
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), make_config(keep_best_rollouts=5))
        trajectory.update([0.0], 0.0)
        trajectory.update([0.0], 0.1)
        summary = trajectory.rollout_summary()
        assert list(summary.columns) == ["rollout", "kind", "cost", "weight", "noise_norm"]
        assert len(summary) == 22
        assert summary["kind"].iloc[0] == "zero"
        assert summary["kind"].iloc[1] == "negated"
        assert (summary["kind"] == "elite").sum() == 5
        assert (summary["kind"] == "sampled").sum() == 15
        assert summary["weight"].sum() == pytest.approx(1.0)

    def test_elites_shift_with_trajectory(self):
        """Elites keep their noise, shifted, and resample only the new tail."""
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), make_config(keep_best_rollouts=3))
        trajectory.update([0.0], 0.0)
        costs = trajectory.costs
        sampled = np.arange(2, trajectory.rollout_count)
        best = sampled[np.argsort(costs[sampled], kind="stable")[:3]]
        previous = [trajectory.noise(i) for i in best]

        trajectory.update([0.0], 0.1)
        for slot, old in zip(range(2, 5), previous):
            assert_allclose(trajectory.noise(slot)[:-1], old[1:])

    def test_weights_normalised(self, trajectory):
        trajectory.update([0.0], 0.0)
        weights = trajectory.weights
        assert np.all(weights >= 0.0)
        assert weights.sum() == pytest.approx(1.0)

    def test_discounted_cost(self):
        config = make_config(covariance=[[0.0]], cost_discount_factor=0.5)
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), config)
        trajectory.update([0.0], 0.0)
        expected = sum(0.5 ** k for k in range(10))
        assert trajectory.costs[ZERO_NOISE_ROLLOUT] == pytest.approx(expected)

    def test_thread_count_does_not_change_result(self):
        results = []
        for threads in (1, 4):
            trajectory = Trajectory(
                IdentityDynamics(), TargetCost(1.0), make_config(threads=threads, keep_best_rollouts=4)
            )
            for k in range(5):
                trajectory.update([0.0], 0.1 * k)
            results.append(trajectory.trajectory)
        assert_allclose(results[0], results[1])


# =============================================================================
# Test: Warm start
# =============================================================================

class TestWarmStart:
    """Shifting of the previous optimum between updates."""

    def test_noiseless_update_reproduces_shift(self, warmed):
        warmed.set_covariance([[0.0]])
        warmed.update([0.0], 0.0)
        first = warmed.trajectory
        assert_allclose(warmed.gradient, 0.0)

        warmed.update([0.0], 0.1)
        second = warmed.trajectory
        assert_allclose(second[:-1], first[1:], rtol=0, atol=0)
        assert_allclose(second[-1], first[-1], rtol=0, atol=0)

    def test_multi_step_shift(self, warmed):
        warmed.set_covariance([[0.0]])
        warmed.update([0.0], 0.0)
        first = warmed.trajectory
        warmed.update([0.0], 0.3)
        assert_allclose(warmed.trajectory[:-3], first[3:], rtol=0, atol=0)

    def test_shift_beyond_horizon_uses_default(self):
        config = make_config(covariance=[[0.0]], control_default=[1.0])
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), config)
        trajectory.update([0.0], 0.0)
        trajectory.update([0.0], 5.0)
        assert_allclose(trajectory.trajectory, 1.0)

    def test_update_time_recorded(self, trajectory):
        trajectory.update([0.0], 2.5)
        assert trajectory.update_time == 2.5


# =============================================================================
# Test: Failure handling
# =============================================================================

class TestRolloutFailures:
    """Rollouts whose collaborators raise."""

    def test_failed_rollouts_excluded(self, caplog):
        config = make_config(covariance=[[4.0]], cost_scale=1.0)
        trajectory = Trajectory(IdentityDynamics(), FragileCost(1.0, limit=2.0), config)
        with caplog.at_level(logging.WARNING):
            trajectory.update([0.0], 0.0)
        costs, weights = trajectory.costs, trajectory.weights
        failed = ~np.isfinite(costs)
        assert failed.any()
        assert np.isfinite(costs[ZERO_NOISE_ROLLOUT])
        assert_allclose(weights[failed], 0.0)
        assert weights.sum() == pytest.approx(1.0)
        assert "failed" in caplog.text

    def test_all_rollouts_failed(self, caplog):
        trajectory = Trajectory(IdentityDynamics(), BrokenCost(1.0), make_config())
        with caplog.at_level(logging.ERROR):
            trajectory.update([0.0], 0.0)
        assert_allclose(trajectory.trajectory, 0.0)
        assert_allclose(trajectory.weights, 0.0)
        assert "All 22 rollouts failed" in caplog.text


# =============================================================================
# Test: Bounds and gradient limits
# =============================================================================

class TestBounds:
    """Control bounds and gradient clipping."""

    def test_control_bounds_respected(self):
        config = make_config(control_bound=True, control_min=[-0.5], control_max=[0.5], cost_scale=10.0)
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), config)
        for _ in range(10):
            trajectory.update([0.0], 0.0)
        values = trajectory.trajectory
        assert np.all(values <= 0.5)
        assert np.all(values >= -0.5)

    def test_gradient_clipped(self):
        config = make_config(gradient_minmax=0.01, covariance=[[1.0]])
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), config)
        trajectory.update([0.0], 0.0)
        assert np.all(np.abs(trajectory.trajectory) <= 0.01 + 1e-12)

    def test_smoothing_applied(self):
        """A zero-order filter replaces the gradient by window means."""
        raw = Trajectory(IdentityDynamics(), TargetCost(1.0), make_config(covariance=[[1.0]]))
        smooth = Trajectory(
            IdentityDynamics(), TargetCost(1.0),
            make_config(covariance=[[1.0]], smoothing=SmoothingConfig(window=9, order=0)),
        )
        raw.update([0.0], 0.0)
        smooth.update([0.0], 0.0)
        g = raw.gradient[:, 0]
        smoothed = smooth.gradient[:, 0]
        assert_allclose(smoothed[:5], np.mean(g[:9]), atol=1e-12)
        assert_allclose(smoothed[5:], np.mean(g[1:]), atol=1e-12)


# =============================================================================
# Test: Continuous-time query
# =============================================================================

class TestQuery:
    """Interpolated access to the published trajectory."""

    def test_interpolates_between_steps(self, warmed):
        values = warmed.trajectory
        assert_allclose(warmed.get(0.25), 0.5 * (values[2] + values[3]))

    def test_before_update_time(self, warmed):
        assert_allclose(warmed.get(-1.0), warmed.trajectory[0])

    def test_holds_last_step(self, warmed):
        values = warmed.trajectory
        assert_allclose(warmed.get(0.95), values[-1])
        assert_allclose(warmed.get(10.0), values[-1])

    def test_default_beyond_horizon(self):
        config = make_config(control_default=[0.3])
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), config)
        trajectory.update([0.0], 0.0)
        assert_allclose(trajectory.get(1.5), [0.3])

    def test_output_array(self, warmed):
        out = np.empty(1)
        result = warmed.get(0.4, out=out)
        assert result is out
        assert_allclose(out, warmed.trajectory[4])


# =============================================================================
# Test: Convergence
# =============================================================================

def tracking_config():
    """Greedy weighting with bounds well clear of the target at 1."""
    return make_config(
        covariance=[[0.04]],
        rollouts=50,
        keep_best_rollouts=10,
        cost_scale=1.0e6,
        control_bound=True,
        control_min=[-2.0],
        control_max=[2.0],
        seed=7,
    )


class TestConvergence:
    """End-to-end optimisation of a tracking problem."""

    def test_published_cost_never_increases(self):
        """The zero-noise rollout keeps every update at least as good as the last."""
        trajectory = Trajectory(IdentityDynamics(), TargetCost(1.0), tracking_config())
        published = []
        for _ in range(20):
            trajectory.update([0.0], 0.0)
            published.append(trajectory.costs[ZERO_NOISE_ROLLOUT])
        published.append(float(np.sum((trajectory.trajectory - 1.0) ** 2)))

        assert published[0] == pytest.approx(10.0)
        assert np.all(np.diff(published) <= 1e-4)

    def test_drives_state_towards_target(self):
        dynamics = IdentityDynamics()
        trajectory = Trajectory(dynamics, TargetCost(1.0), tracking_config())
        for _ in range(20):
            trajectory.update([0.0], 0.0)

        optimal = trajectory.trajectory
        final_cost = float(np.sum((optimal - 1.0) ** 2))
        assert final_cost < 1.0
        assert np.all(np.abs(optimal) < 2.0)

        dynamics.set([0.0])
        errors = []
        for t in np.arange(0.0, 1.5, 0.05):
            state = dynamics.step(trajectory.get(t), 0.05)
            errors.append(abs(state[0] - 1.0))
        assert max(errors) <= np.sqrt(final_cost) + 1e-9
