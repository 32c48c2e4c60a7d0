"""
===============================================================================
ASSISTED MPPI - Model Predictive Path Integral Trajectory Optimizer
===============================================================================
Sampling-based receding-horizon optimisation of a control trajectory.

Each call to :meth:`Trajectory.update` performs one MPPI iteration:

    1. Warm start   -- shift the previous optimal trajectory by the time
                       elapsed since the last update.
    2. Sampling     -- build the rollout bank: the zero-noise rollout, the
                       negated optimal trajectory (i.e. zero control), the
                       best rollouts of the previous update (elites) and
                       freshly sampled rollouts.
    3. Rollout      -- simulate every rollout from the current state and
                       accumulate its discounted cost.
    4. Weighting    -- w_i = exp(-cost_scale * (c_i - min c)), normalised.
    5. Gradient     -- g = sum_i w_i * noise_i, optionally smoothed and
                       clipped; u <- u + gradient_step * g, optionally
                       clamped to the control bounds.

The optimal trajectory is published atomically for the real-time loop,
which samples it at arbitrary times through :meth:`Trajectory.get` using
linear interpolation between horizon steps.

References
----------
    [1] Williams, Aldrich & Theodorou, "Model Predictive Path Integral
        Control: From Theory to Parallel Computation", JGCD, 2017.
    [2] Williams et al., "Information Theoretic MPC for Model-Based
        Reinforcement Learning", ICRA, 2017.
===============================================================================
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd
from scipy.signal import savgol_filter

from assisted_mppi.control.interfaces import Cost, Dynamics
from assisted_mppi.control.sampler import Gaussian
from assisted_mppi.core.config import ConfigurationError, TrajectoryConfig
from assisted_mppi.core.constants import STATIC_ROLLOUTS
from assisted_mppi.core.data_structures import ReadWriteLock
from assisted_mppi.performance.parallel import ParallelRollouts

logger = logging.getLogger(__name__)

# Rollout bank layout.
ZERO_NOISE_ROLLOUT = 0
NEGATED_ROLLOUT = 1


class Trajectory:
    """
    MPPI trajectory optimizer over a rolling horizon.

    Parameters
    ----------
    dynamics : Dynamics
        System model; cloned once per rollout worker.
    cost : Cost
        Per-step cost; cloned once per rollout worker.
    config : TrajectoryConfig
        Optimizer configuration.

    Raises
    ------
    ConfigurationError
        If the configuration is inconsistent with the collaborators.  Use
        :meth:`create` to receive ``None`` and a logged diagnostic instead.

    Notes
    -----
    ``update`` must not be called concurrently with itself.  ``get`` and the
    read-only accessors may be called from any thread at any time; they
    always observe a complete update.
    """

    def __init__(self, dynamics: Dynamics, cost: Cost, config: TrajectoryConfig):
        errors = []
        if dynamics.state_dof() != cost.state_dof():
            errors.append(
                f"dynamics state dof {dynamics.state_dof()} does not match cost state dof {cost.state_dof()}"
            )
        if dynamics.control_dof() != cost.control_dof():
            errors.append(
                f"dynamics control dof {dynamics.control_dof()} does not match cost control dof {cost.control_dof()}"
            )
        errors.extend(config.validate(dynamics.control_dof()))
        if errors:
            raise ConfigurationError(errors)

        self._config = config
        self._state_dof: int = dynamics.state_dof()
        self._control_dof: int = dynamics.control_dof()
        self._steps: int = config.steps
        self._step_size: float = float(config.step_size)
        self._rollouts: int = STATIC_ROLLOUTS + config.rollouts

        self._control_min = config.control_min.reshape(-1) if config.control_bound else None
        self._control_max = config.control_max.reshape(-1) if config.control_bound else None
        self._control_default = (
            None if config.control_default is None else config.control_default.reshape(-1)
        )
        self._discount = config.cost_discount_factor ** np.arange(self._steps)

        self._sampler = Gaussian(np.zeros(self._control_dof), config.covariance, rng=config.seed)
        self._pool = ParallelRollouts(dynamics, cost, config.threads)
        self._lock = ReadWriteLock()

        shape = (self._steps, self._control_dof)
        self._optimal = np.zeros(shape)
        self._time: float = 0.0
        self._updated: bool = False
        self._noise = np.zeros((self._rollouts,) + shape)
        self._costs = np.zeros(self._rollouts)
        self._weights = np.full(self._rollouts, 1.0 / self._rollouts)
        self._gradient = np.zeros(shape)
        self._kinds = np.array(["zero", "negated"] + ["sampled"] * config.rollouts, dtype=object)

        logger.info(
            "MPPI trajectory: %d+%d rollouts, %d steps of %.3f s, control dof %d, %d worker(s)",
            STATIC_ROLLOUTS, config.rollouts, self._steps, self._step_size,
            self._control_dof, self._pool.num_workers,
        )

    @classmethod
    def create(cls, dynamics: Dynamics, cost: Cost, config: TrajectoryConfig) -> Optional["Trajectory"]:
        """Construct a trajectory, or log the diagnostics and return None."""
        try:
            return cls(dynamics, cost, config)
        except ConfigurationError as error:
            for diagnostic in error.diagnostics:
                logger.error("Invalid trajectory configuration: %s", diagnostic)
            return None

    # -- optimisation --------------------------------------------------------

    def update(self, state, time: float) -> None:
        """
        Run one MPPI iteration from ``state`` at ``time`` and publish the
        improved trajectory.

        Parameters
        ----------
        state : array_like (state_dof,)
            Current system state.
        time : float
            Current time (s); the trajectory is re-anchored at this time.
        """
        state = np.asarray(state, dtype=np.float64).reshape(-1)
        if state.shape != (self._state_dof,):
            raise ValueError(f"Expected state shape ({self._state_dof},), got {state.shape}")

        shift = self._shift_steps(time)
        shifted = self._shift(self._optimal, shift)
        noise, kinds = self._sample(shifted, shift)

        controls = shifted[np.newaxis] + noise
        if self._control_min is not None:
            np.clip(controls, self._control_min, self._control_max, out=controls)

        def rollout(dynamics: Dynamics, cost: Cost, index: int) -> float:
            return self._rollout(dynamics, cost, state, time, controls[index])

        costs = self._pool.evaluate(rollout, self._rollouts)
        weights = self._importance_weights(costs)

        if weights is None:
            logger.error(
                "All %d rollouts failed at t=%.3f; keeping the warm-started trajectory",
                self._rollouts, time,
            )
            weights = np.zeros(self._rollouts)
            gradient = np.zeros_like(shifted)
            optimal = shifted
        else:
            gradient = self._gradient_from(weights, noise)
            optimal = shifted + self._config.gradient_step * gradient

        if self._control_min is not None:
            optimal = np.clip(optimal, self._control_min, self._control_max)

        with self._lock.write():
            self._optimal = optimal
            self._time = float(time)
            self._updated = True
            self._noise = noise
            self._costs = costs
            self._weights = weights
            self._gradient = gradient
            self._kinds = kinds

        if logger.isEnabledFor(logging.DEBUG):
            finite = np.isfinite(costs)
            logger.debug(
                "MPPI update t=%.3f shift=%d min cost=%.6g failed=%d",
                time, shift, costs[finite].min() if finite.any() else np.inf, int((~finite).sum()),
            )

    def _shift_steps(self, time: float) -> int:
        """Whole horizon steps elapsed since the last update."""
        if not self._updated:
            return 0
        elapsed = time - self._time
        if elapsed <= 0.0:
            return 0
        return int(round(elapsed / self._step_size))

    def _fill_value(self) -> np.ndarray:
        if self._control_default is not None:
            return self._control_default
        return np.zeros(self._control_dof)

    def _shift(self, trajectory: np.ndarray, shift: int) -> np.ndarray:
        """Drop ``shift`` leading steps and hold the last retained step."""
        if shift <= 0:
            return trajectory.copy()
        shifted = np.empty_like(trajectory)
        if shift >= self._steps:
            shifted[:] = self._fill_value()
            return shifted
        shifted[:-shift] = trajectory[shift:]
        shifted[-shift:] = trajectory[-1]
        return shifted

    def _sample(self, shifted: np.ndarray, shift: int):
        """Build the rollout bank for this update."""
        noise = np.empty_like(self._noise)
        kinds = self._kinds.copy()
        noise[ZERO_NOISE_ROLLOUT] = 0.0
        noise[NEGATED_ROLLOUT] = -shifted

        elites = self._elites()
        fresh_steps = min(shift, self._steps)
        n_elite = len(elites)
        n_fresh = self._rollouts - STATIC_ROLLOUTS - n_elite
        draws = n_elite * fresh_steps + n_fresh * self._steps
        fresh = self._sampler.sample(draws) if draws else np.empty((0, self._control_dof))

        slot = STATIC_ROLLOUTS
        offset = 0
        for elite in elites:
            kept = self._steps - fresh_steps
            noise[slot, :kept] = self._noise[elite, fresh_steps:]
            noise[slot, kept:] = fresh[offset:offset + fresh_steps]
            offset += fresh_steps
            kinds[slot] = "elite"
            slot += 1

        block = n_fresh * self._steps
        noise[slot:] = fresh[offset:offset + block].reshape(n_fresh, self._steps, self._control_dof)
        kinds[slot:] = "sampled"
        return noise, kinds

    def _elites(self) -> np.ndarray:
        """Indices of the lowest-cost sampled rollouts of the previous update."""
        keep = self._config.keep_best_rollouts
        if not self._updated or keep == 0:
            return np.empty(0, dtype=int)
        candidates = np.arange(STATIC_ROLLOUTS, self._rollouts)
        candidates = candidates[np.isfinite(self._costs[candidates])]
        order = np.argsort(self._costs[candidates], kind="stable")
        return candidates[order[:keep]]

    def _rollout(self, dynamics: Dynamics, cost: Cost, state: np.ndarray, time: float, controls: np.ndarray) -> float:
        dynamics.set(state.copy())
        cost.reset(time)
        total = 0.0
        for step in range(self._steps):
            control = controls[step].copy()
            next_state = dynamics.step(control, self._step_size)
            total += self._discount[step] * cost.get(next_state, control, self._step_size)
        return total

    def _importance_weights(self, costs: np.ndarray) -> Optional[np.ndarray]:
        finite = np.isfinite(costs)
        if not finite.any():
            return None
        weights = np.zeros_like(costs)
        weights[finite] = np.exp(-self._config.cost_scale * (costs[finite] - costs[finite].min()))
        return weights / weights.sum()

    def _gradient_from(self, weights: np.ndarray, noise: np.ndarray) -> np.ndarray:
        gradient = np.tensordot(weights, noise, axes=(0, 0))
        smoothing = self._config.smoothing
        if smoothing is not None:
            gradient = savgol_filter(gradient, smoothing.window, smoothing.order, axis=0, mode="interp")
        if self._config.gradient_minmax is not None:
            limit = self._config.gradient_minmax
            gradient = np.clip(gradient, -limit, limit)
        return gradient

    # -- query ---------------------------------------------------------------

    def get(self, time: float, out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Control at ``time`` on the published trajectory.

        Linearly interpolates between the steps bracketing ``time`` relative
        to the last update.  Times before the update return the first step;
        times past the last step hold it, and past the end of the horizon
        return ``control_default`` when one is configured.

        Parameters
        ----------
        time : float
            Query time (s).
        out : np.ndarray or None
            Optional ``(control_dof,)`` array written in place.

        Returns
        -------
        np.ndarray
            The control, ``out`` when given.
        """
        with self._lock.read():
            optimal = self._optimal
            position = (time - self._time) / self._step_size

        if position <= 0.0:
            control = optimal[0]
        elif position >= self._steps:
            control = optimal[-1] if self._control_default is None else self._control_default
        elif position >= self._steps - 1:
            control = optimal[-1]
        else:
            lower = int(np.floor(position))
            fraction = position - lower
            control = (1.0 - fraction) * optimal[lower] + fraction * optimal[lower + 1]

        if out is not None:
            out[...] = control
            return out
        return np.array(control, dtype=np.float64)

    # -- accessors -----------------------------------------------------------

    def set_covariance(self, covariance) -> None:
        """Replace the sampling covariance; call from the updating thread."""
        covariance = np.atleast_2d(np.array(covariance, dtype=np.float64))
        if covariance.shape != (self._control_dof, self._control_dof):
            raise ValueError(
                f"Expected covariance shape ({self._control_dof}, {self._control_dof}), "
                f"got {covariance.shape}"
            )
        self._sampler.set_covariance(covariance)

    def close(self) -> None:
        """Release the rollout worker threads."""
        self._pool.close()

    @property
    def trajectory(self) -> np.ndarray:
        """Copy of the published optimal trajectory, shape (steps, control_dof)."""
        with self._lock.read():
            return self._optimal.copy()

    @property
    def update_time(self) -> float:
        with self._lock.read():
            return self._time

    @property
    def costs(self) -> np.ndarray:
        """Total cost of each rollout in the last update (inf if failed)."""
        with self._lock.read():
            return self._costs.copy()

    @property
    def weights(self) -> np.ndarray:
        with self._lock.read():
            return self._weights.copy()

    @property
    def gradient(self) -> np.ndarray:
        with self._lock.read():
            return self._gradient.copy()

    def noise(self, rollout: int) -> np.ndarray:
        """Noise trajectory of ``rollout`` in the last update."""
        with self._lock.read():
            return self._noise[rollout].copy()

    def rollout_summary(self) -> pd.DataFrame:
        """
        Per-rollout diagnostics of the last update.

        Returns
        -------
        pd.DataFrame
            Columns ``rollout``, ``kind``, ``cost``, ``weight``,
            ``noise_norm``; one row per rollout.
        """
        with self._lock.read():
            noise, costs, weights, kinds = self._noise, self._costs, self._weights, self._kinds
        return pd.DataFrame({
            "rollout": np.arange(self._rollouts),
            "kind": list(kinds),
            "cost": costs,
            "weight": weights,
            "noise_norm": np.linalg.norm(noise.reshape(self._rollouts, -1), axis=1),
        })

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def step_size(self) -> float:
        return self._step_size

    @property
    def rollout_count(self) -> int:
        """Total rollouts per update including the static ones."""
        return self._rollouts

    @property
    def state_dof(self) -> int:
        return self._state_dof

    @property
    def control_dof(self) -> int:
        return self._control_dof

    @property
    def config(self) -> TrajectoryConfig:
        return self._config

    def __repr__(self) -> str:
        return (
            f"Trajectory(rollouts={self._rollouts}, steps={self._steps}, "
            f"dt={self._step_size}, t={self._time})"
        )
