"""
===============================================================================
ASSISTED MPPI - Dynamics Forecast
===============================================================================
Rolls a dynamics model forward under a forecast end-effector wrench and
caches what happens, so cost functions can ask "where will the robot be and
how much energy will it have exchanged with the operator" without
simulating anything themselves.

One forecast is one passive rollout: at each step of the horizon the
predicted wrench at that step's time is applied to the end effector and the
model is stepped with zero control.  Per step the cache holds

    - end-effector kinematics (position, orientation, velocities,
      accelerations)
    - joint position
    - joint power and external (wrench) power
    - accumulated energy, the running integral of joint + external power
    - the wrench that was applied

Queries use the clamped step index: step 0 before the anchor,
floor((t - anchor) / dt) inside the horizon and the last step beyond it.

The cache is rebuilt by a single observer thread and read by many rollout
threads through DynamicsForecastHandle, a non-owning view that can be
copied freely into per-worker cost clones.
===============================================================================
"""

import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from assisted_mppi.control.interfaces import Dynamics
from assisted_mppi.core.config import ConfigurationError, DynamicsForecastConfig
from assisted_mppi.core.constants import WRENCH_DOF
from assisted_mppi.core.data_structures import ForecastBuffer, ReadWriteLock
from assisted_mppi.navigation.forecast import Forecast, create_forecast

logger = logging.getLogger(__name__)

WRENCH_LABELS = ("fx", "fy", "fz", "tx", "ty", "tz")


@dataclass(frozen=True)
class EndEffectorState:
    """Kinematics of the end effector in the world frame."""
    position: np.ndarray              # (3,) m
    orientation: np.ndarray           # (4,) quaternion [x, y, z, w]
    linear_velocity: np.ndarray       # (3,) m/s
    angular_velocity: np.ndarray      # (3,) rad/s
    linear_acceleration: np.ndarray   # (3,) m/s^2
    angular_acceleration: np.ndarray  # (3,) rad/s^2


class ForecastDynamics(Dynamics):
    """Dynamics that can be driven by a simulated end-effector wrench."""

    @abstractmethod
    def get_end_effector_state(self) -> EndEffectorState:
        """End-effector kinematics after the last step."""

    @abstractmethod
    def get_joint_position(self) -> np.ndarray:
        """Joint configuration after the last step."""

    @abstractmethod
    def get_joint_power(self) -> float:
        """Power delivered by the joints over the last step (W)."""

    @abstractmethod
    def get_external_power(self) -> float:
        """Power delivered by the external wrench over the last step (W)."""

    @abstractmethod
    def add_end_effector_simulated_wrench(self, wrench: np.ndarray) -> None:
        """Accumulate ``wrench`` to be applied on the next step, then cleared."""


class _Prediction:
    """Immutable snapshot of one forecast rollout."""

    def __init__(self, anchor: float, step: float, end_effector: Tuple[EndEffectorState, ...],
                 joint_position: np.ndarray, power: np.ndarray, wrench: np.ndarray):
        self.anchor = anchor
        self.end_effector = end_effector
        self.joint_position = ForecastBuffer(anchor, step, joint_position)
        # columns: joint power, external power, accumulated energy
        self.power = ForecastBuffer(anchor, step, power)
        self.wrench = ForecastBuffer(anchor, step, wrench)


class DynamicsForecast:
    """
    Disturbance-aware prediction cache.

    Parameters
    ----------
    dynamics : ForecastDynamics
        Model used for the forecast rollouts.  Owned by this instance and
        never shared with the optimizer's workers.
    config : DynamicsForecastConfig
        Time step, horizon and the wrench forecast strategy.

    Raises
    ------
    ConfigurationError
        If the configuration is invalid or the wrench forecast is not six
        dimensional.
    """

    def __init__(self, dynamics: ForecastDynamics, config: DynamicsForecastConfig):
        errors = config.validate()
        if errors:
            raise ConfigurationError(errors)

        wrench_forecast = create_forecast(config.forecast)
        if wrench_forecast is None:
            raise ConfigurationError(["wrench forecast could not be created"])
        if wrench_forecast.states != WRENCH_DOF:
            raise ConfigurationError(
                [f"wrench forecast must have {WRENCH_DOF} states, got {wrench_forecast.states}"]
            )

        self._config = config
        self._dynamics = dynamics
        self._wrench_forecast: Forecast = wrench_forecast
        self._time_step = float(config.time_step)
        self._horizon = float(config.horizon)
        self._steps = config.steps
        self._lock = ReadWriteLock()
        self._prediction: Optional[_Prediction] = None

    @classmethod
    def create(cls, dynamics: ForecastDynamics,
               config: DynamicsForecastConfig) -> Optional["DynamicsForecast"]:
        """Construct the forecast, or log the diagnostics and return None."""
        try:
            return cls(dynamics, config)
        except ConfigurationError as error:
            for diagnostic in error.diagnostics:
                logger.error("Invalid dynamics forecast configuration: %s", diagnostic)
            return None

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def observe(self, measurement, time: float, state=None) -> bool:
        """
        Feed a wrench measurement to the forecast strategy.

        When ``state`` is given the dynamics forecast is re-derived from it
        immediately.  Returns False if the measurement was stale, in which
        case the cached prediction is left as it was.
        """
        accepted = self._wrench_forecast.update(measurement, time)
        if accepted and state is not None:
            self.forecast(state, time)
        return accepted

    def observe_time(self, time: float, state=None) -> None:
        """Advance the forecast strategy to ``time`` without a measurement."""
        self._wrench_forecast.update_time(time)
        if state is not None:
            self.forecast(state, time)

    def forecast(self, state, time: float) -> None:
        """
        Re-derive the cached prediction starting from ``state`` at ``time``.

        Parameters
        ----------
        state : array_like (state_dof,)
            Initial state of the rollout.
        time : float
            Time of ``state``; becomes the anchor of the cache.
        """
        dt = self._time_step
        dynamics = self._dynamics
        control = np.zeros(dynamics.control_dof())

        end_effector: List[EndEffectorState] = []
        joint_position = []
        power = np.empty((self._steps, 3))
        wrench = np.empty((self._steps, WRENCH_DOF))

        dynamics.set(np.asarray(state, dtype=np.float64))
        energy = 0.0
        for i in range(self._steps):
            wrench[i] = self._wrench_forecast.forecast(time + i * dt)
            dynamics.add_end_effector_simulated_wrench(wrench[i].copy())
            dynamics.step(control, dt)

            joint_power = dynamics.get_joint_power()
            external_power = dynamics.get_external_power()
            energy += (joint_power + external_power) * dt

            end_effector.append(dynamics.get_end_effector_state())
            joint_position.append(np.array(dynamics.get_joint_position(), dtype=np.float64))
            power[i] = (joint_power, external_power, energy)

        prediction = _Prediction(
            float(time), dt, tuple(end_effector), np.vstack(joint_position), power, wrench
        )
        with self._lock.write():
            self._prediction = prediction

        logger.debug("Dynamics forecast at t=%.3f: %d steps, energy %.4f J",
                     time, self._steps, energy)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _snapshot(self) -> _Prediction:
        with self._lock.read():
            prediction = self._prediction
        if prediction is None:
            raise RuntimeError("No dynamics forecast has been made yet")
        return prediction

    def get_end_effector_state(self, time: float) -> EndEffectorState:
        prediction = self._snapshot()
        return prediction.end_effector[prediction.power.index(time)]

    def get_joint_position(self, time: float) -> np.ndarray:
        return self._snapshot().joint_position.lookup(time)

    def get_joint_power(self, time: float) -> float:
        return float(self._snapshot().power.lookup(time)[0])

    def get_external_power(self, time: float) -> float:
        return float(self._snapshot().power.lookup(time)[1])

    def get_energy(self, time: float) -> float:
        """Energy accumulated from the anchor to the end of the step at ``time``."""
        return float(self._snapshot().power.lookup(time)[2])

    def get_wrench(self, time: float) -> np.ndarray:
        return self._snapshot().wrench.lookup(time)

    def get_last_forecast_time(self) -> Optional[float]:
        with self._lock.read():
            return None if self._prediction is None else self._prediction.anchor

    def get_time_step(self) -> float:
        return self._time_step

    def get_horizon(self) -> float:
        return self._horizon

    def get_handle(self) -> "DynamicsForecastHandle":
        """Read-only view to hand to cost functions."""
        return DynamicsForecastHandle(self)

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def wrench_forecast(self) -> Forecast:
        return self._wrench_forecast

    def to_frame(self) -> pd.DataFrame:
        """
        The cached prediction as a table, one row per step.

        Columns: time, joint_power, external_power, energy, the six wrench
        components, the end-effector position (x, y, z) and one column per
        joint.
        """
        prediction = self._snapshot()
        times = prediction.anchor + self._time_step * np.arange(self._steps)
        frame = pd.DataFrame({
            "time": times,
            "joint_power": prediction.power.values[:, 0],
            "external_power": prediction.power.values[:, 1],
            "energy": prediction.power.values[:, 2],
        })
        for i, label in enumerate(WRENCH_LABELS):
            frame[label] = prediction.wrench.values[:, i]
        positions = np.vstack([ee.position for ee in prediction.end_effector])
        for i, axis in enumerate("xyz"):
            frame[f"position_{axis}"] = positions[:, i]
        joints = prediction.joint_position.values
        for j in range(joints.shape[1]):
            frame[f"joint_{j}"] = joints[:, j]
        return frame

    def __repr__(self) -> str:
        return f"DynamicsForecast(steps={self._steps}, time_step={self._time_step})"


class DynamicsForecastHandle:
    """
    Non-owning read-only view of a :class:`DynamicsForecast`.

    Copies (including ``copy.copy`` and ``copy.deepcopy``, as made when a
    cost holding a handle is cloned for a rollout worker) refer to the same
    forecast; the forecast itself is never duplicated.
    """

    def __init__(self, parent: DynamicsForecast):
        self._parent = parent

    def get(self) -> DynamicsForecast:
        return self._parent

    def copy(self) -> "DynamicsForecastHandle":
        return DynamicsForecastHandle(self._parent)

    def __copy__(self) -> "DynamicsForecastHandle":
        return self.copy()

    def __deepcopy__(self, memo) -> "DynamicsForecastHandle":
        return self.copy()

    def get_end_effector_state(self, time: float) -> EndEffectorState:
        return self._parent.get_end_effector_state(time)

    def get_joint_position(self, time: float) -> np.ndarray:
        return self._parent.get_joint_position(time)

    def get_joint_power(self, time: float) -> float:
        return self._parent.get_joint_power(time)

    def get_external_power(self, time: float) -> float:
        return self._parent.get_external_power(time)

    def get_energy(self, time: float) -> float:
        return self._parent.get_energy(time)

    def get_wrench(self, time: float) -> np.ndarray:
        return self._parent.get_wrench(time)

    def get_time_step(self) -> float:
        return self._parent.get_time_step()

    def get_horizon(self) -> float:
        return self._parent.get_horizon()
