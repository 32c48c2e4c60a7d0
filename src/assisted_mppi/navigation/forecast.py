"""
===============================================================================
ASSISTED MPPI - Forecast Strategies
===============================================================================
Interchangeable predictors of a measured signal (typically the wrench the
operator applies at the end effector):

    HoldForecast     -- last observation carried forward (LOCF)
    AverageForecast  -- mean of the measurements within a trailing window
    KalmanForecast   -- Kalman filter projected over a horizon

All strategies share one contract:

    update(measurement, time)  ingest a measurement
    update_time(time)          advance with time alone (no measurement)
    forecast(time)             best estimate of the signal at ``time``

Measurements older than the newest accepted measurement are ignored
(logged at DEBUG).  Updates take the write side of a read/write lock and
forecasts the read side, so one observer thread can feed a strategy while
many rollout threads query it.
===============================================================================
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from assisted_mppi.core.config import (
    AverageForecastConfig,
    ConfigurationError,
    ForecastConfig,
    ForecastType,
    HoldForecastConfig,
    KalmanForecastConfig,
)
from assisted_mppi.core.constants import STEP_ROUNDING_TOLERANCE
from assisted_mppi.core.data_structures import ForecastBuffer, MeasurementWindow, ReadWriteLock
from assisted_mppi.navigation.kalman import KalmanFilter

logger = logging.getLogger(__name__)


class Forecast(ABC):
    """Base class of the forecast strategies."""

    def __init__(self, states: int):
        self._states = states
        self._lock = ReadWriteLock()

    @classmethod
    def create(cls, config) -> Optional["Forecast"]:
        """Construct the strategy, or log the diagnostics and return None."""
        try:
            return cls(config)
        except ConfigurationError as error:
            for diagnostic in error.diagnostics:
                logger.error("Invalid %s configuration: %s", cls.__name__, diagnostic)
            return None

    @abstractmethod
    def update(self, measurement, time: float) -> bool:
        """Ingest ``measurement`` taken at ``time``; False if it was stale."""

    @abstractmethod
    def update_time(self, time: float) -> None:
        """Advance to ``time`` without a measurement."""

    @abstractmethod
    def forecast(self, time: float) -> np.ndarray:
        """Estimate of the signal at ``time``."""

    @property
    def states(self) -> int:
        """Dimension of the forecast signal."""
        return self._states

    def _measurement(self, measurement) -> np.ndarray:
        measurement = np.asarray(measurement, dtype=np.float64).reshape(-1)
        if measurement.shape != (self._states,):
            raise ValueError(f"Expected measurement shape ({self._states},), got {measurement.shape}")
        return measurement


def _check(config) -> None:
    errors = config.validate()
    if errors:
        raise ConfigurationError(errors)


class HoldForecast(Forecast):
    """
    Last observation carried forward.

    The forecast is the most recent measurement regardless of the query
    time, zero before the first measurement.
    """

    def __init__(self, config: HoldForecastConfig):
        _check(config)
        super().__init__(config.states)
        self._value = np.zeros(config.states)
        self._time: Optional[float] = None

    def update(self, measurement, time: float) -> bool:
        measurement = self._measurement(measurement)
        with self._lock.write():
            if self._time is not None and time < self._time:
                logger.debug("Ignoring stale measurement at t=%.3f (last %.3f)", time, self._time)
                return False
            self._value = measurement.copy()
            self._time = float(time)
        return True

    def update_time(self, time: float) -> None:
        pass

    def forecast(self, time: float) -> np.ndarray:
        with self._lock.read():
            return self._value.copy()


class AverageForecast(Forecast):
    """
    Mean of the measurements received within a trailing time window.

    The newest measurement is always retained, even when it is older than
    the window, so the average never falls back to zero once a measurement
    has been received.  The average is recomputed on every update.
    """

    def __init__(self, config: AverageForecastConfig):
        _check(config)
        super().__init__(config.states)
        self._window_length = float(config.window)
        self._window = MeasurementWindow(config.states)
        self._average = np.zeros(config.states)

    def update(self, measurement, time: float) -> bool:
        measurement = self._measurement(measurement)
        with self._lock.write():
            if not self._window.append(time, measurement):
                logger.debug("Ignoring stale measurement at t=%.3f", time)
                return False
            self._window.prune(time, self._window_length)
            self._average = self._window.mean()
        return True

    def update_time(self, time: float) -> None:
        with self._lock.write():
            if self._window.prune(time, self._window_length):
                self._average = self._window.mean()

    def forecast(self, time: float) -> np.ndarray:
        with self._lock.read():
            return self._average.copy()

    @property
    def window(self) -> float:
        return self._window_length

    @property
    def retained_times(self) -> List[float]:
        """Times of the measurements currently in the window."""
        with self._lock.read():
            return self._window.times


class KalmanForecast(Forecast):
    """
    Kalman-filter forecast over a fixed horizon.

    A tracking filter ingests the measurements; after each one its estimate
    is copied into a projection filter which is predicted forward one step
    at a time across the horizon.  The observed part of each prediction is
    cached in a :class:`ForecastBuffer` anchored at the measurement time:
    entry 0 is the corrected estimate and entry ``steps`` the prediction at
    the end of the horizon.

    ``forecast(time)`` interpolates linearly between the cached entries,
    returning entry 0 at or before the anchor and the last entry once the
    horizon is exceeded.
    """

    def __init__(self, config: KalmanForecastConfig):
        _check(config)
        super().__init__(config.observed_states)

        filter_config = config.filter_config()
        self._filter = KalmanFilter(filter_config)
        self._predictor = KalmanFilter(filter_config)
        self._time_step = float(config.time_step)
        self._horizon = float(config.horizon)
        self._steps = config.steps
        self._last_observation: Optional[float] = None
        self._buffer = self._project(0.0)

    def update(self, measurement, time: float) -> bool:
        measurement = self._measurement(measurement)
        with self._lock.write():
            if self._last_observation is not None and time < self._last_observation:
                logger.debug(
                    "Ignoring stale measurement at t=%.3f (last %.3f)", time, self._last_observation
                )
                return False
            self._filter.update(measurement)
            self._last_observation = float(time)
            self._buffer = self._project(time)
        return True

    def update_time(self, time: float) -> None:
        """
        Advance the tracking filter by the whole steps elapsed since the
        anchor and regenerate the forecast from the predicted estimate.

        Before the first measurement only the anchor moves; the forecast is
        still the configured initial estimate.
        """
        with self._lock.write():
            anchor = self._buffer.anchor
            elapsed = (time - anchor) / self._time_step
            steps = int(math.floor(elapsed + STEP_ROUNDING_TOLERANCE))
            if steps <= 0:
                return
            anchor += steps * self._time_step
            if self._last_observation is None:
                self._buffer = ForecastBuffer(anchor, self._time_step, self._buffer.values)
                return
            self._filter.predict_steps(steps)
            self._buffer = self._project(anchor)

    def _project(self, anchor: float) -> ForecastBuffer:
        self._predictor.set_estimation(self._filter.state, self._filter.covariance)
        predictions = np.empty((self._steps + 1, self._states))
        predictions[0] = self._predictor.observed
        for i in range(1, self._steps + 1):
            self._predictor.predict()
            predictions[i] = self._predictor.observed
        return ForecastBuffer(anchor, self._time_step, predictions)

    def forecast(self, time: float) -> np.ndarray:
        with self._lock.read():
            buffer = self._buffer
        return buffer.interpolate(time, self._horizon)

    @property
    def buffer(self) -> ForecastBuffer:
        """The current forecast buffer (immutable)."""
        with self._lock.read():
            return self._buffer

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def time_step(self) -> float:
        return self._time_step

    @property
    def horizon(self) -> float:
        return self._horizon


_STRATEGIES = {
    ForecastType.HOLD: HoldForecast,
    ForecastType.AVERAGE: AverageForecast,
    ForecastType.KALMAN: KalmanForecast,
}


def create_forecast(config: ForecastConfig) -> Optional[Forecast]:
    """
    Construct the strategy selected by ``config.type``.

    Returns
    -------
    Forecast or None
        None (with the diagnostic logged) for an unknown type, a missing
        sub-configuration or an invalid sub-configuration.
    """
    kind = config.kind
    if kind is None:
        logger.error("Unknown forecast type '%s' selected", config.type)
        return None
    selected = config.selected()
    if selected is None:
        logger.error("%s forecast selected with no configuration provided", kind.value)
        return None
    return _STRATEGIES[kind].create(selected)
