"""
===============================================================================
ASSISTED MPPI - Linear Kalman Filter
===============================================================================

Discrete linear-Gaussian estimator used to track and project the external
wrench applied by the operator.

Model
-----
    x_k+1 = F x_k + w,   w ~ N(0, Q)
    z_k   = H x_k + v,   v ~ N(0, R)

Update (one measurement z):
    K  = P H^T (H P H^T + R)^-1
    x  = x_pred + K (z - H x_pred)
    P  = (I - K H) P
followed by the prediction of the next step:
    x_pred = F x
    P      = F P F^T + Q

Derivative-chain model
----------------------
For forecasting, the state holds each observed quantity followed by its
time derivatives up to ``order``:

    x = [q, q', q'', ..., q^(order)]      (each block observed_states long)

and the transition is the truncated Taylor expansion over one time step,

    q^(d)(t + dt) = sum_i  q^(d+i)(t) * dt^i / i!

so the entry at row ``d*O + s`` and column ``(d+i)*O + s`` is
``dt**i / i!``.  Only the first block is observed: H = [I 0 ... 0].
===============================================================================
"""

import logging
from typing import Optional

import numpy as np
from scipy import linalg

from assisted_mppi.core.config import ConfigurationError, KalmanFilterConfig
from assisted_mppi.core.constants import FACTORIALS, MAX_FILTER_ORDER

logger = logging.getLogger(__name__)


def euler_transition_matrix(observed_states: int, order: int, time_step: float) -> np.ndarray:
    """
    Taylor-series transition matrix of a derivative chain.

    Parameters
    ----------
    observed_states : int
        Number of observed quantities O.
    order : int
        Highest modelled derivative, at most ``MAX_FILTER_ORDER``.
    time_step : float
        Discretisation (s).

    Returns
    -------
    np.ndarray
        Shape ``(O*(order+1), O*(order+1))``.
    """
    if not 0 <= order <= MAX_FILTER_ORDER:
        raise ValueError(f"order must be in [0, {MAX_FILTER_ORDER}], got {order}")

    states = observed_states * (order + 1)
    transition = np.zeros((states, states))
    for derivative in range(order + 1):
        for state in range(observed_states):
            row = derivative * observed_states + state
            for i in range(order - derivative + 1):
                column = (derivative + i) * observed_states + state
                transition[row, column] = time_step ** i / FACTORIALS[i]
    return transition


def euler_observation_matrix(observed_states: int, order: int) -> np.ndarray:
    """Observation matrix selecting the first (non-derivative) block."""
    observation = np.zeros((observed_states, observed_states * (order + 1)))
    observation[:, :observed_states] = np.eye(observed_states)
    return observation


class KalmanFilter:
    """
    Linear Kalman filter.

    The filter keeps the corrected estimate (``state``/``covariance``) and
    the one-step prediction (``next_state``) made from it.

    Parameters
    ----------
    config : KalmanFilterConfig
        System matrices and initial estimate.

    Raises
    ------
    ConfigurationError
        If any matrix has the wrong dimensions.

    Notes
    -----
    Not synchronised; an instance must only be used by one thread.
    """

    def __init__(self, config: KalmanFilterConfig):
        errors = config.validate()
        if errors:
            raise ConfigurationError(errors)

        self._config = config
        self._states = config.states
        self._observed_states = config.observed_states
        self._F = config.state_transition_matrix
        self._Q = config.transition_covariance
        self._H = config.observation_matrix
        self._R = config.observation_covariance
        self._identity = np.eye(self._states)
        self.reset()

    @classmethod
    def create(cls, config: KalmanFilterConfig) -> Optional["KalmanFilter"]:
        """Construct a filter, or log the diagnostics and return None."""
        try:
            return cls(config)
        except ConfigurationError as error:
            for diagnostic in error.diagnostics:
                logger.error("Invalid kalman filter configuration: %s", diagnostic)
            return None

    def reset(self) -> None:
        """Return to the configured initial estimate."""
        self.set_estimation(self._config.initial_state, self._config.initial_covariance)

    def set_estimation(self, state, covariance) -> None:
        """
        Overwrite the corrected estimate and re-predict the next step.

        Parameters
        ----------
        state : array_like (states,)
        covariance : array_like (states, states)
        """
        state = np.array(state, dtype=np.float64).reshape(-1)
        covariance = np.array(covariance, dtype=np.float64)
        if state.shape != (self._states,):
            raise ValueError(f"Expected state shape ({self._states},), got {state.shape}")
        if covariance.shape != (self._states, self._states):
            raise ValueError(
                f"Expected covariance shape ({self._states}, {self._states}), got {covariance.shape}"
            )
        self._x = state
        self._P = covariance
        self._x_next = self._F @ self._x

    def update(self, observation) -> np.ndarray:
        """
        Correct the predicted state with ``observation`` and predict the
        next step.

        Parameters
        ----------
        observation : array_like (observed_states,)

        Returns
        -------
        np.ndarray
            The corrected state.
        """
        z = np.asarray(observation, dtype=np.float64).reshape(-1)
        if z.shape != (self._observed_states,):
            raise ValueError(f"Expected observation shape ({self._observed_states},), got {z.shape}")

        H, P = self._H, self._P
        S = H @ P @ H.T + self._R
        # K = P H^T S^-1, solved as S K^T = H P^T
        K = linalg.solve(S, H @ P.T, assume_a="sym").T

        innovation = z - H @ self._x_next
        self._x = self._x_next + K @ innovation
        self._P = (self._identity - K @ H) @ P

        self._x_next = self._F @ self._x
        self._P = self._F @ self._P @ self._F.T + self._Q
        return self._x.copy()

    def predict(self, update_covariance: bool = True) -> np.ndarray:
        """
        Advance one step through the transition model alone.

        The predicted state becomes the estimate and a new prediction is
        made from it.

        Parameters
        ----------
        update_covariance : bool
            Also propagate the covariance (``F P F^T + Q``).

        Returns
        -------
        np.ndarray
            The new estimate.
        """
        self._x = self._x_next
        self._x_next = self._F @ self._x
        if update_covariance:
            self._P = self._F @ self._P @ self._F.T + self._Q
        return self._x.copy()

    def predict_steps(self, steps: int, update_covariance: bool = True) -> np.ndarray:
        """
        Equivalent to ``steps`` calls of :meth:`predict`.

        The k-step transition ``F^k`` and accumulated process noise
        ``sum_{i<k} F^i Q (F^i)^T`` are built by repeated squaring, so the
        cost grows with ``log2(steps)`` rather than ``steps``.

        Returns
        -------
        np.ndarray
            The new estimate.
        """
        if steps < 0:
            raise ValueError(f"steps must be non-negative, got {steps}")
        if steps == 0:
            return self._x.copy()

        transition, noise = self._propagation(steps)
        self._x = transition @ self._x
        self._x_next = self._F @ self._x
        if update_covariance:
            self._P = transition @ self._P @ transition.T + noise
        return self._x.copy()

    def _propagation(self, steps: int):
        """(F^steps, accumulated process noise over ``steps`` predictions)."""
        transition = self._identity.copy()
        noise = np.zeros_like(self._Q)
        power, power_noise = self._F, self._Q
        while steps:
            if steps & 1:
                noise = power @ noise @ power.T + power_noise
                transition = power @ transition
            steps >>= 1
            if steps:
                power_noise = power @ power_noise @ power.T + power_noise
                power = power @ power
        return transition, noise

    @property
    def state(self) -> np.ndarray:
        return self._x.copy()

    @property
    def next_state(self) -> np.ndarray:
        return self._x_next.copy()

    @property
    def covariance(self) -> np.ndarray:
        return self._P.copy()

    @property
    def observed(self) -> np.ndarray:
        """The estimate projected onto the observation space, ``H x``."""
        return self._H @ self._x

    @property
    def states(self) -> int:
        return self._states

    @property
    def observed_states(self) -> int:
        return self._observed_states

    @property
    def config(self) -> KalmanFilterConfig:
        return self._config

    def __repr__(self) -> str:
        return f"KalmanFilter(states={self._states}, observed={self._observed_states})"
