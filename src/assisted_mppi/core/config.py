"""
===============================================================================
ASSISTED MPPI - Configuration
===============================================================================
Validated configuration dataclasses for the optimizer, the Kalman filter,
the forecast strategies and the dynamics forecast, plus YAML loading.

Every configuration exposes ``validate()`` which returns a list of
human-readable diagnostics (empty when valid).  Components raise
:class:`ConfigurationError` from their constructors and offer a ``create``
class method that logs the diagnostics and returns ``None`` instead, so a
malformed configuration never yields a usable instance.
===============================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import yaml

from assisted_mppi.core.constants import (
    DEFAULT_COST_DISCOUNT_FACTOR,
    DEFAULT_COST_SCALE,
    DEFAULT_GRADIENT_STEP,
    DEFAULT_HORIZON,
    DEFAULT_KEEP_BEST_ROLLOUTS,
    DEFAULT_ROLLOUTS,
    DEFAULT_STEP_SIZE,
    FILTER_NOISE_FLOOR,
    MAX_FILTER_ORDER,
    horizon_steps,
)

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a configuration fails validation.

    Attributes
    ----------
    diagnostics : list of str
        One message per problem found.
    """

    def __init__(self, diagnostics):
        if isinstance(diagnostics, str):
            diagnostics = [diagnostics]
        self.diagnostics: List[str] = list(diagnostics)
        super().__init__("; ".join(self.diagnostics))


# =============================================================================
# Helpers
# =============================================================================

def _as_array(value: Any) -> Optional[np.ndarray]:
    if value is None:
        return None
    return np.array(value, dtype=np.float64)


def matrix_shape(value: np.ndarray) -> tuple:
    """Shape of ``value`` as (rows, cols); vectors count as one column."""
    if value.ndim == 0:
        return (1, 1)
    if value.ndim == 1:
        return (value.shape[0], 1)
    return tuple(value.shape)


def check_dimensions(name: str, value: Optional[np.ndarray], rows: int, cols: int) -> Optional[str]:
    """Return a diagnostic when ``value`` is missing or not ``rows x cols``."""
    if value is None:
        return f"missing {name}"
    actual = matrix_shape(value)
    if value.ndim > 2 or actual != (rows, cols):
        return f"invalid {name} dimensions {actual} expected ({rows}, {cols})"
    return None


def _from_mapping(cls, data: Dict[str, Any], section: str, nested: Optional[Dict[str, Any]] = None):
    """Build dataclass ``cls`` from a mapping, rejecting unknown keys."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{section} configuration must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError([f"unknown {section} option '{key}'" for key in unknown])
    kwargs = dict(data)
    for key, sub_cls in (nested or {}).items():
        if kwargs.get(key) is not None and not isinstance(kwargs[key], sub_cls):
            kwargs[key] = sub_cls.from_dict(kwargs[key])
    return cls(**kwargs)


# =============================================================================
# Trajectory optimizer
# =============================================================================

@dataclass
class SmoothingConfig:
    """Savitzky-Golay smoothing applied to the gradient along the horizon."""
    window: int
    order: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmoothingConfig":
        return _from_mapping(cls, data, "smoothing")

    def validate(self, steps: int) -> List[str]:
        errors = []
        if self.window <= 0 or self.window % 2 == 0:
            errors.append(f"smoothing window must be a positive odd number, got {self.window}")
        elif self.window > steps:
            errors.append(f"smoothing window {self.window} exceeds the {steps} horizon steps")
        if self.order < 0 or self.order >= self.window:
            errors.append(f"smoothing order must be in [0, window), got {self.order}")
        return errors


@dataclass
class TrajectoryConfig:
    """
    Configuration of the MPPI trajectory optimizer.

    Attributes
    ----------
    rollouts : int
        Number of sampled rollouts, excluding the two static rollouts.
    keep_best_rollouts : int
        Lowest-cost sampled rollouts carried over to the next update.
    step_size : float
        Horizon discretisation (s).
    horizon : float
        Planning horizon (s).
    gradient_step : float
        Scale applied to the importance-weighted gradient.
    gradient_minmax : float or None
        Element-wise gradient clip, disabled when None.
    cost_scale : float
        Inverse temperature of the importance weights.
    cost_discount_factor : float
        Per-step multiplicative discount of the rollout cost.
    covariance : array (control_dof, control_dof)
        Covariance of the control noise.
    control_bound : bool
        Clamp controls to ``[control_min, control_max]``.
    control_min, control_max : array (control_dof,)
        Per-dimension control bounds, required when ``control_bound``.
    control_default : array (control_dof,) or None
        Control returned past the end of the horizon. None holds the last
        step of the trajectory.
    smoothing : SmoothingConfig or None
        Optional gradient smoothing.
    threads : int or None
        Rollout worker threads. Defaults to ``os.cpu_count()``.
    seed : int or None
        Seed of the noise generator.
    """
    covariance: Any = None
    rollouts: int = DEFAULT_ROLLOUTS
    keep_best_rollouts: int = DEFAULT_KEEP_BEST_ROLLOUTS
    step_size: float = DEFAULT_STEP_SIZE
    horizon: float = DEFAULT_HORIZON
    gradient_step: float = DEFAULT_GRADIENT_STEP
    gradient_minmax: Optional[float] = None
    cost_scale: float = DEFAULT_COST_SCALE
    cost_discount_factor: float = DEFAULT_COST_DISCOUNT_FACTOR
    control_bound: bool = False
    control_min: Any = None
    control_max: Any = None
    control_default: Any = None
    smoothing: Optional[SmoothingConfig] = None
    threads: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self):
        self.covariance = _as_array(self.covariance)
        if self.covariance is not None and self.covariance.ndim < 2:
            self.covariance = np.atleast_2d(self.covariance)
        self.control_min = _as_array(self.control_min)
        self.control_max = _as_array(self.control_max)
        self.control_default = _as_array(self.control_default)
        if isinstance(self.smoothing, dict):
            self.smoothing = SmoothingConfig.from_dict(self.smoothing)

    @property
    def steps(self) -> int:
        """Number of discrete steps across the horizon."""
        return horizon_steps(self.horizon, self.step_size)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrajectoryConfig":
        return _from_mapping(cls, data, "trajectory", {"smoothing": SmoothingConfig})

    def validate(self, control_dof: int) -> List[str]:
        """Check the configuration against a ``control_dof`` system."""
        errors = []
        if self.rollouts <= 0:
            errors.append(f"rollouts must be positive, got {self.rollouts}")
        if not 0 <= self.keep_best_rollouts <= max(self.rollouts, 0):
            errors.append(
                f"keep_best_rollouts must be in [0, {self.rollouts}], got {self.keep_best_rollouts}"
            )
        if self.step_size <= 0.0:
            errors.append(f"step_size must be positive, got {self.step_size}")
        if self.horizon <= 0.0:
            errors.append(f"horizon must be positive, got {self.horizon}")
        if self.cost_scale <= 0.0:
            errors.append(f"cost_scale must be positive, got {self.cost_scale}")
        if self.cost_discount_factor <= 0.0:
            errors.append(f"cost_discount_factor must be positive, got {self.cost_discount_factor}")
        if self.gradient_minmax is not None and self.gradient_minmax <= 0.0:
            errors.append(f"gradient_minmax must be positive, got {self.gradient_minmax}")
        if self.threads is not None and self.threads < 1:
            errors.append(f"threads must be at least 1, got {self.threads}")

        error = check_dimensions("covariance", self.covariance, control_dof, control_dof)
        if error:
            errors.append(error)

        if self.control_bound:
            for name in ("control_min", "control_max"):
                error = check_dimensions(name, getattr(self, name), control_dof, 1)
                if error:
                    errors.append(error)
            if (
                self.control_min is not None and self.control_max is not None
                and self.control_min.shape == self.control_max.shape
                and np.any(self.control_min > self.control_max)
            ):
                errors.append("control_min exceeds control_max")

        if self.control_default is not None:
            error = check_dimensions("control_default", self.control_default, control_dof, 1)
            if error:
                errors.append(error)

        if self.smoothing is not None and self.step_size > 0.0 and self.horizon > 0.0:
            errors.extend(self.smoothing.validate(self.steps))
        return errors


# =============================================================================
# Kalman filter
# =============================================================================

@dataclass
class KalmanFilterConfig:
    """
    Matrices of a discrete linear-Gaussian system.

    The estimated state has ``observed_states * (order + 1)`` elements: the
    observed quantities followed by ``order`` of their time derivatives.
    ``time_step`` and ``horizon`` record the discretisation the matrices
    were built for and are informational only.
    """
    observed_states: int
    order: int
    state_transition_matrix: Any = None
    transition_covariance: Any = None
    observation_matrix: Any = None
    observation_covariance: Any = None
    initial_state: Any = None
    initial_covariance: Any = None
    time_step: Optional[float] = None
    horizon: Optional[float] = None

    def __post_init__(self):
        for name in (
            "state_transition_matrix", "transition_covariance", "observation_matrix",
            "observation_covariance", "initial_state", "initial_covariance",
        ):
            setattr(self, name, _as_array(getattr(self, name)))

    @property
    def states(self) -> int:
        return self.observed_states * (self.order + 1)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KalmanFilterConfig":
        return _from_mapping(cls, data, "filter")

    @classmethod
    def euler(
        cls,
        observed_states: int,
        order: int,
        time_step: float,
        initial_state=None,
        process_noise: float = FILTER_NOISE_FLOOR,
        observation_noise: float = FILTER_NOISE_FLOOR,
        initial_variance: float = FILTER_NOISE_FLOOR,
        horizon: Optional[float] = None,
    ) -> "KalmanFilterConfig":
        """
        Build a derivative-chain (Taylor/Euler) model of the observed states.

        Parameters
        ----------
        observed_states : int
            Number of directly measured quantities.
        order : int
            Number of modelled time derivatives per observed quantity.
        time_step : float
            Discretisation (s).
        initial_state : array_like or None
            Initial state, zeros when None.
        process_noise, observation_noise, initial_variance : float
            Diagonal values of Q, R and P0.

        Returns
        -------
        KalmanFilterConfig
        """
        from assisted_mppi.navigation.kalman import euler_observation_matrix, euler_transition_matrix

        states = observed_states * (order + 1)
        if initial_state is None:
            initial_state = np.zeros(states)
        return cls(
            observed_states=observed_states,
            order=order,
            state_transition_matrix=euler_transition_matrix(observed_states, order, time_step),
            transition_covariance=np.eye(states) * process_noise,
            observation_matrix=euler_observation_matrix(observed_states, order),
            observation_covariance=np.eye(observed_states) * observation_noise,
            initial_state=initial_state,
            initial_covariance=np.eye(states) * initial_variance,
            time_step=time_step,
            horizon=horizon,
        )

    def validate(self) -> List[str]:
        errors = []
        if self.observed_states < 1:
            errors.append(f"observed_states must be positive, got {self.observed_states}")
            return errors
        if not 0 <= self.order <= MAX_FILTER_ORDER:
            errors.append(f"order must be in [0, {MAX_FILTER_ORDER}], got {self.order}")
            return errors

        s, o = self.states, self.observed_states
        expected = (
            ("state transition matrix", self.state_transition_matrix, s, s),
            ("transition covariance", self.transition_covariance, s, s),
            ("observation matrix", self.observation_matrix, o, s),
            ("observation covariance", self.observation_covariance, o, o),
            ("initial state", self.initial_state, s, 1),
            ("initial covariance", self.initial_covariance, s, s),
        )
        for name, value, rows, cols in expected:
            error = check_dimensions(name, value, rows, cols)
            if error:
                errors.append(error)
        return errors


# =============================================================================
# Forecasts
# =============================================================================

class ForecastType(Enum):
    """Available forecast strategies."""
    HOLD = "hold"
    AVERAGE = "average"
    KALMAN = "kalman"

    @classmethod
    def parse(cls, tag: Any) -> Optional["ForecastType"]:
        if isinstance(tag, cls):
            return tag
        name = str(tag).strip().lower()
        if name == "locf":
            return cls.HOLD
        for member in cls:
            if member.value == name:
                return member
        return None


@dataclass
class HoldForecastConfig:
    """Last observation carried forward."""
    states: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HoldForecastConfig":
        return _from_mapping(cls, data, "hold forecast")

    def validate(self) -> List[str]:
        if self.states < 1:
            return [f"hold forecast states must be positive, got {self.states}"]
        return []


@dataclass
class AverageForecastConfig:
    """Mean of the measurements received within a trailing window (s)."""
    window: float
    states: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AverageForecastConfig":
        return _from_mapping(cls, data, "average forecast")

    def validate(self) -> List[str]:
        errors = []
        if self.window <= 0.0:
            errors.append(f"average forecast window must be positive, got {self.window}")
        if self.states < 1:
            errors.append(f"average forecast states must be positive, got {self.states}")
        return errors


@dataclass
class KalmanForecastConfig:
    """Multi-step forecast by projecting a Kalman filter over a horizon."""
    observed_states: int
    order: int
    time_step: float
    horizon: float
    initial_state: Any = None
    process_noise: float = FILTER_NOISE_FLOOR
    observation_noise: float = FILTER_NOISE_FLOOR
    initial_variance: float = FILTER_NOISE_FLOOR

    def __post_init__(self):
        self.initial_state = _as_array(self.initial_state)

    @property
    def steps(self) -> int:
        return horizon_steps(self.horizon, self.time_step)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KalmanForecastConfig":
        return _from_mapping(cls, data, "kalman forecast")

    def validate(self) -> List[str]:
        errors = []
        if self.time_step <= 0.0:
            errors.append(f"kalman forecast time_step must be positive, got {self.time_step}")
        if self.horizon <= 0.0:
            errors.append(f"kalman forecast horizon must be positive, got {self.horizon}")
        if self.observed_states < 1:
            errors.append(f"kalman forecast observed_states must be positive, got {self.observed_states}")
        if not 0 <= self.order <= MAX_FILTER_ORDER:
            errors.append(f"kalman forecast order must be in [0, {MAX_FILTER_ORDER}], got {self.order}")
        if not errors and self.initial_state is not None:
            error = check_dimensions("initial state", self.initial_state, self.observed_states, 1)
            if error:
                errors.append(error)
        return errors

    def filter_config(self) -> KalmanFilterConfig:
        """The Kalman filter configuration shared by tracking and projection.

        ``initial_state`` holds the observed quantities only; their
        derivatives start at zero.
        """
        initial_state = np.zeros(self.observed_states * (self.order + 1))
        if self.initial_state is not None:
            initial_state[:self.observed_states] = self.initial_state.reshape(-1)
        return KalmanFilterConfig.euler(
            self.observed_states,
            self.order,
            self.time_step,
            initial_state=initial_state,
            process_noise=self.process_noise,
            observation_noise=self.observation_noise,
            initial_variance=self.initial_variance,
            horizon=self.horizon,
        )


@dataclass
class ForecastConfig:
    """
    Tagged choice of forecast strategy.

    ``type`` selects which of the sub-configurations is used; the others are
    ignored.  Accepted tags are ``hold`` (alias ``locf``), ``average`` and
    ``kalman``.
    """
    type: Any
    hold: Optional[HoldForecastConfig] = None
    average: Optional[AverageForecastConfig] = None
    kalman: Optional[KalmanForecastConfig] = None

    @property
    def kind(self) -> Optional[ForecastType]:
        return ForecastType.parse(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForecastConfig":
        return _from_mapping(
            cls, data, "forecast",
            {"hold": HoldForecastConfig, "average": AverageForecastConfig, "kalman": KalmanForecastConfig},
        )

    def selected(self):
        """The sub-configuration chosen by ``type`` (None if absent)."""
        kind = self.kind
        if kind is None:
            return None
        return getattr(self, kind.value)

    def validate(self) -> List[str]:
        kind = self.kind
        if kind is None:
            return [f"unknown forecast type '{self.type}'"]
        selected = self.selected()
        if selected is None:
            return [f"missing {kind.value} forecast configuration"]
        return selected.validate()


# =============================================================================
# Dynamics forecast
# =============================================================================

@dataclass
class DynamicsForecastConfig:
    """Forecast horizon of the dynamics and the wrench forecast driving it."""
    time_step: float
    horizon: float
    forecast: Optional[ForecastConfig] = None

    @property
    def steps(self) -> int:
        return horizon_steps(self.horizon, self.time_step)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DynamicsForecastConfig":
        return _from_mapping(cls, data, "dynamics forecast", {"forecast": ForecastConfig})

    def validate(self) -> List[str]:
        errors = []
        if self.time_step <= 0.0:
            errors.append(f"dynamics forecast time_step must be positive, got {self.time_step}")
        if self.horizon <= 0.0:
            errors.append(f"dynamics forecast horizon must be positive, got {self.horizon}")
        if self.forecast is None:
            errors.append("missing wrench forecast configuration")
        else:
            errors.extend(self.forecast.validate())
        return errors


# =============================================================================
# Loading
# =============================================================================

def load_config(config_path) -> Dict[str, Any]:
    """
    Load a controller configuration from a YAML file.

    Parameters
    ----------
    config_path : str or Path
        Path to the YAML document.

    Returns
    -------
    dict
        The parsed document; sections are passed to the ``from_dict``
        constructors above.
    """
    config_path = Path(config_path)
    logger.info("Loading configuration from: %s", config_path)
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path} does not contain a mapping")
    return config
