"""
===============================================================================
ASSISTED MPPI - Dynamics and Cost Contracts
===============================================================================
Abstract contracts for the external collaborators the optimizer rolls out.

Every rollout worker owns its own copy of the dynamics and the cost, so
implementations must support independent duplication through ``copy()``.
The default implementation is a deep copy; override it when an instance
holds resources that must be shared (e.g. a forecast handle) or rebuilt.
===============================================================================
"""

import copy
from abc import ABC, abstractmethod

import numpy as np


class Dynamics(ABC):
    """Discrete-time system stepped by the optimizer."""

    @abstractmethod
    def state_dof(self) -> int:
        """Dimension of the state vector."""

    @abstractmethod
    def control_dof(self) -> int:
        """Dimension of the control vector."""

    @abstractmethod
    def set(self, state: np.ndarray) -> None:
        """Reset the system to ``state``."""

    @abstractmethod
    def step(self, control: np.ndarray, dt: float) -> np.ndarray:
        """Apply ``control`` for ``dt`` seconds and return the new state."""

    def copy(self) -> "Dynamics":
        """Independent duplicate for use by another rollout worker."""
        return copy.deepcopy(self)


class Cost(ABC):
    """Per-step cost accumulated along a rollout."""

    @abstractmethod
    def state_dof(self) -> int:
        ...

    @abstractmethod
    def control_dof(self) -> int:
        ...

    @abstractmethod
    def get(self, state: np.ndarray, control: np.ndarray, dt: float) -> float:
        """Non-negative cost of reaching ``state`` under ``control`` over ``dt``."""

    def reset(self, time: float) -> None:
        """Called at the start of every rollout with the rollout start time."""

    def copy(self) -> "Cost":
        return copy.deepcopy(self)


class QuadraticPenalty:
    """
    Quadratic penalty on exceeding a scalar limit.

    ``penalty(value)`` is zero while ``value`` is within the limit and
    ``constant + quadratic * (value - limit)**2`` beyond it.  With
    ``upper=False`` the limit is a lower bound.

    Parameters
    ----------
    limit : float
        Threshold at which the penalty starts.
    constant : float
        Step added as soon as the limit is violated.
    quadratic : float
        Weight of the squared violation.
    upper : bool
        True if ``limit`` is an upper bound.
    """

    def __init__(self, limit: float, constant: float, quadratic: float, upper: bool = True):
        self.limit = float(limit)
        self.constant = float(constant)
        self.quadratic = float(quadratic)
        self.upper = upper

    def violation(self, value: float) -> float:
        """Distance past the limit (0 when within it)."""
        excess = value - self.limit if self.upper else self.limit - value
        return max(excess, 0.0)

    def penalty(self, value: float) -> float:
        excess = self.violation(value)
        if excess <= 0.0:
            return 0.0
        return self.constant + self.quadratic * excess * excess

    def __call__(self, value: float) -> float:
        return self.penalty(value)

    def __repr__(self) -> str:
        bound = "upper" if self.upper else "lower"
        return (
            f"QuadraticPenalty({bound}={self.limit}, constant={self.constant}, "
            f"quadratic={self.quadratic})"
        )
