"""
===============================================================================
ASSISTED MPPI - Numeric Constants and Defaults
===============================================================================
Central repository for the numeric defaults shared by the optimizer, the
estimators and the forecast strategies.  Optimizer defaults match the
controller's shipped tuning.
===============================================================================
"""

import math


# =============================================================================
# TRAJECTORY OPTIMIZER
# =============================================================================
STATIC_ROLLOUTS = 2                    # zero-noise + negated optimal
DEFAULT_ROLLOUTS = 20
DEFAULT_KEEP_BEST_ROLLOUTS = 10
DEFAULT_STEP_SIZE = 0.1                # s
DEFAULT_HORIZON = 1.0                  # s
DEFAULT_GRADIENT_STEP = 1.0
DEFAULT_COST_SCALE = 10.0
DEFAULT_COST_DISCOUNT_FACTOR = 1.0

# Slack used when converting a horizon into a whole number of steps, so that
# 1.1 / 0.1 = 11.000000000000002 is still 11 steps.
STEP_ROUNDING_TOLERANCE = 1e-9

# =============================================================================
# KALMAN FILTER / FORECAST
# =============================================================================
FILTER_NOISE_FLOOR = 1e-8              # process, observation, initial variance
MAX_FILTER_ORDER = 8                   # highest modelled derivative

# i! for i in [0, MAX_FILTER_ORDER]
FACTORIALS = tuple(math.factorial(i) for i in range(MAX_FILTER_ORDER + 1))

# =============================================================================
# DYNAMICS FORECAST
# =============================================================================
WRENCH_DOF = 6                         # force (3) + torque (3)


def horizon_steps(horizon: float, step: float) -> int:
    """Number of whole steps needed to cover ``horizon`` at ``step``."""
    return max(1, int(math.ceil(horizon / step - STEP_ROUNDING_TOLERANCE)))
