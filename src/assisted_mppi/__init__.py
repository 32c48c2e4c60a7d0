"""
===============================================================================
ASSISTED MPPI - Decision Core
===============================================================================
Sampling-based receding-horizon trajectory optimisation (MPPI) paired with
linear-Gaussian estimation and disturbance forecasting for an assistive
robot controller.

Subpackages:
    core        -- Constants, configuration dataclasses, shared buffers/locks
    control     -- Gaussian sampler, MPPI trajectory optimizer, contracts
    navigation  -- Kalman filter and forecast strategies
    simulation  -- Dynamics forecast (disturbance-aware rollout cache)
    performance -- Thread-parallel rollout evaluation
===============================================================================
"""

__version__ = "0.3.0"
