"""
===============================================================================
ASSISTED MPPI - Control Subsystem
===============================================================================
Sampling-based trajectory optimisation.

Modules:
    interfaces  -- Dynamics/Cost contracts and the quadratic limit penalty
    sampler     -- Multivariate Gaussian noise sampler
    mppi        -- MPPI trajectory optimizer
===============================================================================
"""
