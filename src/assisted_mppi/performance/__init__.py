"""
===============================================================================
ASSISTED MPPI - Performance
===============================================================================
Parallel evaluation of optimizer rollouts.

Modules:
    parallel -- Thread pool over per-worker dynamics/cost clones
===============================================================================
"""
