"""
===============================================================================
ASSISTED MPPI - Simulation
===============================================================================
Forward simulation of the robot under forecast disturbances.

Modules:
    dynamics_forecast -- Disturbance-aware prediction cache read by costs
===============================================================================
"""
