"""
===============================================================================
ASSISTED MPPI - Navigation Subsystem
===============================================================================
State estimation and forecasting of measured disturbances.

Modules:
    kalman    -- Linear Kalman filter and derivative-chain model builders
    forecast  -- Hold (LOCF), windowed-average and Kalman forecast strategies
===============================================================================
"""
