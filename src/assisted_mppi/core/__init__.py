"""
===============================================================================
ASSISTED MPPI - Core Infrastructure
===============================================================================
Shared building blocks used by every other subpackage.

Modules:
    constants       -- Numeric defaults and bounded lookup tables
    config          -- Validated configuration dataclasses and YAML loading
    data_structures -- Read/write lock, measurement window, forecast buffer
===============================================================================
"""
