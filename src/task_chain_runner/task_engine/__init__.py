"""Task store, dependency graph analysis, and dynamic task insertion.

The engine wraps the YAML-backed :class:`TaskStore` with reference checks,
cycle detection and completed-task immutability; :mod:`.graph` holds the pure
analysis functions and :mod:`.adjuster` inserts tasks into a live plan.
"""
