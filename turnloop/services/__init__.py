"""Services Layer — retry policy, streaming driver, tool dispatch, conversation loop.

Invariants:
    - All suspension points (model calls, sleeps, timers) live here, never in core/
    - Tool dispatch uses an explicit registry (no auto-discovery)
"""
