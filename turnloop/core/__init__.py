"""Core Layer — pure turn reconstruction, classification and history logic.

Invariants:
    - No module in core/ imports from services/ or infrastructure/
    - No IO, no sleeping, no network: functions are deterministic given inputs

Design Decisions:
    - Functional core separated from the async shell in services/
"""
