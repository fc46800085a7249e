"""turnloop — multi-turn language-model conversation engine.

Invariants:
    - Package root contains no executable code (import side-effects prohibited)
    - Public entry point is turnloop.services.conversation_orchestrator

Design Decisions:
    - Empty __init__.py: explicit imports only, no star exports
"""
