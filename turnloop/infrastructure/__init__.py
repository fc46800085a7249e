"""Infrastructure Layer — external service clients and cross-cutting concerns.

Invariants:
    - Infrastructure never imports from services/
    - All SDK failures leave this layer as classified ModelServiceError
"""
