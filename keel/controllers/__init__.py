"""Controller Layer — action decorators, controllers and action invocation.

Invariants:
    - Action metadata is declared by decorators and read-only once routes are built
"""
