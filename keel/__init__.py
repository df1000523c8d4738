"""keel — declarative-schema web framework.

Invariants:
    - Package root contains no executable code (import side-effects prohibited)
    - Public entry points are imported from their modules explicitly
"""
