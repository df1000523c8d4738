"""Model Layer — declarative models, their compiled definitions and queries.

Invariants:
    - Every query is bound to an explicit context; nothing is bound class-wide
"""
