"""Schema Layer — relation resolution, eager expressions and JSON-schema keywords.

Invariants:
    - Pure compile-time logic: no IO, no database access
"""
