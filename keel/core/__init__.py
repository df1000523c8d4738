"""Core Layer — errors, domain enums, events and small pure helpers.

Invariants:
    - No module in core/ imports from schema/, models/, api/, or infrastructure/
    - Nothing in core/ performs IO
"""
