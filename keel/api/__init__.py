"""API Layer — request context, routing, pipeline middleware, sessions and HTTP error mapping.

Invariants:
    - Nothing here builds SQL; data access goes through ctx.models
"""
