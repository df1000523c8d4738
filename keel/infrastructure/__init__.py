"""Infrastructure Layer — database engine, transactions and logging setup.

Invariants:
    - SQLAlchemy exceptions never leave this layer unwrapped (see DatabaseError)
"""
