"""Domain Types — enums that replace bare strings across the codebase.

Invariants:
    - All valid states encoded as Enums, no raw string matching
    - str Enums serialize to JSON without custom encoders
"""

from enum import Enum


class RelationKind(str, Enum):
    """The five relation kinds a model may declare."""
    BELONGS_TO_ONE = "belongsToOne"
    HAS_ONE = "hasOne"
    HAS_ONE_THROUGH = "hasOneThrough"
    HAS_MANY = "hasMany"
    MANY_TO_MANY = "manyToMany"

    @property
    def is_one_to_one(self) -> bool:
        return self in (
            RelationKind.BELONGS_TO_ONE,
            RelationKind.HAS_ONE,
            RelationKind.HAS_ONE_THROUGH,
        )


class TransactionState(str, Enum):
    """Per-request transaction lifecycle: NONE → STARTED → COMMITTED | ROLLED_BACK."""
    NONE = "none"
    STARTED = "started"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class HttpVerb(str, Enum):
    """Verbs a controller action may be routed on."""
    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"
