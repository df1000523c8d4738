"""Error Hierarchy — typed, categorized exceptions for every keel failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - to_response() produces the `{error, details?}` REST envelope
    - Compile-time errors (RelationError, SchemaError) abort application startup
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with KeelError base: the pipeline's error stage
      serializes every structured error the same way
    - ErrorContext as dataclass: observability data travels with the error,
      not with the logger
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    RELATION = "relation"
    SCHEMA = "schema"
    QUERY = "query"
    RESOURCE_NOT_FOUND = "resource_not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    AUTHORIZATION = "authorization"
    DATABASE = "database"
    CONTROLLER = "controller"
    MODEL = "model"
    CONFLICT = "conflict"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    model: str | None = None
    relation: str | None = None
    path: str | None = None
    debug_info: dict[str, Any] | None = None


class KeelError(Exception):
    """Base exception for all structured (response) errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 400,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status
        self.details = details
        self.headers = headers or {}

    @property
    def status(self) -> int:
        return self.http_status

    def to_response(self) -> dict:
        """Convert to the standardized REST error envelope."""
        response: dict[str, Any] = {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
            },
        }
        if self.details is not None:
            response["details"] = self.details
        return response


# ─── Request Errors (400-level) ─────────────────────────────────

class NotFoundError(KeelError):
    """Requested resource or route does not exist."""
    def __init__(self, message: str = "Not Found", context: ErrorContext | None = None):
        super().__init__(
            message, "NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.WARNING, context, 404,
        )


class MethodNotAllowedError(KeelError):
    """Path exists but not for the requested verb."""
    def __init__(self, allowed: list[str], context: ErrorContext | None = None):
        super().__init__(
            "Method Not Allowed", "METHOD_NOT_ALLOWED",
            ErrorCategory.METHOD_NOT_ALLOWED, ErrorSeverity.WARNING, context, 405,
            headers={"Allow": ", ".join(allowed)},
        )
        self.allowed = allowed


class ValidationError(KeelError):
    """Data failed schema validation.

    `errors` is a raw validator error list (dicts with `message`, `keyword`,
    `params`, `data_path`). It is converted into a details map keyed by data
    path, by the missing / additional property name, or by a sequential
    index when neither is available.
    """
    def __init__(
        self,
        errors: list[dict] | None = None,
        message: str = "The provided data is not valid",
        context: ErrorContext | None = None,
        http_status: int = 400,
    ):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, http_status,
            details=convert_validation_errors(errors) if errors else None,
        )
        self.errors = errors or []


def convert_validation_errors(errors: list[dict]) -> dict[str, list[dict]]:
    """Convert a raw validator error list into a map keyed by data path."""
    details: dict[str, list[dict]] = {}
    index = 0
    for error in errors:
        params = error.get("params") or {}
        key = (
            (error.get("data_path") or "").lstrip(".")
            or params.get("missing_property")
            or params.get("additional_property")
        )
        if not key:
            key = str(index)
            index += 1
        details.setdefault(key, []).append({
            "message": error.get("message"),
            "keyword": error.get("keyword"),
            "params": params,
        })
    return details


class QueryError(KeelError):
    """Query could not be built from the given arguments."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "QUERY_ERROR", ErrorCategory.QUERY,
            ErrorSeverity.ERROR, context, 400,
        )


class ModelError(KeelError):
    """Model-level misuse (bad reference ids, unknown properties)."""
    def __init__(self, model: str, message: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.model = model
        super().__init__(
            f"Model {model}: {message}", "MODEL_ERROR", ErrorCategory.MODEL,
            ErrorSeverity.ERROR, ctx, 400,
        )


class ControllerError(KeelError):
    """Controller misconfiguration or misuse."""
    def __init__(self, controller: object, message: str, context: ErrorContext | None = None):
        name = controller.__name__ if isinstance(controller, type) else type(controller).__name__
        super().__init__(
            f"Controller {name}: {message}", "CONTROLLER_ERROR",
            ErrorCategory.CONTROLLER, ErrorSeverity.ERROR, context, 400,
        )


class AuthorizationError(KeelError):
    """Action's authorization predicate rejected the request."""
    def __init__(self, message: str = "Unauthorized", context: ErrorContext | None = None):
        super().__init__(
            message, "UNAUTHORIZED", ErrorCategory.AUTHORIZATION,
            ErrorSeverity.WARNING, context, 403,
        )


# ─── Compile-time Errors (fatal at boot) ────────────────────────

class RelationError(KeelError):
    """Relation or eager expression could not be resolved."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "RELATION_ERROR", ErrorCategory.RELATION,
            ErrorSeverity.ERROR, context, 400,
        )


class SchemaError(KeelError):
    """Schema or keyword configuration is invalid."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "SCHEMA_ERROR", ErrorCategory.SCHEMA,
            ErrorSeverity.CRITICAL, context, 500,
        )


class MissingReferenceError(SchemaError):
    """A `$ref` could not be resolved against the local schema store."""
    def __init__(self, ref: str, context: ErrorContext | None = None):
        super().__init__(f"Can't resolve reference {ref}", context)
        self.ref = ref


# ─── Infrastructure Errors ──────────────────────────────────────

class DatabaseError(KeelError):
    """Database operation failed."""
    def __init__(
        self,
        message: str,
        operation: str,
        http_status: int = 500,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Database {operation} failed: {message}",
            "DATABASE_ERROR",
            ErrorCategory.CONFLICT if http_status == 409 else ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL if http_status >= 500 else ErrorSeverity.ERROR,
            context, http_status,
        )
        self.operation = operation
