"""
Exception hierarchy for the Rolldeo table engine.

Every resolution-time failure surfaces as a subclass of ``RolldeoError`` so
callers (UI layer, MCP tools) can catch them generically and present a
message, while tests can assert on the precise kind.
"""

from __future__ import annotations

from typing import Any


class RolldeoError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary of additional error context
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnknownReferenceError(RolldeoError):
    """A table, template or variable referenced by id does not exist.

    Attributes:
        reference: The id (possibly alias-qualified) that failed to resolve
        kind: What was being looked up ("table", "template", "variable", ...)
    """

    def __init__(self, reference: str, kind: str = "table", details: dict[str, Any] | None = None):
        super().__init__(f"Unknown {kind} reference: '{reference}'", details)
        self.reference = reference
        self.kind = kind


class EmptyPoolError(RolldeoError):
    """A candidate set has zero total weight, so nothing can be selected."""

    def __init__(self, table_id: str, reason: str = "no selectable candidates"):
        super().__init__(f"Empty pool for table '{table_id}': {reason}", {"table_id": table_id})
        self.table_id = table_id


class MaxExpansionDepthExceeded(RolldeoError):
    """Recursive expansion went deeper than the configured ceiling.

    Usually the sign of a table or template that references itself.

    Attributes:
        depth: Depth at which expansion was aborted
        path: Chain of references that led there, outermost first
    """

    def __init__(self, depth: int, limit: int, path: tuple[str, ...] = ()):
        chain = " -> ".join(path) if path else "<root>"
        super().__init__(
            f"Expansion depth limit exceeded ({depth} > {limit}): {chain}",
            {"depth": depth, "limit": limit, "path": list(path)},
        )
        self.depth = depth
        self.limit = limit
        self.path = path


class ExpressionSyntaxError(RolldeoError):
    """A ``{{...}}`` expression could not be parsed."""
    pass


class DiceSyntaxError(ExpressionSyntaxError):
    """A dice expression is not valid notation."""
    pass


class MathEvaluationError(RolldeoError):
    """A ``{{math:...}}`` expression parsed but could not be computed."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Cannot evaluate math '{expression}': {reason}", {"expression": expression})
        self.expression = expression


class CollectionNotFoundError(RolldeoError):
    """The requested collection is not loaded in the engine."""

    def __init__(self, collection_id: str):
        super().__init__(f"Collection not found: {collection_id}", {"collection_id": collection_id})
        self.collection_id = collection_id


__all__ = [
    "RolldeoError",
    "UnknownReferenceError",
    "EmptyPoolError",
    "MaxExpansionDepthExceeded",
    "ExpressionSyntaxError",
    "DiceSyntaxError",
    "MathEvaluationError",
    "CollectionNotFoundError",
]
