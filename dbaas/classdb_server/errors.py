"""
Error types for ClassDB Server.

This module defines every exception the data access layer surfaces:
- ClassDbError: Base exception
- InvalidClassName: Malformed class or collection identifier
- PermissionDenied: Class-level permission check failed
- ObjectNotFound: A mutation matched no document
- ValidationError: Object, query or options violate the schema contract
- AdapterError: Failure reported by the storage adapter

Invariants:
    - All errors inherit from ClassDbError
    - Every error carries a stable machine-readable code and a message
    - Adapter errors keep the adapter's own code in adapter_code

How to change safely:
    - Never change an existing code string, callers map them to HTTP statuses
    - Add new error types as subclasses of ClassDbError
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ClassDbError(Exception):
    """Base exception for all ClassDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CLASSDB_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a response-friendly dictionary."""
        return {"code": self.code, "error": self.message}


class InvalidClassName(ClassDbError):
    """Class name is not a valid identifier."""

    def __init__(self, class_name: str) -> None:
        super().__init__(
            f"invalid className: {class_name}",
            code="INVALID_CLASS_NAME",
            details={"class_name": class_name},
        )
        self.class_name = class_name


class PermissionDenied(ClassDbError):
    """The caller's group is not allowed to perform the operation.

    Raised when:
    - Class-level permissions exist for the operation
    - Neither the public group nor any caller group is granted
    - A master-only operation is attempted with an ACL group
    """

    def __init__(
        self,
        class_name: str,
        operation: str,
        message: str = "Permission denied for this action.",
    ) -> None:
        super().__init__(
            message,
            code="PERMISSION_DENIED",
            details={"class_name": class_name, "operation": operation},
        )
        self.class_name = class_name
        self.operation = operation


class ObjectNotFound(ClassDbError):
    """No document matched a mutation."""

    def __init__(self, message: str = "Object not found.", class_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="OBJECT_NOT_FOUND",
            details={"class_name": class_name},
        )
        self.class_name = class_name


class ValidationError(ClassDbError):
    """Object, query or options failed validation.

    Raised when:
    - A field value's type disagrees with the schema
    - A key name is not a valid field name
    - A required column is missing on create
    - Request options are malformed
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class InvalidKeyName(ValidationError):
    """Key is not a valid field name."""

    def __init__(self, key: str) -> None:
        super().__init__(f"invalid field name: {key}", field_name=key, code="INVALID_KEY_NAME")


class IncorrectType(ValidationError):
    """Field value type conflicts with the declared schema type."""

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(message, field_name=field_name, code="INCORRECT_TYPE")


class AdapterError(ClassDbError):
    """Failure reported by a storage adapter.

    The controller never wraps these; they reach the caller unchanged
    except for the missing geo index case, which is healed in place.

    Attributes:
        adapter_code: Store-specific numeric code (e.g. 17007, 11000)
        collection: Collection the operation targeted
    """

    def __init__(
        self,
        message: str,
        adapter_code: Optional[int] = None,
        collection: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="ADAPTER_ERROR",
            details={"adapter_code": adapter_code, "collection": collection},
        )
        self.adapter_code = adapter_code
        self.collection = collection
