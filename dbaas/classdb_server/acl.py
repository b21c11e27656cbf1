"""
Access control for ClassDB.

This module handles both layers of access control:
- Class-level permissions: which groups may get/find/create/update/delete
  on a class, stored in the class's _SCHEMA metadata
- Row-level permissions: per-object read (_rperm) and write (_wperm)
  group lists, enforced by conjoining filters onto store queries

Invariants:
    - Master callers bypass both layers
    - No class permissions for an operation means the operation is open
    - "*" grants a permission to every caller, including anonymous ones
    - A missing _rperm/_wperm means the object is unrestricted
    - Class-level checks are performed before any data access

How to change safely:
    - New operations must be additive, stored schemas reference them
    - Keep filter shapes stable, adapters may index on _rperm/_wperm
    - Test permission checks thoroughly before deployment
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import PermissionDenied

logger = logging.getLogger(__name__)

PUBLIC = "*"
READ_PERMISSIONS = "_rperm"
WRITE_PERMISSIONS = "_wperm"


class ClassOperation(Enum):
    """Operations guarded by class-level permissions."""

    GET = "get"
    FIND = "find"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ADD_FIELD = "addField"


class AclManager:
    """Evaluates class permissions and builds row-level filters.

    Thread safety:
        This class is stateless and thread-safe.

    Example:
        >>> acl_manager = AclManager()
        >>> perms = {"find": {"role:admin": True}}
        >>> acl_manager.check_class_permission(perms, ["u1"], ClassOperation.FIND)
        False
        >>> acl_manager.read_filter(["u1"])
        {'$or': [{'_rperm': {'$exists': False}}, {'_rperm': {'$in': ['*']}}, {'_rperm': {'$in': ['u1']}}]}
    """

    def check_class_permission(
        self,
        class_permissions: Optional[Dict[str, Dict[str, Any]]],
        acl_group: Sequence[str],
        operation: ClassOperation,
    ) -> bool:
        """Check if any caller group may perform an operation on a class.

        Args:
            class_permissions: operation -> {group: granted} from the schema
            acl_group: Caller's groups (empty for anonymous)
            operation: Operation being attempted

        Returns:
            True if the operation is allowed
        """
        if not class_permissions:
            return True
        if operation.value not in class_permissions:
            return True
        perms = class_permissions[operation.value] or {}
        if perms.get(PUBLIC):
            return True
        return any(perms.get(group) for group in acl_group)

    def check_class_permission_or_raise(
        self,
        class_name: str,
        class_permissions: Optional[Dict[str, Dict[str, Any]]],
        acl_group: Sequence[str],
        operation: ClassOperation,
    ) -> None:
        """Check class permission and raise if denied.

        Raises:
            PermissionDenied: If no caller group is granted the operation
        """
        if not self.check_class_permission(class_permissions, acl_group, operation):
            logger.debug(
                "Class permission denied",
                extra={"class_name": class_name, "operation": operation.value},
            )
            raise PermissionDenied(class_name, operation.value)

    def read_filter(self, acl_group: Sequence[str]) -> Dict[str, Any]:
        """Disjunction matching objects the caller may read."""
        parts: List[Dict[str, Any]] = [
            {READ_PERMISSIONS: {"$exists": False}},
            {READ_PERMISSIONS: {"$in": [PUBLIC]}},
        ]
        for group in acl_group:
            parts.append({READ_PERMISSIONS: {"$in": [group]}})
        return {"$or": parts}

    def write_filter(self, acl_group: Sequence[str]) -> Dict[str, Any]:
        """Disjunction matching objects the caller may write."""
        parts: List[Dict[str, Any]] = [{WRITE_PERMISSIONS: {"$exists": False}}]
        for group in acl_group:
            parts.append({WRITE_PERMISSIONS: {"$in": [group]}})
        return {"$or": parts}

    def restrict_read(self, query: Dict[str, Any], acl_group: Sequence[str]) -> Dict[str, Any]:
        return {"$and": [query, self.read_filter(acl_group)]}

    def restrict_write(self, query: Dict[str, Any], acl_group: Sequence[str]) -> Dict[str, Any]:
        return {"$and": [query, self.write_filter(acl_group)]}

    def acl_to_permissions(self, acl: Dict[str, Dict[str, bool]]) -> Tuple[List[str], List[str]]:
        """Split a public ACL object into read and write group lists.

        Example:
            >>> AclManager().acl_to_permissions({"*": {"read": True}, "u1": {"write": True}})
            (['*'], ['u1'])
        """
        read: List[str] = []
        write: List[str] = []
        for group, grants in acl.items():
            if grants.get("read"):
                read.append(group)
            if grants.get("write"):
                write.append(group)
        return read, write

    def permissions_to_acl(
        self,
        read: Optional[Sequence[str]],
        write: Optional[Sequence[str]],
    ) -> Dict[str, Dict[str, bool]]:
        """Rebuild the public ACL object from stored group lists."""
        acl: Dict[str, Dict[str, bool]] = {}
        for group in read or []:
            acl.setdefault(group, {})["read"] = True
        for group in write or []:
            acl.setdefault(group, {})["write"] = True
        return acl

    def validate_acl(self, acl: Any) -> List[str]:
        """Validate a public ACL object.

        Returns:
            List of validation errors (empty if valid)
        """
        if not isinstance(acl, dict):
            return ["ACL must be an object"]

        errors = []
        for group, grants in acl.items():
            if not isinstance(grants, dict):
                errors.append(f"Entry {group}: must be an object")
                continue
            for permission, value in grants.items():
                if permission not in ("read", "write"):
                    errors.append(f"Entry {group}: invalid permission '{permission}'")
                elif not isinstance(value, bool):
                    errors.append(f"Entry {group}: '{permission}' must be a boolean")
        return errors


# Default ACL manager instance
_default_manager: AclManager | None = None


def get_acl_manager() -> AclManager:
    """Get the default ACL manager instance."""
    global _default_manager
    if _default_manager is None:
        _default_manager = AclManager()
    return _default_manager
