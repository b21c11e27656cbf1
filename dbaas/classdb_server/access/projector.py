"""
Projection of store documents into public objects.

Applies the field translation from transform.untransform_object and then
per-class redaction: user records hide their credentials (authData and
sessionToken) from everyone except master callers and the user itself.
"""

from __future__ import annotations

from typing import Any, Dict, Sequence

from ..schema import Schema
from ..storage.base import Document
from .transform import untransform_object

USER_CLASS = "_User"
SESSION_CLASS = "_Session"

# Fields of a user record visible only to master callers and the user
USER_PRIVATE_FIELDS = ("authData", "sessionToken")


class ResponseProjector:
    """Turns store documents into public objects for one request."""

    def __init__(self, schema: Schema, is_master: bool, acl_group: Sequence[str]) -> None:
        self.schema = schema
        self.is_master = is_master
        self.acl_group = list(acl_group)

    def project(self, class_name: str, doc: Document) -> Dict[str, Any]:
        obj = untransform_object(self.schema, class_name, doc)
        if class_name != USER_CLASS:
            return obj
        if self.is_master or obj.get("objectId") in self.acl_group:
            return obj
        for key in USER_PRIVATE_FIELDS:
            obj.pop(key, None)
        return obj
