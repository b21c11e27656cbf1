"""
Request options for data access operations.

The options bag carries the caller's access-control group and paging:

    {"acl": ["u1", "role:editors"], "skip": 20, "limit": 10, "sort": {"score": -1}}

The presence of "acl" is meaningful on its own: a bag without the key is a
master request that bypasses every permission check, while "acl": None or
"acl": [] is an anonymous, non-master caller.
"""

from __future__ import annotations

from typing import Any, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError


class QueryOptions(BaseModel):
    """Validated options for find/create/update/destroy."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    acl: list[str] | None = Field(None, description="Caller's access-control groups")
    skip: int | None = Field(None, ge=0, description="Results to skip")
    limit: int | None = Field(None, ge=0, description="Maximum results")
    sort: dict[str, int] | None = Field(None, description="field -> 1 or -1")
    count: bool = Field(False, description="Count instead of returning results")

    @field_validator("sort")
    @classmethod
    def _check_sort_directions(cls, value: dict[str, int] | None) -> dict[str, int] | None:
        if value is not None:
            for key, direction in value.items():
                if direction not in (1, -1):
                    raise ValueError(f"sort direction for {key} must be 1 or -1")
        return value

    @property
    def is_master(self) -> bool:
        """Master callers omit the acl key entirely."""
        return "acl" not in self.model_fields_set

    @property
    def acl_group(self) -> list[str]:
        return list(self.acl or [])

    @classmethod
    def parse(cls, options: Union[QueryOptions, Mapping[str, Any], None]) -> QueryOptions:
        """Validate a raw options bag.

        Raises:
            ValidationError: If any option has the wrong shape
        """
        if isinstance(options, QueryOptions):
            return options
        try:
            return cls.model_validate(dict(options or {}))
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("invalid options", errors=errors) from e


MASTER = QueryOptions()
