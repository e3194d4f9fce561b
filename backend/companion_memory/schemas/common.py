from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class APIModel(BaseModel):
    """Base for request and response bodies.

    Responses are built straight from ORM rows and frozen record dataclasses.
    """

    model_config = ConfigDict(
        from_attributes=True,
        protected_namespaces=(),
        str_strip_whitespace=True,
    )
