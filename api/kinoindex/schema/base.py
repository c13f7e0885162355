"""Shared schema base classes for service responses."""

from pydantic import BaseModel


class ORMModel(BaseModel):
    """Base model that reads attributes from ORM rows and dataclasses."""

    model_config = {"from_attributes": True}
