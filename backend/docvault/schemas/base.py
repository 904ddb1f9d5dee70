"""camelCase base models for everything the API returns.

Python code works with snake_case dataclasses from the services layer; these
bases turn them into camelCase JSON and never expose anything the source
object does not declare.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Plain camelCase model, built from keyword arguments (error bodies)."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    def to_json_dict(self) -> dict:
        """camelCase dict without unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class CamelORMModel(CamelModel):
    """Response model read from coordinator result dataclasses by attribute."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }
