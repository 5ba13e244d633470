"""Base schema classes with camelCase alias generation.

Backend Python code stays snake_case. API JSON and stored metadata documents
use camelCase, matching the keys clients already send and read.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, outputs camelCase with by_alias."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }
