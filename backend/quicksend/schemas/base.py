"""Base schema classes with camelCase alias generation.

Backend Python code stays snake_case. API JSON in and out is camelCase,
which is what the mobile client speaks.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case, outputs camelCase."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
    }
