"""
Tool transformation helpers.
"""

from .tool_transform import (
    NOT_SET,
    ArgTransform,
    ToolTransformConfig,
    build_transformed_schema,
    create_transformed_tool,
    transform_args_to_parent,
)

__all__ = [
    'NOT_SET',
    'ArgTransform',
    'ToolTransformConfig',
    'build_transformed_schema',
    'create_transformed_tool',
    'transform_args_to_parent',
]
