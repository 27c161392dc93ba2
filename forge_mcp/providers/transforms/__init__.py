"""
Transforms wrap a provider's list/get operations.
"""

from .transform import Transform
from .visibility import Visibility
from .namespace import Namespace
from .version_filter import VersionFilter, compare_versions
from .tool_transform import ToolTransform

__all__ = [
    'Transform',
    'Visibility',
    'Namespace',
    'VersionFilter',
    'compare_versions',
    'ToolTransform',
]
