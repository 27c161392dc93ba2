"""
Capability providers: where tools, resources, templates and prompts come from.
"""

from .provider import Provider
from .local_provider import DuplicateBehavior, LocalProvider
from .aggregate import AggregateProvider, MountedAppProvider

__all__ = [
    'Provider',
    'DuplicateBehavior',
    'LocalProvider',
    'AggregateProvider',
    'MountedAppProvider',
]
