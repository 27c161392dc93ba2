"""
Provider base class.
This module provides the list/get contract shared by every capability source
and the fold that composes a provider's transforms around it.
"""

import functools
import logging
from typing import Callable, Iterable, List, Optional

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.error_handling.exceptions import (
    NotFoundError,
    PromptNotFoundError,
    ResourceNotFoundError,
)
from forge_mcp.providers.transforms.transform import Transform
from forge_mcp.providers.transforms.visibility import Visibility

logger = logging.getLogger(__name__)


class Provider:
    """
    Base class for capability sources.

    Subclasses implement the ``_list_*`` / ``_get_*`` hooks. The public
    operations run those hooks through the registered transforms: the
    chain is folded in registration order, so the most recently added
    transform is outermost and runs first. A built-in Visibility transform
    is always registered first, closest to the base.
    """

    def __init__(self, transforms: Optional[Iterable[Transform]] = None):
        self.visibility = Visibility()
        self._transforms: List[Transform] = [self.visibility]
        for transform in transforms or []:
            self.add_transform(transform)

    @property
    def transforms(self) -> List[Transform]:
        return list(self._transforms)

    def add_transform(self, transform: Transform) -> None:
        self._transforms.append(transform)
        logger.debug(f"Added transform {transform!r} to {self!r}")

    # Visibility shortcuts

    def enable(self, keys: Iterable[str], only: bool = False) -> None:
        self.visibility.enable(keys, only=only)

    def disable(self, keys: Iterable[str]) -> None:
        self.visibility.disable(keys)

    def reset_visibility(self) -> None:
        self.visibility.reset()

    # Base operations, overridden by concrete providers

    def _list_tools(self) -> List[Tool]:
        return []

    def _get_tool(self, name: str) -> Optional[Tool]:
        for tool in self._list_tools():
            if tool.name == name:
                return tool
        return None

    def _list_resources(self) -> List[Resource]:
        return []

    def _get_resource(self, uri: str) -> Optional[Resource]:
        for resource in self._list_resources():
            if resource.uri == uri:
                return resource
        return None

    def _list_resource_templates(self) -> List[ResourceTemplate]:
        return []

    def _get_resource_template(self, uri: str) -> Optional[ResourceTemplate]:
        for template in self._list_resource_templates():
            if template.match(uri) is not None:
                return template
        return None

    def _list_prompts(self) -> List[Prompt]:
        return []

    def _get_prompt(self, name: str) -> Optional[Prompt]:
        for prompt in self._list_prompts():
            if prompt.name == name:
                return prompt
        return None

    # Chain composition

    def _compose(self, operation: str, base: Callable) -> Callable:
        chain = base
        for transform in self._transforms:
            chain = functools.partial(getattr(transform, operation), call_next=chain)
        return chain

    # Non-raising lookups through the chain

    def find_tool(self, name: str) -> Optional[Tool]:
        return self._compose("get_tool", self._get_tool)(name)

    def find_resource(self, uri: str) -> Optional[Resource]:
        return self._compose("get_resource", self._get_resource)(uri)

    def find_resource_template(self, uri: str) -> Optional[ResourceTemplate]:
        return self._compose("get_resource_template", self._get_resource_template)(uri)

    def find_prompt(self, name: str) -> Optional[Prompt]:
        return self._compose("get_prompt", self._get_prompt)(name)

    # Public contract

    def list_tools(self) -> List[Tool]:
        return self._compose("list_tools", self._list_tools)()

    def get_tool(self, name: str) -> Tool:
        tool = self.find_tool(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: {name}")
        return tool

    def list_resources(self) -> List[Resource]:
        return self._compose("list_resources", self._list_resources)()

    def get_resource(self, uri: str) -> Resource:
        resource = self.find_resource(uri)
        if resource is None:
            raise ResourceNotFoundError(f"Unknown resource: {uri}")
        return resource

    def list_resource_templates(self) -> List[ResourceTemplate]:
        return self._compose("list_resource_templates", self._list_resource_templates)()

    def get_resource_template(self, uri: str) -> ResourceTemplate:
        template = self.find_resource_template(uri)
        if template is None:
            raise ResourceNotFoundError(f"No resource template matches: {uri}")
        return template

    def list_prompts(self) -> List[Prompt]:
        return self._compose("list_prompts", self._list_prompts)()

    def get_prompt(self, name: str) -> Prompt:
        prompt = self.find_prompt(name)
        if prompt is None:
            raise PromptNotFoundError(f"Unknown prompt: {name}")
        return prompt

    def is_empty(self) -> bool:
        return not (self.list_tools() or self.list_resources()
                    or self.list_resource_templates() or self.list_prompts())

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
