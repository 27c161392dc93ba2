"""
In-memory provider.
Components are registered once at startup; replacing one swaps the whole
object, nothing is mutated in place.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Union

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.error_handling.exceptions import (
    NotFoundError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ValidationError,
)
from forge_mcp.providers.provider import Provider
from forge_mcp.providers.transforms.transform import Transform

logger = logging.getLogger(__name__)


class DuplicateBehavior(str, Enum):
    """What to do when a component key is registered twice."""
    ERROR = "error"
    WARN = "warn"
    REPLACE = "replace"
    IGNORE = "ignore"


class LocalProvider(Provider):
    """Provider backed by dictionaries keyed by name, URI or URI template."""

    def __init__(self,
                 on_duplicate: Union[DuplicateBehavior, str] = DuplicateBehavior.WARN,
                 transforms: Optional[Iterable[Transform]] = None):
        self._tools: Dict[str, Tool] = {}
        self._resources: Dict[str, Resource] = {}
        self._templates: Dict[str, ResourceTemplate] = {}
        self._prompts: Dict[str, Prompt] = {}
        self._warned: Set[str] = set()
        super().__init__(transforms=transforms)
        try:
            self.on_duplicate = DuplicateBehavior(on_duplicate)
        except ValueError as e:
            raise ValidationError(f"Invalid duplicate behavior: {on_duplicate}", original_exception=e)

    def _store(self, table: Dict, key: str, component) -> bool:
        """Insert ``component`` under ``key`` applying the duplicate policy.

        Returns True if the table now holds ``component``.
        """
        if key not in table:
            table[key] = component
            return True

        full_key = component.key
        if self.on_duplicate == DuplicateBehavior.ERROR:
            raise ValidationError(f"component already exists: {full_key}")
        if self.on_duplicate == DuplicateBehavior.REPLACE:
            table[key] = component
            logger.debug(f"Replaced component {full_key}")
            return True
        if self.on_duplicate == DuplicateBehavior.WARN and full_key not in self._warned:
            self._warned.add(full_key)
            logger.warning(f"Component already exists, keeping the existing one: {full_key}")
        return False

    def add_tool(self, tool: Tool) -> Tool:
        self._store(self._tools, tool.name, tool)
        return self._tools[tool.name]

    def add_resource(self, resource: Resource) -> Resource:
        self._store(self._resources, resource.uri, resource)
        return self._resources[resource.uri]

    def add_template(self, template: ResourceTemplate) -> ResourceTemplate:
        self._store(self._templates, template.uri_template, template)
        return self._templates[template.uri_template]

    def add_prompt(self, prompt: Prompt) -> Prompt:
        self._store(self._prompts, prompt.name, prompt)
        return self._prompts[prompt.name]

    def remove_tool(self, name: str) -> None:
        if self._tools.pop(name, None) is None:
            raise NotFoundError(f"Unknown tool: {name}")

    def remove_resource(self, uri: str) -> None:
        if self._resources.pop(uri, None) is None:
            raise ResourceNotFoundError(f"Unknown resource: {uri}")

    def remove_template(self, uri_template: str) -> None:
        if self._templates.pop(uri_template, None) is None:
            raise ResourceNotFoundError(f"Unknown resource template: {uri_template}")

    def remove_prompt(self, name: str) -> None:
        if self._prompts.pop(name, None) is None:
            raise PromptNotFoundError(f"Unknown prompt: {name}")

    def _list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def _get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def _list_resources(self) -> List[Resource]:
        return list(self._resources.values())

    def _get_resource(self, uri: str) -> Optional[Resource]:
        return self._resources.get(uri)

    def _list_resource_templates(self) -> List[ResourceTemplate]:
        return list(self._templates.values())

    def _list_prompts(self) -> List[Prompt]:
        return list(self._prompts.values())

    def _get_prompt(self, name: str) -> Optional[Prompt]:
        return self._prompts.get(name)

    def __repr__(self) -> str:
        return (f"LocalProvider(tools={len(self._tools)}, resources={len(self._resources)}, "
                f"templates={len(self._templates)}, prompts={len(self._prompts)})")
