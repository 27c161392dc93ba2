"""
Base class for provider transforms.

A transform decorates the eight list/get operations of a provider. Each
method receives ``call_next`` (the rest of the chain) and may filter or
relabel what it returns, call it with different arguments, or not call it
at all. Lookups signal a miss with ``None``.
"""

from typing import Callable, List, Optional

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool

ListTools = Callable[[], List[Tool]]
GetTool = Callable[[str], Optional[Tool]]
ListResources = Callable[[], List[Resource]]
GetResource = Callable[[str], Optional[Resource]]
ListTemplates = Callable[[], List[ResourceTemplate]]
GetTemplate = Callable[[str], Optional[ResourceTemplate]]
ListPrompts = Callable[[], List[Prompt]]
GetPrompt = Callable[[str], Optional[Prompt]]


class Transform:
    """Pass-through transform; subclasses override the operations they change."""

    def list_tools(self, call_next: ListTools) -> List[Tool]:
        return call_next()

    def get_tool(self, name: str, call_next: GetTool) -> Optional[Tool]:
        return call_next(name)

    def list_resources(self, call_next: ListResources) -> List[Resource]:
        return call_next()

    def get_resource(self, uri: str, call_next: GetResource) -> Optional[Resource]:
        return call_next(uri)

    def list_resource_templates(self, call_next: ListTemplates) -> List[ResourceTemplate]:
        return call_next()

    def get_resource_template(self, uri: str, call_next: GetTemplate) -> Optional[ResourceTemplate]:
        return call_next(uri)

    def list_prompts(self, call_next: ListPrompts) -> List[Prompt]:
        return call_next()

    def get_prompt(self, name: str, call_next: GetPrompt) -> Optional[Prompt]:
        return call_next(name)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
