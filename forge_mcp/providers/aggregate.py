import logging
from typing import Iterable, List, Optional

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.providers.provider import Provider
from forge_mcp.providers.transforms.transform import Transform

logger = logging.getLogger(__name__)


class AggregateProvider(Provider):
    """
    Combines several providers into one.

    Listings concatenate in provider order; lookups return the first
    provider's hit. Each child applies its own transforms first, then the
    aggregate's transforms wrap the combined result.
    """

    def __init__(self, providers: Optional[Iterable[Provider]] = None,
                 transforms: Optional[Iterable[Transform]] = None):
        self.providers: List[Provider] = list(providers or [])
        super().__init__(transforms=transforms)

    def add_provider(self, provider: Provider) -> None:
        self.providers.append(provider)
        logger.debug(f"Added provider {provider!r}")

    def _list_tools(self) -> List[Tool]:
        return [t for p in self.providers for t in p.list_tools()]

    def _get_tool(self, name: str) -> Optional[Tool]:
        for provider in self.providers:
            tool = provider.find_tool(name)
            if tool is not None:
                return tool
        return None

    def _list_resources(self) -> List[Resource]:
        return [r for p in self.providers for r in p.list_resources()]

    def _get_resource(self, uri: str) -> Optional[Resource]:
        for provider in self.providers:
            resource = provider.find_resource(uri)
            if resource is not None:
                return resource
        return None

    def _list_resource_templates(self) -> List[ResourceTemplate]:
        return [t for p in self.providers for t in p.list_resource_templates()]

    def _get_resource_template(self, uri: str) -> Optional[ResourceTemplate]:
        for provider in self.providers:
            template = provider.find_resource_template(uri)
            if template is not None:
                return template
        return None

    def _list_prompts(self) -> List[Prompt]:
        return [p for provider in self.providers for p in provider.list_prompts()]

    def _get_prompt(self, name: str) -> Optional[Prompt]:
        for provider in self.providers:
            prompt = provider.find_prompt(name)
            if prompt is not None:
                return prompt
        return None

    def __repr__(self) -> str:
        return f"AggregateProvider(providers={self.providers!r})"


class MountedAppProvider(Provider):
    """Exposes another app's components, read live from its provider."""

    def __init__(self, app, transforms: Optional[Iterable[Transform]] = None):
        self.app = app
        super().__init__(transforms=transforms)

    def _list_tools(self) -> List[Tool]:
        return self.app.provider.list_tools()

    def _get_tool(self, name: str) -> Optional[Tool]:
        return self.app.provider.find_tool(name)

    def _list_resources(self) -> List[Resource]:
        return self.app.provider.list_resources()

    def _get_resource(self, uri: str) -> Optional[Resource]:
        return self.app.provider.find_resource(uri)

    def _list_resource_templates(self) -> List[ResourceTemplate]:
        return self.app.provider.list_resource_templates()

    def _get_resource_template(self, uri: str) -> Optional[ResourceTemplate]:
        return self.app.provider.find_resource_template(uri)

    def _list_prompts(self) -> List[Prompt]:
        return self.app.provider.list_prompts()

    def _get_prompt(self, name: str) -> Optional[Prompt]:
        return self.app.provider.find_prompt(name)

    def __repr__(self) -> str:
        return f"MountedAppProvider(app={getattr(self.app, 'name', None)!r})"
