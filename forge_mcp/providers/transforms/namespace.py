import logging
from typing import List, Optional

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.error_handling.exceptions import ValidationError
from forge_mcp.providers.transforms.transform import (
    GetPrompt, GetResource, GetTemplate, GetTool,
    ListPrompts, ListResources, ListTemplates, ListTools, Transform,
)

logger = logging.getLogger(__name__)


class Namespace(Transform):
    """
    Prefixes names and URIs with a fixed segment.

    Tool and prompt names become ``<prefix>_<name>``; resource URIs and
    template patterns ``scheme://path`` become ``scheme://<prefix>/path``.
    Lookups strip the prefix again and miss when it is absent.
    """

    def __init__(self, prefix: str):
        if not prefix:
            raise ValidationError("Namespace prefix must not be empty")
        self.prefix = prefix
        self._name_prefix = f"{prefix}_"

    def transform_name(self, name: str) -> str:
        return self._name_prefix + name

    def reverse_name(self, name: str) -> Optional[str]:
        if name.startswith(self._name_prefix):
            return name[len(self._name_prefix):]
        return None

    def transform_uri(self, uri: str) -> str:
        scheme, sep, rest = uri.partition("://")
        if not sep:
            return f"{self.prefix}/{uri}"
        return f"{scheme}://{self.prefix}/{rest}"

    def reverse_uri(self, uri: str) -> Optional[str]:
        scheme, sep, rest = uri.partition("://")
        marker = f"{self.prefix}/"
        if not sep:
            return uri[len(marker):] if uri.startswith(marker) else None
        if not rest.startswith(marker):
            return None
        return f"{scheme}://{rest[len(marker):]}"

    def list_tools(self, call_next: ListTools) -> List[Tool]:
        return [t.renamed(self.transform_name(t.name)) for t in call_next()]

    def get_tool(self, name: str, call_next: GetTool) -> Optional[Tool]:
        original = self.reverse_name(name)
        if original is None:
            return None
        tool = call_next(original)
        return tool.renamed(name) if tool is not None else None

    def list_resources(self, call_next: ListResources) -> List[Resource]:
        return [r.with_uri(self.transform_uri(r.uri)) for r in call_next()]

    def get_resource(self, uri: str, call_next: GetResource) -> Optional[Resource]:
        original = self.reverse_uri(uri)
        if original is None:
            return None
        resource = call_next(original)
        return resource.with_uri(uri) if resource is not None else None

    def list_resource_templates(self, call_next: ListTemplates) -> List[ResourceTemplate]:
        return [t.with_uri_template(self.transform_uri(t.uri_template)) for t in call_next()]

    def get_resource_template(self, uri: str, call_next: GetTemplate) -> Optional[ResourceTemplate]:
        original = self.reverse_uri(uri)
        if original is None:
            return None
        template = call_next(original)
        if template is None:
            return None
        return template.with_uri_template(self.transform_uri(template.uri_template))

    def list_prompts(self, call_next: ListPrompts) -> List[Prompt]:
        return [p.renamed(self.transform_name(p.name)) for p in call_next()]

    def get_prompt(self, name: str, call_next: GetPrompt) -> Optional[Prompt]:
        original = self.reverse_name(name)
        if original is None:
            return None
        prompt = call_next(original)
        return prompt.renamed(name) if prompt is not None else None

    def __repr__(self) -> str:
        return f"Namespace(prefix={self.prefix!r})"
