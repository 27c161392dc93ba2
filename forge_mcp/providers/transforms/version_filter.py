import logging
import re
from typing import List, Optional

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.error_handling.exceptions import ValidationError
from forge_mcp.providers.transforms.transform import (
    GetPrompt, GetResource, GetTemplate, GetTool,
    ListPrompts, ListResources, ListTemplates, ListTools, Transform,
)

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[.\-_]")


def _tokens(version: str) -> List[str]:
    return [t for t in _SEPARATORS.split(version) if t]


def _compare_token(a: str, b: str) -> int:
    if a.isdigit() and b.isdigit():
        a = a.lstrip("0") or "0"
        b = b.lstrip("0") or "0"
        # equal-length digit strings order lexically
        if len(a) != len(b):
            return -1 if len(a) < len(b) else 1
    if a == b:
        return 0
    return -1 if a < b else 1


def compare_versions(a: str, b: str) -> int:
    """
    Compare two version strings, returning -1, 0 or 1.

    Versions split on ``.``, ``-`` and ``_``. Numeric tokens compare as
    integers, other tokens as strings; missing trailing tokens count as "0".
    """
    left, right = _tokens(a), _tokens(b)
    for i in range(max(len(left), len(right))):
        result = _compare_token(left[i] if i < len(left) else "0",
                                right[i] if i < len(right) else "0")
        if result:
            return result
    return 0


class VersionFilter(Transform):
    """Keeps components whose version satisfies ``version_gte <= v < version_lt``.

    Components without a version are never filtered out.
    """

    def __init__(self, version_gte: Optional[str] = None, version_lt: Optional[str] = None):
        if version_gte is None and version_lt is None:
            raise ValidationError("VersionFilter requires at least one of version_gte or version_lt")
        self.version_gte = version_gte
        self.version_lt = version_lt

    def matches(self, version: Optional[str]) -> bool:
        if not version:
            return True
        if self.version_gte is not None and compare_versions(version, self.version_gte) < 0:
            return False
        if self.version_lt is not None and compare_versions(version, self.version_lt) >= 0:
            return False
        return True

    def _keep(self, component) -> bool:
        return self.matches(component.version)

    def list_tools(self, call_next: ListTools) -> List[Tool]:
        return [t for t in call_next() if self._keep(t)]

    def get_tool(self, name: str, call_next: GetTool) -> Optional[Tool]:
        tool = call_next(name)
        return tool if tool is not None and self._keep(tool) else None

    def list_resources(self, call_next: ListResources) -> List[Resource]:
        return [r for r in call_next() if self._keep(r)]

    def get_resource(self, uri: str, call_next: GetResource) -> Optional[Resource]:
        resource = call_next(uri)
        return resource if resource is not None and self._keep(resource) else None

    def list_resource_templates(self, call_next: ListTemplates) -> List[ResourceTemplate]:
        return [t for t in call_next() if self._keep(t)]

    def get_resource_template(self, uri: str, call_next: GetTemplate) -> Optional[ResourceTemplate]:
        template = call_next(uri)
        return template if template is not None and self._keep(template) else None

    def list_prompts(self, call_next: ListPrompts) -> List[Prompt]:
        return [p for p in call_next() if self._keep(p)]

    def get_prompt(self, name: str, call_next: GetPrompt) -> Optional[Prompt]:
        prompt = call_next(name)
        return prompt if prompt is not None and self._keep(prompt) else None

    def __repr__(self) -> str:
        return f"VersionFilter(version_gte={self.version_gte!r}, version_lt={self.version_lt!r})"
