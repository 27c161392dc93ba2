import logging
from typing import Iterable, List, Optional, Set

from forge_mcp.core.components import Prompt, Resource, ResourceTemplate, Tool
from forge_mcp.providers.transforms.transform import (
    GetPrompt, GetResource, GetTemplate, GetTool,
    ListPrompts, ListResources, ListTemplates, ListTools, Transform,
)

logger = logging.getLogger(__name__)


class Visibility(Transform):
    """
    Hides components by key.

    Keys are namespaced by kind: ``tool:<name>``, ``resource:<uri>``,
    ``template:<uri_template>`` and ``prompt:<name>``. A disabled key is
    always hidden; with an allowlist active (``enable(..., only=True)``)
    only allowlisted keys are shown.
    """

    def __init__(self):
        self._disabled: Set[str] = set()
        self._enabled: Set[str] = set()
        self._default_enabled = True

    def enable(self, keys: Iterable[str], only: bool = False) -> None:
        keys = list(keys)
        if only:
            self._default_enabled = False
            self._enabled = set(keys)
            for key in keys:
                self._disabled.discard(key)
            return
        for key in keys:
            self._disabled.discard(key)
            if not self._default_enabled:
                self._enabled.add(key)

    def disable(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._disabled.add(key)
            self._enabled.discard(key)

    def reset(self) -> None:
        self._disabled.clear()
        self._enabled.clear()
        self._default_enabled = True

    def is_enabled(self, key: str) -> bool:
        if key in self._disabled:
            return False
        if not self._default_enabled:
            return key in self._enabled
        return True

    def _visible(self, component) -> bool:
        return self.is_enabled(component.key)

    def list_tools(self, call_next: ListTools) -> List[Tool]:
        return [t for t in call_next() if self._visible(t)]

    def get_tool(self, name: str, call_next: GetTool) -> Optional[Tool]:
        if not self.is_enabled(f"tool:{name}"):
            return None
        return call_next(name)

    def list_resources(self, call_next: ListResources) -> List[Resource]:
        return [r for r in call_next() if self._visible(r)]

    def get_resource(self, uri: str, call_next: GetResource) -> Optional[Resource]:
        if not self.is_enabled(f"resource:{uri}"):
            return None
        return call_next(uri)

    def list_resource_templates(self, call_next: ListTemplates) -> List[ResourceTemplate]:
        return [t for t in call_next() if self._visible(t)]

    def get_resource_template(self, uri: str, call_next: GetTemplate) -> Optional[ResourceTemplate]:
        # keyed by template pattern, so the match has to happen first
        template = call_next(uri)
        if template is None or not self._visible(template):
            return None
        return template

    def list_prompts(self, call_next: ListPrompts) -> List[Prompt]:
        return [p for p in call_next() if self._visible(p)]

    def get_prompt(self, name: str, call_next: GetPrompt) -> Optional[Prompt]:
        if not self.is_enabled(f"prompt:{name}"):
            return None
        return call_next(name)

    def __repr__(self) -> str:
        return (f"Visibility(disabled={sorted(self._disabled)}, "
                f"enabled={sorted(self._enabled)}, default_enabled={self._default_enabled})")
