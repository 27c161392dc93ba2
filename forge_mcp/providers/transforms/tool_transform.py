import logging
from typing import Dict, List, Optional

from forge_mcp.core.components import Tool
from forge_mcp.error_handling.exceptions import ValidationError
from forge_mcp.providers.transforms.transform import GetTool, ListTools, Transform
from forge_mcp.tools.tool_transform import ToolTransformConfig

logger = logging.getLogger(__name__)


class ToolTransform(Transform):
    """
    Applies per-tool rename/description/argument rules.

    ``transforms`` maps the original tool name to its config. Two configs
    may not produce the same exposed name.
    """

    def __init__(self, transforms: Dict[str, ToolTransformConfig]):
        self.transforms = dict(transforms)
        self._reverse: Dict[str, str] = {}
        for original, config in self.transforms.items():
            config.validate()
            target = config.name or original
            existing = self._reverse.get(target)
            if existing is not None:
                raise ValidationError(
                    f"ToolTransform has duplicate target name '{target}': "
                    f"both '{existing}' and '{original}' map to it"
                )
            self._reverse[target] = original

    def _apply(self, tool: Tool) -> Optional[Tool]:
        config = self.transforms.get(tool.name)
        if config is None:
            return tool
        if config.enabled is False:
            return None
        return config.apply(tool)

    def list_tools(self, call_next: ListTools) -> List[Tool]:
        result = []
        for tool in call_next():
            transformed = self._apply(tool)
            if transformed is not None:
                result.append(transformed)
        return result

    def get_tool(self, name: str, call_next: GetTool) -> Optional[Tool]:
        original = self._reverse.get(name, name)
        tool = call_next(original)
        if tool is None:
            return None
        transformed = self._apply(tool)
        # a renamed tool is no longer reachable under its old name
        if transformed is None or transformed.name != name:
            return None
        return transformed

    def __repr__(self) -> str:
        return f"ToolTransform(tools={sorted(self.transforms)})"
