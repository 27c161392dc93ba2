"""
Tool transformation: renaming a tool and reshaping its arguments.

A transformed tool publishes a new input schema and forwards calls to the
parent tool after mapping argument names back and filling in hidden
arguments with their defaults.
"""

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from forge_mcp.core.components import Tool
from forge_mcp.error_handling.exceptions import ValidationError

logger = logging.getLogger(__name__)


class _NotSet:
    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET: Any = _NotSet()


@dataclass
class ArgTransform:
    """How one argument of the parent tool is exposed."""
    name: Optional[str] = None
    description: Optional[str] = None
    default: Any = NOT_SET
    hide: bool = False
    required: Optional[bool] = None
    type_schema: Optional[Dict[str, Any]] = None
    examples: Any = NOT_SET

    @property
    def has_default(self) -> bool:
        return self.default is not NOT_SET

    def validate(self) -> None:
        if self.hide and self.required:
            raise ValidationError("Cannot hide a required argument")
        if self.hide and not self.has_default:
            raise ValidationError("Hidden arguments must have a default value")

    @classmethod
    def from_dict(cls, data: dict) -> "ArgTransform":
        return cls(
            name=data.get("name"),
            description=data.get("description"),
            default=data.get("default", NOT_SET),
            hide=data.get("hide", False),
            required=data.get("required"),
            type_schema=data.get("type_schema"),
            examples=data.get("examples", NOT_SET),
        )


@dataclass
class TransformedSchema:
    schema: Dict[str, Any]
    arg_mapping: Dict[str, str] = field(default_factory=dict)       # new name -> parent name
    reverse_mapping: Dict[str, str] = field(default_factory=dict)   # parent name -> new name
    hidden_defaults: Dict[str, Any] = field(default_factory=dict)   # parent name -> default


def build_transformed_schema(parent_schema: Dict[str, Any], arguments: Dict[str, ArgTransform]) -> TransformedSchema:
    properties = parent_schema.get("properties") or {}
    required = set(parent_schema.get("required") or [])

    result = TransformedSchema(schema={})
    new_properties: Dict[str, Any] = {}
    new_required: List[str] = []

    for old_name, old_prop in properties.items():
        transform = arguments.get(old_name)
        if transform is None:
            result.arg_mapping[old_name] = old_name
            result.reverse_mapping[old_name] = old_name
            new_properties[old_name] = old_prop
            if old_name in required:
                new_required.append(old_name)
            continue

        if transform.hide:
            result.hidden_defaults[old_name] = transform.default
            continue

        new_name = transform.name or old_name
        result.arg_mapping[new_name] = old_name
        result.reverse_mapping[old_name] = new_name

        prop = dict(old_prop)
        if transform.description is not None:
            prop["description"] = transform.description
        if transform.type_schema:
            prop.update(transform.type_schema)
        if transform.has_default:
            prop["default"] = transform.default
        if transform.examples is not NOT_SET:
            prop["examples"] = transform.examples
        new_properties[new_name] = prop

        is_required = transform.required if transform.required is not None else old_name in required
        if transform.has_default and transform.required is None:
            is_required = False
        if is_required:
            new_required.append(new_name)

    schema = copy.deepcopy(parent_schema)
    schema["properties"] = new_properties
    schema["required"] = new_required
    result.schema = schema
    return result


def transform_args_to_parent(arguments: Dict[str, Any], arg_mapping: Dict[str, str],
                             hidden_defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Map arguments under their new names back onto the parent's names."""
    parent_args = {name: copy.deepcopy(value) for name, value in hidden_defaults.items()}
    for new_name, value in (arguments or {}).items():
        old_name = arg_mapping.get(new_name)
        if old_name is not None:
            parent_args[old_name] = value
    return parent_args


def create_transformed_tool(parent: Tool,
                            name: Optional[str] = None,
                            description: Optional[str] = None,
                            title: Optional[str] = None,
                            arguments: Optional[Dict[str, ArgTransform]] = None) -> Tool:
    """Build a tool that forwards to ``parent`` through the given argument transforms."""
    arguments = arguments or {}
    for transform in arguments.values():
        transform.validate()

    transformed = build_transformed_schema(parent.input_schema or {}, arguments)
    arg_mapping = transformed.arg_mapping
    hidden_defaults = transformed.hidden_defaults

    async def forward(args: Dict[str, Any]) -> Any:
        return await parent.invoke(transform_args_to_parent(args, arg_mapping, hidden_defaults))

    # excluded parent args keep flowing through under their own names
    exclude_args = {transformed.reverse_mapping.get(a, a) for a in parent.exclude_args}

    return dataclasses.replace(
        parent,
        name=name or parent.name,
        description=description if description is not None else parent.description,
        title=title if title is not None else parent.title,
        input_schema=transformed.schema,
        fn=forward,
        exclude_args=exclude_args,
    )


@dataclass
class ToolTransformConfig:
    """
    Rename / describe / remap-arguments rule for one tool.

    ``enabled`` is tri-state: None leaves visibility alone, False hides the
    tool, True keeps it visible.
    """
    name: Optional[str] = None
    description: Optional[str] = None
    title: Optional[str] = None
    arguments: Dict[str, ArgTransform] = field(default_factory=dict)
    enabled: Optional[bool] = None

    def validate(self) -> None:
        for transform in self.arguments.values():
            transform.validate()

    def apply(self, tool: Tool) -> Tool:
        return create_transformed_tool(
            tool,
            name=self.name,
            description=self.description,
            title=self.title,
            arguments=self.arguments,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ToolTransformConfig":
        return cls(
            name=data.get("name"),
            description=data.get("description"),
            title=data.get("title"),
            arguments={k: ArgTransform.from_dict(v) for k, v in (data.get("arguments") or {}).items()},
            enabled=data.get("enabled"),
        )
