"""
Server-initiated sampling.
This module provides the tool-use sampling loop: ask the client's LLM for a
completion, run any tools it asks for, feed the results back, repeat.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from forge_mcp.core.components import Tool
from forge_mcp.core.content import to_text
from forge_mcp.core.session import DEFAULT_TIMEOUT, ServerSession
from forge_mcp.core.utils import call_maybe_async
from forge_mcp.error_handling.exceptions import Error, SamplingNotSupportedError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class SamplingTool:
    """A tool the client's LLM may call during sampling."""
    name: str
    fn: Callable[[Dict[str, Any]], Any]
    description: Optional[str] = None
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    @classmethod
    def from_tool(cls, tool: Tool) -> "SamplingTool":
        return cls(name=tool.name, fn=tool.invoke, description=tool.description,
                   input_schema=tool.published_input_schema())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "inputSchema": self.input_schema}
        if self.description:
            data["description"] = self.description
        return data


@dataclass
class SamplingMessage:
    role: str
    content: Union[str, Dict[str, Any], List[Dict[str, Any]]]

    def to_dict(self) -> Dict[str, Any]:
        content = self.content
        if isinstance(content, str):
            content = {"type": "text", "text": content}
        return {"role": self.role, "content": content}


def text_message(role: str, text: str) -> SamplingMessage:
    return SamplingMessage(role=role, content={"type": "text", "text": text})


@dataclass
class SamplingOptions:
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: int = 512
    model_preferences: Optional[Dict[str, Any]] = None
    stop_sequences: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    tools: Optional[List[SamplingTool]] = None
    tool_choice: Optional[str] = None
    execute_tools: bool = True
    mask_error_details: bool = False
    max_iterations: int = 10
    timeout: float = DEFAULT_TIMEOUT


def _blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    if isinstance(content, dict):
        return [content]
    return []


@dataclass
class SamplingStep:
    response: Dict[str, Any]
    history: List[SamplingMessage]

    @property
    def is_tool_use(self) -> bool:
        return isinstance(self.response, dict) and self.response.get("stopReason") == "toolUse"

    @property
    def text(self) -> Optional[str]:
        if not isinstance(self.response, dict):
            return None
        for block in _blocks(self.response.get("content")):
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                return block["text"]
        return None

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        if not isinstance(self.response, dict):
            return []
        return [b for b in _blocks(self.response.get("content")) if b.get("type") == "tool_use"]


@dataclass
class SamplingResult:
    text: Optional[str]
    response: Dict[str, Any]
    history: List[SamplingMessage]


def _tool_result_block(tool_use_id: str, text: str, is_error: bool) -> Dict[str, Any]:
    block: Dict[str, Any] = {
        "type": "tool_result",
        "toolUseId": tool_use_id,
        "content": [{"type": "text", "text": text}],
    }
    if is_error:
        block["isError"] = True
    return block


def _build_params(messages: List[SamplingMessage], options: SamplingOptions, with_tools: bool) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "messages": [m.to_dict() for m in messages],
        "maxTokens": options.max_tokens,
    }
    if options.system_prompt:
        params["systemPrompt"] = options.system_prompt
    if options.temperature is not None:
        params["temperature"] = options.temperature
    if options.model_preferences:
        params["modelPreferences"] = options.model_preferences
    if options.stop_sequences:
        params["stopSequences"] = options.stop_sequences
    if options.metadata:
        params["metadata"] = options.metadata
    if with_tools:
        params["tools"] = [t.to_dict() for t in options.tools]
    if options.tool_choice:
        params["toolChoice"] = {"mode": options.tool_choice}
    return params


async def _run_tool_calls(step: SamplingStep, options: SamplingOptions) -> List[Dict[str, Any]]:
    tool_map = {t.name: t for t in options.tools or []}
    results = []
    # sequential, in the order the model asked for them
    for call in step.tool_calls:
        tool_use_id = call.get("id") or ""
        name = call.get("name") or ""
        if not tool_use_id or not name:
            continue

        tool = tool_map.get(name)
        if tool is None:
            results.append(_tool_result_block(tool_use_id, f"Error: Unknown tool '{name}'", True))
            continue

        try:
            output = await call_maybe_async(tool.fn, call.get("input") or {})
        except Exception as e:
            logger.warning(f"Sampling tool '{name}' failed: {e}")
            text = f"Error executing tool '{name}'" if options.mask_error_details \
                else f"Error executing tool '{name}': {e}"
            results.append(_tool_result_block(tool_use_id, text, True))
            continue
        results.append(_tool_result_block(tool_use_id, to_text(output), False))
    return results


async def sample_step(session: ServerSession, messages: List[SamplingMessage],
                      options: Optional[SamplingOptions] = None) -> SamplingStep:
    """
    Send one ``sampling/createMessage`` request.

    On a ``toolUse`` stop reason the requested tools are executed (unless
    ``execute_tools`` is off) and a user message with the ``tool_result``
    blocks is appended to the returned history.

    Raises:
        SamplingNotSupportedError: If the client lacks the needed capability
    """
    options = options or SamplingOptions()
    if not session.supports_sampling:
        raise SamplingNotSupportedError("Client does not support sampling")

    with_tools = bool(options.tools)
    if with_tools and not session.supports_sampling_tools:
        raise SamplingNotSupportedError(
            "Client does not support sampling with tools. "
            "The client must advertise the sampling.tools capability."
        )

    response = await session.send_request(
        "sampling/createMessage", _build_params(messages, options, with_tools), timeout=options.timeout
    )
    response = response if isinstance(response, dict) else {}

    history = list(messages)
    if "content" in response:
        history.append(SamplingMessage(role="assistant", content=response["content"]))
    step = SamplingStep(response=response, history=history)

    if not step.is_tool_use or not options.execute_tools:
        return step

    results = await _run_tool_calls(step, options)
    if results:
        step.history.append(SamplingMessage(role="user", content=results))
    return step


async def sample(session: ServerSession, messages: List[SamplingMessage],
                 options: Optional[SamplingOptions] = None) -> SamplingResult:
    """
    Run ``sample_step`` until the model stops asking for tools.

    ``tool_choice`` only steers the first request; later iterations fall
    back to the client's default.

    Raises:
        ValidationError: If ``max_iterations`` is not positive
        Error: If the model still wants tools after ``max_iterations`` steps
    """
    options = options or SamplingOptions()
    if options.max_iterations <= 0:
        raise ValidationError("max_iterations must be > 0")

    current = list(messages)
    step_options = dataclasses.replace(options)
    for iteration in range(options.max_iterations):
        step = await sample_step(session, current, step_options)
        if not step.is_tool_use:
            return SamplingResult(text=step.text, response=step.response, history=step.history)
        logger.debug(f"Sampling iteration {iteration + 1} requested {len(step.tool_calls)} tool call(s)")
        current = step.history
        step_options.tool_choice = None

    raise Error("Sampling exceeded maximum iterations")
