from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Tuple

from .model import ToolCall, ToolCallRequest, ToolCallResult, ToolDescriptor

logger = logging.getLogger(__name__)

Dispatch = Dict[str, Tuple[str, str]]


def _sanitize(name: str) -> str:
    # Only letters/numbers/_/- allowed; trim to 64 chars.
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)[:64]


def to_openai_tools(
    tools: Iterable[ToolDescriptor],
) -> Tuple[List[Dict[str, Any]], Dispatch]:
    """
    Convert provider-tagged tool descriptors into OpenAI Chat Completions 'tools'
    and a dispatch map {function_name: (server_id, tool_name)}.
    """
    openai_tools: List[Dict[str, Any]] = []
    dispatch: Dispatch = {}

    for tool in tools:
        server_id = (tool.server_id or "server").strip() or "server"
        tool_name = tool.name.strip() or "tool"
        description = (tool.description or f"{server_id}.{tool_name}")[:512]
        schema = tool.input_schema or {}

        # Ensure parameters is an object schema
        if schema.get("type") != "object":
            parameters = {
                "type": "object",
                "properties": {"input": schema or {"type": "string"}},
                "required": ["input"],
                "additionalProperties": True,
            }
        else:
            parameters = schema

        fn_name = _sanitize(f"{server_id}__{tool_name}")
        if fn_name in dispatch:
            logger.warning("Function name %s is ambiguous after sanitizing, skipping", fn_name)
            continue

        openai_tools.append(
            {
                "type": "function",
                "function": {
                    "name": fn_name,
                    "description": description,
                    "parameters": parameters,
                },
            }
        )
        dispatch[fn_name] = (server_id, tool.name)

    return openai_tools, dispatch


async def call_openai_tool(executor, tool_call: ToolCall, dispatch: Dispatch) -> ToolCallResult:
    """Execute one OpenAI function call, routed explicitly through ``dispatch``."""
    fn_name = tool_call.name
    args_str = tool_call.arguments
    try:
        args = json.loads(args_str or "{}") if isinstance(args_str, str) else args_str
    except json.JSONDecodeError:
        args = {}
    if args is None:
        args = {}
    elif not isinstance(args, dict):
        args = {"input": args}

    if fn_name not in dispatch:
        return ToolCallResult(
            id=tool_call.id,
            name=fn_name,
            success=False,
            error_message=f"Unknown tool function: {fn_name}",
        )

    server_id, tool_name = dispatch[fn_name]
    request = ToolCallRequest(
        id=tool_call.id, name=tool_name, arguments=args, server_id=server_id
    )
    [result] = await executor.execute_batch([request])
    return result.model_copy(update={"name": fn_name})
