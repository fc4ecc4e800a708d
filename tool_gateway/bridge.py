"""
Bridge between the tool gateway and LangChain.

This module turns catalogued gateway tools into LangChain tools that
an agent runtime can register in its own tool registry.

Usage:
    from tool_gateway.bridge import gateway_tool_to_langchain, register_gateway_tools

    # Single tool
    tools = await gateway.list_tools()
    lc_tool = gateway_tool_to_langchain(gateway, tools[0])

    # All tools from all backends
    await register_gateway_tools(gateway, tool_registry)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from tool_gateway.catalog import ToolDescriptor
from tool_gateway.gateway import ToolGateway


def gateway_tool_to_langchain(
    gateway: ToolGateway,
    tool: ToolDescriptor,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies to ``gateway.call_tool``.

    Args:
        gateway: The gateway that owns the tool's backend
        tool: A descriptor from ``gateway.list_tools()``
        description_override: Optional override for the tool description

    Returns:
        An async StructuredTool named after the tool's qualified name.
    """

    async def _call_gateway(**kwargs: Any) -> str:
        """Proxy call to the gateway."""
        outcome = await gateway.call_tool(tool.qualified_name, kwargs)
        if not outcome.ok:
            return f"Error calling {tool.qualified_name} ({outcome.backend}): {outcome.error}"
        return _result_text(outcome.result)

    return StructuredTool.from_function(
        coroutine=_call_gateway,
        name=tool.qualified_name,
        description=description_override or tool.description,
        args_schema=tool.input_schema,
    )


async def register_gateway_tools(
    gateway: ToolGateway,
    tool_registry: Any,  # any registry with register_langchain_tool(...)
    domain_tags: dict[str, list[str]] | None = None,
    prompt_instructions: dict[str, str] | None = None,
) -> list[str]:
    """
    Discover all tools through the gateway and register them in a tool registry.

    Args:
        gateway: The gateway to discover through
        tool_registry: Registry exposing register_langchain_tool(tool_id, tool,
                       prompt_instructions, domain_tags)
        domain_tags: Optional {qualified_name: [tags]} for categorization
        prompt_instructions: Optional {qualified_name: instructions} for
                             system prompt injection

    Returns:
        List of registered tool IDs (qualified names).
    """
    domain_tags = domain_tags or {}
    prompt_instructions = prompt_instructions or {}
    registered = []

    for tool in await gateway.list_tools():
        lc_tool = gateway_tool_to_langchain(gateway, tool)

        instructions = prompt_instructions.get(tool.qualified_name)
        if not instructions:
            instructions = _auto_prompt_instructions(tool)

        tool_registry.register_langchain_tool(
            tool_id=tool.qualified_name,
            tool=lc_tool,
            prompt_instructions=instructions,
            domain_tags=domain_tags.get(tool.qualified_name, []),
        )
        registered.append(tool.qualified_name)

    return registered


def _result_text(result: Any) -> str:
    """Flatten an MCP tools/call result into text for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            block.get("text", "")
            for block in result["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            text = "\n".join(texts)
            return f"Tool error: {text}" if result.get("isError") else text
    return json.dumps(result, indent=2)


def _auto_prompt_instructions(tool: ToolDescriptor) -> str:
    """Generate prompt instructions from a tool's input schema."""
    params = tool.input_schema.get("properties", {})
    required = set(tool.input_schema.get("required", []))

    lines = [f"## Tool: {tool.qualified_name}", tool.description, ""]
    if params:
        lines.append("Parameters:")
        for pname, pinfo in params.items():
            ptype = pinfo.get("type", "any")
            pdesc = pinfo.get("description", "")
            marker = " (required)" if pname in required else ""
            lines.append(f"  - {pname} ({ptype}){marker}: {pdesc}")

    return "\n".join(lines)
