"""
Tool Gateway — one namespace over the tools of many JSON-RPC backends.

Architecture:
    ┌──────────────┐              ┌──────────────┐   stdio / tcp   ┌──────────────┐
    │ Agent Runtime │ list_tools  │  ToolGateway  │ ────────────── │  Tool Server  │
    │              │ call_tool   │ catalog/router│   JSON-RPC 2.0  │  (backend)    │
    └──────────────┘              └──────────────┘                 └──────────────┘

Each backend is a subprocess or TCP endpoint speaking JSON-RPC 2.0
(the MCP protocol), framed either one message per line or with
Content-Length headers.

The Transport frames bytes, the Connection correlates requests and
responses, Backends own process/socket lifecycle, the BackendRegistry
caches live connections, the ToolCatalog qualifies tool names as
"<backend>__<tool>", and the Router sends each call to its backend.
"""

from tool_gateway.catalog import ToolCatalog, ToolDescriptor
from tool_gateway.config import BackendDescriptor, GatewaySettings, TransportKind, load_descriptors
from tool_gateway.connection import Connection
from tool_gateway.errors import (
    BackendUnavailableError,
    CallTimeoutError,
    ConfigError,
    ConnectionClosedError,
    FramingError,
    GatewayError,
    NotFoundError,
    ProtocolError,
    ValidationError,
)
from tool_gateway.gateway import ToolCallResult, ToolGateway
from tool_gateway.registry import BackendRegistry
from tool_gateway.router import Router


# Bridge requires langchain; imported lazily so tool servers stay standalone
def gateway_tool_to_langchain(*args, **kwargs):
    from tool_gateway.bridge import gateway_tool_to_langchain as _impl
    return _impl(*args, **kwargs)


async def register_gateway_tools(*args, **kwargs):
    from tool_gateway.bridge import register_gateway_tools as _impl
    return await _impl(*args, **kwargs)


__all__ = [
    "BackendDescriptor",
    "BackendRegistry",
    "BackendUnavailableError",
    "CallTimeoutError",
    "ConfigError",
    "Connection",
    "ConnectionClosedError",
    "FramingError",
    "GatewayError",
    "GatewaySettings",
    "NotFoundError",
    "ProtocolError",
    "Router",
    "ToolCallResult",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolGateway",
    "TransportKind",
    "ValidationError",
    "gateway_tool_to_langchain",
    "load_descriptors",
    "register_gateway_tools",
]
