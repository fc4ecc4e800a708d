"""
Tool Gateway — the two operations the agent layer depends on.

    gateway = ToolGateway.from_mapping({
        "calculator": {"command": [sys.executable, "-m", "my_servers.calculator"]},
    })
    async with gateway:
        tools = await gateway.list_tools()
        outcome = await gateway.call_tool("calculator__calculate", {"expression": "2 + 2"})
        if outcome.ok:
            print(outcome.result)
        else:
            print(outcome.to_dict())

Each gateway owns its own registry, so independent gateways (for
example, one per test) never share processes or connections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from tool_gateway.backend import create_backend
from tool_gateway.catalog import ToolCatalog, ToolDescriptor
from tool_gateway.config import BackendDescriptor, GatewaySettings, load_descriptors
from tool_gateway.errors import GatewayError
from tool_gateway.registry import BackendFactory, BackendRegistry
from tool_gateway.router import Router

logger = logging.getLogger(__name__)


@dataclass
class ToolCallResult:
    """Outcome of call_tool(): the backend's result, or a structured failure."""
    tool: str
    result: Any = None
    error: GatewayError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def backend(self) -> str | None:
        return self.error.backend if self.error else None

    def to_dict(self) -> dict[str, Any]:
        if self.error is None:
            return {"tool": self.tool, "result": self.result}
        return {"tool": self.tool, **self.error.to_dict()}


class ToolGateway:
    """Registry + catalog + router behind list_tools() and call_tool()."""

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        backend_factory: BackendFactory = create_backend,
    ):
        self.settings = settings or GatewaySettings()
        self.registry = BackendRegistry(self.settings, backend_factory=backend_factory)
        self.catalog = ToolCatalog(self.registry)
        self.router = Router(self.registry)

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[BackendDescriptor],
        settings: GatewaySettings | None = None,
        **kwargs: Any,
    ) -> "ToolGateway":
        gateway = cls(settings, **kwargs)
        for descriptor in descriptors:
            gateway.registry.register(descriptor)
        return gateway

    @classmethod
    def from_mapping(
        cls,
        backends: Mapping[str, Mapping[str, Any]],
        credentials: Mapping[str, str] | None = None,
        settings: GatewaySettings | None = None,
        **kwargs: Any,
    ) -> "ToolGateway":
        return cls.from_descriptors(load_descriptors(backends, credentials), settings, **kwargs)

    async def list_tools(self) -> list[ToolDescriptor]:
        """Discover tools across all backends, in backend registration order."""
        return await self.catalog.discover()

    async def call_tool(self, qualified_name: str, arguments: dict[str, Any] | None = None) -> ToolCallResult:
        """Invoke a tool. Failures come back as a ToolCallResult, never raised."""
        try:
            result = await self.router.invoke(qualified_name, arguments)
        except GatewayError as e:
            logger.warning(f"Tool call {qualified_name} failed: {e}")
            return ToolCallResult(tool=qualified_name, error=e)
        return ToolCallResult(tool=qualified_name, result=result)

    async def close(self) -> None:
        await self.registry.disconnect_all()

    async def __aenter__(self) -> "ToolGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
