"""
Router — forwards a qualified tool call to the backend that owns the tool.

    "calculator__calculate"  ->  backend "calculator", tool "calculate"

Unknown backends are rejected before any process is spawned or socket
opened. Everything else goes through the registry's cached Connection.
"""

from __future__ import annotations

import logging
from typing import Any

from tool_gateway.catalog import split_qualified_name
from tool_gateway.errors import NotFoundError
from tool_gateway.registry import BackendRegistry

logger = logging.getLogger(__name__)


class Router:
    """Resolves qualified tool names and issues tools/call requests."""

    def __init__(self, registry: BackendRegistry):
        self.registry = registry

    def resolve(self, qualified_name: str) -> tuple[str, str]:
        """
        Map a qualified name to (backend, native tool name).

        Raises:
            NotFoundError: no registered backend owns the prefix.
        """
        backend, tool_name = split_qualified_name(qualified_name)
        if backend not in self.registry:
            raise NotFoundError(
                f"No backend '{backend}' for tool '{qualified_name}'. "
                f"Available: {self.registry.names()}",
                backend=backend,
            )
        return backend, tool_name

    async def invoke(self, qualified_name: str, arguments: dict[str, Any] | None = None) -> Any:
        """
        Call a tool by its qualified name and return the backend's result verbatim.

        Raises:
            NotFoundError: unknown backend prefix (no I/O attempted).
            BackendUnavailableError: the backend could not be started.
            CallTimeoutError: the backend did not answer in time.
            ConnectionClosedError: the backend went away mid-call.
            ProtocolError: the backend answered with an error object.
        """
        backend, tool_name = self.resolve(qualified_name)
        descriptor = self.registry.get(backend)

        connection = await self.registry.get_connection(backend)
        logger.debug(f"Routing {qualified_name} -> {backend}/{tool_name}")
        return await connection.send(
            "tools/call",
            {"name": tool_name, "arguments": arguments or {}},
            timeout=descriptor.timeout,
        )
