"""
Tool Catalog — one namespace over the tools of every backend.

Each backend is asked for its tools concurrently, every descriptor is
validated, and each tool gets a qualified name "<backend>__<tool>".
Tools with the same native name on different backends are kept apart;
the qualified name is the only disambiguator.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from tool_gateway.config import QUALIFIED_NAME_SEPARATOR
from tool_gateway.errors import GatewayError, NotFoundError, ValidationError
from tool_gateway.registry import BackendRegistry

logger = logging.getLogger(__name__)

# Upper bound on tools/list pages per backend, in case a cursor never ends.
MAX_PAGES = 100


@dataclass(frozen=True)
class ToolDescriptor:
    """A discovered tool, addressable by its qualified name."""
    qualified_name: str
    name: str
    backend: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.qualified_name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def qualify(backend: str, name: str) -> str:
    return f"{backend}{QUALIFIED_NAME_SEPARATOR}{name}"


def split_qualified_name(qualified_name: str) -> tuple[str, str]:
    """
    Split "<backend>__<tool>" on the first separator.

    Raises:
        NotFoundError: the name has no backend prefix.
    """
    backend, sep, name = qualified_name.partition(QUALIFIED_NAME_SEPARATOR)
    if not sep or not backend or not name:
        raise NotFoundError(
            f"Tool name '{qualified_name}' is not qualified as "
            f"'<backend>{QUALIFIED_NAME_SEPARATOR}<tool>'"
        )
    return backend, name


def parse_tool(raw: Any, backend: str) -> ToolDescriptor:
    """
    Validate one entry of a tools/list result.

    Raises:
        ValidationError: missing name/description or a non-object input schema.
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Tool entry is not an object: {raw!r}", backend=backend)

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError("Tool name is required and must be a string", backend=backend)

    description = raw.get("description")
    if not isinstance(description, str) or not description:
        raise ValidationError(f"Tool '{name}' has no description", backend=backend)

    schema = raw.get("inputSchema")
    if not isinstance(schema, dict) or schema.get("type") != "object":
        raise ValidationError(f"Tool '{name}' inputSchema must be an object schema", backend=backend)

    return ToolDescriptor(
        qualified_name=qualify(backend, name),
        name=name,
        backend=backend,
        description=description,
        input_schema=schema,
    )


class ToolCatalog:
    """Aggregates tools/list results across all registered backends."""

    def __init__(self, registry: BackendRegistry, discovery_timeout: float | None = None):
        self.registry = registry
        self.discovery_timeout = discovery_timeout or registry.settings.discovery_timeout
        self._tools: dict[str, ToolDescriptor] = {}

    @property
    def tools(self) -> list[ToolDescriptor]:
        """Tools from the most recent discovery pass."""
        return list(self._tools.values())

    def get(self, qualified_name: str) -> ToolDescriptor:
        tool = self._tools.get(qualified_name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: '{qualified_name}'")
        return tool

    async def discover(self) -> list[ToolDescriptor]:
        """
        Run one discovery pass over every backend.

        Backends that fail are skipped with a warning; the result reflects
        whichever backends answered.
        """
        names = self.registry.names()
        results = await asyncio.gather(*(self._discover_backend(name) for name in names))

        tools: dict[str, ToolDescriptor] = {}
        for backend_tools in results:
            for tool in backend_tools or []:
                tools[tool.qualified_name] = tool
        self._tools = tools

        healthy = sum(1 for r in results if r is not None)
        logger.info(
            f"Discovered {len(tools)} tool(s) from {healthy}/{len(names)} backend(s)"
        )
        return self.tools

    async def _discover_backend(self, name: str) -> list[ToolDescriptor] | None:
        try:
            raw_tools = await asyncio.wait_for(self._list_tools(name), timeout=self.discovery_timeout)
        except GatewayError as e:
            logger.warning(f"Skipping backend {name}: {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Skipping backend {name}: discovery timed out after {self.discovery_timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Skipping backend {name}: unexpected error {e!r}")
            return None

        tools = []
        for raw in raw_tools:
            try:
                tools.append(parse_tool(raw, name))
            except ValidationError as e:
                logger.warning(f"Dropping invalid tool from {name}: {e}")

        logger.info(f"{name}: tools={[t.name for t in tools]}")
        return tools

    async def _list_tools(self, name: str) -> list[Any]:
        connection = await self.registry.get_connection(name)
        timeout = self.registry.get(name).timeout

        raw_tools: list[Any] = []
        cursor = None
        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await connection.send("tools/list", params, timeout=timeout)
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise ValidationError(
                    f"tools/list returned an invalid payload: {result!r:.200}", backend=name
                )
            raw_tools.extend(result["tools"])
            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning(f"{name}: stopped paging tools/list after {MAX_PAGES} pages")
        return raw_tools
