"""Tests for qualified-name routing and the gateway's structured failures."""

import asyncio

import pytest

from tool_gateway.errors import (
    BackendUnavailableError,
    CallTimeoutError,
    NotFoundError,
    ProtocolError,
)
from tool_gateway.gateway import ToolGateway
from tool_gateway.registry import BackendRegistry
from tool_gateway.router import Router

from _helpers import FakeBackendFactory, ScriptedPeer, descriptor, tool_schema


def make_router(peers, failures=None, **descriptor_kwargs):
    factory = FakeBackendFactory(peers=peers, failures=failures)
    registry = BackendRegistry(backend_factory=factory)
    for name in list(peers) + list(failures or {}):
        registry.register(descriptor(name, **descriptor_kwargs))
    return Router(registry), registry, factory


class TestRouter:

    @pytest.mark.asyncio
    async def test_unqualified_name_needs_no_io(self):
        router, _, factory = make_router({"calculator": ScriptedPeer()})

        with pytest.raises(NotFoundError):
            await router.invoke("missing_tool", {})

        assert factory.created == []

    @pytest.mark.asyncio
    async def test_unknown_backend_needs_no_io(self):
        router, _, factory = make_router({"calculator": ScriptedPeer()})

        with pytest.raises(NotFoundError) as exc_info:
            await router.invoke("weather__forecast", {})

        assert exc_info.value.backend == "weather"
        assert "calculator" in str(exc_info.value)
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_result_is_returned_verbatim(self):
        peer = ScriptedPeer([tool_schema("calculate")])
        router, registry, _ = make_router({"calculator": peer})

        result = await router.invoke("calculator__calculate", {"expression": "2 + 2"})

        assert result == {
            "content": [{"type": "text", "text": 'calculate:{"expression": "2 + 2"}'}],
            "isError": False,
        }
        assert peer.calls == [{"name": "calculate", "arguments": {"expression": "2 + 2"}}]
        await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_native_name_keeps_later_separators(self):
        peer = ScriptedPeer()
        router, registry, _ = make_router({"files": peer})

        await router.invoke("files__read__v2")

        assert peer.calls == [{"name": "read__v2", "arguments": {}}]
        await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_timeout_names_backend(self):
        peer = ScriptedPeer(silent=("tools/call",))
        router, registry, _ = make_router({"slow": peer}, timeout=0.05)

        with pytest.raises(CallTimeoutError) as exc_info:
            await router.invoke("slow__work", {})

        assert exc_info.value.backend == "slow"
        await registry.disconnect_all()

    @pytest.mark.asyncio
    async def test_backend_down(self):
        router, registry, _ = make_router({}, failures={"down": OSError("no such file")})

        with pytest.raises(BackendUnavailableError) as exc_info:
            await router.invoke("down__anything", {})

        assert exc_info.value.backend == "down"

    @pytest.mark.asyncio
    async def test_backend_error_object(self):
        class RejectingPeer(ScriptedPeer):
            def __call__(self, message):
                if message.get("method") == "tools/call":
                    return {"jsonrpc": "2.0", "id": message["id"],
                            "error": {"code": -32602, "message": "Unknown tool: 'nope'"}}
                return super().__call__(message)

        router, registry, _ = make_router({"calc": RejectingPeer()})

        with pytest.raises(ProtocolError) as exc_info:
            await router.invoke("calc__nope", {})

        assert exc_info.value.code == -32602
        assert exc_info.value.backend == "calc"
        await registry.disconnect_all()


class TestGateway:

    @pytest.mark.asyncio
    async def test_list_and_call(self):
        factory = FakeBackendFactory(peers={
            "calculator": ScriptedPeer([tool_schema("calculate")]),
            "search": ScriptedPeer([tool_schema("web")]),
        })
        gateway = ToolGateway(backend_factory=factory)
        gateway.registry.register(descriptor("calculator"))
        gateway.registry.register(descriptor("search"))

        async with gateway:
            tools = await gateway.list_tools()
            outcome = await gateway.call_tool("search__web", {"q": "mcp"})

        assert [t.qualified_name for t in tools] == ["calculator__calculate", "search__web"]
        assert outcome.ok
        assert outcome.backend is None
        assert outcome.to_dict()["result"]["content"][0]["text"] == 'web:{"q": "mcp"}'
        assert gateway.registry.list_backends() == {"calculator": False, "search": False}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_structured_failure(self):
        gateway = ToolGateway(backend_factory=FakeBackendFactory())
        gateway.registry.register(descriptor("calculator"))

        outcome = await gateway.call_tool("missing_tool", {})

        assert not outcome.ok
        assert isinstance(outcome.error, NotFoundError)
        assert outcome.to_dict() == {
            "tool": "missing_tool",
            "backend": None,
            "error": "NotFoundError",
            "message": outcome.error.message,
        }
        await gateway.close()

    @pytest.mark.asyncio
    async def test_unavailable_backend_is_structured_failure(self):
        factory = FakeBackendFactory(failures={"down": OSError("connection refused")})
        gateway = ToolGateway(backend_factory=factory)
        gateway.registry.register(descriptor("down"))

        outcome = await gateway.call_tool("down__x")

        assert not outcome.ok
        assert outcome.backend == "down"
        assert outcome.to_dict()["error"] == "BackendUnavailableError"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_from_mapping(self):
        factory = FakeBackendFactory(peers={"calc": ScriptedPeer([tool_schema("add")])})
        gateway = ToolGateway.from_mapping(
            {"calc": {"command": ["calc-server"], "timeout": 5}},
            backend_factory=factory,
        )

        async with gateway:
            outcome = await gateway.call_tool("calc__add", {"a": 1, "b": 2})

        assert outcome.ok
        assert factory.created[0].descriptor.timeout == 5
        assert factory.created[0].descriptor.command == ("calc-server",)

    @pytest.mark.asyncio
    async def test_call_during_close_is_structured_failure(self):
        gateway = ToolGateway(backend_factory=FakeBackendFactory(open_delay=0.5))
        gateway.registry.register(descriptor("x"))

        pending = asyncio.create_task(gateway.call_tool("x__echo", {}))
        await asyncio.sleep(0.05)
        await gateway.close()
        outcome = await pending

        assert not outcome.ok
        assert isinstance(outcome.error, BackendUnavailableError)
        assert outcome.backend == "x"
        assert "gateway closing" in outcome.error.message

    @pytest.mark.asyncio
    async def test_list_tools_during_close_skips_backend(self):
        gateway = ToolGateway(backend_factory=FakeBackendFactory(open_delay=0.5))
        gateway.registry.register(descriptor("x"))

        pending = asyncio.create_task(gateway.list_tools())
        await asyncio.sleep(0.05)
        await gateway.close()

        assert await pending == []
