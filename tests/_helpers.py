"""In-memory transport, scripted peer and fake backends shared by the tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

from tool_gateway.backend import Backend
from tool_gateway.config import BackendDescriptor, GatewaySettings
from tool_gateway.transport import Framer, NewlineFramer, Transport


class LoopbackTransport(Transport):
    """
    In-memory transport.

    Bytes written by the Connection are decoded and handed to ``peer``;
    whatever the peer returns is framed and queued for the Connection
    to read.
    """

    def __init__(self, framer: Framer | None = None, peer: Callable[[dict], Any] | None = None):
        super().__init__(framer or NewlineFramer())
        self.peer = peer
        self.sent: list[dict] = []
        self.closed = False
        self._peer_framer = type(self.framer)()
        self._inbound: asyncio.Queue[bytes] = asyncio.Queue()

    async def read(self) -> bytes:
        return await self._inbound.get()

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("loopback closed")
        for message in self._peer_framer.feed(data):
            self.sent.append(message)
            if self.peer is not None:
                reply = self.peer(message)
                if reply is not None:
                    self.push(reply)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(b"")

    # -- test helpers ------------------------------------------------

    def push(self, message: dict) -> None:
        """Queue a message from the peer."""
        self._inbound.put_nowait(self.framer.encode(message))

    def push_bytes(self, data: bytes) -> None:
        self._inbound.put_nowait(data)

    def push_eof(self) -> None:
        self._inbound.put_nowait(b"")

    def requests(self, method: str | None = None) -> list[dict]:
        return [
            m for m in self.sent
            if "id" in m and "method" in m and (method is None or m["method"] == method)
        ]


def tool_schema(name: str, description: str | None = None) -> dict:
    return {
        "name": name,
        "description": description or f"The {name} tool",
        "inputSchema": {"type": "object", "properties": {}},
    }


class ScriptedPeer:
    """
    A fake tool server answering initialize, tools/list and tools/call.

    Methods listed in ``silent`` are never answered, to provoke timeouts.
    """

    def __init__(self, tools: list[dict] | None = None, silent: tuple[str, ...] = ()):
        self.tools = tools or []
        self.silent = set(silent)
        self.calls: list[dict] = []

    def __call__(self, message: dict) -> dict | None:
        if "id" not in message:
            return None
        method = message["method"]
        if method in self.silent:
            return None
        if method == "initialize":
            result = {"protocolVersion": "2024-11-05", "capabilities": {"tools": {}},
                      "serverInfo": {"name": "scripted", "version": "1.0"}}
        elif method == "tools/list":
            result = {"tools": self.tools}
        elif method == "tools/call":
            self.calls.append(message["params"])
            params = message["params"]
            text = f"{params['name']}:{json.dumps(params['arguments'], sort_keys=True)}"
            result = {"content": [{"type": "text", "text": text}], "isError": False}
        else:
            return {"jsonrpc": "2.0", "id": message["id"],
                    "error": {"code": -32601, "message": f"Method not found: '{method}'"}}
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}


class FakeBackend(Backend):
    """Backend whose channel is a LoopbackTransport wired to a ScriptedPeer."""

    def __init__(self, descriptor, settings=None, peer=None, fail: Exception | None = None, open_delay: float = 0):
        super().__init__(descriptor, settings)
        self.peer = peer if peer is not None else ScriptedPeer()
        self.fail = fail
        self.open_delay = open_delay
        self.transport: LoopbackTransport | None = None
        self.close_count = 0

    async def _open(self) -> Transport:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail is not None:
            raise self.fail
        self.transport = LoopbackTransport(peer=self.peer)
        return self.transport

    async def _close(self) -> None:
        self.close_count += 1


class FakeBackendFactory:
    """Backend factory handing out FakeBackends per backend name; counts starts."""

    def __init__(self, peers: dict[str, Any] | None = None, failures: dict[str, Exception] | None = None,
                 open_delay: float = 0):
        self.peers = peers or {}
        self.failures = failures or {}
        self.open_delay = open_delay
        self.created: list[FakeBackend] = []

    def __call__(self, descriptor: BackendDescriptor, settings: GatewaySettings) -> FakeBackend:
        backend = FakeBackend(
            descriptor,
            settings,
            peer=self.peers.get(descriptor.name),
            fail=self.failures.get(descriptor.name),
            open_delay=self.open_delay,
        )
        self.created.append(backend)
        return backend

    def count(self, name: str) -> int:
        return sum(1 for b in self.created if b.name == name)


def descriptor(name: str, **kwargs: Any) -> BackendDescriptor:
    kwargs.setdefault("command", ("fake-server", name))
    return BackendDescriptor(name=name, **kwargs)
