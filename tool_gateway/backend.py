"""
Backend lifecycle: open a byte channel, run the protocol handshake, stop.

Currently implements:
  - ProcessBackend: a child process speaking JSON-RPC on stdin/stdout
  - NetworkBackend: a TCP endpoint speaking JSON-RPC on the socket

Both hand a StreamTransport to a Connection, so callers above this module
never know which kind of backend they are talking to.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from tool_gateway.config import BackendDescriptor, GatewaySettings, TransportKind
from tool_gateway.connection import Connection
from tool_gateway.errors import BackendUnavailableError
from tool_gateway.transport import StreamTransport, Transport, create_framer

logger = logging.getLogger(__name__)


class Backend(ABC):
    """
    A configured backend and its live Connection (if any).

    Subclasses only implement how the byte channel is opened and released;
    the Connection, handshake and teardown order live here.
    """

    def __init__(self, descriptor: BackendDescriptor, settings: GatewaySettings | None = None):
        self.descriptor = descriptor
        self.settings = settings or GatewaySettings()
        self.connection: Connection | None = None
        self.server_info: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def call_timeout(self) -> float:
        return self.descriptor.timeout or self.settings.call_timeout

    @property
    def connect_timeout(self) -> float:
        return self.descriptor.connect_timeout or self.settings.connect_timeout

    @abstractmethod
    async def _open(self) -> Transport:
        """Open the byte channel (spawn the process, dial the socket)."""
        ...

    @abstractmethod
    async def _close(self) -> None:
        """Release whatever _open acquired. Must be idempotent."""
        ...

    def is_alive(self) -> bool:
        return self.connection is not None and not self.connection.closed

    async def start(self) -> Connection:
        """Open the channel and perform the handshake. Returns the live Connection."""
        if self.is_alive():
            return self.connection

        transport = await self._open()
        connection = Connection(transport, name=self.name, timeout=self.call_timeout)
        connection.on_request("ping", _pong)
        connection.start()
        self.connection = connection

        try:
            await self._handshake(connection)
        except BaseException:
            await self.stop()
            raise

        logger.info(f"Started {self.name} ({self.descriptor.endpoint})")
        return connection

    async def stop(self) -> None:
        """Close the connection and release the channel. Safe to call repeatedly."""
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.close()
        await self._close()

    async def _handshake(self, connection: Connection) -> None:
        result = await connection.send("initialize", {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": {},
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version,
            },
        }, timeout=self.connect_timeout)

        if isinstance(result, dict):
            self.server_info = result.get("serverInfo") or {}
            version = result.get("protocolVersion")
            if version and version != self.settings.protocol_version:
                logger.warning(
                    f"{self.name} speaks protocol {version}, "
                    f"expected {self.settings.protocol_version}"
                )

        await connection.notify("notifications/initialized")


def _pong(params: Any) -> dict:
    return {}


class ProcessBackend(Backend):
    """
    A tool server running as a child process.

    Its stdout feeds the Connection, the Connection writes to its stdin,
    and its stderr is inherited untouched.
    """

    def __init__(self, descriptor: BackendDescriptor, settings: GatewaySettings | None = None):
        super().__init__(descriptor, settings)
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_alive(self) -> bool:
        return (
            super().is_alive()
            and self._process is not None
            and self._process.returncode is None
        )

    async def _open(self) -> Transport:
        program, *args = self.descriptor.command
        logger.info(f"Starting stdio backend {self.name}: {' '.join(self.descriptor.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
                env=self.descriptor.launch_env(),
                cwd=self.descriptor.cwd,
            )
        except OSError as e:
            raise BackendUnavailableError(
                f"Failed to start '{self.name}': {e}", backend=self.name
            ) from e

        return StreamTransport(
            self._process.stdout,
            self._process.stdin,
            create_framer(self.descriptor.framing),
        )

    async def _close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{self.name} did not exit within {self.settings.shutdown_grace}s, killing"
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        logger.info(f"Stdio backend {self.name} stopped (exit code {process.returncode})")


class NetworkBackend(Backend):
    """A tool server reachable over TCP."""

    def __init__(self, descriptor: BackendDescriptor, settings: GatewaySettings | None = None):
        super().__init__(descriptor, settings)
        self._transport: Transport | None = None

    async def _open(self) -> Transport:
        host, port = self.descriptor.host, self.descriptor.port
        logger.info(f"Connecting to {self.name} at {host}:{port}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise BackendUnavailableError(
                f"Connecting to '{self.name}' at {host}:{port} timed out "
                f"after {self.connect_timeout}s",
                backend=self.name,
            ) from e
        except OSError as e:
            raise BackendUnavailableError(
                f"Failed to connect to '{self.name}' at {host}:{port}: {e}",
                backend=self.name,
            ) from e

        self._transport = StreamTransport(reader, writer, create_framer(self.descriptor.framing))
        return self._transport

    async def _close(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()


BACKENDS: dict[TransportKind, type[Backend]] = {
    TransportKind.STDIO: ProcessBackend,
    TransportKind.TCP: NetworkBackend,
}


def create_backend(descriptor: BackendDescriptor, settings: GatewaySettings | None = None) -> Backend:
    """Default backend factory: pick the Backend class by transport kind."""
    return BACKENDS[descriptor.transport](descriptor, settings)
