"""
Backend Registry — catalogs configured backends and caches live connections.

Registering a backend never starts it. The first get_connection() for a
name spawns/dials the backend and runs the handshake; later calls reuse
the cached Connection. Concurrent first calls share one attempt.

Usage:
    registry = BackendRegistry()
    registry.register(BackendDescriptor(name="calculator", command=("python", "-m", "calc")))

    connection = await registry.get_connection("calculator")
    result = await connection.send("tools/call", {"name": "calculate", "arguments": {...}})

    await registry.disconnect_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from tool_gateway.backend import Backend, create_backend
from tool_gateway.config import BackendDescriptor, GatewaySettings
from tool_gateway.connection import Connection
from tool_gateway.errors import BackendUnavailableError, ConfigError, GatewayError, NotFoundError

logger = logging.getLogger(__name__)

BackendFactory = Callable[[BackendDescriptor, GatewaySettings], Backend]


class BackendRegistry:
    """
    Owns every backend of one gateway instance.

    Responsibilities:
    - Hold configured BackendDescriptors by name
    - Lazily start backends and cache their Connections
    - Serialize creation per name so no backend is spawned twice
    - Fan shutdown out across all live backends
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        backend_factory: BackendFactory = create_backend,
    ):
        self.settings = settings or GatewaySettings()
        self._backend_factory = backend_factory
        self._descriptors: dict[str, BackendDescriptor] = {}
        self._backends: dict[str, Backend] = {}
        # name -> in-flight connect attempt
        self._connecting: dict[str, asyncio.Task] = {}

    def register(self, descriptor: BackendDescriptor) -> None:
        """Register a backend (does not start it)."""
        if descriptor.name in self._descriptors:
            raise ConfigError(f"Backend already registered: {descriptor.name}", backend=descriptor.name)
        self._descriptors[descriptor.name] = descriptor
        logger.info(f"Registered backend: {descriptor.name} ({descriptor.endpoint})")

    def get(self, name: str) -> BackendDescriptor:
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise NotFoundError(
                f"Unknown backend: '{name}'. Available: {self.names()}", backend=name
            )
        return descriptor

    def names(self) -> list[str]:
        return list(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def is_connected(self, name: str) -> bool:
        backend = self._backends.get(name)
        return backend is not None and backend.is_alive()

    def list_backends(self) -> dict[str, bool]:
        """All registered backends and whether each is connected."""
        return {name: self.is_connected(name) for name in self._descriptors}

    def backend(self, name: str) -> Backend | None:
        """The live Backend for ``name``, if one has been started."""
        return self._backends.get(name)

    async def get_connection(self, name: str) -> Connection:
        """
        Return the live Connection for ``name``, starting the backend if needed.

        Raises:
            NotFoundError: no backend is registered under ``name``.
            BackendUnavailableError: the backend could not be started, or
                disconnect_all() cancelled the attempt.
        """
        backend = self._backends.get(name)
        if backend is not None and backend.is_alive():
            return backend.connection

        descriptor = self.get(name)

        attempt = self._connecting.get(name)
        if attempt is None:
            attempt = asyncio.ensure_future(self._connect(descriptor))
            self._connecting[name] = attempt
            attempt.add_done_callback(lambda task: self._connect_done(name, task))
        else:
            logger.debug(f"Waiting on in-flight connection attempt for {name}")

        # A cancelled waiter must not cancel the attempt other callers share.
        try:
            return await asyncio.shield(attempt)
        except asyncio.CancelledError:
            if not attempt.cancelled():
                raise
            # The attempt itself was cancelled by disconnect_all(), not this caller.
            raise BackendUnavailableError(
                f"Backend '{name}' connection attempt cancelled (gateway closing)", backend=name
            ) from None

    def _connect_done(self, name: str, task: asyncio.Task) -> None:
        if self._connecting.get(name) is task:
            del self._connecting[name]
        if not task.cancelled():
            # Marks the exception retrieved even if every waiter went away.
            task.exception()

    async def _connect(self, descriptor: BackendDescriptor) -> Connection:
        name = descriptor.name
        stale = self._backends.pop(name, None)
        if stale is not None:
            logger.warning(f"Backend {name} is no longer alive, reconnecting")
            await self._stop(name, stale)

        backend = self._backend_factory(descriptor, self.settings)
        try:
            connection = await backend.start()
        except GatewayError as e:
            logger.warning(f"Failed to connect {name}: {e}")
            raise BackendUnavailableError(
                f"Backend '{name}' is unavailable: {e}", backend=name
            ) from e
        except (OSError, asyncio.TimeoutError) as e:
            await backend.stop()
            logger.warning(f"Failed to connect {name}: {e}")
            raise BackendUnavailableError(
                f"Backend '{name}' is unavailable: {e}", backend=name
            ) from e

        self._backends[name] = backend
        return connection

    async def disconnect(self, name: str) -> None:
        """Stop one backend. No-op if it was never started."""
        backend = self._backends.pop(name, None)
        if backend is not None:
            await self._stop(name, backend)

    async def disconnect_all(self) -> None:
        """Stop every live backend; one failing backend does not block the rest."""
        backends, self._backends = self._backends, {}
        attempts = list(self._connecting.values())
        for attempt in attempts:
            attempt.cancel()
        if attempts:
            await asyncio.gather(*attempts, return_exceptions=True)

        await asyncio.gather(*(self._stop(name, backend) for name, backend in backends.items()))
        if backends:
            logger.info(f"Disconnected {len(backends)} backend(s)")

    async def _stop(self, name: str, backend: Backend) -> None:
        try:
            await backend.stop()
            logger.info(f"Stopped {name}")
        except Exception as e:
            logger.warning(f"Error stopping {name}: {e}")
