"""
Connection — one JSON-RPC session over a Transport.

A Connection keeps two independent structures:
  - an outgoing pending-call table (our requests awaiting responses)
  - an inbound dispatcher (handlers for requests/notifications the peer sends)

A single receive task reads every message from the transport and either
settles a pending call, hands a notification to its handler, or answers a
peer request. Callers of send() only ever wait on their own future.

Usage:
    connection = Connection(transport, name="calculator")
    connection.start()
    result = await connection.send("tools/list", {})
    await connection.close()
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from tool_gateway.errors import CallTimeoutError, ConnectionClosedError, ProtocolError
from tool_gateway.transport import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    Transport,
    parse_message,
)

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 60.0

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass
class PendingCall:
    """A sent request awaiting its response."""
    id: int
    method: str
    future: asyncio.Future
    deadline: float
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class Connection:
    """
    JSON-RPC 2.0 session: request/response correlation plus inbound dispatch.

    The pending table is only touched by synchronous code running on the
    event loop, so lookup-and-remove never interleaves with another task.
    """

    def __init__(
        self,
        transport: Transport,
        name: str = "backend",
        timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        self.transport = transport
        self.name = name
        self.timeout = timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._request_handlers: dict[str, Handler] = {}
        self._notification_handlers: dict[str, Handler] = {}
        self._close_callbacks: list[Callable[["Connection"], None]] = []
        self._inbound_tasks: set[asyncio.Task] = set()
        self._receiver: asyncio.Task | None = None
        self._closed = False

    # -- lifecycle ---------------------------------------------------

    def start(self) -> None:
        """Start the receive loop. Must be called from a running event loop."""
        if self._receiver is None and not self._closed:
            self._receiver = asyncio.create_task(
                self._receive_loop(), name=f"receive:{self.name}"
            )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_close_callback(self, callback: Callable[["Connection"], None]) -> None:
        self._close_callbacks.append(callback)

    async def close(self) -> None:
        """
        Close the session. Idempotent.

        Every outstanding call is rejected with ConnectionClosedError before
        the transport is released.
        """
        if self._closed:
            return
        self._shutdown("connection closed")

        receiver = self._receiver
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)

        tasks = list(self._inbound_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.transport.close()
        logger.debug(f"Connection to {self.name} closed")

    def _shutdown(self, reason: str) -> None:
        self._closed = True
        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if call.timer is not None:
                call.timer.cancel()
            if not call.future.done():
                call.future.set_exception(ConnectionClosedError(
                    f"Connection to '{self.name}' closed ({reason}) "
                    f"before '{call.method}' (id={call.id}) completed",
                    backend=self.name,
                ))
        if pending:
            logger.warning(f"Failed {len(pending)} pending call(s) on {self.name}: {reason}")

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"Close callback failed for {self.name}")

    # -- outgoing ----------------------------------------------------

    async def send(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            CallTimeoutError: no response before the deadline.
            ConnectionClosedError: the connection closed first.
            ProtocolError: the peer answered with an error object.
        """
        if self._closed:
            raise ConnectionClosedError(
                f"Connection to '{self.name}' is closed", backend=self.name
            )

        loop = asyncio.get_running_loop()
        call_timeout = self.timeout if timeout is None else timeout
        request = JsonRpcRequest(method=method, params=params, id=next(self._ids))
        call = PendingCall(
            id=request.id,
            method=method,
            future=loop.create_future(),
            deadline=loop.time() + call_timeout,
        )
        call.timer = loop.call_later(call_timeout, self._expire, request.id, call_timeout)
        self._pending[request.id] = call

        try:
            logger.debug(f"-> {self.name} {method} id={request.id}")
            try:
                await self.transport.send(request.to_dict())
            except (OSError, RuntimeError) as e:
                self._reject(request.id, ConnectionClosedError(
                    f"Failed to write '{method}' to '{self.name}': {e}",
                    backend=self.name,
                ))
            return await call.future
        finally:
            self._release(request.id)

    async def notify(self, method: str, params: Any = None) -> None:
        if self._closed:
            raise ConnectionClosedError(
                f"Connection to '{self.name}' is closed", backend=self.name
            )
        try:
            await self.transport.send(JsonRpcNotification(method=method, params=params).to_dict())
        except (OSError, RuntimeError) as e:
            raise ConnectionClosedError(
                f"Failed to write '{method}' to '{self.name}': {e}", backend=self.name
            ) from e

    def _expire(self, request_id: int, timeout: float) -> None:
        call = self._pending.pop(request_id, None)
        if call is None or call.future.done():
            return
        logger.warning(f"Request '{call.method}' (id={request_id}) to {self.name} timed out after {timeout}s")
        call.future.set_exception(CallTimeoutError(
            f"'{call.method}' on '{self.name}' timed out after {timeout}s",
            backend=self.name,
        ))

    def _reject(self, request_id: int, error: Exception) -> None:
        call = self._pending.pop(request_id, None)
        if call is None:
            return
        if call.timer is not None:
            call.timer.cancel()
        if not call.future.done():
            call.future.set_exception(error)

    def _release(self, request_id: int) -> None:
        """Free the slot of a call whose caller is done with it (or gave up)."""
        call = self._pending.pop(request_id, None)
        if call is None:
            return
        if call.timer is not None:
            call.timer.cancel()
        if not call.future.done():
            call.future.cancel()

    # -- inbound -----------------------------------------------------

    def on_request(self, method: str, handler: Handler) -> None:
        """Answer peer-initiated ``method`` requests with ``handler(params)``."""
        self._request_handlers[method] = handler

    def on_notification(self, method: str, handler: Handler) -> None:
        self._notification_handlers[method] = handler

    async def _receive_loop(self) -> None:
        reason = "stream closed"
        try:
            async for data in self.transport.messages():
                self._dispatch(data)
        except OSError as e:
            reason = f"read failed: {e}"
        except Exception as e:
            logger.exception(f"Receive loop for {self.name} crashed")
            reason = f"receive loop crashed: {e!r}"

        if not self._closed:
            logger.warning(f"Connection to {self.name} lost: {reason}")
            self._shutdown(reason)
            await self.transport.close()

    def _dispatch(self, data: Any) -> None:
        try:
            message = parse_message(data)
        except ProtocolError as e:
            logger.warning(f"Dropping invalid message from {self.name}: {e}")
            return

        if isinstance(message, JsonRpcResponse):
            self._handle_response(message)
        elif isinstance(message, JsonRpcRequest):
            self._spawn(self._answer(message))
        else:
            self._handle_notification(message)

    def _handle_response(self, response: JsonRpcResponse) -> None:
        call = self._pending.pop(response.id, None)
        if call is None:
            logger.debug(f"Discarding stale response id={response.id} from {self.name}")
            return
        if call.timer is not None:
            call.timer.cancel()
        if call.future.done():
            return
        if response.is_error:
            call.future.set_exception(ProtocolError.from_error(response.error, backend=self.name))
        else:
            call.future.set_result(response.result)

    def _handle_notification(self, notification: JsonRpcNotification) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            logger.debug(f"Unhandled notification from {self.name}: {notification.method}")
            return
        try:
            result = handler(notification.params)
        except Exception:
            logger.exception(f"Notification handler for '{notification.method}' failed")
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_notification(notification.method, result))

    async def _await_notification(self, method: str, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"Notification handler for '{method}' failed")

    async def _answer(self, request: JsonRpcRequest) -> None:
        """Answer a peer request. Every request gets a response, never silence."""
        handler = self._request_handlers.get(request.method)
        if handler is None:
            logger.debug(f"Rejecting unsupported request '{request.method}' from {self.name}")
            response = JsonRpcResponse(id=request.id, error={
                "code": METHOD_NOT_FOUND,
                "message": f"Method not supported: {request.method}",
            })
        else:
            try:
                result = handler(request.params)
                if inspect.isawaitable(result):
                    result = await result
                response = JsonRpcResponse(id=request.id, result=result)
            except ProtocolError as e:
                response = JsonRpcResponse(id=request.id, error=e.to_error())
            except Exception as e:
                logger.exception(f"Request handler for '{request.method}' failed")
                response = JsonRpcResponse(id=request.id, error={
                    "code": INTERNAL_ERROR,
                    "message": str(e),
                })

        try:
            await self.transport.send(response.to_dict())
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not answer '{request.method}' from {self.name}: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)
