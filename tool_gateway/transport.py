"""
Transport layer: JSON-RPC 2.0 messages, wire framing, and byte channels.

Two framings are supported:
  - NewlineFramer: one JSON document per line (MCP stdio)
  - ContentLengthFramer: "Content-Length: N" header + blank line + N bytes
    of UTF-8 JSON (LSP / ACP style)

A Transport is a raw byte channel with a Framer attached. StreamTransport
wraps an asyncio StreamReader/StreamWriter pair, which covers both
subprocess pipes and TCP sockets, so everything above this module is
transport-agnostic.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

from tool_gateway.errors import FramingError, ProtocolError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: Any
    id: int | str

    def to_dict(self) -> dict[str, Any]:
        message = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (a request without an id)."""
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        message = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error
        else:
            message["result"] = self.result
        return message


Message = JsonRpcRequest | JsonRpcResponse | JsonRpcNotification


def is_valid_id(value: Any) -> bool:
    """JSON-RPC ids are strings, integers or null. ``True`` is not ``1``."""
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, (str, int))


def parse_message(data: Any) -> Message:
    """
    Classify a decoded JSON object as a request, notification or response.

    Raises:
        ProtocolError: if the object is none of the three, or its id is not
            a string, an integer or null.
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"Message is not an object: {data!r}", code=INVALID_REQUEST)

    if not is_valid_id(data.get("id")):
        raise ProtocolError(f"Invalid id: {data['id']!r}", code=INVALID_REQUEST)

    method = data.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise ProtocolError(f"Invalid method: {method!r}", code=INVALID_REQUEST)
        if "id" in data and data["id"] is not None:
            return JsonRpcRequest(method=method, params=data.get("params"), id=data["id"])
        return JsonRpcNotification(method=method, params=data.get("params"))

    if "id" in data and ("result" in data or "error" in data):
        return JsonRpcResponse(id=data["id"], result=data.get("result"), error=data.get("error"))

    raise ProtocolError(f"Unrecognized message: {data!r}", code=INVALID_REQUEST)


# ============================================================
# FRAMING
# ============================================================

class Framer(ABC):
    """Splits a byte stream into JSON messages and encodes messages to bytes."""

    @abstractmethod
    def feed(self, data: bytes) -> list[Any]:
        """Append bytes, return every message that is now complete."""
        ...

    @abstractmethod
    def encode(self, message: dict[str, Any]) -> bytes:
        ...

    @property
    @abstractmethod
    def pending_bytes(self) -> int:
        """Number of buffered bytes not yet part of a complete message."""
        ...


class NewlineFramer(Framer):
    """One JSON document per line. The trailing partial line is kept."""

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[Any]:
        self._buffer.extend(data)
        end = self._buffer.rfind(b"\n")
        if end == -1:
            return []

        complete = bytes(self._buffer[:end])
        del self._buffer[:end + 1]

        messages = []
        for line in complete.split(b"\n"):
            line = line.strip()
            if not line:
                continue
            try:
                messages.append(json.loads(line.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Dropping unparsable line ({len(line)} bytes): {e}")
        return messages

    def encode(self, message: dict[str, Any]) -> bytes:
        return json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n"

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


class ContentLengthFramer(Framer):
    """
    LSP-style framing: ``Content-Length: N`` + blank line + N bytes.

    N counts bytes, so the buffer is raw bytes and content is only decoded
    after exactly N bytes have been sliced out. A multi-byte character is
    never split.
    """

    HEADER = b"Content-Length:"
    SEPARATORS = (b"\r\n\r\n", b"\n\n")

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[Any]:
        self._buffer.extend(data)
        messages = []
        while True:
            header_start = self._buffer.find(self.HEADER)
            if header_start == -1:
                break

            value_start = header_start + len(self.HEADER)
            separator, separator_len = self._find_separator(value_start)
            if separator == -1:
                break

            try:
                length = self._parse_length(self._buffer[value_start:separator])
            except FramingError as e:
                logger.warning(f"{e}; resynchronizing on next header")
                del self._buffer[:separator + separator_len]
                continue

            content_start = separator + separator_len
            content_end = content_start + length
            if len(self._buffer) < content_end:
                break

            body = bytes(self._buffer[content_start:content_end])
            del self._buffer[:content_end]

            try:
                messages.append(json.loads(body.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Dropping unparsable body ({length} bytes): {e}")
        return messages

    def _find_separator(self, start: int) -> tuple[int, int]:
        """Nearest header/body separator after ``start``."""
        best, best_len = -1, 0
        for separator in self.SEPARATORS:
            pos = self._buffer.find(separator, start)
            if pos != -1 and (best == -1 or pos < best):
                best, best_len = pos, len(separator)
        return best, best_len

    @staticmethod
    def _parse_length(raw: bytes) -> int:
        # Other headers (e.g. Content-Type) may follow on later lines.
        value = raw.split(b"\n", 1)[0].strip()
        try:
            length = int(value.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise FramingError(f"Invalid Content-Length: {value!r}") from e
        if length < 0:
            raise FramingError(f"Negative Content-Length: {length}")
        return length

    def encode(self, message: dict[str, Any]) -> bytes:
        body = json.dumps(message, ensure_ascii=False).encode("utf-8")
        return b"Content-Length: %d\r\n\r\n" % len(body) + body

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


FRAMERS: dict[str, type[Framer]] = {
    "newline": NewlineFramer,
    "content-length": ContentLengthFramer,
}


def create_framer(kind: str) -> Framer:
    try:
        return FRAMERS[kind]()
    except KeyError as e:
        raise ValueError(f"Unknown framing '{kind}'. Available: {list(FRAMERS)}") from e


# ============================================================
# TRANSPORTS
# ============================================================

class Transport(ABC):
    """Abstract byte channel carrying framed JSON-RPC messages."""

    def __init__(self, framer: Framer):
        self.framer = framer
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def read(self) -> bytes:
        """Read the next chunk. Returns b"" at end of stream."""
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Frame and write one message. Concurrent senders are serialized."""
        data = self.framer.encode(message)
        async with self._write_lock:
            await self.write(data)

    async def messages(self) -> AsyncIterator[Any]:
        """Yield decoded messages until the stream ends."""
        while True:
            chunk = await self.read()
            if not chunk:
                if self.framer.pending_bytes:
                    logger.debug(f"Stream ended with {self.framer.pending_bytes} unframed bytes")
                return
            for message in self.framer.feed(chunk):
                yield message


class StreamTransport(Transport):
    """
    Transport over an asyncio StreamReader/StreamWriter pair.

    Used for subprocess stdout/stdin and for TCP connections alike.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        framer: Framer,
        chunk_size: int = 65536,
    ):
        super().__init__(framer)
        self._reader = reader
        self._writer = writer
        self.chunk_size = chunk_size

    async def read(self) -> bytes:
        return await self._reader.read(self.chunk_size)

    async def write(self, data: bytes) -> None:
        if self._writer.is_closing():
            raise ConnectionResetError("Transport is closed")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Ignoring error while closing transport: {e!r}")
