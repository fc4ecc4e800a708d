"""
Reference tool server — a backend the gateway can spawn over stdio.

Each process reads framed MCP requests on stdin, runs the matching
ToolHandler, and answers on stdout. Tool failures come back as results
with isError set; only protocol problems become JSON-RPC errors.

Minimal server:

    from tool_gateway.server import StdioToolServer, ToolHandler

    class WordCount(ToolHandler):
        name = "word_count"
        description = "Counts the words in a text"
        parameters = {"text": {"type": "string"}}
        required = ["text"]

        def handle(self, params):
            return {"words": len(params["text"].split())}

    StdioToolServer(name="words").register(WordCount())  # then .run()
"""

from __future__ import annotations

import io
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from typing import Any, BinaryIO

from tool_gateway.errors import ProtocolError
from tool_gateway.transport import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    Framer,
    JsonRpcRequest,
    JsonRpcResponse,
    NewlineFramer,
    is_valid_id,
    parse_message,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"


class ToolHandler(ABC):
    """One tool. Subclasses set the class attributes and implement handle()."""

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """Run the tool. A non-string result is sent back as JSON text."""
        ...

    def get_schema(self) -> dict:
        """tools/list entry for this tool."""
        schema = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - Newline-delimited by default, Content-Length framing if given that framer
    - Supports methods:
        - "initialize" → protocol version, capabilities, server info
        - "tools/list" → {"tools": [schema, ...]}
        - "tools/call" → {"content": [{"type": "text", ...}], "isError": bool}
        - "ping"       → {}
    - Notifications are accepted and never answered
    """

    def __init__(self, name: str = "tool-server", version: str = "0.1.0", framer: Framer | None = None):
        self.name = name
        self.version = version
        self.framer = framer or NewlineFramer()
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None) -> None:
        """Serve until stdin reaches EOF, which happens when the gateway stops us."""
        stdin = stdin or sys.stdin.buffer
        stdout = stdout or sys.stdout.buffer
        logger.info(f"{self.name} serving {len(self._handlers)} tool(s): {list(self._handlers)}")

        fd = _fileno(stdin)
        while True:
            # os.read returns as soon as any bytes are available
            chunk = os.read(fd, 65536) if fd is not None else stdin.read1(65536)
            if not chunk:
                break
            for data in self.framer.feed(chunk):
                response = self.handle_message(data)
                if response is not None:
                    stdout.write(self.framer.encode(response.to_dict()))
                    stdout.flush()

    def handle_message(self, data: Any) -> JsonRpcResponse | None:
        """Answer one decoded message. Returns None for notifications."""
        try:
            message = parse_message(data)
        except ProtocolError as e:
            request_id = data.get("id") if isinstance(data, dict) else None
            if not is_valid_id(request_id):
                request_id = None
            return self._error(request_id, e.code, e.message)

        if not isinstance(message, JsonRpcRequest):
            # Notifications and stray responses get no reply
            return None

        try:
            return JsonRpcResponse(id=message.id, result=self._dispatch(message.method, message.params or {}))
        except ProtocolError as e:
            return self._error(message.id, e.code, e.message)
        except Exception as e:
            return self._error(message.id, INTERNAL_ERROR, str(e))

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            tool_params = params.get("arguments") or {}

            handler = self._handlers.get(tool_name)
            if not handler:
                raise ProtocolError(
                    f"Unknown tool: '{tool_name}'. "
                    f"Available: {list(self._handlers.keys())}",
                    code=INVALID_PARAMS,
                )

            try:
                result = handler.handle(tool_params)
            except Exception as e:
                logger.warning(f"Tool {tool_name} failed: {e}")
                return {"content": [{"type": "text", "text": str(e)}], "isError": True}

            text = result if isinstance(result, str) else json.dumps(result)
            return {"content": [{"type": "text", "text": text}], "isError": False}

        raise ProtocolError(f"Method not found: '{method}'", code=METHOD_NOT_FOUND)

    @staticmethod
    def _error(request_id: Any, code: int, message: str) -> JsonRpcResponse:
        return JsonRpcResponse(id=request_id, error={"code": code, "message": message})


def _fileno(stream: BinaryIO) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None
