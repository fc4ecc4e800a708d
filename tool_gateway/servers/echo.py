"""
Echo Tool Server — minimal reference backend.

Use this as a template for building new tool servers.
It echoes its input back and can be told to stall, which is
useful for exercising the gateway's transport, timeouts and teardown.

Launch:
    python -m tool_gateway.servers.echo                    # newline-delimited JSON
    python -m tool_gateway.servers.echo --content-length   # Content-Length framing

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m tool_gateway.servers.echo
"""

import sys
import time

from tool_gateway.config import configure_logging
from tool_gateway.server import StdioToolServer, ToolHandler
from tool_gateway.transport import ContentLengthFramer, NewlineFramer


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ["message"]

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class SleepTool(ToolHandler):
    name = "sleep"
    description = "Waits for the given number of seconds, then reports how long it slept."
    parameters = {
        "seconds": {
            "type": "number",
            "description": "How long to sleep",
        },
    }

    def handle(self, params: dict) -> dict:
        seconds = float(params.get("seconds", 0))
        time.sleep(seconds)
        return {"slept": seconds}


def main(argv: list[str]) -> None:
    configure_logging("WARNING")
    framer = ContentLengthFramer() if "--content-length" in argv else NewlineFramer()
    server = StdioToolServer(name="echo", framer=framer)
    server.register(EchoTool())
    server.register(SleepTool())
    server.run()


if __name__ == "__main__":
    main(sys.argv[1:])
