"""mnemos MCP Server -- stdio MCP server over a MemoryEngine."""

import asyncio
import collections
import logging
import os
import sys
import time
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from mnemos.server.handlers import HANDLERS
from mnemos.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("mnemos.server")

SERVER_NAME = "mnemos"

_WRITE_TOOLS = frozenset({"mnemos_save", "mnemos_link", "mnemos_index", "mnemos_retention", "mnemos_graph"})


class RateLimiter:
    """Sliding-window call counters: a global tier and a write-tool tier."""

    def __init__(self, global_limit: int = 300, write_limit: int = 60, window_s: float = 60.0):
        self.global_limit = global_limit
        self.write_limit = write_limit
        self.window_s = window_s
        self._global: collections.deque = collections.deque()
        self._write: collections.deque = collections.deque()

    @classmethod
    def from_env(cls) -> "RateLimiter":
        return cls(
            global_limit=int(os.environ.get("MNEMOS_RATE_LIMIT_GLOBAL", "300")),
            write_limit=int(os.environ.get("MNEMOS_RATE_LIMIT_WRITE", "60")),
        )

    def check(self, tool_name: str, now: Optional[float] = None) -> Optional[str]:
        """Return an error message if a limit is exceeded, else None."""
        now = time.monotonic() if now is None else now
        cutoff = now - self.window_s

        while self._global and self._global[0] < cutoff:
            self._global.popleft()
        if len(self._global) >= self.global_limit:
            return f"Rate limit exceeded: {self.global_limit} calls/min globally. Try again shortly."
        self._global.append(now)

        if tool_name in _WRITE_TOOLS:
            while self._write and self._write[0] < cutoff:
                self._write.popleft()
            if len(self._write) >= self.write_limit:
                return f"Rate limit exceeded: {self.write_limit} write calls/min. Try again shortly."
            self._write.append(now)
        return None


def create_server(engine, rate_limiter: Optional[RateLimiter] = None) -> Server:
    """Build an MCP Server whose tools run against ``engine``."""
    server = Server(SERVER_NAME)
    limiter = rate_limiter or RateLimiter.from_env()

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=schema["name"], description=schema["description"], inputSchema=schema["inputSchema"])
            for schema in TOOL_SCHEMAS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Dispatch tool call to the appropriate handler."""
        rate_err = limiter.check(name)
        if rate_err:
            return [TextContent(type="text", text=rate_err)]

        handler = HANDLERS.get(name)
        if not handler:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        try:
            result = await handler(engine, arguments or {})
            content_list = result.get("content", [{}])
            text = content_list[0].get("text", str(result)) if content_list else str(result)
            return [TextContent(type="text", text=text)]
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e)
            return [TextContent(type="text", text=f"Error in {name}: {e}")]

    return server


async def main():
    """Entry point for the mnemos stdio MCP server."""
    from mnemos.bridge import open_engine

    logging.basicConfig(level=os.environ.get("MNEMOS_LOG_LEVEL", "WARNING").upper(), stream=sys.stderr)
    logger.info("Starting mnemos MCP server...")

    with open_engine() as engine:
        server = create_server(engine)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    logger.info("mnemos MCP server stopped")


if __name__ == "__main__":
    asyncio.run(main())
