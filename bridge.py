#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════╗
║           MAILBRIDGE — MCP Server + Worker Relay         ║
╠══════════════════════════════════════════════════════════╣
║  stdio  : MCP tools/list + tools/call for the assistant  ║
║  ws     : ws://127.0.0.1:37842/ws  (mail worker tunnel)  ║
║  http   : GET /status                                    ║
╚══════════════════════════════════════════════════════════╝

Usage:
    python bridge.py                  # config.yaml next to this file
    MAILBRIDGE_CONFIG=/path/cfg.yaml python bridge.py
"""

import asyncio
import logging
import os
import sys

import uvicorn
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, BASE_DIR)

from frontend import ToolFrontend
from relay import BridgeTransport
from utils.config import load_config
from utils.logger import setup_logger

logger = logging.getLogger("mailbridge")

SERVER_NAME = "thunderbird-mcp-server"
SERVER_VERSION = "1.0.0"


class ToolCallError(Exception):
    """Carries an error ToolResult's text out of the call_tool handler (→ isError)."""


def build_mcp_server(frontend: ToolFrontend) -> Server:
    server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=t["name"], description=t["description"], inputSchema=t["input_schema"])
            for t in frontend.list_tools()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        result = await frontend.invoke(name, arguments)
        if result.is_error:
            raise ToolCallError(result.text)
        return [TextContent(type="text", text=result.text)]

    return server


async def serve(config):
    transport = BridgeTransport(config)
    frontend = ToolFrontend(transport)
    mcp_server = build_mcp_server(frontend)

    bridge_cfg = config["bridge"]
    # log_config=None + no access log: uvicorn must never write to stdout
    http = uvicorn.Server(uvicorn.Config(
        transport.app,
        host=bridge_cfg["host"],
        port=int(bridge_cfg["port"]),
        log_config=None,
        access_log=False,
        lifespan="off",
    ))
    http_task = asyncio.create_task(http.serve())
    logger.info(f"[+] Relay listening on ws://{bridge_cfg['host']}:{bridge_cfg['port']}{transport.path}")

    try:
        async with stdio_server() as (read_stream, write_stream):
            await mcp_server.run(read_stream, write_stream, mcp_server.create_initialization_options())
    finally:
        logger.info("[x] MCP stdio closed, stopping relay")
        http.should_exit = True
        await http_task


def main():
    config = load_config()
    setup_logger(config, BASE_DIR)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
