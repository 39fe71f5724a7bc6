#!/usr/bin/env python3
"""
Cortex MCP Wrapper
------------------
Acts as a bridge between MCP clients (Claude Desktop, etc.) and the Cortex
context backend. Speaks Content-Length framed JSON-RPC on stdin/stdout.
"""

import sys
import asyncio
import logging
import argparse
import signal
from typing import Any, Dict, List, Optional, Tuple

from cortex.core.config import AdapterConfig, ConfigError, load_config
from cortex.mcp.handlers import MethodDispatcher
from cortex.mcp.server import McpServer
from cortex.sdk.client import AsyncCortexClient
from cortex.version import __version__

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("Cortex")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cortex-mcp",
        description="MCP stdio adapter for the Cortex context backend",
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--server-url", dest="server_url", help="Cortex server URL")
    parser.add_argument("--token", dest="auth_token", help="Cortex auth token")
    parser.add_argument("--project-id", dest="project_id", help="Project UUID")
    parser.add_argument("--timeout", dest="timeout_ms", type=int, help="Backend call timeout in milliseconds")
    parser.add_argument("--verbose", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ("server_url", "auth_token", "project_id", "timeout_ms", "verbose")
    return {key: getattr(args, key) for key in keys if getattr(args, key, None) is not None}


def configure_logging(config: AdapterConfig) -> None:
    """Send logs to the configured file, or stderr. stdout carries the protocol."""
    level = logging.DEBUG if config.verbose else getattr(logging, config.log_level)
    kwargs: Dict[str, Any] = {"level": level, "format": LOG_FORMAT, "force": True}
    if config.log_file:
        kwargs["filename"] = config.log_file
        kwargs["filemode"] = "a"
    else:
        kwargs["stream"] = sys.stderr
    logging.basicConfig(**kwargs)


async def open_stdio() -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return reader, writer


async def run(config: AdapterConfig) -> None:
    reader, writer = await open_stdio()
    async with AsyncCortexClient.from_config(config) as client:
        dispatcher = MethodDispatcher.from_config(config, client)
        server = McpServer.from_config(config, dispatcher, reader, writer)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, server.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported on this platform", sig)

        await server.serve()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config, overrides=cli_overrides(args))
    except ConfigError as exc:
        print(f"cortex-mcp: {exc}", file=sys.stderr)
        return 1

    configure_logging(config)
    logger.info("Cortex MCP Wrapper %s started (server=%s, project=%s)", __version__, config.base_url, config.project_id)
    logger.debug("Effective configuration: %s", config.redacted())

    try:
        asyncio.run(run(config))
    except Exception:
        logger.exception("Fatal error in MCP wrapper")
        return 1
    logger.info("Cortex MCP Wrapper stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
