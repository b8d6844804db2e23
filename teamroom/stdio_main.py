import asyncio
import argparse
import logging

from mcp.server.stdio import stdio_server

from teamroom.mcp_server import init_connection_id, server, set_default_session


async def run(session_id: str | None) -> None:
    set_default_session(session_id)
    init_connection_id()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="TeamRoom MCP stdio mode")
    parser.add_argument("--session-id", type=str, default=None,
                        help="Session id used for tool calls that omit session_id")
    args = parser.parse_args()

    # Stdout carries MCP JSON-RPC; keep log output off it
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(run(args.session_id))


if __name__ == "__main__":
    main()
