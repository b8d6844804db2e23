import argparse
import os

import uvicorn

from teamroom import config


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the TeamRoom coordination server (HTTP, SSE and MCP)")
    parser.add_argument("--host", default=config.HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    parser.add_argument("--db", default=None, help=f"SQLite file (default: {config.DB_PATH})")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    args = parser.parse_args()

    if args.db:
        # database.py reads config.DB_PATH on first import; reload workers read the env var
        os.environ["TEAMROOM_DB"] = args.db
        config.DB_PATH = args.db

    uvicorn.run(
        "teamroom.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
