#!/usr/bin/env python3
"""
Entry point for running the tile server as a module.

Usage:
    python -m tileserver [config_file] -p [port] -b [bind address]

    Or run directly with uvicorn:
    uvicorn tileserver.main:get_app --factory --host 0.0.0.0 --port 8080 --workers 4
"""

import argparse
import logging
import os
import sys

import uvicorn

from tileserver.config import load_server_config

logger = logging.getLogger("tileserver")


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="PMTiles style, data and font server using FastAPI/Uvicorn."
    )
    parser.add_argument(
        "config",
        nargs="?",
        default="config.json",
        help="Path to server configuration JSON file (default: config.json).",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=8080,
        help="Port to bind to (default: 8080).",
    )
    parser.add_argument(
        "-b",
        "--bind",
        default="0.0.0.0",
        help="Address to bind to (default: 0.0.0.0).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1).",
    )
    parser.add_argument(
        "--public-url",
        default=None,
        help="Public base URL used in generated links, e.g. https://tiles.example.com/.",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development.",
    )
    parser.add_argument(
        "--event-mode",
        action="store_true",
        help="Production mode: warning-level logging and no access log.",
    )
    return parser.parse_args()


def main() -> None:
    """
    Main entry point: validates config and starts the Uvicorn server.

    Exits with code 1 on configuration errors or server failures.
    """
    args = parse_arguments()

    if args.event_mode:
        logging.basicConfig(level=logging.WARNING)
    else:
        logging.basicConfig(level=logging.INFO)

    # Validate configuration early to avoid worker crashes
    try:
        logger.info("Validating configuration...")
        config = load_server_config(args.config, public_url=args.public_url)
        logger.info(
            "Configuration valid: %d styles, %d data sources",
            len(config["styles"]),
            len(config["data"]),
        )
        for data_id, item in config["data"].items():
            logger.info("  - %s: %s", data_id, item["source"].locator)
    except ValueError as e:
        print("\nConfiguration Validation Failed:")
        print("=" * 60)
        print(str(e))
        print("=" * 60)
        print("\nPlease fix the above issues and try again.")
        sys.exit(1)

    # Export env for worker factory to consume
    os.environ["CONFIG_PATH"] = args.config
    if args.public_url:
        os.environ["PUBLIC_URL"] = args.public_url

    print("\n" + "=" * 50)
    print("Starting PMTiles Tile Server")
    print(f"Loading configuration from: {os.path.abspath(args.config)}")
    print(f"Listening on: http://{args.bind}:{args.port}")
    print(f"Public URL: {config['options']['public_url'] or 'derived from request'}")
    print(f"Worker processes: {args.workers}")
    print("=" * 50 + "\n")

    uvicorn_config = {
        "app": "tileserver.main:get_app",
        "factory": True,
        "host": args.bind,
        "port": args.port,
        "workers": args.workers,
        "reload": args.reload,
        "loop": "uvloop",
        "http": "httptools",
        "backlog": 256,
        "timeout_keep_alive": 30,
    }

    if args.event_mode:
        uvicorn_config.update({"log_level": "warning", "access_log": False})
    else:
        uvicorn_config.update({"log_level": "info", "access_log": True})

    try:
        uvicorn.run(**uvicorn_config)
    except KeyboardInterrupt:
        print("\nTile server stopped.")
    except Exception as e:
        print(f"Server encountered a critical error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
