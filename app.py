#!/usr/bin/env python3
"""
RealmOps Relay - Entry Point
=============================
One-command startup for the realtime console/log relay.

Usage:
    python app.py                      # Start with default settings
    python app.py --port 9000          # Start on custom port
    python app.py --log-level debug    # Verbose relay logging

This script:
    1. Creates config.yaml from config.yaml.example if it is missing
    2. Loads environment variables from .env (RELAY_JWT_SECRET)
    3. Configures logging
    4. Starts uvicorn with the app factory in server/main.py
"""

import argparse
import logging
import os
import shutil

import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="RealmOps Relay - realtime console and log channels",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port to listen on (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--log-level", type=str, default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the relay and uvicorn",
    )
    args = parser.parse_args()

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Ensure configuration files exist --------------------------------------
    for name in ("config.yaml", "servers.yaml"):
        path = os.path.join(project_dir, name)
        example = path + ".example"
        if not os.path.exists(path) and os.path.exists(example):
            shutil.copy2(example, path)
            print(f"[INIT] Created {name} from template")

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    # -- Logging ---------------------------------------------------------------
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    # -- Load configuration to get web server settings -------------------------
    from server.config import ConfigManager, DEFAULTS
    config = ConfigManager(project_dir).load()

    # Command-line args override config file
    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])

    print()
    print(f"  RealmOps Relay listening on http://{host}:{port}")
    print(f"  Console : ws://{host}:{port}/api/servers/<id>/console")
    print(f"  Logs    : ws://{host}:{port}/api/servers/<id>/logs/stream")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "server.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
