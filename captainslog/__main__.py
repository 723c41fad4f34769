"""
Run the Captain's Log proxy under uvicorn.

Usage:
    python -m captainslog [--config PATH] [--host HOST] [--port PORT]
"""

import argparse
import os
from pathlib import Path

import uvicorn

from captainslog.config import get_config, resolve_listen_address, resolve_logging_config


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="captainslog",
        description="OpenAI-compatible transcription proxy for Whisper backends",
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--host", help="Listen address (overrides config)")
    parser.add_argument("--port", type=int, help="Listen port (overrides config)")
    args = parser.parse_args()

    if args.config:
        # uvicorn imports the app module afresh; the env var carries the path
        os.environ["CAPTAINSLOG_CONFIG"] = str(args.config.resolve())

    config = get_config(args.config)
    host, port = resolve_listen_address(config)
    log_level = str(resolve_logging_config(config).get("level") or "INFO").lower()

    print(f"Listening on http://{args.host or host}:{args.port or port}")
    uvicorn.run(
        "captainslog.api.main:app",
        host=args.host or host,
        port=args.port or port,
        log_level=log_level,
        access_log=True,
        reload=False,
    )


if __name__ == "__main__":
    main()
