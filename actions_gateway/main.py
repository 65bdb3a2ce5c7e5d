"""
Main entry point for the actions gateway.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import uvicorn

from .config import build_snapshot
from .http_app import create_app


def main() -> None:
    """Start the gateway with uvicorn."""
    try:
        config_path = Path(os.getenv("ACTIONS_GATEWAY_CONFIG")) if os.getenv("ACTIONS_GATEWAY_CONFIG") else None
        settings = build_snapshot(config_path).settings
        app = create_app(config_path)

        print(f"Starting actions gateway on http://{settings.host}:{settings.port}")
        print(f"Tools: http://{settings.host}:{settings.port}/tools")
        print(f"Healthcheck: http://{settings.host}:{settings.port}/health")

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            server_header=False,
        )
    except KeyboardInterrupt:
        print("\nServer shutdown requested...")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start actions gateway: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
