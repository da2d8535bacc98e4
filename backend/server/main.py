"""
Process entry point for the continuity capture service.

Responsibilities:
- Load .env and configuration
- Serve the ASGI app with uvicorn (SIGINT/SIGTERM trigger the lifespan
  shutdown, which stops the capture service cooperatively)
"""

from __future__ import annotations

import uvicorn
from dotenv import load_dotenv

from config import AppConfig
from server.app import create_app


def main() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()

    uvicorn.run(
        create_app(config),
        host=config.http_host,
        port=config.http_port,
        log_level=config.log_level.lower(),
    )


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------

if __name__ == "__main__":
    main()
