from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.app import HelpdeskApp
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger(__name__)


async def _run(config: AppConfig) -> None:
    helpdesk = HelpdeskApp(config=config)
    await helpdesk.start(run_sweeper=True)
    try:
        if not config.api.enabled:
            LOGGER.info("API disabled; running the scheduling sweep only")
            await asyncio.Event().wait()
            return
        server = uvicorn.Server(
            uvicorn.Config(
                app=create_api_app(helpdesk),
                host=config.api.host,
                port=config.api.port,
                log_level=config.logging.level.lower(),
            )
        )
        await server.serve()
    finally:
        await helpdesk.close()


def main() -> None:
    root = Path(__file__).resolve().parent
    config = load_config(root / "config" / "config.yaml")
    configure_logging(config.logging)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
