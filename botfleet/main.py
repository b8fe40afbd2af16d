"""
FilePath: "/botfleet/main.py"
Project: BotFleet - Entry Point
Description: Loads settings, configures logging, builds the fleet and serves the management API.
Author: "Michael Landbo"
Date created: "19/10/2026"
Version: "1.0.0"
"""

import logging

import uvicorn
from dotenv import load_dotenv
from termcolor import colored

from .log import configure_logging
from .orchestrator.api import create_app
from .orchestrator.fleet import FleetManager
from .settings import get_settings

logger = logging.getLogger("botfleet")


def main() -> None:
     load_dotenv(override=False)
     settings = get_settings()
     configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

     logger.info(colored(f"--- {settings.APP_NAME} Starting ---", "green", attrs=["bold"]))
     logger.info(f"Data directory: {settings.DATA_DIR.resolve()}")
     if not settings.ADMIN_API_KEY:
          logger.warning(colored("ADMIN_API_KEY is not set, management routes will reject every request", "yellow"))

     fleet = FleetManager.from_settings(settings)
     app = create_app(fleet, settings.ADMIN_API_KEY)

     logger.info(colored(f"--- Management API on {settings.HOST}:{settings.PORT} ---", "cyan"))
     # uvicorn drives the lifespan, which starts and stops the fleet
     uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
     main()
