# FilePath: "/botfleet/log.py"
# Project: BotFleet
# Description: Logging setup. Plain console format for development, JSON lines for log shippers.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

import json
import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """Formats logs as JSON for better machine reading (Splunk/ELK)."""
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": record.created,
            "level": record.levelname,
            "service": "botfleet",
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "bot_id"):
            payload["bot_id"] = record.bot_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: Union[str, int] = "INFO", json_format: bool = False) -> None:
    """Install a single stream handler on the root logger"""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)
