import json
import logging
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Dict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
    )


def log_json(logger: Logger, event: str, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    payload.update(fields)
    logger.info(json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
