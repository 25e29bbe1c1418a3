import logging
import sys
from typing import Any, Dict

import structlog

from .config import settings


def _add_app_context(_: Any, __: Any, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", "d365-mcp")
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def configure_logging() -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            timestamper,
            _add_app_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
