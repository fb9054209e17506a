"""Logging setup shared by the API and the CLI.

Two output modes: a plain line format for development and JSON lines for
production log shipping. JSON lines carry the acting user and client
address taken from the request context, so a sync failure in the logs can
be matched to its audit entry.

Security Impact:
    - Passwords, tokens and the REDCap API token are never passed to loggers
    - Patient business ids are masked in JSON output (names are never logged)
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from clinsync.infrastructure.request_context import SYSTEM_ACTOR, get_request_context

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PLAIN_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Chatty libraries held at WARNING regardless of the application level
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "multipart")

_PATIENT_ID = re.compile(r"PAT-\d{6}-[A-Z]{3}")


def mask_patient_ids(message: str) -> str:
    """Replace ``PAT-######-AAA`` ids with ``PAT-***``."""
    return _PATIENT_ID.sub("PAT-***", message)


class StructuredFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_patient_ids(record.getMessage()),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(self._context_fields())

        if hasattr(record, "extra_fields"):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)

    @staticmethod
    def _context_fields() -> Dict[str, Any]:
        context = get_request_context()
        fields: Dict[str, Any] = {}
        if context.actor_email != SYSTEM_ACTOR:
            fields["actor"] = context.actor_email
        if context.ip_address:
            fields["client_ip"] = context.ip_address
        return fields


def setup_logging(use_json: bool = False, log_level: str = "INFO", stream: Optional[TextIO] = None):
    """Configure the root logger.

    Replaces any handler already installed, so calling it twice (API import
    then CLI callback) leaves a single handler.

    Parameters:
        use_json: Emit JSON lines instead of the plain format
        log_level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream (stdout by default; the CLI passes stderr)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if use_json else logging.Formatter(PLAIN_FORMAT, PLAIN_DATEFMT))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
