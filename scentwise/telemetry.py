"""Structured logging for the ScentWise gateway.

Every gate outcome becomes one JSON line on the ``scentwise`` logger. Denials
and failures log at WARNING so they stand out from routine traffic.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("scentwise")


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(message)s"


def setup_logging(log_file: Optional[str], level: str = "INFO") -> None:
    """Attach handlers to the ``scentwise`` logger once per process.

    Records always go to stdout. When ``log_file`` is set they are also
    appended to that file, whose parent directory is created on demand.
    An unknown ``level`` name falls back to INFO.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if logger.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a"))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def log_request(
    *,
    endpoint: str,
    client_ip: str,
    outcome: str,
    tier: Optional[str] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
) -> None:
    """Log a single gate outcome as one JSON line.

    Args:
        endpoint: Endpoint label (e.g. "recommend", "login").
        client_ip: Address the request was attributed to.
        outcome: Short outcome label (e.g. "success", "rate_limited", "forbidden").
        tier: Resolved access tier, if resolution ran.
        error: Server-side error detail. Never sent to the client.
        request_id: Gateway-assigned request ID.
        extra: Additional fields (usage counts, upstream status, ...).
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "endpoint": endpoint,
        "client_ip": client_ip,
        "outcome": outcome,
    }

    if tier:
        record["tier"] = tier

    if error:
        record["error"] = error

    if extra:
        record.update(extra)

    level = logging.WARNING if error else logging.INFO
    logger.log(level, json.dumps(record, default=str))
