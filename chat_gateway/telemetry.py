"""Logging and telemetry for the edge chat gateway.

Emits structured log records to stdout and appends them to an append-only
log file for local review. Records never contain message bodies, CSRF
tokens or provider credentials; client IPs are anonymized.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from chat_gateway.leads import anonymize_ip

logger = logging.getLogger("gateway")


def setup_logging(log_file: str) -> None:
    """Configure the gateway logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
    """
    logger.setLevel(logging.INFO)

    # httpx logs full request URLs at INFO, and Gemini keys travel in the query string.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def log_request(
    *,
    route: str,
    ip: str,
    outcome: str,
    provider: Optional[str] = None,
    tokens: Optional[int] = None,
    session_total: Optional[int] = None,
    pack_status: Optional[str] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Log a single request event as one JSON line.

    Args:
        route: The API route (e.g. "/api/chat").
        ip: The raw client IP; only its anonymized form is written.
        outcome: Short outcome label (e.g. "answered", "rejected", "stored").
        provider: Decision path that served the turn, if any.
        tokens: Tokens charged or estimated for this call.
        session_total: Session running total after the call.
        pack_status: "ok" or "pack-unavailable" when a pack was consulted.
        error: Reason code if the request was rejected.
        request_id: Gateway-assigned request ID.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "route": route,
        "client": anonymize_ip(ip),
        "outcome": outcome,
    }

    if provider:
        record["provider"] = provider

    if tokens is not None:
        record["tokens"] = tokens

    if session_total is not None:
        record["session_total"] = session_total

    if pack_status:
        record["pack_status"] = pack_status

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
