"""Lead capture: field scrubbing, persistence and webhook fan-out.

Leads are stored in an append-only JSONL file, one ``{"id", "expires_at",
"record"}`` object per line. The file is replayed on startup so lookups
survive restarts; expired records are invisible to ``get``.

The webhook is best effort: one POST per lead, failures are logged and
never retried.
"""

import json
import logging
import os
import re
import secrets
import string
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("gateway")

MAX_TEXT = 4000
MAX_TRANSCRIPT = 24
MAX_USER_AGENT = 180

_NAME_RE = re.compile(r"^(?:[^\W\d_]|[.' -]){2,60}$")
_EMAIL_RE = re.compile(r"(?=.{3,120}$)[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}", re.IGNORECASE)
_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


class LeadValidationError(Exception):
    """Raised when a required lead field fails validation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def normalize_name(value: Any) -> str:
    name = re.sub(r"\s+", " ", str(value or "")).strip()
    return name if _NAME_RE.match(name) else ""


def normalize_email(value: Any) -> str:
    match = _EMAIL_RE.search(str(value or ""))
    return match.group(0) if match else ""


def normalize_phone(value: Any) -> str:
    digits = re.sub(r"\D", "", str(value or ""))
    return digits[:18] if len(digits) >= 9 else ""


def scrub(value: Any) -> str:
    return str(value or "")[:MAX_TEXT]


def anonymize_ip(ip: str) -> str:
    """Keep only the first two octets of an IPv4 address."""
    octets = (ip or "").split(".")
    if len(octets) == 4:
        return "{}.{}.x.x".format(octets[0], octets[1])
    return "x.x.x.x"


def new_lead_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return "lead_{}_{}".format(int(time.time() * 1000), suffix)


def build_lead_record(
    lead: Dict[str, Any],
    ip: str,
    user_agent: str,
) -> Dict[str, Any]:
    """Validate and scrub a submitted lead into a storable record.

    Args:
        lead: The ``lead`` object from the request body.
        ip: Client IP (stored anonymized).
        user_agent: Client User-Agent header.

    Returns:
        The record dict, including its generated ``id``.

    Raises:
        LeadValidationError: With reason ``invalid_name``, ``invalid_email``
            or ``invalid_phone``.
    """
    name = normalize_name(lead.get("name"))
    email = normalize_email(lead.get("email"))
    phone = normalize_phone(lead.get("phone"))
    if not name:
        raise LeadValidationError("invalid_name")
    if not email:
        raise LeadValidationError("invalid_email")
    if not phone:
        raise LeadValidationError("invalid_phone")

    transcript = lead.get("transcript")
    return {
        "id": new_lead_id(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "lang": "es" if lead.get("lang") == "es" else "en",
        "name": name,
        "email": email,
        "phone": phone,
        "interests": scrub(lead.get("interests")),
        "details": scrub(lead.get("details")),
        "transcript": transcript[-MAX_TRANSCRIPT:] if isinstance(transcript, list) else [],
        "ip": anonymize_ip(ip),
        "ua": (user_agent or "")[:MAX_USER_AGENT],
    }


class LeadStore:
    """Append-only JSONL key/value store with optional expiry.

    Thread-safe. Existing entries are replayed from disk on construction.
    """

    def __init__(self, path: str, ttl_days: Optional[int] = None) -> None:
        self._path = Path(path)
        self._ttl_seconds = ttl_days * 86400 if ttl_days else None
        self._lock = threading.Lock()
        self._index: Dict[str, Dict[str, Any]] = {}

        os.makedirs(self._path.parent, exist_ok=True)
        if self._path.exists() and self._path.stat().st_size > 0:
            self._replay()

    def _replay(self) -> None:
        with open(self._path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    self._index[entry["id"]] = entry
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning("Corrupt lead entry at line %d: %s", lineno, e)

    def put(self, record_id: str, record: Dict[str, Any]) -> None:
        """Persist a record under record_id."""
        expires_at = time.time() + self._ttl_seconds if self._ttl_seconds else None
        entry = {"id": record_id, "expires_at": expires_at, "record": record}
        with self._lock:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, sort_keys=True) + "\n")
            self._index[record_id] = entry

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored record, or None if missing or expired."""
        with self._lock:
            entry = self._index.get(record_id)
        if entry is None:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and time.time() >= expires_at:
            return None
        return entry["record"]

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._index)


async def send_lead_webhook(
    url: str,
    record: Dict[str, Any],
    timeout: float = 8.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Fan a new lead out to a webhook. Returns False on any failure."""
    data = {k: v for k, v in record.items() if k != "ip"}
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(url, json={"type": "lead.create", "data": data})
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Lead webhook failed: %s", type(exc).__name__)
        return False
    return True
