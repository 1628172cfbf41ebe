"""Inbound request guard.

Runs every cheap check before any expensive work and reduces the outcome to
a single verdict with a machine-readable reason code. Checks run in this
order, and the first failure is terminal:

1. Origin allowlist
2. Content type (must be JSON)
3. Per-IP rate limit
4. Body size (declared Content-Length, then actual length)
5. JSON parse (must be an object)
6. Honeypot
7. CSRF double-submit
8. Policy filter on the latest user message (chat turns only)
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from chat_gateway.auth import (
    SecurityCheckError,
    check_honeypot,
    check_origin,
    validate_csrf,
)
from chat_gateway.limiter import RateLimitExceeded, RateLimiter
from chat_gateway.policy import PolicyEngine


class GuardReason(str, Enum):
    """Reason codes for rejected turns."""

    PAYLOAD_TOO_LARGE = "payload_too_large"
    BAD_JSON = "bad_json"
    UNSUPPORTED_MEDIA_TYPE = "unsupported_media_type"
    RATE_LIMITED = "rate_limited"
    CSRF_FAILED = "csrf_failed"
    BOT_DETECTED = "bot_detected"
    ORIGIN_NOT_ALLOWED = "origin_not_allowed"
    POLICY_VIOLATION = "policy_violation"

    @property
    def http_status(self) -> int:
        """HTTP status for the error response (200 for policy refusals)."""
        return _STATUS[self]


_STATUS = {
    GuardReason.PAYLOAD_TOO_LARGE: 413,
    GuardReason.BAD_JSON: 400,
    GuardReason.UNSUPPORTED_MEDIA_TYPE: 415,
    GuardReason.RATE_LIMITED: 429,
    GuardReason.CSRF_FAILED: 403,
    GuardReason.BOT_DETECTED: 400,
    GuardReason.ORIGIN_NOT_ALLOWED: 403,
    GuardReason.POLICY_VIOLATION: 200,
}


@dataclass
class GuardVerdict:
    """Pass/fail outcome of the guard for one request."""

    passed: bool
    reason: Optional[GuardReason] = None
    body: Dict[str, Any] = field(default_factory=dict)
    triggered_rules: List[str] = field(default_factory=list)

    @classmethod
    def reject(cls, reason: GuardReason, **kwargs: Any) -> "GuardVerdict":
        return cls(passed=False, reason=reason, **kwargs)


def latest_user_message(body: Mapping[str, Any]) -> str:
    """Return the content of the last message in the body, or ""."""
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        return ""
    last = messages[-1]
    if not isinstance(last, dict):
        return ""
    content = last.get("content")
    return "" if content is None else str(content)


class Guard:
    """Validates inbound turns before retrieval and provider work."""

    def __init__(
        self,
        limiter: RateLimiter,
        policy_engine: PolicyEngine,
        max_body_bytes: int = 64 * 1024,
        frontend_origin: Optional[str] = None,
    ) -> None:
        self._limiter = limiter
        self._policy_engine = policy_engine
        self._max_body_bytes = max_body_bytes
        self._frontend_origin = frontend_origin

    def check_request(
        self,
        raw: bytes,
        headers: Mapping[str, str],
        ip: str,
        *,
        screen_policy: bool = True,
    ) -> GuardVerdict:
        """Run all checks against one inbound request.

        Args:
            raw: The raw request body.
            headers: Request headers (any casing).
            ip: The resolved client IP.
            screen_policy: Whether to run the policy filter on the latest
                message. Lead submissions skip it.

        Returns:
            A GuardVerdict. On pass, ``body`` holds the parsed JSON object.
        """
        lowered = {k.lower(): v for k, v in headers.items()}

        try:
            check_origin(lowered.get("origin"), self._frontend_origin)
        except SecurityCheckError:
            return GuardVerdict.reject(GuardReason.ORIGIN_NOT_ALLOWED)

        if "application/json" not in lowered.get("content-type", "").lower():
            return GuardVerdict.reject(GuardReason.UNSUPPORTED_MEDIA_TYPE)

        try:
            self._limiter.check(ip)
        except RateLimitExceeded:
            return GuardVerdict.reject(GuardReason.RATE_LIMITED)

        if self._declared_length(lowered) > self._max_body_bytes:
            return GuardVerdict.reject(GuardReason.PAYLOAD_TOO_LARGE)
        if len(raw) > self._max_body_bytes:
            return GuardVerdict.reject(GuardReason.PAYLOAD_TOO_LARGE)

        body = self._parse_json(raw)
        if body is None:
            return GuardVerdict.reject(GuardReason.BAD_JSON)

        try:
            check_honeypot(body.get("hp"))
            validate_csrf(lowered.get("x-csrf"), body.get("csrf"))
        except SecurityCheckError as exc:
            return GuardVerdict.reject(GuardReason(exc.reason), body=body)

        if screen_policy:
            result = self._policy_engine.evaluate(latest_user_message(body))
            if not result.is_allowed:
                return GuardVerdict.reject(
                    GuardReason.POLICY_VIOLATION,
                    body=body,
                    triggered_rules=result.triggered_rules,
                )

        return GuardVerdict(passed=True, body=body)

    @staticmethod
    def _declared_length(headers: Mapping[str, str]) -> int:
        try:
            return int(headers.get("content-length") or 0)
        except ValueError:
            return 0

    @staticmethod
    def _parse_json(raw: bytes) -> Optional[Dict[str, Any]]:
        try:
            text = raw.decode("utf-8")
            parsed = json.loads(text) if text.strip() else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed
