"""Request authenticity checks for the edge chat gateway.

The gateway has no user authentication. It relies on three cheap checks:

- Origin allowlist: when a frontend origin is configured, browser requests
  from any other origin are refused.
- CSRF double-submit: the token sent in the ``X-CSRF`` header must be
  byte-equal to the ``csrf`` field of the JSON body. This proves only that
  the caller could set a custom header and read its own token. It is not a
  signed token and does not bind to a server-side session.
- Honeypot: a hidden form field that humans never fill in must be empty.

Failures carry a generic reason code only, never the compared values.
"""

import hmac
from typing import Any, Optional


class SecurityCheckError(Exception):
    """Raised when an authenticity check fails."""

    def __init__(self, reason: str, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


def check_origin(origin: Optional[str], allowed: Optional[str]) -> None:
    """Refuse browser requests from an origin other than the configured one.

    Requests without an Origin header (server-to-server, curl) pass, as do all
    requests when no frontend origin is configured.

    Raises:
        SecurityCheckError: With reason ``origin_not_allowed``.
    """
    if allowed and origin and origin != allowed:
        raise SecurityCheckError("origin_not_allowed", "Origin not allowed.")


def validate_csrf(header_value: Optional[str], body_value: Any) -> str:
    """Validate the double-submit CSRF token.

    Args:
        header_value: The value of the ``X-CSRF`` header (may be None).
        body_value: The ``csrf`` field of the parsed JSON body.

    Returns:
        The validated token, used as the session identifier.

    Raises:
        SecurityCheckError: With reason ``csrf_failed`` if either copy is
            missing or they differ.
    """
    header_token = header_value or ""
    body_token = "" if body_value is None else str(body_value)
    if not header_token or not body_token:
        raise SecurityCheckError("csrf_failed", "Missing CSRF token.")
    if not hmac.compare_digest(header_token.encode("utf-8"), body_token.encode("utf-8")):
        raise SecurityCheckError("csrf_failed", "CSRF token mismatch.")
    return body_token


def check_honeypot(value: Any) -> None:
    """Reject submissions whose hidden honeypot field was filled in.

    Raises:
        SecurityCheckError: With reason ``bot_detected``.
    """
    if value is not None and str(value).strip() != "":
        raise SecurityCheckError("bot_detected", "Honeypot field was filled.")


def session_id_for(csrf_token: Any) -> str:
    """Derive the budget session id from the CSRF token ("anon" if absent)."""
    token = "" if csrf_token is None else str(csrf_token)
    return token or "anon"
