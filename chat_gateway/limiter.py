"""In-memory rate limiter for the edge chat gateway.

Tracks per-client-IP request counts using a fixed window. Windows are reset
lazily: a stale record is replaced on the next request from that IP, there is
no background sweep. State is process-local and lost on restart.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict


class RateLimitExceeded(Exception):
    """Raised when a client IP exceeds its request allowance."""

    def __init__(self, ip: str, detail: str) -> None:
        self.ip = ip
        self.detail = detail
        super().__init__(detail)


@dataclass
class _IpWindow:
    """Fixed-window counter for a single client IP."""

    window_start: float = 0.0
    count: int = 0


@dataclass
class RateLimiter:
    """Per-IP in-memory rate limiter.

    Thread-safe. A window is considered stale once the current time exceeds
    ``window_start + window_seconds``.
    """

    requests_per_window: int = 20
    window_seconds: float = 60.0
    _windows: Dict[str, _IpWindow] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check(self, ip: str) -> None:
        """Count a request from ``ip`` against its current window.

        Args:
            ip: The client IP address.

        Raises:
            RateLimitExceeded: If the IP has used up its allowance for the
                current window. Rejected requests are not counted.
        """
        now = time.time()
        with self._lock:
            record = self._get_or_reset_window(ip, now)
            if record.count >= self.requests_per_window:
                raise RateLimitExceeded(
                    ip,
                    "Request rate exceeded for {} ({} req / {:g}s).".format(
                        ip, self.requests_per_window, self.window_seconds
                    ),
                )
            record.count += 1

    def count_for(self, ip: str) -> int:
        """Return the request count in the IP's live window (0 if stale)."""
        now = time.time()
        with self._lock:
            record = self._windows.get(ip)
            if record is None or now > record.window_start + self.window_seconds:
                return 0
            return record.count

    def _get_or_reset_window(self, ip: str, now: float) -> _IpWindow:
        """Retrieve the window for ip, starting a fresh one if it is stale."""
        record = self._windows.get(ip)
        if record is None or now > record.window_start + self.window_seconds:
            record = _IpWindow(window_start=now)
            self._windows[ip] = record
        return record
