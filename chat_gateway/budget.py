"""Per-session token budget ledger.

Tracks how many (approximate) tokens each session has spent in total and per
provider. Two caps apply:

- Soft cap, per provider: once a provider's spend in a session reaches it,
  the fallback chain stops choosing that provider for the session.
- Hard cap, per session: charges are clipped so the session total never
  exceeds it. Once nothing remains, the chain stops for that turn.

State is process-local and lives for the process lifetime.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

LOCAL_BUCKET = "l5-server"


@dataclass
class SessionBudget:
    """Spend record for one session.

    Invariant: ``session_total == sum(per_provider.values())``.
    """

    session_total: int = 0
    per_provider: Dict[str, int] = field(default_factory=dict)

    def copy(self) -> "SessionBudget":
        return SessionBudget(self.session_total, dict(self.per_provider))


class BudgetLedger:
    """Thread-safe ledger of per-session token spend."""

    def __init__(self, session_hard_cap: int = 35000, provider_soft_cap: int = 25000) -> None:
        self.session_hard_cap = session_hard_cap
        self.provider_soft_cap = provider_soft_cap
        self._sessions: Dict[str, SessionBudget] = {}
        self._lock = threading.Lock()

    def charge(self, session_id: str, provider: Optional[str], requested: int) -> int:
        """Charge tokens to a session, clipped to what the hard cap allows.

        Charges without a provider (extractive answers served locally) go to
        the ``l5-server`` bucket.

        Args:
            session_id: The session identifier.
            provider: Provider name, or None for locally served answers.
            requested: Tokens to charge; negative values charge nothing.

        Returns:
            The number of tokens actually charged. Any excess over the hard
            cap is dropped.
        """
        bucket = provider or LOCAL_BUCKET
        with self._lock:
            record = self._get(session_id)
            remaining = max(0, self.session_hard_cap - record.session_total)
            charged = min(max(0, int(requested)), remaining)
            record.per_provider[bucket] = record.per_provider.get(bucket, 0) + charged
            record.session_total += charged
            return charged

    def hard_cap_remaining(self, session_id: str) -> int:
        with self._lock:
            record = self._sessions.get(session_id)
            spent = record.session_total if record else 0
            return max(0, self.session_hard_cap - spent)

    def soft_cap_reached(self, session_id: str, provider: str) -> bool:
        """True if the provider has already spent its soft cap in this session."""
        return self.provider_total(session_id, provider) >= self.provider_soft_cap

    def provider_total(self, session_id: str, provider: str) -> int:
        with self._lock:
            record = self._sessions.get(session_id)
            return record.per_provider.get(provider, 0) if record else 0

    def session_total(self, session_id: str) -> int:
        with self._lock:
            record = self._sessions.get(session_id)
            return record.session_total if record else 0

    def snapshot(self, session_id: str) -> SessionBudget:
        """Return a copy of the session's record (empty if unseen)."""
        with self._lock:
            record = self._sessions.get(session_id)
            return record.copy() if record else SessionBudget()

    def _get(self, session_id: str) -> SessionBudget:
        record = self._sessions.get(session_id)
        if record is None:
            record = SessionBudget()
            self._sessions[session_id] = record
        return record
