"""Routing: the ordered provider fallback chain.

Given the grounding context and the user's message, the chain tries each
provider in the configured order until one answers. Per candidate:

1. Stop if the session's hard cap is exhausted.
2. Skip if the provider is unknown or unconfigured.
3. Skip if the provider has reached its soft cap in this session.
4. Call it; on success charge the ledger and return immediately.
5. On ProviderError, log and move on.

An exhausted or disabled chain returns the ``none`` sentinel, which callers
turn into a localized "insufficient information" answer.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from chat_gateway.budget import BudgetLedger
from chat_gateway.provider import CompletionProvider, ProviderError
from chat_gateway.retrieval import ScoredChunk

logger = logging.getLogger("gateway")

NO_PROVIDER = "none"

_INSTRUCTIONS = {
    "en": "Answer ONLY using the context. If info is missing, say so. Cite [#id].",
    "es": "Responde SOLO con el contexto. Si falta info, dilo. Cita [#id].",
}


@dataclass
class ChainResult:
    """Outcome of running the chain for one turn."""

    text: Optional[str]
    tokens_charged: int
    provider: str

    @property
    def answered(self) -> bool:
        return self.text is not None


def _none_result() -> ChainResult:
    return ChainResult(text=None, tokens_charged=0, provider=NO_PROVIDER)


def build_system_prompt(context: Sequence[ScoredChunk], lang: str) -> str:
    """Build the grounded system prompt, one ``[#id] text`` line per chunk."""
    instructions = _INSTRUCTIONS.get(lang, _INSTRUCTIONS["en"])
    lines = "\n".join("[#{}] {}".format(chunk.id, chunk.text) for chunk in context)
    return "{}\n\nContext:\n{}".format(instructions, lines)


class ProviderChain:
    """Ordered fallback across interchangeable completion providers."""

    def __init__(
        self,
        providers: Dict[str, CompletionProvider],
        ledger: BudgetLedger,
        order: Sequence[str],
        enabled: bool = True,
    ) -> None:
        self._providers = providers
        self._ledger = ledger
        self.order: List[str] = list(order)
        self.enabled = enabled

    async def run(
        self,
        context: Sequence[ScoredChunk],
        user_message: str,
        lang: str,
        session_id: str,
        order: Optional[Sequence[str]] = None,
    ) -> ChainResult:
        """Try providers in order until one answers.

        Args:
            context: Strong hits from grounding (may be empty).
            user_message: The user's latest message.
            lang: Language code for the system prompt.
            session_id: Budget session identifier.
            order: Overrides the configured chain order for this call.

        Returns:
            The first successful answer with the tokens actually charged, or
            the ``none`` sentinel.
        """
        if not self.enabled:
            return _none_result()

        system_text = build_system_prompt(context, lang)

        for name in order if order is not None else self.order:
            if self._ledger.hard_cap_remaining(session_id) == 0:
                logger.info("Session hard cap reached; stopping provider chain")
                break

            provider = self._providers.get(name)
            if provider is None or not provider.is_configured:
                continue

            if self._ledger.soft_cap_reached(session_id, name):
                logger.info("Provider %s skipped: soft cap reached", name)
                continue

            try:
                completion = await provider.complete(system_text, user_message)
            except ProviderError as exc:
                logger.warning("Provider %s failed: %s", name, exc.detail)
                continue

            charged = self._ledger.charge(session_id, name, completion.used_tokens)
            return ChainResult(
                text=completion.text, tokens_charged=charged, provider=name
            )

        return _none_result()
