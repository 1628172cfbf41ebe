"""Chat turn orchestration after the guard has passed.

Decides which path serves a turn and what it costs:

- ``l5-server``: enough local coverage, an extractive answer built from the
  pack. Providers are never called; the estimate is still charged.
- ``<provider>``: the first provider in the fallback chain that answered.
- ``none``: no pack coverage and no provider answer; a localized fallback.
- ``policy``: the guard flagged the message; a localized refusal.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chat_gateway.budget import LOCAL_BUCKET, BudgetLedger
from chat_gateway.policy import refusal_message
from chat_gateway.retrieval import (
    KnowledgePack,
    PackCache,
    PackUnavailable,
    approx_tokens,
    ground,
    resolve_pack_url,
)
from chat_gateway.router import NO_PROVIDER, ProviderChain
from chat_gateway.stream import TurnMetadata

logger = logging.getLogger("gateway")

PACK_OK = "ok"
PACK_UNAVAILABLE = "pack-unavailable"
POLICY_PATH = "policy"

NOTICE_PROVIDERS_NOT_USED = "providers-not-used"
NOTICE_SOFT_CAP_REACHED = "provider-soft-cap-reached"

_FALLBACKS = {
    ("en", True): "I don’t have enough local info and providers are unavailable. [#none]",
    ("en", False): "The knowledge pack is unavailable and no providers are active. [#none]",
    ("es", True): (
        "No tengo suficiente información local y los proveedores no están "
        "disponibles. [#none]"
    ),
    ("es", False): (
        "El paquete de conocimiento no está disponible y tampoco hay "
        "proveedores activos. [#none]"
    ),
}


def fallback_message(lang: str, pack_loaded: bool) -> str:
    """Localized answer for turns nothing could serve."""
    return _FALLBACKS.get((lang, pack_loaded), _FALLBACKS[("en", pack_loaded)])


@dataclass
class TurnOutcome:
    """Text to stream plus the metadata headers describing the decision."""

    text: str
    metadata: TurnMetadata


class ChatPipeline:
    """Grounding, budget accounting and provider fallback for one turn."""

    def __init__(
        self,
        pack_cache: PackCache,
        ledger: BudgetLedger,
        chain: ProviderChain,
        pack_url: Optional[str] = None,
        site_origin: Optional[str] = None,
    ) -> None:
        self._pack_cache = pack_cache
        self._ledger = ledger
        self._chain = chain
        self._pack_url = pack_url
        self._site_origin = site_origin

    async def run_turn(
        self,
        user_message: str,
        lang: str,
        session_id: str,
        requested_pack_url: Optional[str] = None,
    ) -> TurnOutcome:
        """Serve one turn that passed the guard.

        Args:
            user_message: The latest user message.
            lang: ``en`` or ``es``.
            session_id: Budget session identifier.
            requested_pack_url: Optional ``packUrl`` from the request body,
                honoured only on the trusted site origin.

        Returns:
            The outcome to stream. Never raises for provider or pack failures.
        """
        pack_url = resolve_pack_url(self._pack_url, requested_pack_url, self._site_origin)
        pack: Optional[KnowledgePack] = None
        if pack_url is None:
            logger.warning("Knowledge pack unavailable: no pack_url or site_origin configured")
        else:
            try:
                pack = await self._pack_cache.get(pack_url)
            except PackUnavailable as exc:
                logger.warning("Knowledge pack unavailable: %s", exc.reason)
        pack_status = PACK_OK if pack is not None else PACK_UNAVAILABLE

        grounding = ground(pack, user_message, lang)

        if grounding.extractive is not None:
            answer = grounding.extractive
            charged = self._ledger.charge(
                session_id, None, approx_tokens(user_message, answer)
            )
            return TurnOutcome(
                text=answer,
                metadata=TurnMetadata(
                    provider=LOCAL_BUCKET,
                    tokens_this_call=charged,
                    provider_total=self._ledger.provider_total(session_id, LOCAL_BUCKET),
                    session_total=self._ledger.session_total(session_id),
                    pack_status=pack_status,
                    pack_url=pack_url,
                    notice=NOTICE_PROVIDERS_NOT_USED,
                ),
            )

        result = await self._chain.run(grounding.chunks, user_message, lang, session_id)

        if result.text is None:
            answer = fallback_message(lang, pack is not None)
            return TurnOutcome(
                text=answer,
                metadata=TurnMetadata(
                    provider=NO_PROVIDER,
                    tokens_this_call=approx_tokens(user_message, answer),
                    provider_total=0,
                    session_total=self._ledger.session_total(session_id),
                    pack_status=pack_status,
                    pack_url=pack_url,
                ),
            )

        soft_capped = self._ledger.soft_cap_reached(session_id, result.provider)
        return TurnOutcome(
            text=result.text,
            metadata=TurnMetadata(
                provider=result.provider,
                tokens_this_call=result.tokens_charged,
                provider_total=self._ledger.provider_total(session_id, result.provider),
                session_total=self._ledger.session_total(session_id),
                pack_status=pack_status,
                pack_url=pack_url,
                notice=NOTICE_SOFT_CAP_REACHED if soft_capped else None,
            ),
        )

    def refusal(self, lang: str, session_id: str) -> TurnOutcome:
        """Outcome for a policy violation; nothing is charged."""
        return TurnOutcome(
            text=refusal_message(lang),
            metadata=TurnMetadata(
                provider=POLICY_PATH,
                tokens_this_call=0,
                provider_total=0,
                session_total=self._ledger.session_total(session_id),
            ),
        )
