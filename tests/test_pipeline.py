"""Tests for chat turn orchestration: the four decision paths."""

from typing import Any, Dict, List, Optional

import httpx
import pytest

from chat_gateway.budget import BudgetLedger
from chat_gateway.pipeline import (
    NOTICE_PROVIDERS_NOT_USED,
    NOTICE_SOFT_CAP_REACHED,
    PACK_OK,
    PACK_UNAVAILABLE,
    ChatPipeline,
    fallback_message,
)
from chat_gateway.provider import Completion
from chat_gateway.retrieval import PackCache, approx_tokens
from chat_gateway.router import ProviderChain

ORIGIN = "https://site.example.com"
DEFAULT_PACK = ORIGIN + "/packs/site-pack.json"

PACK_BODY = {
    "docs": [
        {
            "lang": "en",
            "chunks": [
                {"id": "ops-1", "text": "We run business operations for growing teams."},
                {"id": "cc-1", "text": "Our contact center answers customers around the clock."},
            ],
        }
    ]
}


class StaticProvider:
    def __init__(self, name: str, text: str, tokens: int) -> None:
        self.name = name
        self.text = text
        self.tokens = tokens
        self.is_configured = True
        self.prompts: List[str] = []

    async def complete(self, system_text: str, user_text: str) -> Completion:
        self.prompts.append(system_text)
        return Completion(text=self.text, used_tokens=self.tokens)


def _pack_cache(status: int = 200, body: Optional[Dict[str, Any]] = None) -> PackCache:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=PACK_BODY if body is None else body)

    return PackCache(transport=httpx.MockTransport(handler))


def _pipeline(
    cache: PackCache,
    ledger: BudgetLedger,
    providers: Optional[List[StaticProvider]] = None,
    enabled: bool = False,
    site_origin: Optional[str] = ORIGIN,
) -> ChatPipeline:
    by_name = {p.name: p for p in providers or []}
    chain = ProviderChain(by_name, ledger, order=list(by_name), enabled=enabled)  # type: ignore[arg-type]
    return ChatPipeline(cache, ledger, chain, site_origin=site_origin)


@pytest.mark.asyncio
async def test_extractive_path_skips_providers() -> None:
    ledger = BudgetLedger()
    provider = StaticProvider("oss", "upstream", 100)
    pipeline = _pipeline(_pack_cache(), ledger, [provider], enabled=True)

    outcome = await pipeline.run_turn("business operations contact center", "en", "s1")

    meta = outcome.metadata
    assert meta.provider == "l5-server"
    assert meta.notice == NOTICE_PROVIDERS_NOT_USED
    assert meta.pack_status == PACK_OK
    assert meta.pack_url == DEFAULT_PACK
    assert outcome.text.endswith("[#cc-1]")
    assert meta.tokens_this_call == approx_tokens("business operations contact center", outcome.text)
    assert meta.provider_total == meta.tokens_this_call
    assert meta.session_total == ledger.session_total("s1") == meta.tokens_this_call
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_provider_path_uses_grounded_prompt() -> None:
    ledger = BudgetLedger()
    provider = StaticProvider("oss", "We cover it. [#cc-1]", 40)
    pipeline = _pipeline(_pack_cache(), ledger, [provider], enabled=True)

    outcome = await pipeline.run_turn("contact hours?", "en", "s1")

    meta = outcome.metadata
    assert outcome.text == "We cover it. [#cc-1]"
    assert meta.provider == "oss"
    assert meta.tokens_this_call == 40
    assert meta.provider_total == 40
    assert meta.session_total == 40
    assert meta.notice is None
    assert "[#cc-1] Our contact center" in provider.prompts[0]


@pytest.mark.asyncio
async def test_provider_path_reports_soft_cap() -> None:
    ledger = BudgetLedger(session_hard_cap=1000, provider_soft_cap=50)
    provider = StaticProvider("oss", "Answer.", 60)
    pipeline = _pipeline(_pack_cache(), ledger, [provider], enabled=True)

    outcome = await pipeline.run_turn("contact hours?", "en", "s1")

    assert outcome.metadata.notice == NOTICE_SOFT_CAP_REACHED


@pytest.mark.asyncio
async def test_none_path_with_pack() -> None:
    ledger = BudgetLedger()
    pipeline = _pipeline(_pack_cache(), ledger)

    outcome = await pipeline.run_turn("pricing?", "en", "s1")

    meta = outcome.metadata
    assert meta.provider == "none"
    assert meta.pack_status == PACK_OK
    assert outcome.text == fallback_message("en", True)
    assert meta.tokens_this_call == approx_tokens("pricing?", outcome.text)
    assert meta.provider_total == 0
    assert meta.session_total == 0
    assert ledger.session_total("s1") == 0


@pytest.mark.asyncio
async def test_unreachable_pack_and_no_providers() -> None:
    ledger = BudgetLedger()
    pipeline = _pipeline(_pack_cache(status=404), ledger)

    outcome = await pipeline.run_turn("", "es", "s1")

    meta = outcome.metadata
    assert meta.provider == "none"
    assert meta.pack_status == PACK_UNAVAILABLE
    assert outcome.text == fallback_message("es", False)
    assert outcome.text.endswith("[#none]")


@pytest.mark.asyncio
async def test_requested_pack_url_same_origin() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=PACK_BODY)

    cache = PackCache(transport=httpx.MockTransport(handler))
    pipeline = _pipeline(cache, BudgetLedger())

    outcome = await pipeline.run_turn("hello", "en", "s1", "/packs/es.json")

    assert seen == [ORIGIN + "/packs/es.json"]
    assert outcome.metadata.pack_url == ORIGIN + "/packs/es.json"


@pytest.mark.asyncio
async def test_no_pack_source_configured_skips_fetch() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json=PACK_BODY)

    cache = PackCache(transport=httpx.MockTransport(handler))
    pipeline = _pipeline(cache, BudgetLedger(), site_origin=None)

    outcome = await pipeline.run_turn("hello", "en", "s1", "/latest/meta-data")

    assert seen == []
    assert outcome.metadata.pack_status == PACK_UNAVAILABLE
    assert outcome.metadata.pack_url is None
    assert outcome.text == fallback_message("en", False)


def test_refusal_charges_nothing() -> None:
    ledger = BudgetLedger()
    ledger.charge("s1", "oss", 25)
    pipeline = _pipeline(_pack_cache(), ledger)

    outcome = pipeline.refusal("es", "s1")

    meta = outcome.metadata
    assert outcome.text == "No puedo ayudar con esa solicitud. Reformula por favor."
    assert meta.provider == "policy"
    assert meta.tokens_this_call == 0
    assert meta.session_total == 25
    assert meta.pack_status is None
    assert ledger.session_total("s1") == 25


def test_fallback_messages_localized() -> None:
    assert fallback_message("en", False) == (
        "The knowledge pack is unavailable and no providers are active. [#none]"
    )
    assert fallback_message("fr", True) == fallback_message("en", True)
