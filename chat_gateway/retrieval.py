"""Grounding retriever: knowledge-pack loading and bag-of-words scoring.

A knowledge pack is a small JSON corpus::

    {"docs": [{"lang": "en", "chunks": [{"id": "svc-1", "text": "..."}]}]}

Chunks are scored by how many distinct query words they contain. When at
least two chunks hit, an extractive answer is composed from the best three
and served without calling any provider.
"""

import logging
import re
import threading
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("gateway")

SERVER_TOP_K = 6
CLIENT_TOP_K = 4
MIN_STRONG_HITS = 2
EXTRACTIVE_CHUNKS = 3
DEFAULT_PACK_PATH = "/packs/site-pack.json"

_WORD_RE = re.compile(r"[a-z0-9áéíóúüñ]+")


class PackChunk(BaseModel):
    """A single retrievable passage."""

    id: str
    text: str = ""

    @field_validator("id", "text", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value


class PackDoc(BaseModel):
    """A document: a language tag plus its chunks."""

    lang: Optional[str] = None
    chunks: List[PackChunk] = Field(default_factory=list)


class KnowledgePack(BaseModel):
    """The grounding corpus."""

    docs: List[PackDoc] = Field(default_factory=list)


@dataclass
class ScoredChunk:
    """A chunk with its term-overlap score."""

    id: str
    text: str
    score: int


@dataclass
class GroundingResult:
    """Outcome of grounding one query."""

    chunks: List[ScoredChunk] = field(default_factory=list)
    extractive: Optional[str] = None

    @property
    def sufficient(self) -> bool:
        return self.extractive is not None


class PackUnavailable(Exception):
    """Raised when the knowledge pack cannot be fetched or parsed."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__("Pack unavailable at {}: {}".format(url, reason))


def tokenize(text: str) -> List[str]:
    """Split text into lowercase words.

    Words are maximal runs of ASCII letters, digits, accented Latin vowels
    and ñ, taken after lowercasing and NFKC normalization.
    """
    normalized = unicodedata.normalize("NFKC", (text or "").lower())
    return _WORD_RE.findall(normalized)


def approx_tokens(*pieces: Optional[str]) -> int:
    """Estimate token usage as ceil(utf-8 byte length / 4).

    This is a fixed heuristic, not a tokenizer. Header values depend on it,
    so it must not change.
    """
    joined = "".join(p for p in pieces if p)
    return (len(joined.encode("utf-8")) + 3) // 4


def score_chunks(
    pack: KnowledgePack,
    query: str,
    lang: Optional[str],
    limit: int = SERVER_TOP_K,
) -> List[ScoredChunk]:
    """Score every eligible chunk against the query.

    A chunk is eligible when its document language equals ``lang`` or either
    is unset. Each distinct query term contributes at most 1 to the score.
    Only chunks with a positive score are kept; ties keep corpus order.

    Args:
        pack: The knowledge pack.
        query: The user's message.
        lang: Requested language code.
        limit: Maximum number of hits to return.

    Returns:
        Up to ``limit`` strong hits, best first.
    """
    terms = set(tokenize(query))
    hits: List[ScoredChunk] = []
    for doc in pack.docs:
        if lang and doc.lang and doc.lang != lang:
            continue
        for chunk in doc.chunks:
            words = set(tokenize(chunk.text))
            score = len(terms & words)
            if score > 0:
                hits.append(ScoredChunk(id=chunk.id, text=chunk.text, score=score))
    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[:limit]


def compose_extractive(chunks: List[ScoredChunk]) -> Optional[str]:
    """Join the top chunks verbatim, each followed by its ``[#id]`` citation."""
    if not chunks:
        return None
    parts = [
        "{} [#{}]".format(chunk.text.strip(), chunk.id)
        for chunk in chunks[:EXTRACTIVE_CHUNKS]
    ]
    return " ".join(parts).strip()


def ground(
    pack: Optional[KnowledgePack],
    query: str,
    lang: Optional[str],
    limit: int = SERVER_TOP_K,
) -> GroundingResult:
    """Retrieve context for a query and, with enough coverage, an answer.

    Args:
        pack: The knowledge pack, or None when it could not be loaded.
        query: The user's message.
        lang: Requested language code.
        limit: Maximum number of hits to keep.

    Returns:
        A GroundingResult. ``extractive`` is set only when at least two
        chunks scored above zero.
    """
    if pack is None:
        return GroundingResult()
    chunks = score_chunks(pack, query, lang, limit=limit)
    if len(chunks) < MIN_STRONG_HITS:
        return GroundingResult(chunks=chunks)
    return GroundingResult(chunks=chunks, extractive=compose_extractive(chunks))


def _parse_url(url: str) -> Optional[httpx.URL]:
    try:
        return httpx.URL(url)
    except httpx.InvalidURL:
        return None


def resolve_pack_url(
    configured: Optional[str],
    requested: Optional[str],
    site_origin: Optional[str] = None,
) -> Optional[str]:
    """Pick the pack URL for a turn.

    Pack URLs are resolved against a trusted origin: ``site_origin`` when
    set, otherwise the origin of the configured URL. The configured URL wins
    over the default ``<origin>/packs/site-pack.json``. A URL supplied in the
    request body replaces either, but only when it resolves to the trusted
    origin.

    Returns:
        The percent-encoded pack URL, or None when no trusted origin is
        configured and the pack cannot be located.
    """
    configured = (configured or "").strip()
    base = _parse_url((site_origin or "").strip() or configured)
    if base is None or not base.is_absolute_url:
        return None
    origin = "{}://{}".format(base.scheme, base.netloc.decode("ascii"))

    url = _parse_url(urljoin(origin + "/", configured or DEFAULT_PACK_PATH))
    candidate = (requested or "").strip()
    if candidate:
        resolved = _parse_url(urljoin(origin + "/", candidate))
        if resolved is not None and (resolved.scheme, resolved.host, resolved.port) == (
            base.scheme,
            base.host,
            base.port,
        ):
            url = resolved
    return str(url) if url is not None else None


async def fetch_pack(
    url: str,
    timeout: float = 8.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> KnowledgePack:
    """Fetch and parse a knowledge pack.

    Raises:
        PackUnavailable: On a malformed URL, transport errors, non-2xx
            responses, or a body that is not a valid pack.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.get(url, headers={"Accept": "application/json"})
            resp.raise_for_status()
        return KnowledgePack.model_validate(resp.json())
    except httpx.HTTPStatusError as exc:
        raise PackUnavailable(url, "HTTP {}".format(exc.response.status_code)) from exc
    except httpx.InvalidURL as exc:
        raise PackUnavailable(url, "invalid URL") from exc
    except httpx.HTTPError as exc:
        raise PackUnavailable(url, type(exc).__name__) from exc
    except (ValidationError, ValueError) as exc:
        raise PackUnavailable(url, "invalid pack body") from exc


class PackCache:
    """Process-wide cache of loaded packs, keyed by URL.

    Successful loads are kept until ``invalidate`` is called or until
    ``max_entries`` newer packs push them out. Failures are never cached, so
    a pack that comes back is picked up on the next turn.
    """

    def __init__(
        self,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_entries: int = 16,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._max_entries = max_entries
        self._packs: "OrderedDict[str, KnowledgePack]" = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, url: str) -> KnowledgePack:
        """Return the pack for url, fetching it on first use.

        Raises:
            PackUnavailable: If the pack is not cached and cannot be fetched.
        """
        with self._lock:
            cached = self._packs.get(url)
            if cached is not None:
                self._packs.move_to_end(url)
        if cached is not None:
            return cached

        pack = await fetch_pack(url, timeout=self._timeout, transport=self._transport)
        with self._lock:
            pack = self._packs.setdefault(url, pack)
            while len(self._packs) > self._max_entries:
                self._packs.popitem(last=False)
        logger.info("Loaded knowledge pack from %s (%d docs)", url, len(pack.docs))
        return pack

    def invalidate(self, url: Optional[str] = None) -> None:
        """Drop one cached pack, or all of them when url is None."""
        with self._lock:
            if url is None:
                self._packs.clear()
            else:
                self._packs.pop(url, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._packs)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._packs
