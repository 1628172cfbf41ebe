"""Provider adapters for upstream completion APIs.

Every provider exposes the same capability: take a system prompt and the
user's message, return the answer text and the tokens it used. Two wire
shapes exist behind that interface:

- OpenAI-compatible chat completions (role array, bearer key). Serves the
  ``oss``, ``grok`` and ``openai`` identities.
- Gemini ``generateContent`` (single user turn carrying both prompts, key as
  a query parameter).

Any transport error, timeout, non-2xx status or unusable body surfaces as
ProviderError so the fallback chain can move on.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote

import httpx

from chat_gateway.config import GatewayConfig, ProviderConfig
from chat_gateway.retrieval import approx_tokens


@dataclass
class Completion:
    """Normalized provider answer."""

    text: str
    used_tokens: int


class ProviderError(Exception):
    """Raised when a provider call fails for any reason."""

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__("{}: {}".format(provider, detail))


class CompletionProvider(ABC):
    """Base class for a configured upstream provider."""

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def complete(self, system_text: str, user_text: str) -> Completion:
        """Ask the provider for an answer.

        Args:
            system_text: The grounded system prompt.
            user_text: The user's latest message.

        Returns:
            A Completion with non-empty text.

        Raises:
            ProviderError: If the provider is unconfigured, has a malformed
                URL, is unreachable, times out, answers non-2xx, or returns no
                usable text.
        """
        api_key = self.config.api_key
        if not self.is_configured or not api_key:
            raise ProviderError(self.name, "not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                completion = await self._request(client, api_key, system_text, user_text)
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                self.name, "HTTP {}".format(exc.response.status_code)
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, type(exc).__name__) from exc
        except httpx.InvalidURL as exc:
            raise ProviderError(self.name, "invalid URL") from exc
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ProviderError(self.name, "malformed response") from exc

        if not completion.text:
            raise ProviderError(self.name, "empty completion")
        return completion

    @abstractmethod
    async def _request(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        system_text: str,
        user_text: str,
    ) -> Completion:
        """Perform the provider-specific HTTP exchange."""


class OpenAICompatibleProvider(CompletionProvider):
    """Chat-completions endpoint shared by OpenAI, xAI and OSS hosts."""

    async def _request(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        system_text: str,
        user_text: str,
    ) -> Completion:
        url = "{}/chat/completions".format(self.config.base_url.rstrip("/"))
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system_text},
            {"role": "user", "content": user_text},
        ]
        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": 0.2,
            "stream": False,
        }
        headers = {
            "Authorization": "Bearer {}".format(api_key),
            "Content-Type": "application/json",
        }
        resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        data: Dict[str, Any] = resp.json()

        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = (data.get("usage") or {}).get("total_tokens")
        if usage is None:
            # No usage block: estimate over the compact request plus the answer.
            compact = json.dumps(messages, separators=(",", ":"), ensure_ascii=False)
            usage = approx_tokens(compact, text)
        return Completion(text=text, used_tokens=int(usage))


class GeminiProvider(CompletionProvider):
    """Gemini generateContent endpoint (single-turn, key in query string)."""

    async def _request(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        system_text: str,
        user_text: str,
    ) -> Completion:
        url = "{}/models/{}:generateContent".format(
            self.config.base_url.rstrip("/"), quote(self.config.model, safe="")
        )
        prompt = "SYSTEM:\n{}\n\nUSER:\n{}".format(system_text, user_text)
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        resp = await client.post(
            url,
            params={"key": api_key},
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        resp.raise_for_status()
        data: Dict[str, Any] = resp.json()

        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text") or "" for part in parts)
        return Completion(
            text=text, used_tokens=approx_tokens(system_text, user_text, text)
        )


PROVIDER_TYPES: Dict[str, Type[CompletionProvider]] = {
    "openai_compatible": OpenAICompatibleProvider,
    "gemini": GeminiProvider,
}


def build_providers(
    config: GatewayConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, CompletionProvider]:
    """Instantiate one adapter per configured provider entry.

    Args:
        config: The loaded gateway configuration.
        transport: Optional httpx transport shared by all adapters.

    Returns:
        Mapping of provider name to adapter. Entries are built even when
        unconfigured; the chain skips those.
    """
    return {
        name: PROVIDER_TYPES[prov.kind](
            prov, timeout=config.provider_timeout_seconds, transport=transport
        )
        for name, prov in config.providers.items()
    }
