"""Configuration loader for the edge chat gateway.

Reads a JSON config file containing provider definitions, the provider
fallback order, guard limits, budget caps and lead-capture settings. API keys
are resolved from environment variables and never stored in the file.

A small set of environment variables override file values so the gateway can
be reconfigured per deployment without editing the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

PROVIDER_KINDS = ("openai_compatible", "gemini")

DEFAULT_PROVIDER_CHAIN = ["oss", "grok", "gemini", "openai"]


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a single upstream completion provider."""

    name: str
    base_url: str
    api_key_env: str
    model: str
    kind: str = "openai_compatible"

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env) if self.api_key_env else None

    @property
    def is_configured(self) -> bool:
        """A provider is usable only when base URL, model and key are all set."""
        return bool(self.base_url and self.model and self.api_key)


@dataclass
class RateLimitConfig:
    """Per-IP fixed-window rate-limit parameters."""

    requests_per_window: int = 20
    window_seconds: float = 60.0


@dataclass
class BudgetConfig:
    """Token budget caps (process-wide constants)."""

    session_hard_cap: int = 35000
    provider_soft_cap: int = 25000


@dataclass
class LeadConfig:
    """Lead capture persistence and fan-out."""

    store_file: str = "data/leads.jsonl"
    ttl_days: Optional[int] = None
    webhook_url: Optional[str] = None


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    providers_enabled: bool = False
    provider_chain: List[str] = field(
        default_factory=lambda: list(DEFAULT_PROVIDER_CHAIN)
    )
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    max_body_bytes: int = 64 * 1024
    frontend_origin: Optional[str] = None
    site_origin: Optional[str] = None
    pack_url: Optional[str] = None
    trust_proxy_headers: bool = False
    provider_timeout_seconds: float = 8.0
    policy_file: Optional[str] = None
    log_file: str = "logs/gateway.log"
    leads: LeadConfig = field(default_factory=LeadConfig)


def _split_chain(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_provider(name: str, prov: Dict[str, Any]) -> ProviderConfig:
    kind = prov.get("kind", "openai_compatible")
    if kind not in PROVIDER_KINDS:
        raise ValueError(
            "Provider '{}' has unknown kind '{}' (expected one of: {})".format(
                name, kind, ", ".join(PROVIDER_KINDS)
            )
        )
    try:
        return ProviderConfig(
            name=name,
            base_url=prov.get("base_url", ""),
            api_key_env=prov["api_key_env"],
            model=prov.get("model", ""),
            kind=kind,
        )
    except KeyError as exc:
        raise ValueError(
            "Provider '{}' is missing required field {}".format(name, exc)
        ) from exc


def apply_env_overrides(config: GatewayConfig) -> GatewayConfig:
    """Apply deployment environment overrides on top of the file values."""
    enabled = os.getenv("ENABLE_PROVIDERS")
    if enabled is not None:
        config.providers_enabled = enabled.strip().lower() == "true"

    chain = os.getenv("PROVIDER_CHAIN")
    if chain:
        config.provider_chain = _split_chain(chain)

    pack_url = os.getenv("PACK_URL", "").strip()
    if pack_url:
        config.pack_url = pack_url

    origin = os.getenv("FRONTEND_ORIGIN", "").strip()
    if origin:
        config.frontend_origin = origin

    site = os.getenv("SITE_ORIGIN", "").strip()
    if site:
        config.site_origin = site

    trust_proxy = os.getenv("TRUST_PROXY_HEADERS")
    if trust_proxy is not None:
        config.trust_proxy_headers = trust_proxy.strip().lower() == "true"

    ttl = os.getenv("LEADS_TTL_DAYS", "").strip()
    if ttl:
        config.leads.ttl_days = int(ttl)

    webhook = os.getenv("LEAD_WEBHOOK_URL", "").strip()
    if webhook:
        config.leads.webhook_url = webhook

    return config


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance with environment overrides
        applied.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    providers: Dict[str, ProviderConfig] = {}
    for name, prov in raw.get("providers", {}).items():
        providers[name] = _parse_provider(name, prov)

    chain_raw = raw.get("provider_chain", DEFAULT_PROVIDER_CHAIN)
    if isinstance(chain_raw, str):
        chain = _split_chain(chain_raw)
    else:
        chain = [str(p).strip() for p in chain_raw if str(p).strip()]

    rate_limit_raw = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        requests_per_window=rate_limit_raw.get("requests_per_window", 20),
        window_seconds=float(rate_limit_raw.get("window_seconds", 60.0)),
    )

    budget_raw = raw.get("budget", {})
    budget = BudgetConfig(
        session_hard_cap=budget_raw.get("session_hard_cap", 35000),
        provider_soft_cap=budget_raw.get("provider_soft_cap", 25000),
    )

    leads_raw = raw.get("leads", {})
    leads = LeadConfig(
        store_file=leads_raw.get("store_file", "data/leads.jsonl"),
        ttl_days=leads_raw.get("ttl_days"),
        webhook_url=leads_raw.get("webhook_url"),
    )

    config = GatewayConfig(
        providers=providers,
        providers_enabled=bool(raw.get("providers_enabled", False)),
        provider_chain=chain,
        rate_limit=rate_limit,
        budget=budget,
        max_body_bytes=raw.get("max_body_bytes", 64 * 1024),
        frontend_origin=raw.get("frontend_origin"),
        site_origin=raw.get("site_origin"),
        pack_url=raw.get("pack_url"),
        trust_proxy_headers=bool(raw.get("trust_proxy_headers", False)),
        provider_timeout_seconds=float(raw.get("provider_timeout_seconds", 8.0)),
        policy_file=raw.get("policy_file"),
        log_file=raw.get("log_file", "logs/gateway.log"),
        leads=leads,
    )
    return apply_env_overrides(config)
