"""Shared test fixtures for the edge chat gateway tests."""

import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import pytest

from chat_gateway.config import GatewayConfig, load_config
from chat_gateway.retrieval import KnowledgePack

# Keep these names out of the developer's real environment.
_ENV_VARS = (
    "ENABLE_PROVIDERS",
    "PROVIDER_CHAIN",
    "PACK_URL",
    "FRONTEND_ORIGIN",
    "SITE_ORIGIN",
    "TRUST_PROXY_HEADERS",
    "LEADS_TTL_DAYS",
    "LEAD_WEBHOOK_URL",
    "OSS_TEST_KEY",
    "GEMINI_TEST_KEY",
    "OPENAI_TEST_KEY",
)


def _make_config(
    tmp_path: Path,
    overrides: Optional[Dict[str, Any]] = None,
    drop: Iterable[str] = (),
) -> str:
    """Write a minimal test config and return its path."""
    config: Dict[str, Any] = {
        "providers_enabled": False,
        "provider_chain": ["oss", "gemini", "openai"],
        "providers": {
            "oss": {
                "kind": "openai_compatible",
                "base_url": "https://oss.example.com/v1",
                "api_key_env": "OSS_TEST_KEY",
                "model": "oss-model",
            },
            "gemini": {
                "kind": "gemini",
                "base_url": "https://gemini.example.com/v1beta",
                "api_key_env": "GEMINI_TEST_KEY",
                "model": "gemini-test",
            },
            "openai": {
                "kind": "openai_compatible",
                "base_url": "https://openai.example.com/v1",
                "api_key_env": "OPENAI_TEST_KEY",
                "model": "gpt-test",
            },
        },
        "rate_limit": {"requests_per_window": 20, "window_seconds": 60},
        "pack_url": "https://pack.example.com/site-pack.json",
        "log_file": str(tmp_path / "test.log"),
        "leads": {"store_file": str(tmp_path / "leads.jsonl")},
    }
    if overrides:
        config.update(overrides)
    for key in drop:
        config.pop(key, None)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., str]:
    """Return a factory that writes a test config with overrides applied."""

    def factory(overrides: Optional[Dict[str, Any]] = None, drop: Iterable[str] = ()) -> str:
        return _make_config(tmp_path, overrides, drop)

    return factory


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


SAMPLE_PACK: Dict[str, Any] = {
    "docs": [
        {
            "lang": "en",
            "chunks": [
                {"id": "ops-1", "text": "We run business operations for growing teams."},
                {"id": "cc-1", "text": "Our contact center answers customers around the clock."},
                {"id": "it-1", "text": "IT support covers help desk and device management."},
            ],
        },
        {
            "lang": "es",
            "chunks": [
                {"id": "ops-es", "text": "Operamos procesos de negocio para equipos en crecimiento."},
            ],
        },
    ]
}


@pytest.fixture()
def sample_pack() -> KnowledgePack:
    return KnowledgePack.model_validate(SAMPLE_PACK)
