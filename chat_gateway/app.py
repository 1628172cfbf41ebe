"""FastAPI application for the edge chat gateway.

Routes:

- ``POST /api/chat``: guard → grounding → budget → provider fallback → SSE.
- ``POST /api/lead``: guard → field scrubbing → store → optional webhook.
- ``GET`` on either route returns a usage hint; ``OPTIONS`` answers CORS
  preflight; ``GET /healthz`` returns ``ok``.

Only client-input and security failures fail the HTTP call. Everything past
the guard always streams some answer.
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from chat_gateway.auth import SecurityCheckError, check_origin, session_id_for
from chat_gateway.budget import BudgetLedger
from chat_gateway.config import GatewayConfig, load_config
from chat_gateway.guard import Guard, GuardReason
from chat_gateway.leads import (
    LeadStore,
    LeadValidationError,
    build_lead_record,
    send_lead_webhook,
)
from chat_gateway.limiter import RateLimiter
from chat_gateway.models import (
    ChatRequest,
    ErrorResponse,
    HintResponse,
    LeadRequest,
    LeadResponse,
)
from chat_gateway.pipeline import ChatPipeline
from chat_gateway.policy import PolicyConfig, PolicyEngine, load_policies
from chat_gateway.provider import build_providers
from chat_gateway.retrieval import PackCache
from chat_gateway.router import ProviderChain
from chat_gateway.stream import sse_response
from chat_gateway.telemetry import log_request, logger, setup_logging

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/example.config.json")

_config: Optional[GatewayConfig] = None
_limiter: Optional[RateLimiter] = None
_ledger: Optional[BudgetLedger] = None
_pack_cache: Optional[PackCache] = None
_policy_engine: Optional[PolicyEngine] = None
_lead_store: Optional[LeadStore] = None

# Upstream transport override; None means real network I/O.
_transport: Optional[httpx.AsyncBaseTransport] = None


def get_config() -> GatewayConfig:
    """Return the loaded gateway configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_limiter() -> RateLimiter:
    """Return the per-IP rate limiter (lazy-init from config)."""
    global _limiter
    if _limiter is None:
        cfg = get_config()
        _limiter = RateLimiter(
            requests_per_window=cfg.rate_limit.requests_per_window,
            window_seconds=cfg.rate_limit.window_seconds,
        )
    return _limiter


def get_ledger() -> BudgetLedger:
    """Return the process-wide budget ledger (lazy-init from config)."""
    global _ledger
    if _ledger is None:
        cfg = get_config()
        _ledger = BudgetLedger(
            session_hard_cap=cfg.budget.session_hard_cap,
            provider_soft_cap=cfg.budget.provider_soft_cap,
        )
    return _ledger


def get_pack_cache() -> PackCache:
    """Return the process-wide knowledge pack cache."""
    global _pack_cache
    if _pack_cache is None:
        cfg = get_config()
        _pack_cache = PackCache(timeout=cfg.provider_timeout_seconds, transport=_transport)
    return _pack_cache


def get_policy_engine() -> PolicyEngine:
    """Return the policy engine (lazy-init from config).

    Falls back to the built-in rules if the configured file is missing or
    invalid.
    """
    global _policy_engine
    if _policy_engine is None:
        cfg = get_config()
        policy_config = PolicyConfig()
        if cfg.policy_file:
            try:
                policy_config = load_policies(cfg.policy_file)
            except (FileNotFoundError, ValueError) as exc:
                logger.warning("Using built-in policy rules: %s", exc)
        _policy_engine = PolicyEngine(policy_config)
    return _policy_engine


def get_lead_store() -> LeadStore:
    """Return the lead store (lazy-init from config)."""
    global _lead_store
    if _lead_store is None:
        cfg = get_config()
        _lead_store = LeadStore(cfg.leads.store_file, ttl_days=cfg.leads.ttl_days)
    return _lead_store


def get_guard() -> Guard:
    cfg = get_config()
    return Guard(
        limiter=get_limiter(),
        policy_engine=get_policy_engine(),
        max_body_bytes=cfg.max_body_bytes,
        frontend_origin=cfg.frontend_origin,
    )


def get_pipeline() -> ChatPipeline:
    cfg = get_config()
    ledger = get_ledger()
    chain = ProviderChain(
        providers=build_providers(cfg, transport=_transport),
        ledger=ledger,
        order=cfg.provider_chain,
        enabled=cfg.providers_enabled,
    )
    return ChatPipeline(
        get_pack_cache(),
        ledger,
        chain,
        pack_url=cfg.pack_url,
        site_origin=cfg.site_origin,
    )


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging and shared state on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_limiter()
    get_ledger()
    get_pack_cache()
    get_policy_engine()
    yield


app = FastAPI(title="Edge Chat Gateway", version="0.3.0", lifespan=lifespan)


def client_ip(request: Request) -> str:
    """Resolve the caller's IP.

    Proxy headers are read only when ``trust_proxy_headers`` is set, so
    behind no proxy the socket peer is used.
    """
    if get_config().trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        for header in ("cf-connecting-ip", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value
    if request.client and request.client.host:
        return request.client.host
    return "0.0.0.0"


def cors_headers(request: Request) -> Dict[str, str]:
    """CORS headers, echoed only for the configured frontend origin."""
    allowed = get_config().frontend_origin
    origin = request.headers.get("origin", "")
    if not allowed or origin != allowed:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Vary": "Origin",
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Headers": "Content-Type, X-CSRF, X-Nonce, Authorization",
        "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    }


def _error_response(request: Request, status: int, code: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=code)
    return JSONResponse(
        status_code=status, content=body.model_dump(), headers=cors_headers(request)
    )


def _hint_response(request: Request, hint: str) -> JSONResponse:
    try:
        check_origin(request.headers.get("origin"), get_config().frontend_origin)
    except SecurityCheckError as exc:
        return _error_response(request, 403, exc.reason)
    return JSONResponse(
        content=HintResponse(hint=hint).model_dump(), headers=cors_headers(request)
    )


@app.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> str:
    return "ok"


@app.options("/api/chat")
@app.options("/api/lead")
async def preflight(request: Request) -> Response:
    return Response(status_code=204, headers=cors_headers(request))


@app.get("/api/chat")
async def chat_hint(request: Request) -> JSONResponse:
    return _hint_response(request, "POST JSON to /api/chat for SSE stream")


@app.get("/api/lead")
async def lead_hint(request: Request) -> JSONResponse:
    return _hint_response(request, "POST JSON to /api/lead to store a lead")


@app.post("/api/chat", response_model=None)
async def chat(request: Request) -> Response:
    """Handle one chat turn.

    Request flow:
    1. Guard (origin, media type, rate limit, size, JSON, honeypot, CSRF,
       policy filter)
    2. Policy violation → localized refusal stream, nothing else runs
    3. Grounding against the knowledge pack
    4. Extractive answer, or the provider fallback chain, or a fallback
       message
    5. Stream the answer with decision metadata headers
    """
    request_id = "gw-{}".format(uuid.uuid4().hex[:12])
    ip = client_ip(request)
    raw = await request.body()

    verdict = get_guard().check_request(raw, request.headers, ip)
    if not verdict.passed and verdict.reason is not GuardReason.POLICY_VIOLATION:
        log_request(
            route="/api/chat",
            ip=ip,
            outcome="rejected",
            error=verdict.reason.value,
            request_id=request_id,
        )
        return _error_response(request, verdict.reason.http_status, verdict.reason.value)

    try:
        turn = ChatRequest.model_validate(verdict.body)
    except ValidationError:
        log_request(
            route="/api/chat",
            ip=ip,
            outcome="rejected",
            error="invalid_request",
            request_id=request_id,
        )
        return _error_response(request, 400, "invalid_request")

    session_id = session_id_for(turn.csrf)
    pipeline = get_pipeline()

    if verdict.reason is GuardReason.POLICY_VIOLATION:
        outcome = pipeline.refusal(turn.lang, session_id)
        log_request(
            route="/api/chat",
            ip=ip,
            outcome="refused",
            provider=outcome.metadata.provider,
            error=",".join(verdict.triggered_rules),
            request_id=request_id,
        )
        return sse_response(outcome.text, outcome.metadata, cors_headers(request))

    outcome = await pipeline.run_turn(
        turn.latest_message,
        turn.lang,
        session_id,
        turn.pack_url,
    )
    log_request(
        route="/api/chat",
        ip=ip,
        outcome="answered",
        provider=outcome.metadata.provider,
        tokens=outcome.metadata.tokens_this_call,
        session_total=outcome.metadata.session_total,
        pack_status=outcome.metadata.pack_status,
        request_id=request_id,
    )
    return sse_response(outcome.text, outcome.metadata, cors_headers(request))


@app.post("/api/lead", response_model=None)
async def lead(request: Request) -> JSONResponse:
    """Validate, store and fan out a lead submitted by the chat funnel."""
    request_id = "gw-{}".format(uuid.uuid4().hex[:12])
    ip = client_ip(request)
    raw = await request.body()

    verdict = get_guard().check_request(raw, request.headers, ip, screen_policy=False)
    if not verdict.passed:
        log_request(
            route="/api/lead",
            ip=ip,
            outcome="rejected",
            error=verdict.reason.value,
            request_id=request_id,
        )
        return _error_response(request, verdict.reason.http_status, verdict.reason.value)

    try:
        submission = LeadRequest.model_validate(verdict.body)
        record = build_lead_record(
            submission.lead, ip, request.headers.get("user-agent", "")
        )
    except ValidationError:
        return _error_response(request, 400, "invalid_request")
    except LeadValidationError as exc:
        log_request(
            route="/api/lead",
            ip=ip,
            outcome="rejected",
            error=exc.reason,
            request_id=request_id,
        )
        return _error_response(request, 400, exc.reason)

    cfg = get_config()
    try:
        get_lead_store().put(record["id"], record)
    except OSError as exc:
        logger.error("Failed to persist lead %s: %s", record["id"], exc)

    if cfg.leads.webhook_url:
        await send_lead_webhook(
            cfg.leads.webhook_url,
            record,
            timeout=cfg.provider_timeout_seconds,
            transport=_transport,
        )

    log_request(route="/api/lead", ip=ip, outcome="stored", request_id=request_id)
    return JSONResponse(
        content=LeadResponse(id=record["id"]).model_dump(),
        headers=cors_headers(request),
    )
