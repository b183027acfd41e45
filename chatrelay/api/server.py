"""
Chat relay HTTP server.

POST /api/chat validates the request, gates it through the dual-scope rate limiter
(a caller who brings a valid model key skips it unless the request also brings up
tool providers), then streams the model/tool loop back as Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import time
import uuid
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError

from chatrelay.auth.config import load_rate_limit_config
from chatrelay.auth.rate_limit import RateLimitResult, admission_bypass, get_rate_limiter
from chatrelay.auth.store import RedisCounterStore, get_counter_store_from_env
from chatrelay.chat.pipeline import ChatPipeline
from chatrelay.chat.policy import redact_text
from chatrelay.chat.runtime_streaming import MODEL_UNAVAILABLE_MESSAGE
from chatrelay.chat.types import ChatRequest, ChatStreamEvent
from chatrelay.core.errors import AdmissionDenied, BackingStoreUnavailable
from chatrelay.llm.client import is_credential_error
from chatrelay.llm.models import caller_key_error, get_model_info, list_models, resolve_model

logger = logging.getLogger(__name__)

app = FastAPI(title="chatrelay")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """
    Auto-apply DB migrations when DB_AUTO_MIGRATE=1.

    This should never prevent the server from starting; failures are logged.
    """
    try:
        from chatrelay.memory.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate()
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", type(e).__name__)


@app.on_event("startup")
async def _startup_check_rate_limit_store() -> None:
    """
    Log whether the shared counter store is reachable.

    The server still starts when it isn't; requests then get the configured
    store-failure policy (RATE_LIMIT_FAIL_OPEN).
    """
    store = await get_counter_store_from_env()
    if not isinstance(store, RedisCounterStore):
        return
    try:
        await store.ping()
        logger.info("Rate limit store reachable")
    except Exception as e:
        logger.warning(
            "Rate limit store unreachable at startup (%s); fail_open=%s",
            type(e).__name__,
            load_rate_limit_config().fail_open,
        )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.info("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception(
            "%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, type(e).__name__
        )
        raise


def _client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return None


def _rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_time.isoformat(),
    }


def _hours_until(reset_time: Any) -> int:
    seconds = reset_time.timestamp() - time.time()
    return max(1, math.ceil(seconds / 3600))


async def _admit_request(address: str, identity: Optional[str]) -> RateLimitResult:
    """
    Consult the rate limiter, applying the store-failure policy.

    Fail closed by default (BackingStoreUnavailable propagates); with
    RATE_LIMIT_FAIL_OPEN=1 a store failure admits with a synthetic full quota.
    """
    cfg = load_rate_limit_config()
    try:
        limiter = await get_rate_limiter()
        return await limiter.admit(address, identity)
    except BackingStoreUnavailable:
        if cfg.fail_open:
            logger.warning("Rate limit store unavailable; admitting request (RATE_LIMIT_FAIL_OPEN=1)")
            return admission_bypass(cfg)
        raise


def _format_sse_event(event_type: str, data: Dict[str, Any]) -> str:
    """Format data as Server-Sent Event."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def _event_payload(event: ChatStreamEvent) -> Dict[str, Any]:
    data: Dict[str, Any] = {"content": event.content}
    if event.tool:
        data["tool"] = event.tool
    if event.metadata:
        data["metadata"] = event.metadata
    return data


async def _chat_stream(pipeline: ChatPipeline) -> AsyncGenerator[str, None]:
    async for event in pipeline.events():
        yield _format_sse_event(event.event_type, _event_payload(event))


async def _chat_is_new(chat_id: Optional[str], user_id: str) -> bool:
    if not chat_id:
        return True
    from chatrelay.memory.chat import chat_exists

    try:
        ok, _msg, exists = await asyncio.to_thread(chat_exists, chat_id=chat_id, user_id=user_id)
    except Exception as e:
        # Persistence upserts either way; this only feeds the response header.
        logger.warning("Error checking for existing chat: %s", type(e).__name__)
        return True
    return not (ok and exists)


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/models")
def models() -> Dict[str, Any]:
    return {"models": list_models()}


@app.get("/api/health")
async def db_health() -> JSONResponse:
    from chatrelay.memory.chat import check_health

    ok, body = await asyncio.to_thread(check_health)
    if not ok:
        logger.error("Health check failed: %s", body.get("error"))
    return JSONResponse(status_code=200 if ok else 500, content=body)


@app.post("/api/check-db")
async def check_db(req: Dict[str, Any]) -> JSONResponse:
    from chatrelay.memory.migrate import ensure_schema

    if not str(req.get("userId") or "").strip():
        raise HTTPException(status_code=400, detail="User ID is required")
    ok, msg = await asyncio.to_thread(ensure_schema)
    if not ok:
        logger.error("Error checking database: %s", msg)
        return JSONResponse(status_code=500, content={"error": "Failed to check database"})
    return JSONResponse(content={"success": True, "detail": msg})


@app.post("/api/chat")
async def chat(request: Request):
    ip = _client_ip(request)
    if not ip:
        return JSONResponse(status_code=400, content={"error": "Could not determine client IP address"})

    try:
        body = await request.json()
        req = ChatRequest.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.info("Invalid chat request: %s", type(e).__name__)
        return JSONResponse(status_code=400, content={"error": "Invalid chat request"})

    user_id = (req.user_id or "").strip()
    if not user_id:
        return JSONResponse(status_code=400, content={"error": "User ID is required"})

    info = get_model_info(req.selected_model)
    if info is None:
        return JSONResponse(status_code=400, content={"error": f"Unknown model: {req.selected_model}"})

    user_key = (req.user_api_key or "").strip() or None
    if user_key is not None:
        key_err = caller_key_error(info, user_key)
        if key_err:
            logger.info("Rejected caller API key for %s: %s", info.model_id, key_err)
            return JSONResponse(status_code=400, content={"error": "Invalid API key for this model"})

    # A caller key pays for the model only. Tool providers are brought up on our side,
    # so requests that carry any still count against their address.
    if user_key is None or req.mcp_servers:
        try:
            rate_limit = await _admit_request(ip, None if user_key else user_id)
        except AdmissionDenied as e:
            logger.info("Rate limit exceeded for %s scope", e.scope)
            return PlainTextResponse(
                f"You've reached the daily limit of {e.limit} requests. "
                f"Please try again in {_hours_until(e.reset_time)} hours.",
                status_code=429,
                headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": e.reset_time.isoformat()},
            )
        except BackingStoreUnavailable:
            return JSONResponse(
                status_code=503,
                content={
                    "error": "Service is temporarily unavailable. Please try again in a few moments.",
                    "type": "RATE_LIMIT_UNAVAILABLE",
                },
            )
    else:
        rate_limit = admission_bypass()

    llm, err = resolve_model(req.selected_model, api_key=user_key, model_name=req.user_model_name)
    if err:
        if is_credential_error(err):
            # Expected when a provider is not configured; not logged with detail.
            return JSONResponse(status_code=400, content={"error": MODEL_UNAVAILABLE_MESSAGE})
        logger.error("Model initialization failed for %s: %s", req.selected_model, redact_text(err))
        return JSONResponse(status_code=500, content={"error": "An error occurred."})

    chat_id = (req.chat_id or "").strip() or uuid.uuid4().hex
    is_new = await _chat_is_new(req.chat_id, user_id)
    logger.info(
        "Chat %s (%s) model=%s tool_providers=%d",
        chat_id,
        "new" if is_new else "existing",
        info.model_id,
        len(req.mcp_servers),
    )

    pipeline = ChatPipeline(req, chat_id=chat_id, llm=llm, think_tags=info.think_tags)
    headers = dict(SSE_HEADERS)
    headers.update(_rate_limit_headers(rate_limit))
    headers["X-Chat-Id"] = chat_id
    return StreamingResponse(_chat_stream(pipeline), media_type="text/event-stream", headers=headers)


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting chat relay on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
