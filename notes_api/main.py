import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .metrics import (
    METRICS_CONTENT_TYPE,
    RATE_LIMITED_TOTAL,
    RATELIMIT_RECORDS,
    REQUEST_LATENCY,
    REQUESTS_TOTAL,
    render_metrics,
)
from .models import ChatAdapter, build_adapter, render_notes, request_id
from .rate_limit import FixedWindowLimiter, RateLimitResult
from .settings import Settings, get_settings

load_dotenv()
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown-ip"


class AppState:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.adapter: ChatAdapter = build_adapter(settings)
        self.limiter = FixedWindowLimiter(settings.rate_limit_config())
        self.started_at = time.time()
        self.total_requests = 0
        self.total_invalid = 0
        self.total_rate_limited = 0
        self.total_errors = 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = await get_state()
    logger.info(
        "Starting %s (backend=%s, limits=%d/min %d/day)",
        state.settings.service_name,
        state.adapter.name,
        state.settings.rate_limit_per_minute,
        state.settings.rate_limit_per_day,
    )
    state.limiter.start()
    try:
        yield
    finally:
        state.limiter.stop()
        logger.info("Stopped %s", state.settings.service_name)


app = FastAPI(title="Notes API", lifespan=lifespan)


async def get_state() -> AppState:
    if not hasattr(app.state, "app_state"):
        app.state.app_state = AppState(get_settings())
    return app.state.app_state


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/version")
async def version(state: AppState = Depends(get_state)):
    return {
        "service": state.settings.service_name,
        "version": state.settings.version,
        "git": state.settings.git_sha,
    }


@app.get("/status")
async def status(state: AppState = Depends(get_state)):
    uptime = int(time.time() - state.started_at)
    return {
        "status": "ok",
        "uptime_seconds": uptime,
        "model_backend": state.adapter.name,
        "requests_total": state.total_requests,
        "invalid_requests_total": state.total_invalid,
        "rate_limited_total": state.total_rate_limited,
        "errors_total": state.total_errors,
        "limits": {
            "rate_limit_per_minute": state.limiter.config.requests_per_minute,
            "rate_limit_per_day": state.limiter.config.requests_per_day,
            "sweeper_running": state.limiter.running,
            "records": record_counts(state.limiter),
        },
    }


@app.get("/metrics")
async def metrics(state: AppState = Depends(get_state)):
    record_counts(state.limiter)
    return Response(render_metrics(), media_type=METRICS_CONTENT_TYPE)


@app.post("/api/chat")
async def chat(request: Request, response: Response, state: AppState = Depends(get_state)):
    state.total_requests += 1
    started = time.time()
    try:
        ensure_json_request(request)
        await enforce_body_size(request, state.settings.max_body_bytes)
        body = await parse_json_body(request)
        message, notes = validate_chat(body, state.settings)
    except HTTPException:
        state.total_invalid += 1
        REQUESTS_TOTAL.labels(endpoint="chat", outcome="invalid_input").inc()
        REQUEST_LATENCY.labels(endpoint="chat").observe(time.time() - started)
        raise

    headers = enforce_rate_limit(state, request, "chat", started)
    response.headers.update(headers)

    rid = request_id()
    try:
        reply = await state.adapter.reply(message, notes, rid)
    except Exception as err:  # noqa: BLE001
        logger.exception("Chat completion failed (request_id=%s)", rid)
        state.total_errors += 1
        REQUESTS_TOTAL.labels(endpoint="chat", outcome="error").inc()
        REQUEST_LATENCY.labels(endpoint="chat").observe(time.time() - started)
        raise HTTPException(
            status_code=500,
            detail={
                "error": "AI model error",
                "details": str(err) or "Unknown AI model error",
                "request_id": rid,
            },
            headers=headers,
        ) from err

    REQUESTS_TOTAL.labels(endpoint="chat", outcome="ok").inc()
    REQUEST_LATENCY.labels(endpoint="chat").observe(time.time() - started)
    return {"response": reply, "request_id": rid}


@app.get("/api/test-gemini")
async def probe_model(
    request: Request, response: Response, state: AppState = Depends(get_state)
):
    state.total_requests += 1
    started = time.time()
    headers = enforce_rate_limit(state, request, "probe", started)
    response.headers.update(headers)
    try:
        reply = await state.adapter.probe()
    except Exception as err:  # noqa: BLE001
        logger.exception("Model probe failed")
        state.total_errors += 1
        REQUESTS_TOTAL.labels(endpoint="probe", outcome="error").inc()
        REQUEST_LATENCY.labels(endpoint="probe").observe(time.time() - started)
        raise HTTPException(
            status_code=500,
            detail={
                "success": False,
                "error": "AI model error",
                "details": str(err) or "Unknown AI model error",
            },
            headers=headers,
        ) from err
    REQUESTS_TOTAL.labels(endpoint="probe", outcome="ok").inc()
    REQUEST_LATENCY.labels(endpoint="probe").observe(time.time() - started)
    return {
        "success": True,
        "response": reply,
        "message": f"{state.adapter.name} model test successful",
    }


def enforce_rate_limit(
    state: AppState, request: Request, endpoint: str, started: float
) -> dict[str, str]:
    """Count the request against the caller's quota.

    Returns the ``X-RateLimit-*`` headers for an admitted request and raises
    a 429 carrying the same headers plus ``Retry-After`` otherwise.
    """
    result = state.limiter.check(client_ip(request))
    headers = result.headers(state.limiter.clock())
    if result.success:
        return headers
    state.total_rate_limited += 1
    RATE_LIMITED_TOTAL.labels(endpoint=endpoint).inc()
    REQUESTS_TOTAL.labels(endpoint=endpoint, outcome="rate_limited").inc()
    REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - started)
    raise HTTPException(status_code=429, detail=rate_limit_body(result), headers=headers)


def rate_limit_body(result: RateLimitResult) -> dict[str, Any]:
    reset_at = datetime.fromtimestamp(result.reset_at / 1000, tz=timezone.utc)
    return {
        "error": "rate_limited",
        "message": "Too many requests. Please try again later.",
        "limit": result.limit,
        "remaining": result.remaining,
        "resetAt": reset_at.isoformat().replace("+00:00", "Z"),
    }


def record_counts(limiter: FixedWindowLimiter) -> dict[str, int]:
    counts = limiter.size()
    for window, count in counts.items():
        RATELIMIT_RECORDS.labels(window=window).set(count)
    return counts


def validate_chat(body: dict[str, Any], settings: Settings) -> tuple[str, str]:
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_input", "message": "Message is required"},
        )
    if len(message) > settings.max_message_chars:
        raise HTTPException(
            status_code=400, detail={"error": "invalid_input", "message": "message_too_long"}
        )
    try:
        notes = render_notes(body.get("notes"))
    except ValueError as err:
        raise HTTPException(
            status_code=400, detail={"error": "invalid_input", "message": str(err)}
        ) from err
    if len(notes) > settings.max_notes_chars:
        raise HTTPException(
            status_code=400, detail={"error": "invalid_input", "message": "notes_too_long"}
        )
    return message.strip(), notes


def ensure_json_request(request: Request) -> None:
    content_type = request.headers.get("content-type", "")
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type != "application/json":
        raise HTTPException(status_code=415, detail={"error": "unsupported_media_type"})


async def enforce_body_size(request: Request, max_bytes: int) -> None:
    length = request.headers.get("content-length")
    if length:
        try:
            declared = int(length)
        except ValueError:
            declared = 0
        if declared > max_bytes:
            raise HTTPException(status_code=413, detail={"error": "payload_too_large"})
    body = await request.body()
    if len(body) > max_bytes:
        raise HTTPException(status_code=413, detail={"error": "payload_too_large"})


async def parse_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_input", "message": "invalid_json"},
        ) from err
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_input", "message": "invalid_body"},
        )
    return payload


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)
