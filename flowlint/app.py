"""
Webhook front end.

Each delivery to ``/webhooks/github`` is size-checked, rate-limited per
client, authenticated against ``X-Hub-Signature-256``, classified and turned
into queued review jobs. No GitHub API calls happen on this path; workers
(``flowlint.worker``) do the analysis.

Responses:
  200  acknowledged (jobs enqueued, duplicates collapsed, or event ignored)
  202  acknowledged but not actioned (soft rejection)
  400  unparsable JSON or malformed payload
  401  missing or invalid signature
  413  body over MAX_WEBHOOK_BODY_BYTES
  429  rate limited
  500  queue unavailable or unhandled error
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.routing import Route

from . import __version__
from .classifier import MalformedPayload, Verdict, classify_event
from .config import Settings, setup_logging
from .health import OK, check_health, uptime_s
from .jobqueue import JobQueue, QueueError, enqueue_review, queue_from_settings
from .verify import SignatureError, verify_signature

load_dotenv(dotenv_path=".env")  # Load variables from .env if present (handy for local dev)

log = logging.getLogger("flowlint.webhook")

RATE_LIMITED = {"ok": False, "error": "Too many requests, please try again later."}


class RateLimiter:
    """Fixed-window request counter keyed by client address."""

    def __init__(self, limit: int, window_s: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        if self.limit <= 0:
            return True
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_s:
                started, count = now, 0
            if count >= self.limit:
                self._windows[key] = (started, count)
                return False
            self._windows[key] = (started, count + 1)
            if len(self._windows) > 10_000:
                self._evict(now)
            return True

    def _evict(self, now: float) -> None:
        for key in [k for k, (started, _) in self._windows.items() if now - started >= self.window_s]:
            del self._windows[key]


def client_address(request: Request, trust_proxy: bool = False) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def create_app(settings: Optional[Settings] = None, queue: Optional[JobQueue] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    queue = queue if queue is not None else queue_from_settings(settings)
    limiter = RateLimiter(settings.rate_limit_per_minute)

    app = FastAPI(title="FlowLint Webhook", version=__version__)
    app.state.settings = settings
    app.state.queue = queue
    app.state.limiter = limiter

    # ---------------- Startup / Shutdown ----------------

    @app.on_event("startup")
    def _startup_log_routes() -> None:
        for r in app.router.routes:
            if isinstance(r, Route):
                log.info("route registered: %s methods=%s", r.path, sorted(r.methods))
        if not settings.webhook_secret:
            log.warning("GITHUB_WEBHOOK_SECRET is not set; every delivery will be rejected")

    @app.on_event("shutdown")
    def _close_queue() -> None:
        queue.close()

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        log.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"ok": False, "error": "Internal server error"})

    # ---------------- Health ----------------

    def _health() -> JSONResponse:
        report = check_health(queue, settings.queue_degraded_threshold)
        return JSONResponse(status_code=200 if report["status"] == OK else 503, content=report)

    @app.get("/healthz")
    def healthz() -> JSONResponse:
        return _health()

    @app.get("/readyz")
    def readyz() -> JSONResponse:
        return _health()

    @app.get("/livez")
    def livez() -> Dict[str, Any]:
        return {"status": "ok", "uptime": uptime_s()}

    # ---------------- Webhook ----------------

    @app.post("/webhooks/github")
    async def github_webhook(
        request: Request,
        x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
        x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
        x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
    ):
        if not limiter.allow(client_address(request, settings.trust_proxy)):
            log.warning("rate limited delivery=%s", x_github_delivery)
            return JSONResponse(status_code=429, content=RATE_LIMITED)

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > settings.max_body_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")
        body: bytes = await request.body()
        if len(body) > settings.max_body_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")

        try:
            verify_signature(body, x_hub_signature_256, settings.webhook_secret)
        except SignatureError as e:
            log.warning("rejected delivery=%s event=%s reason=%s", x_github_delivery, x_github_event, e)
            raise HTTPException(status_code=401, detail=str(e))

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        event = x_github_event or ""
        action = payload.get("action") if isinstance(payload, dict) else None
        log.info("delivery=%s event=%s action=%s len=%d", x_github_delivery, event, action, len(body))

        try:
            result = classify_event(event, payload, check_name=settings.check_name, app_slug=settings.app_slug)
        except MalformedPayload as e:
            log.warning("malformed payload delivery=%s %s", x_github_delivery, e)
            raise HTTPException(status_code=400, detail=str(e))

        if result.verdict is Verdict.REJECTED:
            return JSONResponse(
                status_code=202,
                content={"ok": True, "delivery": x_github_delivery, "jobs": [], "skipped": result.reason},
            )
        if result.verdict is Verdict.IGNORED:
            log.debug("ignored delivery=%s reason=%s", x_github_delivery, result.reason)
            return {"ok": True, "delivery": x_github_delivery, "jobs": [], "ignored": result.reason}

        try:
            enqueued = await asyncio.gather(*(run_in_threadpool(enqueue_review, queue, job) for job in result.jobs))
        except QueueError as e:
            log.error("failed to enqueue review delivery=%s error=%s", x_github_delivery, e)
            return JSONResponse(status_code=500, content={"ok": False, "error": "Failed to enqueue review job"})

        return {
            "ok": True,
            "delivery": x_github_delivery,
            "jobs": [{"id": r.job_id, "status": r.status.value} for r in enqueued],
        }

    return app


app = create_app()
