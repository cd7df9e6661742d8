"""
Leadrunner control API - FastAPI app exposing status, control signals,
settings, navigator commands and the progress event stream.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from leadrunner.api.logging_config import logger
from leadrunner.core.error_handler import ErrorCategory, LeadrunnerError, categorize

VERSION = "1.0.0"

STATUS_BY_CATEGORY = {
    ErrorCategory.AUTH: 401,
    ErrorCategory.BUSY: 409,
    ErrorCategory.NETWORK: 502,
    ErrorCategory.ACTION: 502,
}


# === Request Models ===

class LoginRequest(BaseModel):
    email: str
    password: str


class SyncRequest(BaseModel):
    accessToken: str
    refreshToken: Optional[str] = None
    user: Optional[Dict[str, Any]] = None


class ApiUrlRequest(BaseModel):
    url: str


class DiscoveryStartRequest(BaseModel):
    keywords: List[str]
    criteria: str = ""


class DeepStartRequest(BaseModel):
    leads: List[Dict[str, Any]]
    criteria: str = ""
    onlyQualified: Optional[bool] = None
    minScore: Optional[float] = None
    deepScan: Optional[bool] = None


class EnricherStartRequest(BaseModel):
    leads: List[Dict[str, Any]]


def create_app(runtime, manage_lifecycle: bool = True) -> FastAPI:
    """Build the control app around ``runtime``; the runtime starts and stops with the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Leadrunner control API...")
        if manage_lifecycle:
            await runtime.start()
        yield
        logger.info("Shutting down Leadrunner control API...")
        if manage_lifecycle:
            await runtime.stop()

    app = FastAPI(
        title="Leadrunner",
        description="Control surface for the Leadrunner automation orchestrator",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # === Request Logging Middleware ===

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = datetime.now()
        response = await call_next(request)
        duration = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration:.2f}ms)")
        return response

    # === Error Mapping ===

    @app.exception_handler(LeadrunnerError)
    async def leadrunner_error_handler(request: Request, exc: LeadrunnerError):
        status_code = STATUS_BY_CATEGORY.get(categorize(exc), 500)
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"success": False, "detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"success": False, "detail": str(exc)})

    # === Health / Status ===

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now().isoformat(), "version": VERSION}

    @app.get("/status")
    async def status():
        return await runtime.status()

    # === Automation Control ===

    @app.post("/automation/poll")
    async def automation_poll():
        job = await runtime.poller.trigger()
        return {"success": True, "message": "Poll triggered", "startedJobId": job.id if job else None}

    @app.post("/automation/stop")
    async def automation_stop():
        stopped = await runtime.executor.stop()
        return {"success": True, "message": "Automation stopped" if stopped else "No running automation"}

    @app.post("/automation/advance")
    async def automation_advance():
        advanced = await runtime.executor.advance()
        if not advanced:
            return {"success": False, "message": "No running automation"}
        return {"success": True}

    # === Session ===

    @app.post("/auth/login")
    async def auth_login(request: LoginRequest):
        data = await runtime.tokens.login({"email": request.email, "password": request.password})
        return {"success": True, "user": data.get("user")}

    @app.post("/auth/logout")
    async def auth_logout():
        await runtime.tokens.logout()
        return {"success": True}

    @app.post("/auth/sync")
    async def auth_sync(request: SyncRequest):
        await runtime.tokens.sync(request.accessToken, request.refreshToken, request.user)
        return {"success": True}

    # === Settings ===

    @app.get("/settings/api-url")
    async def get_api_url():
        return {"apiUrl": runtime.config.API_URL}

    @app.put("/settings/api-url")
    async def put_api_url(request: ApiUrlRequest):
        if not request.url.startswith(("http://", "https://")):
            raise HTTPException(status_code=400, detail="API URL must start with http:// or https://")
        await runtime.set_api_url(request.url)
        return {"success": True, "apiUrl": runtime.config.API_URL}

    @app.get("/settings/connectivity")
    async def connectivity():
        healthy = await runtime.client.health_check()
        return {"success": healthy, "apiUrl": runtime.config.API_URL}

    # === Navigators ===

    @app.post("/navigators/discovery/start")
    async def discovery_start(request: DiscoveryStartRequest):
        started = await runtime.discovery.start(request.keywords, request.criteria)
        if not started:
            raise HTTPException(status_code=409, detail="Discovery already running")
        return {"success": True, "state": runtime.discovery.snapshot()}

    @app.post("/navigators/discovery/stop")
    async def discovery_stop():
        await runtime.discovery.stop()
        return {"success": True, "state": runtime.discovery.snapshot()}

    @app.get("/navigators/discovery")
    async def discovery_state():
        return runtime.discovery.snapshot()

    def _deep(platform: str):
        if platform not in runtime.config.DEEP_NAVIGATORS:
            raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
        return runtime.deep_navigator(platform)

    @app.post("/navigators/deep/{platform}/start")
    async def deep_start(platform: str, request: DeepStartRequest):
        navigator = _deep(platform)
        started = await navigator.start(
            request.leads,
            criteria=request.criteria,
            only_qualified=request.onlyQualified,
            min_score=request.minScore,
            deep_scan=request.deepScan,
        )
        if not started:
            raise HTTPException(status_code=409, detail=f"{platform} navigator already processing")
        return {"success": True, "state": navigator.snapshot()}

    @app.post("/navigators/deep/{platform}/stop")
    async def deep_stop(platform: str):
        navigator = _deep(platform)
        await navigator.stop()
        return {"success": True, "state": navigator.snapshot()}

    @app.get("/navigators/deep/{platform}")
    async def deep_state(platform: str):
        return _deep(platform).snapshot()

    @app.post("/navigators/enricher/start")
    async def enricher_start(request: EnricherStartRequest):
        if not await runtime.enricher.start(request.leads):
            raise HTTPException(status_code=409, detail="Enrichment already running")
        return {"success": True, "state": runtime.enricher.snapshot()}

    @app.post("/navigators/enricher/stop")
    async def enricher_stop():
        await runtime.enricher.stop()
        return {"success": True, "state": runtime.enricher.snapshot()}

    @app.get("/navigators/enricher")
    async def enricher_state():
        return runtime.enricher.snapshot()

    # === Progress Events ===

    @app.get("/events")
    async def events(limit: int = 50, source: Optional[str] = None):
        return {"events": [e.to_dict() for e in runtime.feed.recent(limit=limit, source=source)]}

    @app.get("/events/stream")
    async def events_stream():
        async def stream():
            async for event in runtime.feed.subscribe():
                yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"

        return StreamingResponse(stream(), media_type="text/event-stream")

    return app
