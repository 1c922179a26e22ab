"""
ProxyProbe - FastAPI Backend
Tool-call API: status, tool listing and `POST /mcp/call`, guarded by an API key.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from proxyprobe.config import AppConfig, get_config, save_user_config
from proxyprobe.logger import LoggerDB
from proxyprobe.proxy import CapturedFlow, ProxyManager
from proxyprobe.state import ProbeState
from proxyprobe.tools import ToolRegistry
from proxyprobe.transport import HttpxTransport


logger = logging.getLogger(__name__)


# ── Pydantic Models ────────────────────────────────────────────

class ToolCall(BaseModel):
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)


# ── Proxy flow logging ─────────────────────────────────────────

def make_flow_handler(db: LoggerDB, loop: asyncio.AbstractEventLoop):
    """Callback for the mitmproxy thread: schedules the store write on the API loop."""

    async def _store(flow: CapturedFlow):
        try:
            await db.log_request(
                method=flow.method,
                scheme=flow.scheme,
                host=flow.host,
                port=flow.port,
                path=flow.path,
                query=flow.query,
                request_headers=flow.request_headers,
                request_body=flow.request_body,
                status_code=flow.status_code,
                response_headers=flow.response_headers,
                response_body=flow.response_body,
                content_type=flow.content_type,
                content_length=flow.content_length,
                duration_ms=flow.duration_ms,
                source="proxy",
            )
        except Exception as e:
            logger.error("[API] Error handling flow: %s", e)

    def on_flow(flow: CapturedFlow):
        loop.call_soon_threadsafe(asyncio.create_task, _store(flow))

    return on_flow


def persist_targets(targets):
    save_user_config({"allowed_targets": list(targets)})


# ── App Factory ────────────────────────────────────────────────

def create_app(registry: Optional[ToolRegistry] = None,
               config: Optional[AppConfig] = None,
               start_proxy: bool = True) -> FastAPI:
    """Build the API. An injected registry skips the database and the proxy."""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown."""
        if registry is not None:
            app.state.registry = registry
            app.state.proxy = None
            yield
            return

        db = LoggerDB()
        await db.connect()
        state = ProbeState(config.allowed_targets)
        transport = HttpxTransport(config.transport, store=db)
        app.state.registry = ToolRegistry(state, transport, store=db,
                                          on_targets_changed=persist_targets)

        proxy_manager = None
        if start_proxy:
            proxy_manager = ProxyManager(
                host=config.proxy.host,
                port=config.proxy.port,
                interceptor=app.state.registry.interceptor,
            )
            proxy_manager.set_excludes(config.proxy.exclude_domains)
            proxy_manager.addon.log_traffic = config.proxy.log_traffic
            proxy_manager.set_flow_callback(make_flow_handler(db, asyncio.get_running_loop()))
            await proxy_manager.start()
            logger.info("[Proxy] Intercepting on %s:%d", config.proxy.host, config.proxy.port)
        app.state.proxy = proxy_manager

        logger.info("[API] Backend running on %s:%d", config.api.host, config.api.port)
        yield

        if proxy_manager:
            await proxy_manager.stop()
        await db.close()

    app = FastAPI(
        title="ProxyProbe API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
    )

    def require_api_key(x_api_key: Optional[str] = Header(default=None)):
        if x_api_key != config.api.api_key:
            raise HTTPException(status_code=401, detail="Unauthorized")

    # ── Endpoints ───────────────────────────────────────────────

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/mcp/status")
    async def mcp_status(request: Request):
        proxy = getattr(request.app.state, "proxy", None)
        return {
            "status": "running",
            "type": "api-adapter",
            "proxyRunning": bool(proxy and proxy.is_running),
        }

    @app.get("/mcp/tools", dependencies=[Depends(require_api_key)])
    async def mcp_tools(request: Request):
        return {"tools": request.app.state.registry.names()}

    @app.post("/mcp/call", dependencies=[Depends(require_api_key)])
    async def mcp_call(call: ToolCall, request: Request):
        tools: ToolRegistry = request.app.state.registry
        if not tools.has(call.tool):
            return JSONResponse(status_code=404,
                                content={"success": False, "error": f"Unknown tool: {call.tool}"})

        logger.info("[API] Executing %s", call.tool)
        result = await tools.call(call.tool, call.params)
        return {"success": True, "data": result}

    return app


app = create_app()
