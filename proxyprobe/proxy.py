"""
ProxyProbe - mitmproxy Addon
Feeds every live request to the traffic interceptor and hands completed
flows to the request store.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from mitmproxy import http, options
from mitmproxy.tools.dump import DumpMaster

from proxyprobe.interceptor import TrafficInterceptor


logger = logging.getLogger(__name__)

TEXT_CONTENT_MARKERS = ("text", "json", "xml", "javascript")
MAX_REQUEST_BODY_CHARS = 5000
MAX_RESPONSE_BODY_CHARS = 50000


@dataclass
class CapturedFlow:
    """A completed proxied exchange, ready for the request store."""
    flow_id: str
    method: str
    scheme: str
    host: str
    port: int
    path: str
    query: str
    request_headers: Dict[str, str]
    request_body: Optional[str]
    timestamp: float
    status_code: int
    response_headers: Dict[str, str]
    response_body: Optional[str]
    content_type: str
    content_length: int
    duration_ms: float


def split_path(full_path: str):
    """mitmproxy's `request.path` carries the query string."""
    path, _, query = (full_path or "/").partition("?")
    return path or "/", query


class ProxyProbeAddon:
    """mitmproxy addon: observes requests and logs completed flows."""

    def __init__(self, interceptor: Optional[TrafficInterceptor] = None):
        self.interceptor = interceptor
        self.log_traffic = True
        self.exclude_domains: Set[str] = set()
        self._flow_callback: Optional[Callable[[CapturedFlow], None]] = None
        self._flow_start_times: Dict[str, float] = {}

    def set_flow_callback(self, on_flow: Callable[[CapturedFlow], None]):
        self._flow_callback = on_flow

    def set_excludes(self, domains: List[str]):
        """Set domains to exclude from logging."""
        self.exclude_domains = set(domains)

    def _is_excluded(self, host: str) -> bool:
        for d in self.exclude_domains:
            if d.startswith("*."):
                if host.endswith(d[1:]):
                    return True
            elif host == d:
                return True
        return False

    def request(self, flow: http.HTTPFlow):
        """Called when a request is received."""
        self._flow_start_times[flow.id] = time.time()
        if self.interceptor is None:
            return

        path, _ = split_path(flow.request.path)
        try:
            self.interceptor.observe(flow.id, flow.request.host, path, flow.request.method)
        except Exception as e:
            logger.error("[Proxy] Error recording intercepted request: %s", e)

    def response(self, flow: http.HTTPFlow):
        """Called when a response is received."""
        start_time = self._flow_start_times.pop(flow.id, time.time())
        if not self.log_traffic or self._is_excluded(flow.request.host):
            return
        if not self._flow_callback:
            return

        duration_ms = (time.time() - start_time) * 1000
        try:
            self._flow_callback(self._capture(flow, start_time, duration_ms))
        except Exception as e:
            logger.error("[Proxy] Flow callback error: %s", e)

    def error(self, flow: http.HTTPFlow):
        self._flow_start_times.pop(flow.id, None)

    @staticmethod
    def _capture(flow: http.HTTPFlow, start_time: float, duration_ms: float) -> CapturedFlow:
        request_body = None
        if flow.request.content:
            request_body = flow.request.content.decode("utf-8", errors="replace")[:MAX_REQUEST_BODY_CHARS]

        content_type = flow.response.headers.get("content-type", "")
        response_body = None
        if flow.response.content and any(m in content_type for m in TEXT_CONTENT_MARKERS):
            response_body = flow.response.content.decode("utf-8", errors="replace")[:MAX_RESPONSE_BODY_CHARS]

        path, query = split_path(flow.request.path)
        return CapturedFlow(
            flow_id=flow.id,
            method=flow.request.method,
            scheme=flow.request.scheme,
            host=flow.request.host,
            port=flow.request.port,
            path=path,
            query=query,
            request_headers=dict(flow.request.headers),
            request_body=request_body,
            timestamp=start_time,
            status_code=flow.response.status_code,
            response_headers=dict(flow.response.headers),
            response_body=response_body,
            content_type=content_type,
            content_length=len(flow.response.content) if flow.response.content else 0,
            duration_ms=duration_ms,
        )


class ProxyManager:
    """Manages the mitmproxy instance in a separate thread."""

    def __init__(self, host: str = "127.0.0.1", port: int = 8080,
                 interceptor: Optional[TrafficInterceptor] = None):
        self.host = host
        self.port = port
        self.addon = ProxyProbeAddon(interceptor)
        self._master: Optional[DumpMaster] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def set_flow_callback(self, on_flow: Callable[[CapturedFlow], None]):
        self.addon.set_flow_callback(on_flow)

    def set_excludes(self, domains: List[str]):
        self.addon.set_excludes(domains)

    async def start(self):
        """Start mitmproxy in a background thread."""
        opts = options.Options(
            listen_host=self.host,
            listen_port=self.port,
            ssl_insecure=True,
        )

        self._thread = threading.Thread(
            target=self._run_proxy,
            args=(opts,),
            daemon=True,
            name="mitmproxy-thread",
        )
        self._thread.start()

    def _run_proxy(self, opts: options.Options):
        """Run mitmproxy in its own event loop (separate thread)."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        async def _start():
            self._master = DumpMaster(opts, with_termlog=False, with_dumper=False)
            self._master.addons.add(self.addon)
            await self._master.run()

        try:
            self._loop.run_until_complete(_start())
        except Exception as e:
            logger.error("[Proxy] Error: %s", e)

    async def stop(self):
        """Stop the proxy."""
        if self._master and self._loop:
            self._loop.call_soon_threadsafe(self._master.shutdown)
        if self._thread:
            self._thread.join(timeout=5)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
