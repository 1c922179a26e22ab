"""
ProxyProbe - Probe Transport
Outbound HTTP for every probe (httpx), recorded in the request store so that
probes show up in history and can back findings.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import httpx

from proxyprobe.config import TransportConfig
from proxyprobe.logger import LoggerDB


logger = logging.getLogger(__name__)

# Headers httpx computes itself
RESTRICTED_HEADERS = {"content-length", "host"}


class TransportError(RuntimeError):
    """A probe could not be sent or no response was received."""


@dataclass
class RequestSpec:
    """One outbound request."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    follow_redirects: bool = False


@dataclass
class ProbeResponse:
    """The response to a probe plus the id it was stored under."""
    status_code: int
    headers: Dict[str, str]
    body: str
    elapsed_ms: float
    request_id: Optional[int] = None


@dataclass
class StoredExchange:
    """A captured request/response pair, proxied or probed."""
    id: int
    method: str
    scheme: str
    host: str
    path: str
    query: str = ""
    port: Optional[int] = None
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_body: Optional[str] = None
    status_code: Optional[int] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_body: Optional[str] = None
    content_type: str = ""
    content_length: int = 0
    duration_ms: float = 0
    timestamp: float = 0
    source: str = "proxy"

    @property
    def has_response(self) -> bool:
        return self.status_code is not None

    @classmethod
    def from_row(cls, row: Dict) -> "StoredExchange":
        return cls(
            id=row["id"],
            method=row.get("method") or "GET",
            scheme=row.get("scheme") or "https",
            host=row.get("host") or "",
            path=row.get("path") or "/",
            query=row.get("query") or "",
            port=row.get("port"),
            request_headers=row.get("request_headers") or {},
            request_body=row.get("request_body"),
            status_code=row.get("status_code"),
            response_headers=row.get("response_headers") or {},
            response_body=row.get("response_body"),
            content_type=row.get("content_type") or "",
            content_length=row.get("content_length") or 0,
            duration_ms=row.get("duration_ms") or 0,
            timestamp=row.get("timestamp") or 0,
            source=row.get("source") or "proxy",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "method": self.method,
            "scheme": self.scheme,
            "host": self.host,
            "port": self.port,
            "path": self.path,
            "query": self.query,
            "statusCode": self.status_code,
            "contentType": self.content_type,
            "contentLength": self.content_length,
            "durationMs": round(self.duration_ms or 0, 1),
            "timestamp": self.timestamp,
            "source": self.source,
        }


class Pacer:
    """Fixed delay between consecutive probes. `Pacer(0)` disables waiting."""

    def __init__(self, delay_s: float):
        self.delay_s = delay_s

    async def wait(self):
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)


class HttpxTransport:
    """Sends probes with httpx and logs each exchange to the store."""

    def __init__(self, config: Optional[TransportConfig] = None,
                 store: Optional[LoggerDB] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or TransportConfig()
        self.store = store
        # Alternate httpx transport, e.g. httpx.MockTransport
        self._transport = transport

    def _client(self, follow_redirects: bool) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            verify=self.config.verify_tls,
            follow_redirects=follow_redirects,
            timeout=self.config.timeout_s,
            headers={"User-Agent": self.config.user_agent},
            transport=self._transport,
        )

    async def send(self, spec: RequestSpec) -> ProbeResponse:
        headers = {k: v for k, v in (spec.headers or {}).items()
                   if k.lower() not in RESTRICTED_HEADERS}
        content = spec.body.encode("utf-8") if spec.body is not None else None

        started = time.perf_counter()
        try:
            async with self._client(spec.follow_redirects) as client:
                resp = await client.request(
                    method=spec.method.upper(),
                    url=spec.url,
                    headers=headers,
                    content=content,
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(str(e) or type(e).__name__) from e
        elapsed_ms = (time.perf_counter() - started) * 1000

        body = resp.content.decode("utf-8", errors="replace")
        resp_headers = dict(resp.headers)

        request_id = await self._record(spec, headers, resp.status_code,
                                        resp_headers, body, len(resp.content), elapsed_ms)
        return ProbeResponse(
            status_code=resp.status_code,
            headers=resp_headers,
            body=body,
            elapsed_ms=elapsed_ms,
            request_id=request_id,
        )

    async def _record(self, spec: RequestSpec, headers: Dict[str, str],
                      status_code: int, resp_headers: Dict[str, str],
                      body: str, size: int, elapsed_ms: float) -> Optional[int]:
        if self.store is None:
            return None

        parsed = urlsplit(spec.url)
        try:
            return await self.store.log_request(
                method=spec.method.upper(),
                scheme=parsed.scheme or "https",
                host=parsed.hostname or "",
                port=parsed.port,
                path=parsed.path or "/",
                query=parsed.query,
                request_headers=headers,
                request_body=spec.body,
                status_code=status_code,
                response_headers=resp_headers,
                response_body=body,
                content_type=resp_headers.get("content-type", ""),
                content_length=size,
                duration_ms=elapsed_ms,
                source="probe",
            )
        except Exception as e:
            logger.warning("[Transport] Could not record exchange for %s: %s", spec.url, e)
            return None

    async def get(self, request_id) -> Optional[StoredExchange]:
        if self.store is None:
            return None
        try:
            log_id = int(request_id)
        except (TypeError, ValueError):
            return None
        row = await self.store.get_http_log_detail(log_id)
        return StoredExchange.from_row(row) if row else None

    async def query_history(self, limit: int = 100) -> List[StoredExchange]:
        if self.store is None:
            return []
        rows = await self.store.get_http_logs(limit=limit)
        return [StoredExchange.from_row(r) for r in rows]
