"""
ProxyProbe - Repeater
Sends ad-hoc requests, replays captured ones with modifications and lists
request history.
"""

import logging
import re
from typing import Dict, List, Optional

from proxyprobe.config import REPLAY_DELAY_S
from proxyprobe.state import TargetGate
from proxyprobe.transport import Pacer, RequestSpec, StoredExchange, TransportError


logger = logging.getLogger(__name__)

NOT_ALLOWED = "Target not allowed. Add the domain to allowed targets first."
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 100
REPLAY_STRIPPED_HEADERS = {"host", "content-length"}
DEFAULT_PORTS = {"http": 80, "https": 443}


def replay_url(original: StoredExchange, override: Optional[str] = None) -> str:
    if override:
        return override
    scheme = original.scheme or "https"
    netloc = original.host
    if original.port and original.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{original.port}"
    url = f"{scheme}://{netloc}{original.path}"
    if original.query:
        url += f"?{original.query}"
    return url


def apply_body_rules(body: str, rules: Optional[List[Dict]] = None,
                     override: Optional[str] = None) -> str:
    """Apply ordered regex substitutions, then an optional full replacement."""
    for rule in rules or []:
        body = re.sub(rule["search"], rule.get("replace", ""), body)
    if override is not None:
        body = override
    return body


def merge_headers(original: Dict[str, str], overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    merged = dict(original or {})
    merged.update(overrides or {})
    return {k: v for k, v in merged.items() if k.lower() not in REPLAY_STRIPPED_HEADERS}


class Repeater:

    def __init__(self, gate: TargetGate, transport, pacer: Optional[Pacer] = None):
        self.gate = gate
        self.transport = transport
        self.pacer = pacer or Pacer(REPLAY_DELAY_S)

    async def send(self, url: str, method: str = "GET",
                   headers: Optional[Dict[str, str]] = None,
                   body: Optional[str] = None,
                   follow_redirects: bool = False) -> dict:
        if not url:
            return {"success": False, "error": "URL is required"}
        if not self.gate.is_allowed(url):
            return {"success": False, "error": NOT_ALLOWED}

        method = (method or "GET").upper()
        logger.info("[Repeater] Sending %s request to %s", method, url)
        try:
            resp = await self.transport.send(RequestSpec(
                method=method,
                url=url,
                headers=dict(headers or {}),
                body=body or None,
                follow_redirects=follow_redirects,
            ))
        except TransportError as e:
            logger.error("[Repeater] Request failed: %s", e)
            return {"success": False, "error": str(e)}

        return {
            "success": True,
            "requestId": resp.request_id,
            "response": {
                "statusCode": resp.status_code,
                "headers": resp.headers,
                "body": resp.body,
                "responseTime": int(round(resp.elapsed_ms)),
                "size": len(resp.body),
            },
        }

    async def replay(self, request_id, modifications: Optional[Dict] = None,
                     times: Optional[int] = None) -> dict:
        if request_id is None or request_id == "":
            return {"success": False, "error": "requestId is required",
                    "originalRequestId": "", "iterations": 0, "results": []}

        request_id = str(request_id)
        times = times or 1
        mods = modifications or {}

        def failure(message: str) -> dict:
            return {"success": False, "error": message, "originalRequestId": request_id,
                    "iterations": 0, "results": []}

        original = await self.transport.get(request_id)
        if original is None:
            return failure(f"Request {request_id} not found")

        url = replay_url(original, mods.get("url"))
        if not self.gate.is_allowed(url):
            return failure(NOT_ALLOWED)

        try:
            body = apply_body_rules(original.request_body or "",
                                    mods.get("body_replace"), mods.get("body"))
        except re.error as e:
            return failure(f"Invalid bodyReplace pattern: {e}")

        method = (mods.get("method") or original.method or "GET").upper()
        headers = merge_headers(original.request_headers, mods.get("headers"))

        logger.info("[Repeater] Replaying request %s %d time(s)", request_id, times)
        results = []
        for i in range(1, times + 1):
            try:
                resp = await self.transport.send(RequestSpec(
                    method=method, url=url, headers=headers, body=body or None))
            except TransportError as e:
                results.append({
                    "iteration": i,
                    "statusCode": 0,
                    "responseTime": 0,
                    "bodyLength": 0,
                    "success": False,
                    "error": str(e),
                })
            else:
                logger.debug("[Repeater] Replay %d/%d - Status: %d", i, times, resp.status_code)
                results.append({
                    "iteration": i,
                    "statusCode": resp.status_code,
                    "responseTime": int(round(resp.elapsed_ms)),
                    "bodyLength": len(resp.body),
                    "success": True,
                })
            if i < times:
                await self.pacer.wait()

        ok = sum(1 for r in results if r["success"])
        logger.info("[Repeater] Replay complete. %d/%d successful.", ok, times)
        return {
            "success": True,
            "originalRequestId": request_id,
            "iterations": times,
            "results": results,
        }

    async def history(self, limit: Optional[int] = None,
                      filters: Optional[Dict] = None) -> dict:
        limit = min(limit or DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT)
        filters = filters or {}
        try:
            exchanges = await self.transport.query_history(limit)
        except Exception as e:
            logger.error("[Repeater] Failed to get request history: %s", e)
            return {"success": False, "error": str(e), "count": 0, "requests": []}

        method = (filters.get("method") or "").lower()
        status_code = filters.get("status_code")
        host = (filters.get("host") or "").lower()
        path = (filters.get("path") or "").lower()

        if method:
            exchanges = [e for e in exchanges if e.method.lower() == method]
        if status_code:
            exchanges = [e for e in exchanges if e.status_code == status_code]
        if host:
            exchanges = [e for e in exchanges if host in e.host.lower()]
        if path:
            exchanges = [e for e in exchanges if path in e.path.lower()]

        return {
            "success": True,
            "count": len(exchanges),
            "requests": [e.to_dict() for e in exchanges],
        }
