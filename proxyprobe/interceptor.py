"""
ProxyProbe - Traffic Interceptor
Registers URL pattern rules and records every live request the proxy sees,
flagging the ones that match an enabled rule.
"""

import logging
import time
from typing import Dict, Optional

from proxyprobe.scanner import new_id
from proxyprobe.state import InterceptedRequest, InterceptRegistry, InvalidPatternError


logger = logging.getLogger(__name__)

DEFAULT_INTERCEPTED_LIMIT = 50


class TrafficInterceptor:

    def __init__(self, registry: InterceptRegistry):
        self.registry = registry

    def register(self, pattern: str, modifications: Optional[Dict] = None,
                 enabled: bool = True) -> dict:
        if not pattern:
            return {"success": False, "error": "Pattern is required"}

        intercept_id = new_id()
        try:
            self.registry.add_pattern(intercept_id, pattern, modifications or {}, enabled)
        except InvalidPatternError as e:
            return {"success": False, "error": str(e)}

        logger.info("[Intercept] Registered pattern %s with ID %s", pattern, intercept_id)
        return {
            "success": True,
            "interceptId": intercept_id,
            "message": f"Intercept pattern registered: {pattern}",
        }

    def stop(self, intercept_id: str) -> dict:
        if not intercept_id:
            return {"success": False, "error": "interceptId is required"}
        if not self.registry.remove_pattern(intercept_id):
            return {"success": False, "error": f"Intercept ID {intercept_id} not found"}

        logger.info("[Intercept] Removed %s", intercept_id)
        return {
            "success": True,
            "interceptId": intercept_id,
            "message": "Intercept pattern removed",
        }

    def list_patterns(self) -> dict:
        return {
            "success": True,
            "patterns": [p.to_dict() for p in self.registry.list_patterns()],
        }

    def intercepted(self, limit: Optional[int] = None) -> dict:
        requests = self.registry.list_intercepted(limit or DEFAULT_INTERCEPTED_LIMIT)
        return {"success": True, "requests": [r.to_dict() for r in requests]}

    def observe(self, request_id: str, host: str, path: str, method: str) -> InterceptedRequest:
        """Record one live request. Called from the proxy thread."""
        url = f"{host}{path}"
        matched = False
        for pattern in self.registry.list_patterns():
            if not pattern.enabled:
                continue
            if pattern.regex.search(url):
                matched = True
                logger.debug("[Intercept] %s matched pattern %s", url, pattern.pattern)
                break

        record = InterceptedRequest(
            id=str(request_id),
            timestamp=time.time(),
            host=host,
            path=path,
            method=method,
            matched=matched,
        )
        self.registry.record_intercepted(record)
        return record
