"""
ProxyProbe - Response Analyzer
Passive checks on a stored response: security headers, sensitive data,
platform error signatures and disclosure hints. Sends no traffic.
"""

import logging
import re
from typing import Dict, List, Optional

from proxyprobe.payloads import (
    BACKUP_FILE_MARKERS,
    DEBUG_MARKERS,
    DIRECTORY_LISTING_MARKERS,
    ERROR_SIGNATURES,
    SECURITY_HEADER_RECOMMENDATIONS,
    SECURITY_HEADERS,
    SENSITIVE_DATA_PATTERNS,
)


logger = logging.getLogger(__name__)

MAX_SAMPLES = 3
MAX_CUSTOM_MATCHES = 10
MAX_ERROR_MATCH_CHARS = 200


def _header(headers: Dict[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def mask(sample: str) -> str:
    if len(sample) > 8:
        return f"{sample[:4]}****{sample[-4:]}"
    return "****"


def security_headers(headers: Dict[str, str]) -> List[dict]:
    rows = []
    for name in SECURITY_HEADERS:
        value = _header(headers, name)
        row = {"name": name, "present": value is not None}
        if value is not None:
            row["value"] = value
        elif name in SECURITY_HEADER_RECOMMENDATIONS:
            row["recommendation"] = SECURITY_HEADER_RECOMMENDATIONS[name]
        rows.append(row)
    return rows


def sensitive_data(body: str) -> List[dict]:
    found = []
    for kind, pattern in SENSITIVE_DATA_PATTERNS.items():
        matches = [m.group(0) for m in pattern.finditer(body)]
        if matches:
            found.append({
                "type": kind,
                "count": len(matches),
                "samples": [mask(s) for s in matches[:MAX_SAMPLES]],
            })
    return found


def error_signatures(body: str) -> List[dict]:
    found = []
    for platform, patterns in ERROR_SIGNATURES.items():
        for pattern in patterns:
            match = pattern.search(body)
            if match:
                found.append({
                    "type": platform,
                    "pattern": pattern.pattern,
                    "match": match.group(0)[:MAX_ERROR_MATCH_CHARS],
                })
    return found


def suspicious_indicators(status_code: int, headers: Dict[str, str], body: str) -> List[str]:
    notes = []
    if status_code >= 500:
        notes.append(f"Server error detected ({status_code})")
    if any(marker in body for marker in DIRECTORY_LISTING_MARKERS):
        notes.append("Directory listing enabled")

    server = _header(headers, "server")
    if server:
        notes.append(f"Server header disclosure: {server}")
    powered_by = _header(headers, "x-powered-by")
    if powered_by:
        notes.append(f"X-Powered-By disclosure: {powered_by}")

    if any(marker in body for marker in DEBUG_MARKERS):
        notes.append("Debug mode may be enabled")
    if any(marker in body for marker in BACKUP_FILE_MARKERS):
        notes.append("Possible backup files referenced")
    return notes


def custom_matches(body: str, patterns: Optional[List[str]]) -> List[dict]:
    found = []
    for pattern in patterns or []:
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            logger.warning("[Analyzer] Invalid regex pattern %r: %s", pattern, e)
            continue
        matches = [m.group(0) for m in regex.finditer(body)][:MAX_CUSTOM_MATCHES]
        if matches:
            found.append({"pattern": pattern, "matches": matches})
    return found


class ResponseAnalyzer:
    """Runs the passive checks against an exchange fetched from the transport."""

    def __init__(self, transport):
        self.transport = transport

    async def analyze(self, request_id, patterns: Optional[List[str]] = None) -> dict:
        if request_id is None or request_id == "":
            return {"success": False, "error": "requestId is required"}

        logger.info("[Analyzer] Analyzing response for request %s", request_id)
        try:
            exchange = await self.transport.get(request_id)
        except Exception as e:
            logger.error("[Analyzer] Analysis failed: %s", e)
            return {"success": False, "error": str(e)}

        if exchange is None:
            return {"success": False, "error": f"Request {request_id} not found"}
        if not exchange.has_response:
            return {"success": False, "error": "No response found for this request"}

        status_code = exchange.status_code
        headers = exchange.response_headers or {}
        body = exchange.response_body or ""

        suspicious = suspicious_indicators(status_code, headers, body)
        logger.info("[Analyzer] Analysis complete. Found %d suspicious patterns.", len(suspicious))
        return {
            "success": True,
            "analysis": {
                "statusCode": status_code,
                "contentType": _header(headers, "content-type") or "unknown",
                "contentLength": len(body),
                "suspicious": suspicious,
                "securityHeaders": security_headers(headers),
                "sensitiveData": sensitive_data(body),
                "errors": error_signatures(body),
                "customMatches": custom_matches(body, patterns),
            },
        }
