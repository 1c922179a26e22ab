"""
ProxyProbe - Parameter Fuzzer
Sends caller-supplied payloads into one parameter and flags responses that
deviate from the batch average.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import quote

from proxyprobe.config import PROBE_DELAY_S
from proxyprobe.scanner import URI_COMPONENT_SAFE, set_query_param
from proxyprobe.state import TargetGate
from proxyprobe.transport import Pacer, RequestSpec, TransportError


logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 100
DEFAULT_CONTENT_TYPE = "application/x-www-form-urlencoded"
EXPECTED_STATUS_CODES = {200, 400, 404}


@dataclass
class FuzzResult:
    payload: str
    status_code: int
    response_time: int
    body_length: int
    interesting: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "payload": self.payload,
            "statusCode": self.status_code,
            "responseTime": self.response_time,
            "bodyLength": self.body_length,
            "interesting": self.interesting,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class FuzzReport:
    success: bool
    parameter: str = ""
    total_requests: int = 0
    interesting_responses: int = 0
    results: List[FuzzResult] = field(default_factory=list)
    avg_response_time: int = 0
    avg_body_length: int = 0
    status_codes: Dict[int, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "parameter": self.parameter,
            "totalRequests": self.total_requests,
            "interestingResponses": self.interesting_responses,
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "avgResponseTime": self.avg_response_time,
                "avgBodyLength": self.avg_body_length,
                "statusCodes": {str(k): v for k, v in self.status_codes.items()},
            },
        }
        if self.error:
            data["error"] = self.error
        return data


def classify(status_code: int, response_time: float, body_length: int,
             avg_response_time: float, avg_body_length: float) -> Optional[str]:
    """Reason the response stands out, None when it does not. First rule wins."""
    if status_code == 500:
        return "Server error (500)"
    if status_code == 403:
        return "Forbidden (403) - possible WAF"
    if status_code == 200 and body_length > avg_body_length * 2:
        return "Response significantly larger than average"
    if response_time > avg_response_time * 3:
        return "Response significantly slower than average"
    if status_code not in EXPECTED_STATUS_CODES:
        return f"Unexpected status code: {status_code}"
    return None


def build_body(parameter: str, payload: str, content_type: str) -> str:
    if "application/json" in content_type:
        return json.dumps({parameter: payload})
    return f"{parameter}={quote(payload, safe=URI_COMPONENT_SAFE)}"


class ParameterFuzzer:
    """Two-pass fuzzer: collect metrics, then classify against the averages."""

    def __init__(self, gate: TargetGate, transport, pacer: Optional[Pacer] = None):
        self.gate = gate
        self.transport = transport
        self.pacer = pacer or Pacer(PROBE_DELAY_S)

    async def fuzz(self, url: str, parameter: str, payloads: List[str],
                   method: str = "GET", max_requests: Optional[int] = None,
                   in_body: bool = False,
                   content_type: Optional[str] = None) -> FuzzReport:
        if not url:
            return FuzzReport(success=False, parameter=parameter or "",
                              error="URL is required")
        if not parameter:
            return FuzzReport(success=False, error="Parameter name is required")
        if not payloads:
            return FuzzReport(success=False, parameter=parameter,
                              error="At least one payload is required")
        if not self.gate.is_allowed(url):
            return FuzzReport(
                success=False, parameter=parameter,
                error="Target not allowed. Add the domain to allowed targets first.",
            )

        method = (method or "GET").upper()
        max_requests = max_requests or DEFAULT_MAX_REQUESTS
        content_type = content_type or DEFAULT_CONTENT_TYPE

        logger.info("[Fuzzer] Fuzzing parameter %s on %s with %d payloads",
                    parameter, url, len(payloads))

        results: List[FuzzResult] = []
        status_codes: Dict[int, int] = {}
        total_time = 0
        total_length = 0
        request_count = 0

        for payload in payloads[:max_requests]:
            if in_body:
                spec = RequestSpec(
                    method=method,
                    url=url,
                    headers={"Content-Type": content_type},
                    body=build_body(parameter, payload, content_type),
                )
            else:
                spec = RequestSpec(method=method, url=set_query_param(url, parameter, payload))

            try:
                resp = await self.transport.send(spec)
            except TransportError as e:
                logger.warning("[Fuzzer] Request failed for payload %r: %s", payload, e)
                results.append(FuzzResult(
                    payload=payload, status_code=0, response_time=0, body_length=0,
                    interesting=True, reason=f"Request failed: {e}",
                ))
                await self.pacer.wait()
                continue

            response_time = int(round(resp.elapsed_ms))
            body_length = len(resp.body or "")
            total_time += response_time
            total_length += body_length
            request_count += 1
            status_codes[resp.status_code] = status_codes.get(resp.status_code, 0) + 1

            results.append(FuzzResult(
                payload=payload,
                status_code=resp.status_code,
                response_time=response_time,
                body_length=body_length,
            ))
            await self.pacer.wait()

        avg_time = total_time / request_count if request_count else 0
        avg_length = total_length / request_count if request_count else 0

        interesting = 0
        for result in results:
            if result.status_code == 0:
                interesting += 1
                continue
            result.reason = classify(result.status_code, result.response_time,
                                     result.body_length, avg_time, avg_length)
            result.interesting = result.reason is not None
            if result.interesting:
                interesting += 1

        logger.info("[Fuzzer] Fuzzing complete. %d interesting responses found.", interesting)
        return FuzzReport(
            success=True,
            parameter=parameter,
            total_requests=request_count,
            interesting_responses=interesting,
            results=results,
            avg_response_time=round(avg_time),
            avg_body_length=round(avg_length),
            status_codes=status_codes,
        )
