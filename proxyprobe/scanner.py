"""
ProxyProbe - Vulnerability Scanner
Injects catalog payloads into each query parameter of a target URL and
matches the responses against the detection signatures.
Covers reflected XSS, SQL injection, command injection and path traversal.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from proxyprobe.config import PROBE_DELAY_S
from proxyprobe.payloads import DETECTION_SIGNATURES, SCAN_TYPES, payloads_for, severity_for
from proxyprobe.state import SCAN_COMPLETED, SCAN_FAILED, ScanRegistry, TargetGate
from proxyprobe.transport import Pacer, RequestSpec, TransportError


logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 50
REPORTER = "Vulnerability Scanner"

# encodeURIComponent's unreserved set
URI_COMPONENT_SAFE = "-_.!~*'()"

EVIDENCE_LABELS = {
    "sqli": "SQL error detected",
    "command_injection": "Command execution detected",
    "path_traversal": "Path traversal detected",
}


@dataclass
class Finding:
    """A single vulnerability detected by one probe."""

    id: str
    vuln_type: str
    severity: str
    title: str
    description: str
    url: str
    payload: str
    evidence: str
    request_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.vuln_type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "payload": self.payload,
            "evidence": self.evidence,
        }


@dataclass
class ScanResult:
    success: bool
    findings: List[Finding] = field(default_factory=list)
    scan_id: Optional[str] = None
    error: Optional[str] = None

    def summary(self) -> Dict[str, int]:
        counts = {"total": len(self.findings), "critical": 0, "high": 0,
                  "medium": 0, "low": 0, "info": 0}
        for f in self.findings:
            key = f.severity.lower()
            if key in counts:
                counts[key] += 1
        return counts

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "findings": [f.to_dict() for f in self.findings],
            "summary": self.summary(),
        }
        if self.scan_id:
            data["scanId"] = self.scan_id
        if self.error:
            data["error"] = self.error
        return data


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def _split_absolute(url: str):
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"not an absolute URL: {url}")
    return parts, parse_qsl(parts.query, keep_blank_values=True)


def _with_param(parts, pairs, name: str, value: str) -> str:
    # The first occurrence takes the value, later duplicates are dropped
    injected = []
    placed = False
    for k, v in pairs:
        if k != name:
            injected.append((k, v))
        elif not placed:
            injected.append((k, value))
            placed = True
    if not placed:
        injected.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(injected)))


def set_query_param(url: str, name: str, value: str) -> str:
    """Set one query parameter, appending it when absent."""
    try:
        parts, pairs = _split_absolute(url)
    except ValueError:
        return f"{url}?{name}={quote(value, safe=URI_COMPONENT_SAFE)}"
    return _with_param(parts, pairs, name, value)


def candidate_urls(url: str, payload: str) -> List[str]:
    """One URL per distinct query parameter with its value set to the payload.

    A URL without parameters gets a synthetic `test` parameter instead.
    """
    try:
        parts, pairs = _split_absolute(url)
    except ValueError:
        return [f"{url}?test={quote(payload, safe=URI_COMPONENT_SAFE)}"]

    if not pairs:
        return [_with_param(parts, pairs, "test", payload)]

    keys = list(dict.fromkeys(k for k, _ in pairs))
    return [_with_param(parts, pairs, key, payload) for key in keys]


def detect(scan_type: str, payload: str, body: str) -> Optional[str]:
    """Evidence string when the response body shows the vulnerability, else None."""
    groups = DETECTION_SIGNATURES.get(scan_type)
    if groups is None:
        if payload in body:
            return f'Payload reflected in response: "{payload[:50]}..."'
        return None

    if scan_type == "xss":
        for pattern in groups[0]:
            if pattern.search(body):
                return f"XSS pattern detected: /{pattern.pattern}/i"
        if payload in body:
            return "Payload reflected in response"
        return None

    label = EVIDENCE_LABELS[scan_type]
    for group in groups:
        for pattern in group:
            match = pattern.search(body)
            if match:
                return f'{label}: "{match.group(0)[:100]}"'
    return None


class VulnerabilityScanner:
    """Sequential, paced, budgeted payload scanner."""

    def __init__(self, gate: TargetGate, scans: ScanRegistry, transport,
                 sink=None, pacer: Optional[Pacer] = None):
        self.gate = gate
        self.scans = scans
        self.transport = transport
        self.sink = sink
        self.pacer = pacer or Pacer(PROBE_DELAY_S)

    async def scan(self, url: str, scan_types: Optional[List[str]] = None,
                   max_requests: Optional[int] = None) -> ScanResult:
        if not url:
            return ScanResult(success=False, error="URL is required")
        if not self.gate.is_allowed(url):
            return ScanResult(
                success=False,
                error="Target not allowed. Add the domain to allowed targets first.",
            )

        scan_types = list(SCAN_TYPES if scan_types is None else scan_types)
        max_requests = max_requests or DEFAULT_MAX_REQUESTS
        scan_id = new_id()
        findings: List[Finding] = []
        request_count = 0

        logger.info("[Scanner] Starting scan %s on %s (types: %s, max requests: %d)",
                    scan_id, url, ", ".join(scan_types), max_requests)
        self.scans.create(scan_id, url, scan_types)

        try:
            for scan_type in scan_types:
                if request_count >= max_requests:
                    logger.info("[Scanner] Max requests reached, stopping scan")
                    break

                payloads = payloads_for(scan_type)
                logger.debug("[Scanner] Testing %s with %d payloads", scan_type, len(payloads))

                for payload in payloads:
                    if request_count >= max_requests:
                        break
                    for test_url in candidate_urls(url, payload):
                        if request_count >= max_requests:
                            break
                        try:
                            resp = await self.transport.send(
                                RequestSpec(method="GET", url=test_url))
                        except TransportError as e:
                            logger.warning("[Scanner] Request failed: %s", e)
                            continue

                        request_count += 1
                        self.scans.update_progress(scan_id, request_count * 100 // max_requests)

                        finding = await self._evaluate(scan_type, payload, test_url, resp)
                        if finding:
                            findings.append(finding)
                        await self.pacer.wait()

        except Exception as e:
            logger.error("[Scanner] Scan %s failed: %s", scan_id, e)
            self.scans.complete(scan_id, SCAN_FAILED)
            return ScanResult(success=False, scan_id=scan_id, findings=findings,
                              error=str(e))

        self.scans.complete(scan_id, SCAN_COMPLETED)
        logger.info("[Scanner] Scan %s completed. Found %d vulnerabilities.",
                    scan_id, len(findings))
        return ScanResult(success=True, scan_id=scan_id, findings=findings)

    async def _evaluate(self, scan_type: str, payload: str, test_url: str,
                        resp) -> Optional[Finding]:
        evidence = detect(scan_type, payload, resp.body or "")
        if evidence is None:
            return None

        severity = severity_for(scan_type)
        finding = Finding(
            id=new_id(),
            vuln_type=scan_type,
            severity=severity,
            title=f"{scan_type.upper()} Vulnerability Detected ({severity})",
            description=f"A {scan_type} vulnerability was detected at {test_url}",
            url=test_url,
            payload=payload,
            evidence=evidence,
            request_id=resp.request_id,
        )
        logger.info("[Scanner] FOUND: %s at %s", finding.title, test_url)
        await self._report(finding)
        return finding

    async def _report(self, finding: Finding):
        if self.sink is None:
            return
        try:
            await self.sink.add_finding(
                title=finding.title,
                description=(f"{finding.description}\n\nPayload: {finding.payload}"
                             f"\n\nEvidence: {finding.evidence}"),
                reporter=REPORTER,
                severity=finding.severity.lower(),
                source_request_id=finding.request_id,
                dedupe_key=f"scan-{finding.vuln_type}-{finding.url}-{finding.payload}",
            )
        except Exception as e:
            logger.error("[Scanner] Failed to create finding: %s", e)
