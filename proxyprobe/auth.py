"""
ProxyProbe - Authentication Bypass Tester
Runs a fixed battery of access-control probes against one URL:
missing credentials, invalid credentials, spoofed routing headers,
method tampering and path normalisation tricks.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from proxyprobe.config import PROBE_DELAY_S
from proxyprobe.payloads import (
    BYPASS_HEADERS,
    INVALID_CREDENTIALS,
    PATH_VARIANT_SUFFIXES,
    TAMPER_METHODS,
)
from proxyprobe.state import TargetGate
from proxyprobe.transport import Pacer, RequestSpec, TransportError


logger = logging.getLogger(__name__)

REPORTER = "Auth Bypass Tester"
FINDING_TITLE = "Authentication Bypass Vulnerability (HIGH)"

BYPASS_HEADER_COUNT = 5
TAMPER_METHOD_COUNT = 4
BLOCKED_STATUS_CODES = (401, 403)
INVALID_CUSTOM_VALUE = "invalid_value_12345"


@dataclass
class AuthTest:
    name: str
    description: str
    status_code: int
    passed: bool
    details: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "statusCode": self.status_code,
            "passed": self.passed,
            "details": self.details,
        }


@dataclass
class AuthReport:
    success: bool
    tests: List[AuthTest] = field(default_factory=list)
    vulnerabilities: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def vulnerable(self) -> bool:
        return self.success and len(self.vulnerabilities) > 0

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "vulnerable": self.vulnerable,
            "tests": [t.to_dict() for t in self.tests],
            "vulnerabilities": list(self.vulnerabilities),
        }
        if self.error:
            data["error"] = self.error
        return data


def invalid_credential(auth_method: Optional[str], credentials: Optional[Dict] = None):
    """(header name, header value) carrying a deliberately invalid credential."""
    if auth_method == "custom":
        header = (credentials or {}).get("header") or {}
        if header.get("name"):
            return header["name"], INVALID_CUSTOM_VALUE
    return INVALID_CREDENTIALS.get(auth_method or "bearer", INVALID_CREDENTIALS["bearer"])


class AuthBypassTester:

    def __init__(self, gate: TargetGate, transport, sink=None,
                 pacer: Optional[Pacer] = None):
        self.gate = gate
        self.transport = transport
        self.sink = sink
        self.pacer = pacer or Pacer(PROBE_DELAY_S)

    async def _get(self, url: str, method: str = "GET",
                   headers: Optional[Dict[str, str]] = None):
        return await self.transport.send(
            RequestSpec(method=method, url=url, headers=dict(headers or {})))

    async def _status_or_zero(self, url: str, headers: Optional[Dict[str, str]] = None) -> int:
        try:
            resp = await self._get(url, headers=headers)
        except TransportError as e:
            logger.warning("[Auth] Request to %s failed: %s", url, e)
            return 0
        return resp.status_code

    async def check(self, url: str, auth_method: Optional[str] = None,
                    credentials: Optional[Dict] = None) -> AuthReport:
        if not url:
            return AuthReport(success=False, error="URL is required")
        if not self.gate.is_allowed(url):
            return AuthReport(
                success=False,
                error="Target not allowed. Add the domain to allowed targets first.",
            )

        report = AuthReport(success=True)
        logger.info("[Auth] Starting authentication bypass tests on %s", url)

        try:
            await self._run(url, auth_method, credentials, report)
        except Exception as e:
            logger.error("[Auth] Authentication check failed: %s", e)
            report.success = False
            report.error = str(e)
            return report

        await self._report(url, report.vulnerabilities)
        logger.info("[Auth] Authentication check complete. Vulnerable: %s", report.vulnerable)
        return report

    async def _run(self, url: str, auth_method: Optional[str],
                   credentials: Optional[Dict], report: AuthReport):
        tests = report.tests
        vulns = report.vulnerabilities

        # 1. No credentials at all
        status = await self._status_or_zero(url)
        passed = status in BLOCKED_STATUS_CODES
        tests.append(AuthTest(
            name="No Authentication",
            description="Request without any authentication credentials",
            status_code=status,
            passed=passed,
            details=("Correctly blocked unauthenticated request" if passed
                     else f"Unauthenticated request returned {status} - may be accessible"),
        ))
        if status == 200:
            vulns.append("Resource accessible without authentication")
        await self.pacer.wait()

        # 2. Invalid credentials of the hinted type
        header_name, header_value = invalid_credential(auth_method, credentials)
        status = await self._status_or_zero(url, {header_name: header_value})
        passed = status in BLOCKED_STATUS_CODES
        tests.append(AuthTest(
            name="Invalid Credentials",
            description="Request with invalid authentication credentials",
            status_code=status,
            passed=passed,
            details=("Correctly rejected invalid credentials" if passed
                     else f"Invalid credentials returned {status} - possible bypass"),
        ))
        if status == 200:
            vulns.append("Invalid credentials accepted")
        await self.pacer.wait()

        # 3. Routing / client-IP spoofing headers
        for name, value in BYPASS_HEADERS[:BYPASS_HEADER_COUNT]:
            try:
                resp = await self._get(url, headers={name: value})
            except TransportError as e:
                logger.debug("[Auth] Header probe %s failed: %s", name, e)
            else:
                if resp.status_code == 200:
                    tests.append(AuthTest(
                        name=f"Header Bypass: {name}",
                        description=f"Testing {name}: {value}",
                        status_code=200,
                        passed=False,
                        details=f"Header {name} may bypass authentication",
                    ))
                    vulns.append(f"Header bypass possible with {name}")
            await self.pacer.wait()

        # 4. Method tampering
        for method in TAMPER_METHODS[:TAMPER_METHOD_COUNT]:
            try:
                resp = await self._get(url, method=method)
            except TransportError as e:
                logger.debug("[Auth] Method probe %s failed: %s", method, e)
            else:
                if resp.status_code == 200 and method not in ("GET", "HEAD"):
                    tests.append(AuthTest(
                        name=f"Method Tampering: {method}",
                        description=f"Testing HTTP method {method}",
                        status_code=200,
                        passed=False,
                        details=f"{method} method may bypass authentication",
                    ))
                    vulns.append(f"Method tampering possible with {method}")
            await self.pacer.wait()

        # 5. Path normalisation, first hit is enough
        for suffix in PATH_VARIANT_SUFFIXES:
            variant = url + suffix
            try:
                resp = await self._get(variant)
            except TransportError as e:
                logger.debug("[Auth] Path probe %s failed: %s", variant, e)
            else:
                if resp.status_code == 200:
                    tests.append(AuthTest(
                        name="Path Manipulation",
                        description=f"Testing path variation: {variant}",
                        status_code=200,
                        passed=False,
                        details="Path manipulation may bypass authentication",
                    ))
                    vulns.append(f"Path manipulation bypass: {variant}")
                    break
            await self.pacer.wait()

    async def _report(self, url: str, vulnerabilities: List[str]):
        if self.sink is None:
            return
        for vuln in dict.fromkeys(vulnerabilities):
            try:
                evidence = await self._get(url)
                await self.sink.add_finding(
                    title=FINDING_TITLE,
                    description=vuln,
                    reporter=REPORTER,
                    severity="high",
                    source_request_id=evidence.request_id,
                    dedupe_key=f"auth-{url}-{vuln}",
                )
            except Exception as e:
                logger.error("[Auth] Failed to create finding: %s", e)
