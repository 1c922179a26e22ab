"""
ProxyProbe - Tool Registry
The fifteen named operations, their parameter models and the static
name -> handler table. Handlers always return a JSON-able dict carrying
`success`; nothing raises out of `ToolRegistry.call`.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from proxyprobe.analyzer import ResponseAnalyzer
from proxyprobe.auth import AuthBypassTester
from proxyprobe.exporter import FindingExporter
from proxyprobe.fuzzer import ParameterFuzzer
from proxyprobe.interceptor import TrafficInterceptor
from proxyprobe.repeater import Repeater
from proxyprobe.scanner import VulnerabilityScanner
from proxyprobe.state import ProbeState
from proxyprobe.transport import Pacer


logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    SEND_REQUEST = "sendRequest"
    SCAN_FOR_VULNERABILITIES = "scanForVulnerabilities"
    ANALYZE_RESPONSE = "analyzeResponse"
    FUZZ_PARAMETER = "fuzzParameter"
    INTERCEPT_REQUEST = "interceptRequest"
    STOP_INTERCEPT = "stopIntercept"
    GET_INTERCEPTED = "getIntercepted"
    LIST_INTERCEPT_PATTERNS = "listInterceptPatterns"
    CHECK_AUTHENTICATION = "checkAuthentication"
    EXPORT_FINDINGS = "exportFindings"
    REPLAY_REQUEST = "replayRequest"
    GET_REQUEST_HISTORY = "getRequestHistory"
    GET_FINDINGS = "getFindings"
    SET_ALLOWED_TARGETS = "setAllowedTargets"
    GET_STATUS = "getStatus"


# ── Pydantic Models ────────────────────────────────────────────

class ToolParams(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
Severity = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW", "INFO"]


class NoParams(ToolParams):
    pass


class SendRequestParams(ToolParams):
    url: str = ""
    method: HttpMethod = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    follow_redirects: bool = False


class ScanParams(ToolParams):
    url: str = ""
    scan_types: Optional[List[str]] = None
    max_requests: Optional[int] = Field(default=None, ge=1)


class AnalyzeParams(ToolParams):
    request_id: str = ""
    patterns: Optional[List[str]] = None


class FuzzParams(ToolParams):
    url: str = ""
    parameter: str = ""
    payloads: List[str] = Field(default_factory=list)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    max_requests: Optional[int] = Field(default=None, ge=1)
    in_body: bool = False
    content_type: Optional[str] = None


class InterceptModifications(ToolParams):
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    method: Optional[str] = None


class InterceptParams(ToolParams):
    pattern: str = ""
    modifications: Optional[InterceptModifications] = None
    enabled: bool = True


class StopInterceptParams(ToolParams):
    intercept_id: str = ""


class GetInterceptedParams(ToolParams):
    limit: Optional[int] = Field(default=None, ge=1)


class HeaderCredential(ToolParams):
    name: str
    value: str = ""


class Credentials(ToolParams):
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    cookie: Optional[str] = None
    header: Optional[HeaderCredential] = None


class CheckAuthParams(ToolParams):
    url: str = ""
    auth_method: Optional[Literal["bearer", "basic", "cookie", "custom"]] = None
    credentials: Optional[Credentials] = None


class ExportParams(ToolParams):
    format: Literal["json", "csv", "markdown"] = "json"
    min_severity: Severity = "LOW"


class BodyReplace(ToolParams):
    search: str
    replace: str = ""


class ReplayModifications(ToolParams):
    url: Optional[str] = None
    method: Optional[HttpMethod] = None
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    body_replace: Optional[List[BodyReplace]] = None


class ReplayParams(ToolParams):
    request_id: str = ""
    modifications: Optional[ReplayModifications] = None
    times: Optional[int] = Field(default=None, ge=1)


class HistoryFilters(ToolParams):
    method: Optional[str] = None
    status_code: Optional[int] = None
    host: Optional[str] = None
    path: Optional[str] = None


class HistoryParams(ToolParams):
    limit: Optional[int] = Field(default=None, ge=1)
    filters: Optional[HistoryFilters] = None


class FindingsParams(ToolParams):
    severity: Optional[str] = None
    reporter: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class SetAllowedTargetsParams(ToolParams):
    targets: List[str] = Field(default_factory=list)


# ── Registry ───────────────────────────────────────────────────

Handler = Callable[[BaseModel], Awaitable[dict]]


class ToolRegistry:
    """Static table of tool handlers over one shared ProbeState."""

    def __init__(self, state: ProbeState, transport, store=None,
                 pacer: Optional[Pacer] = None,
                 replay_pacer: Optional[Pacer] = None,
                 on_targets_changed: Optional[Callable[[List[str]], None]] = None):
        self.state = state
        self.transport = transport
        self.on_targets_changed = on_targets_changed

        self.scanner = VulnerabilityScanner(state.gate, state.scans, transport, store, pacer)
        self.fuzzer = ParameterFuzzer(state.gate, transport, pacer)
        self.auth = AuthBypassTester(state.gate, transport, store, pacer)
        self.analyzer = ResponseAnalyzer(transport)
        self.interceptor = TrafficInterceptor(state.intercepts)
        self.exporter = FindingExporter(store)
        self.repeater = Repeater(state.gate, transport, replay_pacer)

        self._handlers: Dict[ToolName, Tuple[Type[ToolParams], Handler]] = {
            ToolName.SEND_REQUEST: (SendRequestParams, self._send_request),
            ToolName.SCAN_FOR_VULNERABILITIES: (ScanParams, self._scan),
            ToolName.ANALYZE_RESPONSE: (AnalyzeParams, self._analyze),
            ToolName.FUZZ_PARAMETER: (FuzzParams, self._fuzz),
            ToolName.INTERCEPT_REQUEST: (InterceptParams, self._intercept),
            ToolName.STOP_INTERCEPT: (StopInterceptParams, self._stop_intercept),
            ToolName.GET_INTERCEPTED: (GetInterceptedParams, self._get_intercepted),
            ToolName.LIST_INTERCEPT_PATTERNS: (NoParams, self._list_patterns),
            ToolName.CHECK_AUTHENTICATION: (CheckAuthParams, self._check_auth),
            ToolName.EXPORT_FINDINGS: (ExportParams, self._export),
            ToolName.REPLAY_REQUEST: (ReplayParams, self._replay),
            ToolName.GET_REQUEST_HISTORY: (HistoryParams, self._history),
            ToolName.GET_FINDINGS: (FindingsParams, self._findings),
            ToolName.SET_ALLOWED_TARGETS: (SetAllowedTargetsParams, self._set_targets),
            ToolName.GET_STATUS: (NoParams, self._status),
        }

    def names(self) -> List[str]:
        return [name.value for name in self._handlers]

    def resolve(self, name: str) -> Tuple[Type[ToolParams], Handler]:
        try:
            return self._handlers[ToolName(name)]
        except ValueError:
            raise LookupError(f"Unknown tool: {name}") from None

    def has(self, name: str) -> bool:
        try:
            self.resolve(name)
        except LookupError:
            return False
        return True

    async def call(self, name: str, params: Optional[dict] = None) -> dict:
        try:
            model, handler = self.resolve(name)
            parsed = model.model_validate(params or {})
        except LookupError as e:
            return {"success": False, "error": str(e)}
        except ValidationError as e:
            return {"success": False, "error": f"Invalid parameters for {name}: {e}"}

        logger.info("[Tools] Executing %s", name)
        try:
            return await handler(parsed)
        except Exception as e:
            logger.exception("[Tools] %s failed", name)
            return {"success": False, "error": str(e)}

    # ── Handlers ────────────────────────────────────────────────

    async def _send_request(self, p: SendRequestParams) -> dict:
        return await self.repeater.send(p.url, p.method, p.headers, p.body, p.follow_redirects)

    async def _scan(self, p: ScanParams) -> dict:
        result = await self.scanner.scan(p.url, p.scan_types, p.max_requests)
        return result.to_dict()

    async def _analyze(self, p: AnalyzeParams) -> dict:
        return await self.analyzer.analyze(p.request_id, p.patterns)

    async def _fuzz(self, p: FuzzParams) -> dict:
        report = await self.fuzzer.fuzz(p.url, p.parameter, p.payloads, p.method,
                                        p.max_requests, p.in_body, p.content_type)
        return report.to_dict()

    async def _intercept(self, p: InterceptParams) -> dict:
        mods = p.modifications.model_dump(exclude_none=True) if p.modifications else {}
        return self.interceptor.register(p.pattern, mods, p.enabled)

    async def _stop_intercept(self, p: StopInterceptParams) -> dict:
        return self.interceptor.stop(p.intercept_id)

    async def _get_intercepted(self, p: GetInterceptedParams) -> dict:
        return self.interceptor.intercepted(p.limit)

    async def _list_patterns(self, p: NoParams) -> dict:
        return self.interceptor.list_patterns()

    async def _check_auth(self, p: CheckAuthParams) -> dict:
        creds = p.credentials.model_dump(exclude_none=True) if p.credentials else None
        report = await self.auth.check(p.url, p.auth_method, creds)
        return report.to_dict()

    async def _export(self, p: ExportParams) -> dict:
        return await self.exporter.export(p.format, p.min_severity)

    async def _replay(self, p: ReplayParams) -> dict:
        mods = p.modifications.model_dump(exclude_none=True) if p.modifications else None
        return await self.repeater.replay(p.request_id, mods, p.times)

    async def _history(self, p: HistoryParams) -> dict:
        filters = p.filters.model_dump(exclude_none=True) if p.filters else None
        return await self.repeater.history(p.limit, filters)

    async def _findings(self, p: FindingsParams) -> dict:
        return await self.exporter.query(p.limit, p.reporter, p.severity)

    async def _set_targets(self, p: SetAllowedTargetsParams) -> dict:
        targets = self.state.gate.set_targets(p.targets)
        logger.info("[Tools] Allowed targets: %s", ", ".join(targets) or "(all)")
        if self.on_targets_changed:
            try:
                self.on_targets_changed(targets)
            except Exception as e:
                logger.error("[Tools] Could not persist allowed targets: %s", e)
        return {"success": True, "allowedTargets": targets}

    async def _status(self, p: NoParams) -> dict:
        return {"success": True, **self.state.status()}
