import pytest

from conftest import FakeFindingStore, FakeTransport, make_response
from proxyprobe.scanner import VulnerabilityScanner, candidate_urls, detect, set_query_param
from proxyprobe.state import SCAN_COMPLETED, SCAN_FAILED
from proxyprobe.transport import TransportError


MYSQL_ERROR = ("You have an error in your SQL syntax; check the manual that "
               "corresponds to your MySQL server version")


def make_scanner(state, transport, sink=None, pacer=None):
    return VulnerabilityScanner(state.gate, state.scans, transport, sink, pacer)


class TestCandidateUrls:

    def test_one_url_per_parameter(self):
        urls = candidate_urls("https://target.test/p?a=1&b=2", "X")
        assert urls == [
            "https://target.test/p?a=X&b=2",
            "https://target.test/p?a=1&b=X",
        ]

    def test_duplicate_parameter_is_probed_once(self):
        urls = candidate_urls("https://target.test/p?a=1&a=2", "X")
        assert urls == ["https://target.test/p?a=X"]

    def test_no_parameters_adds_test_parameter(self):
        urls = candidate_urls("https://target.test/p", "' OR '1'='1")
        assert urls == ["https://target.test/p?test=%27+OR+%271%27%3D%271"]

    def test_unparseable_url_falls_back_to_concatenation(self):
        assert candidate_urls("no-scheme", "a b") == ["no-scheme?test=a%20b"]

    def test_set_query_param_appends_when_absent(self):
        assert set_query_param("https://target.test/?a=1", "q", "v") == \
            "https://target.test/?a=1&q=v"


class TestDetect:

    def test_sqli_error_signature(self):
        evidence = detect("sqli", "'", MYSQL_ERROR)
        assert evidence.startswith('SQL error detected: "SQL syntax')

    def test_sqli_clean_body(self):
        assert detect("sqli", "'", "<html>ok</html>") is None

    def test_xss_signature_beats_reflection(self):
        payload = "<script>alert(1)</script>"
        evidence = detect("xss", payload, f"<p>{payload}</p>")
        assert evidence == r"XSS pattern detected: /<script>alert\(1\)</script>/i"

    def test_xss_plain_reflection(self):
        payload = "<b>probe</b>"
        assert detect("xss", payload, f"echo {payload}") == "Payload reflected in response"

    def test_path_traversal_passwd(self):
        body = "root:x:0:0:root:/root:/bin/bash"
        assert detect("path_traversal", "../etc/passwd", body).startswith("Path traversal detected")

    def test_unknown_type_uses_reflection(self):
        assert detect("ssti", "{{7*7}}", "value {{7*7}}") == \
            'Payload reflected in response: "{{7*7}}..."'
        assert detect("ssti", "{{7*7}}", "49") is None


class TestVulnerabilityScanner:

    @pytest.mark.asyncio
    async def test_sqli_finding_end_to_end(self, state, sink, no_pace):
        transport = FakeTransport(lambda spec: make_response(500, MYSQL_ERROR))
        scanner = make_scanner(state, transport, sink, no_pace)

        result = await scanner.scan("https://target.test/item?id=1", ["sqli"], max_requests=1)

        assert result.success
        assert len(transport.sent) == 1
        assert transport.sent[0].method == "GET"
        assert transport.sent[0].url == "https://target.test/item?id=%27+OR+%271%27%3D%271"

        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.severity == "CRITICAL"
        assert finding.title == "SQLI Vulnerability Detected (CRITICAL)"
        assert finding.payload == "' OR '1'='1"
        assert result.summary()["critical"] == 1
        assert result.summary()["total"] == 1

        session = state.scans.get(result.scan_id)
        assert session.status == SCAN_COMPLETED
        assert session.progress == 100

        assert len(sink.calls) == 1
        call = sink.calls[0]
        assert call["severity"] == "critical"
        assert call["reporter"] == "Vulnerability Scanner"
        assert call["source_request_id"] == 1
        assert call["dedupe_key"] == f"scan-sqli-{finding.url}-{finding.payload}"
        assert "Payload: ' OR '1'='1" in call["description"]

    @pytest.mark.asyncio
    async def test_disallowed_target_sends_nothing(self, state, no_pace):
        transport = FakeTransport()
        scanner = make_scanner(state, transport, pacer=no_pace)

        result = await scanner.scan("https://elsewhere.test/?q=1", ["xss"])

        assert not result.success
        assert result.error == "Target not allowed. Add the domain to allowed targets first."
        assert transport.sent == []
        assert state.scans.list_active() == []

    @pytest.mark.asyncio
    async def test_missing_url(self, state, no_pace):
        result = await make_scanner(state, FakeTransport(), pacer=no_pace).scan("")
        assert result.to_dict() == {
            "success": False,
            "findings": [],
            "summary": {"total": 0, "critical": 0, "high": 0, "medium": 0, "low": 0, "info": 0},
            "error": "URL is required",
        }

    @pytest.mark.asyncio
    async def test_failed_probes_do_not_consume_budget(self, state, no_pace):
        transport = FakeTransport(lambda spec: TransportError("connection refused"))
        scanner = make_scanner(state, transport, pacer=no_pace)

        result = await scanner.scan("https://target.test/", ["xss"], max_requests=5)

        assert result.success
        assert result.findings == []
        assert len(transport.sent) == 10
        assert state.scans.get(result.scan_id).status == SCAN_COMPLETED

    @pytest.mark.asyncio
    async def test_budget_caps_requests_across_types(self, state, no_pace):
        transport = FakeTransport()
        scanner = make_scanner(state, transport, pacer=no_pace)

        result = await scanner.scan("https://target.test/?a=1&b=2", max_requests=7)

        assert result.success
        assert len(transport.sent) == 7

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_abort_scan(self, state, no_pace):
        transport = FakeTransport(lambda spec: make_response(200, MYSQL_ERROR))
        scanner = make_scanner(state, transport, FakeFindingStore(fail=True), no_pace)

        result = await scanner.scan("https://target.test/?id=1", ["sqli"], max_requests=3)

        assert result.success
        assert len(result.findings) == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_session_failed(self, state, no_pace):
        responses = [make_response(200, MYSQL_ERROR), RuntimeError("boom")]
        transport = FakeTransport.sequence(*responses)
        scanner = make_scanner(state, transport, pacer=no_pace)

        result = await scanner.scan("https://target.test/?id=1", ["sqli"])

        assert not result.success
        assert result.error == "boom"
        assert len(result.findings) == 1
        assert state.scans.get(result.scan_id).status == SCAN_FAILED

    @pytest.mark.asyncio
    async def test_explicit_empty_scan_types_sends_nothing(self, state, no_pace):
        transport = FakeTransport()
        scanner = make_scanner(state, transport, pacer=no_pace)

        result = await scanner.scan("https://target.test/?q=1", [], max_requests=50)

        assert result.success
        assert transport.sent == []
        assert state.scans.get(result.scan_id).scan_types == []
