import json

import pytest

from conftest import FakeTransport, make_response
from proxyprobe.fuzzer import ParameterFuzzer, build_body, classify
from proxyprobe.transport import TransportError


@pytest.fixture
def fuzzer_for(state, no_pace):
    def build(transport):
        return ParameterFuzzer(state.gate, transport, no_pace)
    return build


class TestClassify:

    @pytest.mark.parametrize("status,time_ms,length,reason", [
        (500, 10, 10, "Server error (500)"),
        (403, 10, 10, "Forbidden (403) - possible WAF"),
        (200, 10, 50, "Response significantly larger than average"),
        (404, 10, 50, None),
        (200, 10, 15, None),
        (200, 40, 10, "Response significantly slower than average"),
        (302, 10, 10, "Unexpected status code: 302"),
        (400, 10, 10, None),
        (200, 10, 10, None),
    ])
    def test_rules(self, status, time_ms, length, reason):
        assert classify(status, time_ms, length, avg_response_time=10, avg_body_length=10) == reason


def test_build_body_json_and_form():
    assert json.loads(build_body("q", "a\"b", "application/json")) == {"q": "a\"b"}
    assert build_body("q", "a b&c", "application/x-www-form-urlencoded") == "q=a%20b%26c"


class TestParameterFuzzer:

    @pytest.mark.asyncio
    async def test_flags_oversized_body(self, fuzzer_for):
        transport = FakeTransport.sequence(
            make_response(200, "a" * 100),
            make_response(200, "a" * 100),
            make_response(200, "a" * 100),
            make_response(200, "a" * 500),
        )
        report = await fuzzer_for(transport).fuzz(
            "https://target.test/search", "q", ["p1", "p2", "p3", "p4"])

        data = report.to_dict()
        assert data["success"]
        assert data["totalRequests"] == 4
        assert data["interestingResponses"] == 1
        assert data["summary"] == {
            "avgResponseTime": 10,
            "avgBodyLength": 200,
            "statusCodes": {"200": 4},
        }
        flagged = [r for r in data["results"] if r["interesting"]]
        assert flagged == [{
            "payload": "p4",
            "statusCode": 200,
            "responseTime": 10,
            "bodyLength": 500,
            "interesting": True,
            "reason": "Response significantly larger than average",
        }]

    @pytest.mark.asyncio
    async def test_status_based_reasons(self, fuzzer_for):
        transport = FakeTransport.sequence(
            make_response(500, "x"),
            make_response(403, "x"),
            make_response(302, "x"),
            make_response(404, "x"),
        )
        report = await fuzzer_for(transport).fuzz(
            "https://target.test/", "id", ["a", "b", "c", "d"])

        assert [r.reason for r in report.results] == [
            "Server error (500)",
            "Forbidden (403) - possible WAF",
            "Unexpected status code: 302",
            None,
        ]
        assert report.interesting_responses == 3
        assert report.status_codes == {500: 1, 403: 1, 302: 1, 404: 1}

    @pytest.mark.asyncio
    async def test_failed_request_is_interesting(self, fuzzer_for):
        transport = FakeTransport.sequence(
            make_response(200, "ok"),
            TransportError("timed out"),
            make_response(200, "ok"),
        )
        report = await fuzzer_for(transport).fuzz("https://target.test/", "id", ["a", "b", "c"])

        failed = report.results[1]
        assert failed.status_code == 0
        assert failed.interesting
        assert failed.reason == "Request failed: timed out"
        assert report.total_requests == 2
        assert report.interesting_responses == 1

    @pytest.mark.asyncio
    async def test_query_injection_replaces_existing_value(self, fuzzer_for):
        transport = FakeTransport()
        await fuzzer_for(transport).fuzz("https://target.test/s?q=old&page=2", "q", ["<x>"])

        spec = transport.sent[0]
        assert spec.method == "GET"
        assert spec.url == "https://target.test/s?q=%3Cx%3E&page=2"
        assert spec.body is None

    @pytest.mark.asyncio
    async def test_body_injection_json(self, fuzzer_for):
        transport = FakeTransport()
        await fuzzer_for(transport).fuzz(
            "https://target.test/api", "name", ["' OR 1=1"], method="post",
            in_body=True, content_type="application/json")

        spec = transport.sent[0]
        assert spec.method == "POST"
        assert spec.url == "https://target.test/api"
        assert spec.headers == {"Content-Type": "application/json"}
        assert json.loads(spec.body) == {"name": "' OR 1=1"}

    @pytest.mark.asyncio
    async def test_body_injection_defaults_to_form(self, fuzzer_for):
        transport = FakeTransport()
        await fuzzer_for(transport).fuzz(
            "https://target.test/login", "user", ["a b"], method="POST", in_body=True)

        spec = transport.sent[0]
        assert spec.headers == {"Content-Type": "application/x-www-form-urlencoded"}
        assert spec.body == "user=a%20b"

    @pytest.mark.asyncio
    async def test_max_requests_truncates_payloads(self, fuzzer_for):
        transport = FakeTransport()
        report = await fuzzer_for(transport).fuzz(
            "https://target.test/", "id", [str(i) for i in range(10)], max_requests=3)

        assert len(transport.sent) == 3
        assert report.total_requests == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url,parameter,payloads,error", [
        ("", "q", ["a"], "URL is required"),
        ("https://target.test/", "", ["a"], "Parameter name is required"),
        ("https://target.test/", "q", [], "At least one payload is required"),
        ("https://other.test/", "q", ["a"],
         "Target not allowed. Add the domain to allowed targets first."),
    ])
    async def test_validation(self, fuzzer_for, url, parameter, payloads, error):
        transport = FakeTransport()
        report = await fuzzer_for(transport).fuzz(url, parameter, payloads)

        assert not report.success
        assert report.to_dict()["error"] == error
        assert transport.sent == []
