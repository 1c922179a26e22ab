import pytest
from mitmproxy.test import tflow

from proxyprobe.interceptor import TrafficInterceptor
from proxyprobe.proxy import ProxyProbeAddon, split_path
from proxyprobe.state import InterceptRegistry


def make_flow(host="target.test", path="/login?next=%2F"):
    flow = tflow.tflow(resp=True)
    flow.request.host = host
    flow.request.path = path
    flow.response.headers["content-type"] = "text/html"
    flow.response.content = b"<html>welcome</html>"
    return flow


@pytest.fixture
def interceptor():
    interceptor = TrafficInterceptor(InterceptRegistry())
    interceptor.register("login")
    return interceptor


def test_split_path():
    assert split_path("/a/b?x=1&y=2") == ("/a/b", "x=1&y=2")
    assert split_path("") == ("/", "")


def test_request_hook_feeds_interceptor(interceptor):
    addon = ProxyProbeAddon(interceptor)
    addon.request(make_flow())
    addon.request(make_flow(path="/static/app.js"))

    records = interceptor.intercepted()["requests"]
    assert [r["path"] for r in records] == ["/static/app.js", "/login"]
    assert [r["matched"] for r in records] == [False, True]


def test_response_hook_captures_flow(interceptor):
    captured = []
    addon = ProxyProbeAddon(interceptor)
    addon.set_flow_callback(captured.append)

    flow = make_flow()
    addon.request(flow)
    addon.response(flow)

    [entry] = captured
    assert entry.host == "target.test"
    assert entry.path == "/login"
    assert entry.query == "next=%2F"
    assert entry.status_code == flow.response.status_code
    assert entry.response_body == "<html>welcome</html>"
    assert entry.content_type == "text/html"
    assert entry.duration_ms >= 0


def test_excluded_domains_are_not_logged():
    captured = []
    addon = ProxyProbeAddon()
    addon.set_flow_callback(captured.append)
    addon.set_excludes(["*.gstatic.com", "telemetry.test"])

    for host in ("fonts.gstatic.com", "telemetry.test"):
        flow = make_flow(host=host)
        addon.request(flow)
        addon.response(flow)

    assert captured == []


def test_logging_can_be_disabled():
    captured = []
    addon = ProxyProbeAddon()
    addon.set_flow_callback(captured.append)
    addon.log_traffic = False

    flow = make_flow()
    addon.request(flow)
    addon.response(flow)
    assert captured == []
