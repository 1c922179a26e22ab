import pytest

from proxyprobe.interceptor import TrafficInterceptor
from proxyprobe.state import InterceptRegistry


@pytest.fixture
def interceptor():
    return TrafficInterceptor(InterceptRegistry())


def test_register_and_list(interceptor):
    result = interceptor.register(r"target\.test/api", {"headers": {"X-Debug": "1"}})

    assert result["success"]
    assert result["message"] == r"Intercept pattern registered: target\.test/api"
    patterns = interceptor.list_patterns()["patterns"]
    assert patterns == [{
        "id": result["interceptId"],
        "pattern": r"target\.test/api",
        "enabled": True,
        "modifications": {"headers": {"X-Debug": "1"}},
    }]


def test_register_rejects_empty_and_invalid(interceptor):
    assert interceptor.register("") == {"success": False, "error": "Pattern is required"}

    bad = interceptor.register("(unclosed")
    assert bad["success"] is False
    assert bad["error"].startswith("Invalid regex pattern:")
    assert interceptor.list_patterns()["patterns"] == []


def test_stop(interceptor):
    intercept_id = interceptor.register("login")["interceptId"]

    assert interceptor.stop(intercept_id) == {
        "success": True,
        "interceptId": intercept_id,
        "message": "Intercept pattern removed",
    }
    assert interceptor.stop(intercept_id) == {
        "success": False, "error": f"Intercept ID {intercept_id} not found"}
    assert interceptor.stop("")["error"] == "interceptId is required"


def test_observe_records_every_request(interceptor):
    interceptor.register("/admin")
    interceptor.register("target", enabled=False)

    hit = interceptor.observe("1", "target.test", "/ADMIN/users", "GET")
    miss = interceptor.observe("2", "target.test", "/public", "POST")

    assert hit.matched is True
    assert miss.matched is False
    requests = interceptor.intercepted()["requests"]
    assert [r["id"] for r in requests] == ["2", "1"]
    assert requests[0]["method"] == "POST"


def test_intercepted_limit(interceptor):
    for i in range(60):
        interceptor.observe(str(i), "h.test", "/", "GET")

    assert len(interceptor.intercepted()["requests"]) == 50
    assert len(interceptor.intercepted(5)["requests"]) == 5
