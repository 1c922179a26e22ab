import json

import httpx
import pytest

from proxyprobe.transport import HttpxTransport, RequestSpec, StoredExchange, TransportError


def echo(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        201,
        headers={"Content-Type": "application/json", "Server": "mock"},
        json={
            "method": request.method,
            "path": request.url.path,
            "body": request.content.decode(),
            "auth": request.headers.get("authorization"),
        },
    )


@pytest.mark.asyncio
async def test_send_records_exchange(db):
    transport = HttpxTransport(store=db, transport=httpx.MockTransport(echo))

    resp = await transport.send(RequestSpec(
        method="post",
        url="https://target.test/api/items?sort=asc",
        headers={"Authorization": "Bearer t", "Content-Length": "999", "Host": "spoofed"},
        body='{"a": 1}',
    ))

    assert resp.status_code == 201
    assert json.loads(resp.body) == {
        "method": "POST", "path": "/api/items", "body": '{"a": 1}', "auth": "Bearer t"}
    assert resp.headers["server"] == "mock"
    assert resp.elapsed_ms >= 0
    assert resp.request_id is not None

    stored = await transport.get(resp.request_id)
    assert isinstance(stored, StoredExchange)
    assert stored.method == "POST"
    assert stored.host == "target.test"
    assert stored.path == "/api/items"
    assert stored.query == "sort=asc"
    assert stored.source == "probe"
    assert stored.status_code == 201
    assert stored.request_headers == {"Authorization": "Bearer t"}
    assert stored.request_body == '{"a": 1}'
    assert stored.content_type == "application/json"
    assert stored.has_response


@pytest.mark.asyncio
async def test_connection_error_becomes_transport_error(db):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = HttpxTransport(store=db, transport=httpx.MockTransport(refuse))
    with pytest.raises(TransportError, match="connection refused"):
        await transport.send(RequestSpec(method="GET", url="https://target.test/"))

    assert await transport.query_history() == []


@pytest.mark.asyncio
async def test_send_without_store():
    transport = HttpxTransport(transport=httpx.MockTransport(lambda r: httpx.Response(204)))
    resp = await transport.send(RequestSpec(method="GET", url="https://target.test/"))

    assert resp.status_code == 204
    assert resp.body == ""
    assert resp.request_id is None
    assert await transport.get("1") is None


@pytest.mark.asyncio
async def test_get_rejects_non_numeric_ids(db):
    transport = HttpxTransport(store=db)
    assert await transport.get("abc") is None
    assert await transport.get(12345) is None


@pytest.mark.asyncio
async def test_history_is_newest_first(db):
    for path in ("/one", "/two", "/three"):
        await db.log_request(method="GET", host="target.test", path=path, status_code=200)

    history = await HttpxTransport(store=db).query_history(limit=2)
    assert [e.path for e in history] == ["/three", "/two"]
    assert history[0].to_dict()["statusCode"] == 200


class TestFindingStore:

    @pytest.mark.asyncio
    async def test_dedupe_key_suppresses_repeats(self, db):
        first = await db.add_finding("XSS (HIGH)", dedupe_key="scan-xss-a")
        second = await db.add_finding("XSS (HIGH)", dedupe_key="scan-xss-a")
        other = await db.add_finding("XSS (HIGH)", dedupe_key="scan-xss-b")

        assert first is not None
        assert second is None
        assert other is not None
        assert len(await db.get_findings()) == 2

    @pytest.mark.asyncio
    async def test_findings_carry_evidence_location(self, db):
        log_id = await db.log_request(method="GET", host="target.test", path="/admin")
        await db.add_finding("Auth bypass (HIGH)", description="open",
                             reporter="Auth Bypass Tester", source_request_id=log_id,
                             dedupe_key="auth-1")
        await db.add_finding("Orphan", dedupe_key="orphan")

        newest, oldest = await db.get_findings()
        assert newest["title"] == "Orphan"
        assert newest["host"] is None
        assert oldest["host"] == "target.test"
        assert oldest["path"] == "/admin"
        assert oldest["reporter"] == "Auth Bypass Tester"
