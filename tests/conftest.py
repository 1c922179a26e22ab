import itertools
from typing import Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from proxyprobe.logger import LoggerDB
from proxyprobe.state import ProbeState
from proxyprobe.transport import Pacer, ProbeResponse, RequestSpec, StoredExchange


def make_response(status_code: int = 200, body: str = "", headers: Optional[Dict] = None,
                  elapsed_ms: float = 10.0) -> ProbeResponse:
    return ProbeResponse(
        status_code=status_code,
        headers=dict(headers or {}),
        body=body,
        elapsed_ms=elapsed_ms,
    )


class FakeTransport:
    """Scripted stand-in for HttpxTransport.

    `responder(spec)` returns a ProbeResponse or an exception instance to raise.
    """

    def __init__(self, responder: Optional[Callable] = None):
        self.responder = responder or (lambda spec: make_response())
        self.sent: List[RequestSpec] = []
        self.exchanges: Dict[str, StoredExchange] = {}
        self._ids = itertools.count(1)

    @classmethod
    def sequence(cls, *responses):
        """Answer each probe with the next scripted response, repeating the last."""
        queue = list(responses)

        def responder(spec):
            return queue.pop(0) if len(queue) > 1 else queue[0]

        return cls(responder)

    async def send(self, spec: RequestSpec) -> ProbeResponse:
        self.sent.append(spec)
        result = self.responder(spec)
        if isinstance(result, Exception):
            raise result
        return ProbeResponse(
            status_code=result.status_code,
            headers=result.headers,
            body=result.body,
            elapsed_ms=result.elapsed_ms,
            request_id=next(self._ids),
        )

    def add_exchange(self, exchange: StoredExchange):
        self.exchanges[str(exchange.id)] = exchange

    async def get(self, request_id):
        return self.exchanges.get(str(request_id))

    async def query_history(self, limit: int = 100):
        return list(self.exchanges.values())[:limit]


class FakeFindingStore:
    """Records findings like LoggerDB, including dedupe-key suppression."""

    def __init__(self, rows: Optional[List[Dict]] = None, fail: bool = False):
        self.calls: List[Dict] = []
        self.rows: List[Dict] = list(rows or [])
        self.fail = fail
        self.last_limit = None
        self._keys = set()

    async def add_finding(self, **kwargs):
        if self.fail:
            raise RuntimeError("store unavailable")
        self.calls.append(kwargs)
        key = kwargs.get("dedupe_key")
        if key in self._keys:
            return None
        self._keys.add(key)
        self.rows.append({
            "id": len(self.rows) + 1,
            "title": kwargs["title"],
            "description": kwargs.get("description", ""),
            "reporter": kwargs.get("reporter", ""),
            "timestamp": 1700000000.0,
            "host": "target.test",
            "path": "/",
        })
        return len(self.rows)

    async def get_findings(self, limit: int = 100):
        self.last_limit = limit
        return list(reversed(self.rows))[:limit]


@pytest.fixture
def state():
    return ProbeState(["target.test"])


@pytest.fixture
def no_pace():
    return Pacer(0)


@pytest.fixture
def sink():
    return FakeFindingStore()


@pytest_asyncio.fixture
async def db(tmp_path):
    store = LoggerDB(tmp_path / "proxyprobe.db")
    await store.connect()
    yield store
    await store.close()
