"""
Shared test fixtures: a fake aiohttp session, fake gateways and an
in-memory search endpoint. No test touches the network.
"""

import asyncio
from json import dumps
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import pytest

from court_harvester.config import CrawlSettings, GatewaySettings
from court_harvester.errors import ErrorKind, KeysExhausted, RemoteError
from court_harvester.models import Credential, Entity, QueryResult, SearchOptions


def suggestion(code: Optional[str], name: str = "", **extra: Any) -> Dict[str, Any]:
    """One suggestion in the endpoint's response format."""
    data = {"code": code, "name": name or f"Court {code}"}
    data.update(extra)
    return {"value": data["name"], "data": data}


def payload(*codes: Optional[str]) -> Dict[str, Any]:
    return {"suggestions": [suggestion(code) for code in codes]}


class FakeResponse:
    """Stands in for the context manager returned by aiohttp's session.post."""

    def __init__(
        self,
        session: "FakeSession",
        status: int = 200,
        text: Union[str, bytes] = "",
        error: Optional[BaseException] = None
    ):
        self.session = session
        self.status = status
        self._text = text
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        self.session.in_flight += 1
        self.session.max_in_flight = max(self.session.max_in_flight, self.session.in_flight)
        if self.session.delay:
            await asyncio.sleep(self.session.delay)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.session.in_flight -= 1
        return False

    async def text(self) -> str:
        # Raw bytes are decoded the way aiohttp does for a utf-8 response
        if isinstance(self._text, bytes):
            return self._text.decode("utf-8")
        return self._text


class FakeSession:
    """
    Scripted replacement for aiohttp.ClientSession.
    Script items are (status, body) pairs or exceptions; once the script
    runs out, `responder(request_body)` answers, else an empty 200.
    """

    def __init__(
        self,
        script: Optional[Iterable[Any]] = None,
        responder: Optional[Callable[[Dict[str, Any]], Any]] = None,
        delay: float = 0.0
    ):
        self.script = list(script or [])
        self.responder = responder
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def post(self, url: str, json: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None):
        self.calls.append({"url": url, "json": json, "headers": headers})

        if self.script:
            item = self.script.pop(0)
        elif self.responder is not None:
            item = self.responder(json)
        else:
            item = (200, {"suggestions": []})

        if isinstance(item, BaseException):
            return FakeResponse(self, error=item)
        status, body = item
        text = body if isinstance(body, (str, bytes)) else dumps(body)
        return FakeResponse(self, status=status, text=text)

    async def close(self):
        self.closed = True


class FakeGateway:
    """Gateway double for rotator tests; script items are results or exceptions."""

    def __init__(self, credential: Credential, script: Optional[Iterable[Any]] = None):
        self.credential = credential
        self.script = list(script or [])
        self.queries: List[str] = []
        self.closed = False

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> QueryResult:
        self.queries.append(query)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return QueryResult(query=query, entities=[], cap=20, returned=0)

    async def shutdown(self, drop_waiting: bool = False):
        self.closed = True


class FakeSearcher:
    """
    In-memory search endpoint with the rotator's interface.

    A query matches an entity when the entity's key or name starts with
    it; at most `cap` matches come back, in key order. `budget` limits the
    number of queries before the pool reports itself exhausted.
    """

    def __init__(
        self,
        entities: Dict[str, str],
        cap: int = 20,
        budget: Optional[int] = None,
        fail: Iterable[str] = ()
    ):
        self.entities = dict(sorted(entities.items()))
        self.cap = cap
        self.budget = budget
        self.fail = set(fail)
        self.calls: List[str] = []

    @property
    def usable(self) -> bool:
        return self.budget is None or len(self.calls) < self.budget

    async def issue_query(self, query: str, options: Optional[SearchOptions] = None) -> QueryResult:
        if not self.usable:
            raise KeysExhausted("All keys exhausted")
        self.calls.append(query)
        if query in self.fail:
            raise RemoteError(ErrorKind.SERVER, 500, "internal error")

        count = min(options.count if options else self.cap, self.cap)
        matches = [
            Entity(key=code, attributes={"code": code, "name": name})
            for code, name in self.entities.items()
            if code.startswith(query) or name.startswith(query)
        ][:count]
        return QueryResult(query=query, entities=matches, cap=self.cap, returned=len(matches))

    def get_stats(self) -> Dict[str, Any]:
        return {"total_requests": len(self.calls)}


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    """Fast settings: no backoff sleeps, generous reservoir."""
    return GatewaySettings(
        base_url="http://search.test",
        max_concurrent=5,
        requests_per_second=1000.0,
        reservoir=1000,
        max_retries=3,
        backoff_multiplier=0.0,
        backoff_min=0.0,
        backoff_max=0.0,
    )


@pytest.fixture
def credential() -> Credential:
    return Credential(name="a.env", api_key="token-a", secret_key="secret-a", budget=100)


@pytest.fixture
def crawl_settings(tmp_path) -> CrawlSettings:
    return CrawlSettings(
        output_dir=str(tmp_path),
        batch_delay=0.0,
        checkpoint_interval=1000,
        regions=["59"],
        court_types=["RS"],
    )


@pytest.fixture
def gateway_factory():
    """Factory that hands out FakeGateways with per-credential scripts."""

    class Factory:
        def __init__(self):
            self.scripts: Dict[str, List[Any]] = {}
            self.gateways: List[FakeGateway] = []

        def __call__(self, credential: Credential) -> FakeGateway:
            gateway = FakeGateway(credential, self.scripts.get(credential.name))
            self.gateways.append(gateway)
            return gateway

    return Factory()
