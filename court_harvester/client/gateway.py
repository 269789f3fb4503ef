"""
Async search gateway for one credential.
Rate limiting, concurrency ceiling, retry and quota detection.
"""

import asyncio
import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import aiohttp

from court_harvester.client.backoff import RetryPolicy
from court_harvester.client.rate_limiter import RateLimiter
from court_harvester.config import GatewaySettings, get_config
from court_harvester.errors import ErrorKind, GatewayClosed, QuotaExceeded, RemoteError
from court_harvester.logging_config import get_logger
from court_harvester.models import Credential, Entity, QueryResult, SearchOptions

logger = get_logger("client.gateway")


@dataclass(frozen=True)
class GatewayStats:
    """Read-only snapshot of gateway counters."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    quota_errors: int = 0
    retries: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class RequestGateway:
    """
    Search client bound to a single credential.
    Features:
    - At most `max_concurrent` requests in flight
    - Token reservoir limiting steady-state request rate
    - Exponential retry of network errors and 5xx
    - QuotaExceeded raised for credential-level limits, never retried
    - Graceful shutdown that drains or discards queued work
    """

    def __init__(
        self,
        credential: Credential,
        settings: Optional[GatewaySettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        key_field: str = "code"
    ):
        self.credential = credential
        self.settings = settings or get_config().gateway
        self.key_field = key_field
        self._session = session
        self._own_session = session is None

        self.rate_limiter = RateLimiter(
            requests_per_second=self.settings.requests_per_second,
            reservoir=self.settings.reservoir,
        )
        self.retry_policy = RetryPolicy(
            max_retries=self.settings.max_retries,
            multiplier=self.settings.backoff_multiplier,
            min_wait=self.settings.backoff_min,
            max_wait=self.settings.backoff_max,
        )
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent)

        self._counters = GatewayStats().to_dict()
        self._active = 0
        self._queued = 0
        self._running = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False
        self._discard = False
        self._closed = False

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._ensure_session()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
            connector = aiohttp.TCPConnector(limit=self.settings.max_concurrent)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    def _get_headers(self) -> Dict[str, str]:
        """Auth headers: API token plus secret."""
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Token {self.credential.api_key}",
            "X-Secret": self.credential.secret_key or self.credential.api_key,
        }

    @property
    def closed(self) -> bool:
        return self._closing

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> QueryResult:
        """
        Run one search query.

        Args:
            query: Free-text or structured-key query
            options: Requested count and optional region/type filters

        Returns:
            QueryResult with at most `result_cap` entities

        Raises:
            QuotaExceeded: the credential hit its remote limit
            RemoteError: any other failure once retries are spent
        """
        if self._closing:
            raise GatewayClosed()

        options = options or SearchOptions(count=self.settings.result_cap)
        body = options.to_request(query, self.settings.result_cap)

        self._counters["total_requests"] += 1
        self._enter()
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self._counters["retries"] += 1
                    payload = await self._dispatch(body)
        except QuotaExceeded as e:
            self._counters["failed_requests"] += 1
            self._counters["quota_errors"] += 1
            logger.warning(
                f"Quota exceeded: {e}",
                extra={"credential": self.credential.name, "query": query, "http_code": e.status}
            )
            raise
        except RemoteError as e:
            self._counters["failed_requests"] += 1
            logger.error(
                f"Search failed: {e}",
                extra={"credential": self.credential.name, "query": query, "http_code": e.status}
            )
            raise
        finally:
            self._leave()

        self._counters["successful_requests"] += 1
        return self._to_result(query, payload)

    def _enter(self):
        self._active += 1
        self._idle.clear()

    def _leave(self):
        self._active -= 1
        if self._active == 0:
            self._idle.set()

    async def _dispatch(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Wait for a concurrency slot and a token, then send."""
        self._queued += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._queued -= 1

        try:
            if self._discard:
                raise GatewayClosed("request discarded during shutdown")
            await self.rate_limiter.acquire()
            if self._discard:
                raise GatewayClosed("request discarded during shutdown")

            self._running += 1
            try:
                return await self._post(body)
            finally:
                self._running -= 1
        finally:
            self._semaphore.release()

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.settings.base_url}{self.settings.endpoint}"
        try:
            async with self.session.post(url, json=body, headers=self._get_headers()) as response:
                status = response.status
                text = await response.text()
        except asyncio.TimeoutError as e:
            raise RemoteError(ErrorKind.TIMEOUT, None, str(e) or "request timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteError(ErrorKind.NETWORK, None, str(e)) from e
        except UnicodeDecodeError as e:
            raise RemoteError(ErrorKind.DECODE, status, f"undecodable body: {e.reason}") from e

        return self._classify(status, text)

    def _classify(self, status: int, text: str) -> Dict[str, Any]:
        """Turn a raw response into a payload or a typed error."""
        if 200 <= status < 300:
            try:
                payload = json.loads(text)
            except ValueError as e:
                raise RemoteError(ErrorKind.DECODE, status, text) from e
            if not isinstance(payload, dict) or not self._well_formed(payload):
                raise RemoteError(ErrorKind.DECODE, status, text)
            return payload

        # Quota first: both quota and malformed input arrive as 4xx
        if status in self.settings.quota_statuses:
            raise QuotaExceeded(status, text)

        if 400 <= status < 500:
            lowered = text.lower()
            if any(marker in lowered for marker in self.settings.quota_markers):
                raise QuotaExceeded(status, text)
            raise RemoteError(ErrorKind.CLIENT, status, text)

        if status >= 500:
            raise RemoteError(ErrorKind.SERVER, status, text)

        raise RemoteError(ErrorKind.CLIENT, status, text)

    @staticmethod
    def _well_formed(payload: Dict[str, Any]) -> bool:
        """A list of suggestion objects, each with an object (or null) data block."""
        suggestions = payload.get("suggestions")
        if suggestions is None:
            return True
        if not isinstance(suggestions, list):
            return False
        return all(
            isinstance(item, dict) and isinstance(item.get("data"), (dict, type(None)))
            for item in suggestions
        )

    def _to_result(self, query: str, payload: Dict[str, Any]) -> QueryResult:
        suggestions = payload.get("suggestions") or []
        # Endpoint never exceeds the cap; guard anyway
        suggestions = suggestions[:self.settings.result_cap]

        entities = []
        for suggestion in suggestions:
            entity = Entity.from_payload(suggestion.get("data"), self.key_field)
            if entity is not None:
                entities.append(entity)

        return QueryResult(
            query=query,
            entities=entities,
            cap=self.settings.result_cap,
            returned=len(suggestions),
        )

    @property
    def stats(self) -> GatewayStats:
        """Copy of the counters."""
        return GatewayStats(**self._counters)

    def reset_stats(self):
        """Zero the counters; in-flight requests are unaffected."""
        self._counters = GatewayStats().to_dict()

    def limiter_status(self) -> Dict[str, int]:
        """Current rate limiter state."""
        return {
            "running": self._running,
            "queued": self._queued + self.rate_limiter.waiting,
            "active": self._active,
            "done": self._counters["successful_requests"] + self._counters["failed_requests"],
        }

    async def shutdown(self, drop_waiting: bool = False):
        """
        Stop accepting work and wait until nothing is in flight.

        Args:
            drop_waiting: Fail queued requests with GatewayClosed instead of
                running them
        """
        if self._closed:
            return

        self._closing = True
        if drop_waiting:
            self._discard = True

        logger.info(
            f"Shutting down gateway ({self._active} pending)",
            extra={"credential": self.credential.name}
        )
        await self._idle.wait()

        if self._own_session and self._session is not None:
            await self._session.close()
        self._closed = True

        logger.info(
            f"Gateway stopped: {self.stats.to_dict()}",
            extra={"credential": self.credential.name}
        )
