"""
Credential rotation across a pool of API keys.
Extends the request budget of a run beyond a single key's quota.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from court_harvester.client.gateway import RequestGateway
from court_harvester.config import GatewaySettings, RotationSettings, get_config
from court_harvester.credentials.store import load_credentials
from court_harvester.errors import CredentialError, KeysExhausted, QuotaExceeded, RemoteError
from court_harvester.logging_config import get_logger
from court_harvester.models import Credential, QueryResult, SearchOptions

logger = get_logger("credentials.rotator")

GatewayFactory = Callable[[Credential], RequestGateway]


class RotatorState(Enum):
    ACTIVE = "active"
    ROTATING = "rotating"
    EXHAUSTED = "exhausted"


@dataclass
class CredentialBudget:
    """Request cap and consumption of one credential."""
    credential: Credential
    used: int = 0
    retired: bool = False

    @property
    def cap(self) -> int:
        return self.credential.budget

    @property
    def remaining(self) -> int:
        return max(0, self.cap - self.used)


class CredentialRotator:
    """
    Serves queries through the gateway of the active credential.

    Every request counts against the active credential, whatever its
    outcome. Reaching the cap, or a quota error from the remote, retires
    the credential and moves to the next one. When the pool is empty the
    rotator becomes terminally exhausted and `usable` turns False.

    Not safe for concurrent `issue_query` calls; the crawl loop is its
    only caller.
    """

    def __init__(
        self,
        credentials: List[Credential],
        gateway_factory: Optional[GatewayFactory] = None,
        settings: Optional[GatewaySettings] = None,
        key_field: str = "code"
    ):
        if not credentials:
            raise CredentialError("Credential pool is empty")

        self._budgets = [CredentialBudget(credential=c) for c in credentials]
        self._settings = settings
        self._key_field = key_field
        self._factory = gateway_factory or self._default_factory
        self._gateway: Optional[RequestGateway] = None
        self._index = 0
        self._state = RotatorState.ACTIVE
        self._total_requests = 0
        self._rotations = 0
        self._quota_rotations = 0
        self._quota_errors = 0

        capacity = sum(b.cap for b in self._budgets)
        logger.info(f"Credential pool: {len(self._budgets)} keys, ~{capacity} requests")

    @classmethod
    def from_directory(
        cls,
        keys_dir: Optional[str] = None,
        skip: Optional[List[str]] = None,
        rotation: Optional[RotationSettings] = None,
        gateway: Optional[GatewaySettings] = None,
        key_field: str = "code"
    ) -> "CredentialRotator":
        """Build a rotator from a directory of key files."""
        credentials = load_credentials(keys_dir, skip=skip, settings=rotation)
        return cls(credentials, settings=gateway, key_field=key_field)

    def _default_factory(self, credential: Credential) -> RequestGateway:
        settings = self._settings or get_config().gateway
        return RequestGateway(credential, settings=settings, key_field=self._key_field)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def state(self) -> RotatorState:
        return self._state

    @property
    def usable(self) -> bool:
        """False once every credential is spent."""
        return self._state is not RotatorState.EXHAUSTED

    @property
    def quota_errors(self) -> int:
        """Quota errors seen across every credential so far."""
        return self._quota_errors

    @property
    def active_credential(self) -> Optional[Credential]:
        if not self.usable:
            return None
        return self._budgets[self._index].credential

    @property
    def gateway(self) -> RequestGateway:
        """Gateway of the active credential, created on first use."""
        if not self.usable:
            raise KeysExhausted("All keys exhausted")
        if self._gateway is None:
            credential = self._budgets[self._index].credential
            self._gateway = self._factory(credential)
            logger.info("Active key", extra={"credential": credential.name})
        return self._gateway

    async def issue_query(self, query: str, options: Optional[SearchOptions] = None) -> QueryResult:
        """
        Forward a query to the active gateway.

        A quota error retires the credential at once and the same query is
        replayed on the next one.

        Raises:
            KeysExhausted: no credential is left to serve the query
            RemoteError: the query failed for a non-quota reason
        """
        while True:
            if not self.usable:
                raise KeysExhausted(f"All keys exhausted after {self._total_requests} requests")

            gateway = self.gateway
            index = self._index
            try:
                result = await gateway.search(query, options)
            except QuotaExceeded:
                self._quota_errors += 1
                await self.record_usage()
                if self.usable and self._index == index:
                    self._quota_rotations += 1
                    await self._rotate(reason="quota exceeded")
                continue
            except RemoteError:
                await self.record_usage()
                raise

            await self.record_usage()
            return result

    async def record_usage(self) -> bool:
        """
        Count one request against the active credential.

        Returns:
            Whether further requests are possible
        """
        if not self.usable:
            return False

        budget = self._budgets[self._index]
        budget.used += 1
        self._total_requests += 1

        if budget.used >= budget.cap:
            return await self._rotate(reason="budget reached")
        return True

    async def _rotate(self, reason: str) -> bool:
        self._state = RotatorState.ROTATING
        budget = self._budgets[self._index]
        budget.retired = True
        logger.info(
            f"Key retired ({reason}, {budget.used} requests)",
            extra={"credential": budget.credential.name}
        )

        if self._gateway is not None:
            await self._gateway.shutdown()
            self._gateway = None

        self._index += 1
        if self._index >= len(self._budgets):
            self._state = RotatorState.EXHAUSTED
            logger.warning(f"All keys exhausted! Total requests: {self._total_requests}")
            return False

        self._state = RotatorState.ACTIVE
        self._rotations += 1
        remaining = len(self._budgets) - self._index
        capacity = sum(b.remaining for b in self._budgets[self._index:])
        logger.info(
            f"Switched key, {remaining} left (~{capacity} requests)",
            extra={"credential": self._budgets[self._index].credential.name}
        )
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Read-only view of pool consumption."""
        active = self._budgets[self._index] if self.usable else None
        remaining_keys = self._budgets[self._index + 1:] if self.usable else []
        return {
            "state": self._state.value,
            "current_key": active.credential.name if active else None,
            "current_key_requests": active.used if active else 0,
            "limit_per_key": active.cap if active else 0,
            "total_requests": self._total_requests,
            "keys_used": min(self._index + 1, len(self._budgets)),
            "keys_remaining": len(remaining_keys),
            "remaining_capacity": (active.remaining if active else 0) + sum(b.cap for b in remaining_keys),
            "rotations": self._rotations,
            "quota_rotations": self._quota_rotations,
            "quota_errors": self._quota_errors,
        }

    async def shutdown(self):
        """Stop the active gateway."""
        if self._gateway is not None:
            await self._gateway.shutdown()
            self._gateway = None
