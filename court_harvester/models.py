"""
Data models shared by the gateway, the rotator and the crawler.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class DuplicatePolicy(Enum):
    """What happens when an already-known key is discovered again."""
    FIRST_SEEN = "first_seen"
    LAST_SEEN = "last_seen"


@dataclass(frozen=True)
class Credential:
    """One API key pair and its per-run request budget."""
    name: str
    api_key: str = field(repr=False)
    secret_key: str = field(default="", repr=False)
    budget: int = 9500


@dataclass
class Entity:
    """A discovered court. Attributes are opaque to the crawler."""
    key: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]], key_field: str = "code") -> Optional["Entity"]:
        """Build from a suggestion's data block; None when it has no key."""
        if not data:
            return None
        key = data.get(key_field)
        if not key or not isinstance(key, str):
            return None
        return cls(key=key, attributes=dict(data))

    def to_dict(self, key_field: str = "code") -> Dict[str, Any]:
        data = dict(self.attributes)
        data.setdefault(key_field, self.key)
        return data


@dataclass(frozen=True)
class StructuredKey:
    """Decomposed key: region + type + ordinal, e.g. 59 / RS / 1."""
    region: str
    type_code: str
    ordinal: int

    @property
    def prefix(self) -> str:
        return f"{self.region}{self.type_code}"


@dataclass(frozen=True)
class KeyLayout:
    """
    Fixed-width layout of structured keys.
    "59RS0001" splits as region="59", type="RS", ordinal=1.
    """
    region_width: int = 2
    type_width: int = 2
    ordinal_width: int = 4

    @property
    def prefix_width(self) -> int:
        return self.region_width + self.type_width

    @property
    def key_width(self) -> int:
        return self.prefix_width + self.ordinal_width

    def parse(self, key: str) -> Optional[StructuredKey]:
        """Split a key; None for keys that do not follow the layout (e.g. "А50")."""
        if not key or len(key) != self.key_width:
            return None

        region = key[:self.region_width]
        type_code = key[self.region_width:self.prefix_width]
        ordinal = key[self.prefix_width:]

        if not region.isdigit() or not ordinal.isdigit():
            return None
        if not type_code.isalpha():
            return None

        return StructuredKey(region=region, type_code=type_code, ordinal=int(ordinal))

    def build(self, region: str, type_code: str, ordinal: int) -> str:
        return f"{region}{type_code}{ordinal:0{self.ordinal_width}d}"

    def build_from_prefix(self, prefix: str, ordinal: int) -> str:
        return f"{prefix}{ordinal:0{self.ordinal_width}d}"

    def prefix_of(self, key: str) -> Optional[str]:
        parsed = self.parse(key)
        return parsed.prefix if parsed else None

    def max_ordinal(self) -> int:
        return 10 ** self.ordinal_width - 1


@dataclass
class SearchOptions:
    """Optional parameters of a search call."""
    count: int = 20
    region_code: Optional[str] = None
    court_types: Optional[Union[str, List[str]]] = None

    def to_request(self, query: str, cap: int) -> Dict[str, Any]:
        """Build the endpoint request body; count never exceeds the cap."""
        body: Dict[str, Any] = {
            "query": query,
            "count": max(1, min(self.count, cap)),
        }
        if self.region_code:
            body["locations"] = [{"region_code": self.region_code}]
        if self.court_types:
            body["filters"] = [{"court_type": self.court_types}]
        return body


@dataclass
class QueryResult:
    """
    Ordered suggestions for one issued query (at most `cap`).
    `returned` counts raw suggestions, including ones dropped for a missing key.
    """
    query: str
    entities: List[Entity] = field(default_factory=list)
    cap: int = 20
    returned: Optional[int] = None

    @property
    def saturated(self) -> bool:
        """Exactly `cap` results: more matches may be hidden beyond the top K."""
        count = self.returned if self.returned is not None else len(self.entities)
        return count >= self.cap

    @property
    def keys(self) -> List[str]:
        return [e.key for e in self.entities]

    def __len__(self) -> int:
        return len(self.entities)
