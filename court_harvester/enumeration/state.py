"""
Crawl state: the deduplicated entity store plus query memo and counters.
The crawl loop is the only writer.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Iterator, List, Optional, Set

from court_harvester.models import DuplicatePolicy, Entity, KeyLayout, QueryResult


@dataclass(frozen=True)
class PrefixStats:
    """Known ordinal range of one region+type prefix."""
    min: int
    max: int
    count: int


class EntityStore:
    """
    Key -> Entity map with no duplicate keys.
    Under FIRST_SEEN a rediscovered key never overwrites stored attributes.
    """

    def __init__(
        self,
        layout: Optional[KeyLayout] = None,
        policy: DuplicatePolicy = DuplicatePolicy.FIRST_SEEN,
        key_field: str = "code"
    ):
        self.layout = layout or KeyLayout()
        self.policy = policy
        self.key_field = key_field
        self._entities: Dict[str, Entity] = {}
        self._ordinals: Dict[str, Set[int]] = {}

    def add(self, entity: Entity) -> bool:
        """
        Merge an entity.

        Returns:
            True if the key was not known before
        """
        if entity.key in self._entities:
            if self.policy is DuplicatePolicy.LAST_SEEN:
                self._entities[entity.key] = entity
            return False

        self._entities[entity.key] = entity
        parsed = self.layout.parse(entity.key)
        if parsed is not None:
            self._ordinals.setdefault(parsed.prefix, set()).add(parsed.ordinal)
        return True

    def get(self, key: str) -> Optional[Entity]:
        return self._entities.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[Entity]:
        return iter(self.values())

    def keys(self) -> List[str]:
        return sorted(self._entities)

    def values(self) -> List[Entity]:
        """Entities sorted by key."""
        return [self._entities[k] for k in sorted(self._entities)]

    def prefixes(self) -> List[str]:
        """Region+type prefixes with at least one structured key."""
        return sorted(self._ordinals)

    def ordinals(self, prefix: str) -> List[int]:
        return sorted(self._ordinals.get(prefix, ()))

    def has_ordinal(self, prefix: str, ordinal: int) -> bool:
        return ordinal in self._ordinals.get(prefix, ())

    def prefix_stats(self, prefix: str) -> Optional[PrefixStats]:
        numbers = self._ordinals.get(prefix)
        if not numbers:
            return None
        return PrefixStats(min=min(numbers), max=max(numbers), count=len(numbers))

    def regions(self) -> Set[str]:
        return {prefix[:self.layout.region_width] for prefix in self._ordinals}

    def by_region(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for key in self._entities:
            region = key[:self.layout.region_width]
            stats[region] = stats.get(region, 0) + 1
        return dict(sorted(stats.items()))

    def by_type(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for entity in self._entities.values():
            court_type = entity.attributes.get("court_type")
            if not court_type:
                parsed = self.layout.parse(entity.key)
                court_type = parsed.type_code if parsed else "unknown"
            stats[court_type] = stats.get(court_type, 0) + 1
        return dict(sorted(stats.items()))


@dataclass
class CrawlCounters:
    """Monotonic counters of one crawl."""
    requests: int = 0
    successes: int = 0
    failures: int = 0
    quota_errors: int = 0
    hot_queries: int = 0
    probe_queries: int = 0
    skipped_queries: int = 0
    new_entities: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CrawlCounters":
        if not data:
            return cls()
        allowed = {f.name for f in fields(cls)}
        return cls(**{k: int(v) for k, v in data.items() if k in allowed})


@dataclass
class IssueOutcome:
    """What happened to one logical query."""
    result: Optional[QueryResult] = None
    new_keys: List[str] = field(default_factory=list)
    skipped: bool = False
    failed: bool = False

    @property
    def hit(self) -> bool:
        return bool(self.new_keys)


@dataclass
class CrawlState:
    """Everything a resumed run needs besides the credentials."""
    store: EntityStore = field(default_factory=EntityStore)
    issued_queries: Set[str] = field(default_factory=set)
    saturated_queries: Set[str] = field(default_factory=set)
    failed_queries: Set[str] = field(default_factory=set)
    counters: CrawlCounters = field(default_factory=CrawlCounters)
    completed_phases: List[str] = field(default_factory=list)
    phase: Optional[str] = None
    pending: Dict[str, List[str]] = field(default_factory=dict)
    verify_targets: List[str] = field(default_factory=list)
    verification: Dict[str, str] = field(default_factory=dict)

    def to_progress(self) -> Dict[str, Any]:
        """Serializable progress block for snapshot meta."""
        return {
            "phase": self.phase,
            "completed_phases": list(self.completed_phases),
            "counters": self.counters.to_dict(),
            "issued_queries": sorted(self.issued_queries),
            "saturated_queries": sorted(self.saturated_queries),
            "failed_queries": sorted(self.failed_queries),
            "pending": {phase: list(items) for phase, items in self.pending.items()},
            "verify_targets": list(self.verify_targets),
            "verification": dict(self.verification),
        }

    @classmethod
    def from_snapshot(cls, snapshot: Any, store: EntityStore) -> "CrawlState":
        """Rehydrate from a loaded snapshot; its entities go into `store`."""
        for entity in snapshot.entities:
            store.add(entity)

        progress = snapshot.meta.get("progress") or {}
        return cls(
            store=store,
            issued_queries=set(progress.get("issued_queries", [])),
            saturated_queries=set(progress.get("saturated_queries", [])),
            failed_queries=set(progress.get("failed_queries", [])),
            counters=CrawlCounters.from_dict(progress.get("counters")),
            completed_phases=list(progress.get("completed_phases", [])),
            phase=progress.get("phase"),
            pending={k: list(v) for k, v in (progress.get("pending") or {}).items()},
            verify_targets=list(progress.get("verify_targets", [])),
            verification=dict(progress.get("verification") or {}),
        )
