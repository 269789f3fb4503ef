"""
Enumeration crawler.
Drives the search phases through the credential pool and keeps the
entity store, the query memo and the checkpoints.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from court_harvester.config import CrawlSettings, get_config
from court_harvester.enumeration.events import ProgressListener, ProgressReporter
from court_harvester.enumeration.key_probe import KeyProber
from court_harvester.enumeration.prefix_search import PrefixExpansion
from court_harvester.enumeration.state import CrawlState, EntityStore, IssueOutcome
from court_harvester.errors import KeysExhausted, RemoteError
from court_harvester.logging_config import get_logger
from court_harvester.models import DuplicatePolicy, Entity, KeyLayout, QueryResult, SearchOptions
from court_harvester.storage.snapshot import Snapshot, SnapshotStore

logger = get_logger("enumeration.crawler")


@dataclass
class HarvestSummary:
    """Outcome of one harvest run."""
    total_entities: int
    new_entities: int
    duration_seconds: float
    counters: Dict[str, int]
    completed_phases: List[str]
    exhausted: bool = False
    unverified: Dict[str, List[str]] = field(default_factory=dict)
    verification: Dict[str, int] = field(default_factory=dict)
    by_region: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    searcher_stats: Dict[str, Any] = field(default_factory=dict)
    output_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_entities": self.total_entities,
            "new_entities": self.new_entities,
            "duration_seconds": round(self.duration_seconds, 2),
            "counters": dict(self.counters),
            "completed_phases": list(self.completed_phases),
            "exhausted": self.exhausted,
            "unverified": {k: list(v) for k, v in self.unverified.items()},
            "verification": dict(self.verification),
            "by_region": dict(self.by_region),
            "by_type": dict(self.by_type),
            "searcher_stats": dict(self.searcher_stats),
            "output_path": self.output_path,
        }


class EnumerationCrawler:
    """
    Enumerates the entity space behind a top-K search endpoint.
    Features:
    - Prefix expansion of saturated text queries
    - Gap, tail and wide probes over structured keys
    - Optional verification of already known keys
    - Query memo: a query string that got an answer is never reissued
    - Checkpoint every `checkpoint_interval` requests, final save on exit
    - Stops cleanly when the credential pool is exhausted

    `searcher` is anything with `issue_query(query, options)` and a
    `usable` flag, normally a CredentialRotator. The crawl loop is
    sequential and is the only writer of the crawl state.
    """

    def __init__(
        self,
        searcher: Any,
        settings: Optional[CrawlSettings] = None,
        snapshots: Optional[SnapshotStore] = None,
        listeners: Optional[Iterable[ProgressListener]] = None,
        state: Optional[CrawlState] = None
    ):
        self.searcher = searcher
        self.settings = settings or get_config().crawl
        self.snapshots = snapshots or SnapshotStore(self.settings.output_dir, key_field=self.settings.key_field)
        self.reporter = ProgressReporter(listeners)
        self.layout = KeyLayout(
            region_width=self.settings.region_width,
            type_width=self.settings.type_width,
            ordinal_width=self.settings.ordinal_width,
        )
        self.state = state or CrawlState(store=self.new_store(self.settings))
        self._since_checkpoint = 0

        self.prefix_search = PrefixExpansion(
            self.state,
            self._issue,
            alphabet=self.settings.alphabet,
            max_depth=self.settings.max_depth,
            result_cap=self.settings.result_cap,
            reporter=self.reporter,
        )
        self.prober = KeyProber(
            self.state,
            self._issue,
            layout=self.layout,
            probe_count=self.settings.probe_count,
            result_cap=self.settings.result_cap,
            tail_miss_threshold=self.settings.tail_miss_threshold,
            tail_span=self.settings.tail_span,
            gap_start=self.settings.gap_start,
            reporter=self.reporter,
        )
        self._phases: Dict[str, Callable[[], Any]] = {
            "prefix": self.prefix_search.run,
            "wide": lambda: self.prober.probe_wide(self.settings.regions, self.settings.court_types),
            "gap": self.prober.probe_gaps,
            "tail": self.prober.probe_tails,
            "verify": lambda: self.prober.verify(self.state.verify_targets),
        }

    @staticmethod
    def new_store(settings: CrawlSettings) -> EntityStore:
        """Empty store configured from crawl settings."""
        layout = KeyLayout(
            region_width=settings.region_width,
            type_width=settings.type_width,
            ordinal_width=settings.ordinal_width,
        )
        return EntityStore(
            layout=layout,
            policy=DuplicatePolicy(settings.duplicate_policy),
            key_field=settings.key_field,
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Snapshot,
        searcher: Any,
        settings: Optional[CrawlSettings] = None,
        snapshots: Optional[SnapshotStore] = None,
        listeners: Optional[Iterable[ProgressListener]] = None
    ) -> "EnumerationCrawler":
        """
        Resume from a loaded snapshot.
        Known keys are treated as closed; completed phases are skipped.
        """
        settings = settings or get_config().crawl
        state = CrawlState.from_snapshot(snapshot, cls.new_store(settings))
        logger.info(
            f"Resuming with {len(state.store)} entities, "
            f"{len(state.issued_queries)} queries already issued, "
            f"phases done: {state.completed_phases or 'none'}"
        )
        return cls(searcher, settings=settings, snapshots=snapshots, listeners=listeners, state=state)

    @property
    def store(self) -> EntityStore:
        return self.state.store

    async def harvest(self, phases: Optional[List[str]] = None) -> HarvestSummary:
        """
        Run the configured phases in order.

        Args:
            phases: Override of the configured phase list

        Returns:
            HarvestSummary; `exhausted` is set when the key pool ran out
        """
        phases = list(phases or self.settings.phases)
        unknown = [p for p in phases if p not in self._phases]
        if unknown:
            raise ValueError(f"Unknown phases: {unknown}")

        start_time = time.monotonic()
        initial_total = len(self.store)
        initial_new = self.state.counters.new_entities
        if "verify" in phases and not self.state.verify_targets and "verify" not in self.state.completed_phases:
            self.state.verify_targets = self.store.keys()

        logger.info(f"Harvest started: {len(self.store)} known, phases {phases}")
        exhausted = False

        try:
            for phase in phases:
                if phase in self.state.completed_phases:
                    logger.info("Phase already completed, skipping", extra={"phase": phase})
                    continue
                if not self.searcher.usable:
                    raise KeysExhausted("All keys exhausted")

                self.state.phase = phase
                logger.info(f"Phase started ({len(self.store)} known)", extra={"phase": phase})
                await self._phases[phase]()

                self.state.completed_phases.append(phase)
                self.state.pending.pop(phase, None)
                logger.info(f"Phase completed ({len(self.store)} known)", extra={"phase": phase})
                self.checkpoint()

        except KeysExhausted as e:
            exhausted = True
            logger.warning(f"Stopping: {e}", extra={"phase": self.state.phase})
        except BaseException:
            logger.error("Harvest interrupted, writing checkpoint", extra={"phase": self.state.phase})
            self.checkpoint()
            raise

        output_path = self.save_final(complete=all(p in self.state.completed_phases for p in phases))
        duration = time.monotonic() - start_time

        summary = HarvestSummary(
            total_entities=len(self.store),
            new_entities=len(self.store) - initial_total,
            duration_seconds=duration,
            counters=self.state.counters.to_dict(),
            completed_phases=list(self.state.completed_phases),
            exhausted=exhausted,
            unverified=self._unverified(phases),
            verification=self._verification_counts(),
            by_region=self.store.by_region(),
            by_type=self.store.by_type(),
            searcher_stats=self._searcher_stats(),
            output_path=str(output_path),
        )
        logger.info(
            f"Harvest finished: {summary.total_entities} total, "
            f"{self.state.counters.new_entities - initial_new} new, "
            f"{self.state.counters.requests} requests in {duration:.1f}s"
            + (" (keys exhausted)" if exhausted else "")
        )
        return summary

    async def _issue(
        self,
        query: str,
        count: int,
        probe: bool = False,
        memoize: bool = True,
        accept: Optional[Callable[[Entity], bool]] = None
    ) -> IssueOutcome:
        """
        Issue one query and merge what it returns.

        A failed query counts as zero results and is not memoized, so a
        later run may try it again.

        Raises:
            KeysExhausted: no credential is left; callers unwind
        """
        if memoize and query in self.state.issued_queries:
            self.state.counters.skipped_queries += 1
            return IssueOutcome(skipped=True)

        if not self.searcher.usable:
            raise KeysExhausted("All keys exhausted")

        counters = self.state.counters
        counters.requests += 1
        if probe:
            counters.probe_queries += 1

        # Quota errors are absorbed by rotation; read them off the searcher
        quota_seen = getattr(self.searcher, "quota_errors", 0)
        try:
            result = await self.searcher.issue_query(query, SearchOptions(count=count))
        except RemoteError as e:
            counters.failures += 1
            self.state.failed_queries.add(query)
            logger.warning(
                f"Query failed ({e.kind.value}), counted as empty",
                extra={"phase": self.state.phase, "query": query, "http_code": e.status}
            )
            outcome = IssueOutcome(
                result=QueryResult(query=query, cap=self.settings.result_cap, returned=0),
                failed=True,
            )
        else:
            counters.successes += 1
            self.state.issued_queries.add(query)
            self.state.failed_queries.discard(query)

            new_keys = []
            for entity in result.entities:
                if accept is not None and not accept(entity):
                    continue
                if self.store.add(entity):
                    new_keys.append(entity.key)
            counters.new_entities += len(new_keys)

            if new_keys:
                logger.debug(
                    f"{len(new_keys)} new: {', '.join(new_keys[:5])}",
                    extra={"phase": self.state.phase, "query": query}
                )
            outcome = IssueOutcome(result=result, new_keys=new_keys)
        finally:
            counters.quota_errors += getattr(self.searcher, "quota_errors", 0) - quota_seen

        self._since_checkpoint += 1
        if self._since_checkpoint >= self.settings.checkpoint_interval:
            # The crawl loop waits on the write, so the state is not mutated meanwhile
            await asyncio.to_thread(self.checkpoint)

        if self.settings.batch_delay > 0:
            await asyncio.sleep(self.settings.batch_delay)

        return outcome

    def checkpoint(self):
        """Flush the current state to the checkpoint snapshot."""
        self._since_checkpoint = 0
        path = self.snapshots.save(
            self.settings.checkpoint_name,
            self.store,
            progress=self.state.to_progress(),
            phase=self.state.phase,
        )
        logger.info(f"Checkpoint: {len(self.store)} entities -> {path}")
        return path

    def save_final(self, complete: bool = True):
        """Write the final output and refresh the checkpoint."""
        self.checkpoint()
        path = self.snapshots.save(
            self.settings.output_name,
            self.store,
            progress=self.state.to_progress(),
            phase="final" if complete else self.state.phase,
        )
        logger.info(f"Saved {len(self.store)} entities -> {path}")
        return path

    def _unverified(self, phases: List[str]) -> Dict[str, List[str]]:
        """Work left undone per phase; an empty list means the phase never started."""
        unverified = {}
        for phase in phases:
            if phase in self.state.completed_phases:
                continue
            unverified[phase] = list(self.state.pending.get(phase, []))
        return unverified

    def _verification_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for status in self.state.verification.values():
            counts[status] = counts.get(status, 0) + 1
        return counts

    def _searcher_stats(self) -> Dict[str, Any]:
        get_stats = getattr(self.searcher, "get_stats", None)
        return get_stats() if callable(get_stats) else {}
