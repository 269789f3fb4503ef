"""
Structured key probing.

Keys look like "59RS0001": region, court type, ordinal. Once a prefix has
known members, neighbouring ordinals are queried directly:
- gap: unknown ordinals below the known maximum
- tail: ordinals above the maximum until too many consecutive misses
- wide: region+type prefixes of regions with nothing known yet
- verify: re-query keys known at the start of the run
"""

from typing import Callable, List, Optional

from court_harvester.enumeration.events import ProgressReporter
from court_harvester.enumeration.prefix_search import QueryIssuer
from court_harvester.enumeration.state import CrawlState
from court_harvester.logging_config import get_logger
from court_harvester.models import DuplicatePolicy, Entity, KeyLayout

logger = get_logger("enumeration.probe")


class VerifyStatus:
    CONFIRMED = "confirmed"
    UPDATED = "updated"
    MISSING = "missing"


class KeyProber:
    """
    Probe strategies over the structured key space.

    Each probe records the prefixes (or keys) it has not finished in
    `state.pending[phase]`, so an interrupted run reports them and a
    resumed run continues from them.
    """

    def __init__(
        self,
        state: CrawlState,
        issue: QueryIssuer,
        layout: Optional[KeyLayout] = None,
        probe_count: int = 1,
        result_cap: int = 20,
        tail_miss_threshold: int = 20,
        tail_span: int = 200,
        gap_start: int = 1,
        reporter: Optional[ProgressReporter] = None
    ):
        self.state = state
        self.issue = issue
        self.layout = layout or state.store.layout
        self.probe_count = probe_count
        self.result_cap = result_cap
        self.tail_miss_threshold = tail_miss_threshold
        self.tail_span = tail_span
        self.gap_start = gap_start
        self.reporter = reporter or ProgressReporter()

    def _targets(self, phase: str, default: Callable[[], List[str]]) -> List[str]:
        """Work list of a phase, taken over from a previous run if one was left."""
        if phase not in self.state.pending:
            self.state.pending[phase] = default()
        return list(self.state.pending[phase])

    def _done(self, phase: str, item: str):
        remaining = self.state.pending.get(phase)
        if remaining and item in remaining:
            remaining.remove(item)

    # ------------------------------------------------------------------
    # Gap probe
    # ------------------------------------------------------------------

    def gap_ordinals(self, prefix: str) -> List[int]:
        """Unknown ordinals from `gap_start` up to the known maximum."""
        stats = self.state.store.prefix_stats(prefix)
        if stats is None:
            return []
        return [
            n for n in range(self.gap_start, stats.max)
            if not self.state.store.has_ordinal(prefix, n)
        ]

    async def probe_gaps(self) -> int:
        """
        Query every missing ordinal under each prefix's maximum once.

        Returns:
            Number of entities discovered
        """
        phase = "gap"
        prefixes = self._targets(phase, self.state.store.prefixes)
        found = 0
        logger.info(f"Gap probe over {len(prefixes)} prefixes", extra={"phase": phase})

        for index, prefix in enumerate(prefixes, 1):
            missing = self.gap_ordinals(prefix)
            self.reporter.emit(phase, index, len(prefixes), f"{prefix}: {len(missing)} gaps")

            for ordinal in missing:
                key = self.layout.build_from_prefix(prefix, ordinal)
                if key in self.state.store:
                    continue
                outcome = await self.issue(key, self.probe_count, probe=True)
                found += len(outcome.new_keys)

            self._done(phase, prefix)

        logger.info(f"Gap probe done: {found} found", extra={"phase": phase})
        return found

    # ------------------------------------------------------------------
    # Tail probe
    # ------------------------------------------------------------------

    async def probe_tail(self, prefix: str) -> int:
        """
        Walk ordinals above the known maximum of one prefix.

        Only a newly discovered entity counts as a hit. The walk stops after
        `tail_miss_threshold` consecutive misses or at max + `tail_span`,
        so matches past a long run of misses are not found.
        """
        stats = self.state.store.prefix_stats(prefix)
        if stats is None:
            return 0

        ceiling = min(stats.max + self.tail_span, self.layout.max_ordinal())
        ordinal = stats.max + 1
        misses = 0
        found = 0

        while ordinal <= ceiling and misses < self.tail_miss_threshold:
            key = self.layout.build_from_prefix(prefix, ordinal)
            outcome = await self.issue(key, self.probe_count, probe=True)
            if outcome.hit:
                found += len(outcome.new_keys)
                misses = 0
            else:
                misses += 1
            ordinal += 1

        logger.debug(
            f"Tail stopped at {ordinal - 1} ({misses} misses, {found} found)",
            extra={"phase": "tail", "prefix": prefix}
        )
        return found

    async def probe_tails(self) -> int:
        phase = "tail"
        prefixes = self._targets(phase, self.state.store.prefixes)
        found = 0
        logger.info(f"Tail probe over {len(prefixes)} prefixes", extra={"phase": phase})

        for index, prefix in enumerate(prefixes, 1):
            self.reporter.emit(phase, index, len(prefixes), f"{prefix}: tail")
            found += await self.probe_tail(prefix)
            self._done(phase, prefix)

        logger.info(f"Tail probe done: {found} found", extra={"phase": phase})
        return found

    # ------------------------------------------------------------------
    # Wide probe
    # ------------------------------------------------------------------

    async def probe_wide(self, regions: List[str], court_types: List[str]) -> int:
        """
        Query every region+type combination of regions with no known entity.
        Suggestions outside the probed region are ignored.
        """
        phase = "wide"
        known = self.state.store.regions()
        targets = self._targets(phase, lambda: [r for r in regions if r not in known])
        total = len(targets) * len(court_types)
        found = 0
        done = 0
        logger.info(f"Wide probe over {len(targets)} empty regions", extra={"phase": phase})

        for region in targets:
            def in_region(entity: Entity, region=region) -> bool:
                return entity.key.startswith(region)

            for court_type in court_types:
                done += 1
                query = f"{region}{court_type}"
                self.reporter.emit(phase, done, total, f"{query} ({found} found)")
                outcome = await self.issue(query, self.result_cap, accept=in_region)
                found += len(outcome.new_keys)
                if outcome.result is not None and not outcome.skipped and outcome.result.saturated:
                    self.state.saturated_queries.add(query)
                    self.state.counters.hot_queries += 1

            self._done(phase, region)

        logger.info(f"Wide probe done: {found} found", extra={"phase": phase})
        return found

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(self, keys: List[str]) -> int:
        """
        Re-query each key and record whether it still resolves.

        Returns:
            Number of keys no longer returned
        """
        phase = "verify"
        targets = self._targets(phase, lambda: list(keys))
        missing = 0
        logger.info(f"Verifying {len(targets)} keys", extra={"phase": phase})

        for index, key in enumerate(targets, 1):
            self.reporter.emit(phase, index, len(targets), f"verify {key}")
            before = self.state.store.get(key)
            previous = dict(before.attributes) if before else None

            outcome = await self.issue(key, self.probe_count, probe=True, memoize=False)

            if outcome.failed:
                # A transport failure says nothing about the key
                continue

            match = None
            if outcome.result is not None:
                match = next((e for e in outcome.result.entities if e.key == key), None)

            if match is None:
                status = VerifyStatus.MISSING
                missing += 1
            elif (
                previous is not None
                and match.attributes != previous
                and self.state.store.policy is DuplicatePolicy.LAST_SEEN
            ):
                status = VerifyStatus.UPDATED
            else:
                status = VerifyStatus.CONFIRMED

            self.state.verification[key] = status
            if status != VerifyStatus.CONFIRMED:
                logger.info(f"Verify: {status}", extra={"phase": phase, "key": key})
            self._done(phase, key)

        logger.info(f"Verify done: {missing} missing", extra={"phase": phase})
        return missing
