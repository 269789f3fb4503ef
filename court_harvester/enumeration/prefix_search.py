"""
Prefix expansion search.

Issues every symbol of the alphabet as a query. A query that comes back
saturated (exactly K results) may hide more matches, so it is refined by
appending each symbol again, breadth-first, down to `max_depth`.
"""

from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple

from court_harvester.enumeration.events import ProgressReporter
from court_harvester.enumeration.state import CrawlState, IssueOutcome
from court_harvester.errors import KeysExhausted
from court_harvester.logging_config import get_logger

logger = get_logger("enumeration.prefix")

# (query, count, probe) -> outcome
QueryIssuer = Callable[..., Awaitable[IssueOutcome]]

PHASE = "prefix"


class PrefixExpansion:
    """
    Breadth-first refinement of saturated text prefixes.
    Features:
    - Depth 1 covers the whole alphabet
    - Only saturated prefixes are expanded
    - Memoized queries are not reissued; a resumed run still expands
      prefixes remembered as saturated
    """

    def __init__(
        self,
        state: CrawlState,
        issue: QueryIssuer,
        alphabet: str,
        max_depth: int = 2,
        result_cap: int = 20,
        reporter: Optional[ProgressReporter] = None
    ):
        self.state = state
        self.issue = issue
        self.alphabet = alphabet
        self.max_depth = max_depth
        self.result_cap = result_cap
        self.reporter = reporter or ProgressReporter()

    def _initial_frontier(self) -> Deque[Tuple[str, int]]:
        return deque((symbol, 1) for symbol in self.alphabet)

    async def run(self) -> int:
        """
        Walk the prefix tree.

        Returns:
            Number of prefixes visited
        """
        queue = self._initial_frontier()
        visited = 0
        logger.info(
            f"Prefix search: {len(queue)} symbols, max depth {self.max_depth}",
            extra={"phase": PHASE}
        )

        while queue:
            prefix, depth = queue.popleft()
            visited += 1
            self.reporter.emit(
                PHASE, visited, visited + len(queue),
                f"depth {depth}: '{prefix}' ({len(self.state.store)} known)"
            )

            try:
                outcome = await self.issue(prefix, self.result_cap)
            except KeysExhausted:
                self.state.pending[PHASE] = [prefix] + [p for p, _ in queue]
                raise

            if outcome.skipped:
                saturated = prefix in self.state.saturated_queries
            else:
                saturated = outcome.result is not None and outcome.result.saturated
                if saturated:
                    self.state.saturated_queries.add(prefix)
                    self.state.counters.hot_queries += 1
                    logger.debug(
                        f"Saturated at depth {depth}",
                        extra={"phase": PHASE, "prefix": prefix}
                    )

            if saturated and depth < self.max_depth:
                queue.extend((prefix + symbol, depth + 1) for symbol in self.alphabet)

        self.state.pending.pop(PHASE, None)
        logger.info(
            f"Prefix search done: {visited} prefixes, {len(self.state.store)} entities",
            extra={"phase": PHASE}
        )
        return visited
