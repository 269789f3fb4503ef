"""
Tests for the search strategies: prefix expansion and key probes.
"""

from dataclasses import replace

import pytest

from court_harvester.enumeration import EnumerationCrawler, VerifyStatus
from court_harvester.models import Entity

from conftest import FakeSearcher


def known(crawler, *keys):
    for key in keys:
        crawler.store.add(Entity(key=key, attributes={"code": key, "name": f"Court {key}"}))


def court_range(prefix, ordinals):
    return {f"{prefix}{n:04d}": f"Court {prefix}{n:04d}" for n in ordinals}


class TestPrefixExpansion:
    """Tests for breadth-first refinement of saturated prefixes."""

    @pytest.mark.asyncio
    async def test_expands_only_saturated_prefixes(self, crawl_settings):
        settings = replace(crawl_settings, alphabet="AB", result_cap=1, max_depth=2)
        searcher = FakeSearcher({"01RS0001": "AA court", "01RS0002": "AB court"}, cap=1)
        crawler = EnumerationCrawler(searcher, settings=settings)

        await crawler.prefix_search.run()

        assert searcher.calls == ["A", "B", "AA", "AB"]
        assert crawler.state.issued_queries == {"A", "B", "AA", "AB"}
        assert len(crawler.store) == 2
        assert crawler.state.counters.hot_queries == 3

    @pytest.mark.asyncio
    async def test_unsaturated_prefix_not_expanded(self, crawl_settings):
        settings = replace(crawl_settings, alphabet="AB", result_cap=3, max_depth=3)
        searcher = FakeSearcher({"01RS0001": "AA court", "01RS0002": "AB court"}, cap=3)
        crawler = EnumerationCrawler(searcher, settings=settings)

        await crawler.prefix_search.run()

        assert searcher.calls == ["A", "B"]
        assert crawler.state.saturated_queries == set()

    @pytest.mark.asyncio
    async def test_memoized_queries_not_reissued(self, crawl_settings):
        settings = replace(crawl_settings, alphabet="AB", result_cap=1, max_depth=2)
        searcher = FakeSearcher({"01RS0001": "AA court", "01RS0002": "AB court"}, cap=1)
        crawler = EnumerationCrawler(searcher, settings=settings)

        await crawler.prefix_search.run()
        await crawler.prefix_search.run()

        assert len(searcher.calls) == 4
        assert crawler.state.counters.skipped_queries == 4


class TestGapProbe:
    """Tests for ordinals below the known maximum."""

    @pytest.mark.asyncio
    async def test_queries_only_missing_ordinals(self, crawl_settings):
        searcher = FakeSearcher(court_range("59RS", range(1, 5)))
        crawler = EnumerationCrawler(searcher, settings=crawl_settings)
        known(crawler, "59RS0001", "59RS0002", "59RS0004")

        assert crawler.prober.gap_ordinals("59RS") == [3]
        found = await crawler.prober.probe_gaps()

        assert searcher.calls == ["59RS0003"]
        assert found == 1
        assert crawler.state.counters.probe_queries == 1

    @pytest.mark.asyncio
    async def test_gaps_below_minimum(self, crawl_settings):
        searcher = FakeSearcher(court_range("59RS", [1, 5]))
        crawler = EnumerationCrawler(searcher, settings=crawl_settings)
        known(crawler, "59RS0004", "59RS0005")

        await crawler.prober.probe_gaps()

        assert searcher.calls == ["59RS0001", "59RS0002", "59RS0003"]
        assert "59RS0001" in crawler.store


class TestTailProbe:
    """Tests for ordinals above the known maximum."""

    @pytest.mark.asyncio
    async def test_starts_after_maximum(self, crawl_settings):
        searcher = FakeSearcher(court_range("59RS", range(1, 5)))
        crawler = EnumerationCrawler(searcher, settings=crawl_settings)
        known(crawler, "59RS0001", "59RS0002", "59RS0004")

        await crawler.prober.probe_tails()

        assert searcher.calls[0] == "59RS0005"
        assert searcher.calls[-1] == "59RS0024"
        assert len(searcher.calls) == crawl_settings.tail_miss_threshold

    @pytest.mark.asyncio
    async def test_bounded_recall(self, crawl_settings):
        """A match right after `threshold` misses is not found."""
        entities = court_range("59RS", [1, 2, 3, 4, 25])
        searcher = FakeSearcher(entities)
        crawler = EnumerationCrawler(searcher, settings=crawl_settings)
        known(crawler, "59RS0001", "59RS0002", "59RS0003", "59RS0004")

        await crawler.prober.probe_tails()

        assert "59RS0025" not in searcher.calls
        assert "59RS0025" not in crawler.store

    @pytest.mark.asyncio
    async def test_hit_resets_miss_counter(self, crawl_settings):
        searcher = FakeSearcher(court_range("59RS", [1, 10]))
        crawler = EnumerationCrawler(searcher, settings=crawl_settings)
        known(crawler, "59RS0001")

        await crawler.prober.probe_tails()

        assert "59RS0010" in crawler.store
        assert searcher.calls[-1] == "59RS0030"

    @pytest.mark.asyncio
    async def test_span_ceiling(self, crawl_settings):
        settings = replace(crawl_settings, tail_span=5)
        searcher = FakeSearcher(court_range("59RS", [1]))
        crawler = EnumerationCrawler(searcher, settings=settings)
        known(crawler, "59RS0001")

        await crawler.prober.probe_tails()

        assert searcher.calls == [f"59RS{n:04d}" for n in range(2, 7)]


class TestWideProbe:
    """Tests for regions with nothing known yet."""

    @pytest.mark.asyncio
    async def test_probes_empty_regions_only(self, crawl_settings):
        settings = replace(crawl_settings, regions=["59", "77"], court_types=["RS", "MS"])
        searcher = FakeSearcher({
            "77RS0001": "Court 77RS0001",
            "77MS0001": "Court 77MS0001",
            "01RS0001": "77RS district court",
        })
        crawler = EnumerationCrawler(searcher, settings=settings)
        known(crawler, "59RS0001")

        found = await crawler.prober.probe_wide(settings.regions, settings.court_types)

        assert searcher.calls == ["77RS", "77MS"]
        assert found == 2
        assert "77RS0001" in crawler.store
        assert "01RS0001" not in crawler.store


class TestVerify:
    """Tests for re-checking known keys."""

    @pytest.mark.asyncio
    async def test_statuses(self, crawl_settings):
        settings = replace(crawl_settings, duplicate_policy="last_seen", phases=["verify"])
        searcher = FakeSearcher({"59RS0001": "new name", "59RS0003": "Court 59RS0003"})
        crawler = EnumerationCrawler(searcher, settings=settings)
        crawler.store.add(Entity(key="59RS0001", attributes={"code": "59RS0001", "name": "old name"}))
        known(crawler, "59RS0002", "59RS0003")

        summary = await crawler.harvest()

        assert crawler.state.verification == {
            "59RS0001": VerifyStatus.UPDATED,
            "59RS0002": VerifyStatus.MISSING,
            "59RS0003": VerifyStatus.CONFIRMED,
        }
        assert crawler.store.get("59RS0001").attributes["name"] == "new name"
        assert summary.verification == {"confirmed": 1, "missing": 1, "updated": 1}

    @pytest.mark.asyncio
    async def test_first_seen_keeps_stored_attributes(self, crawl_settings):
        settings = replace(crawl_settings, phases=["verify"])
        searcher = FakeSearcher({"59RS0001": "new name"})
        crawler = EnumerationCrawler(searcher, settings=settings)
        crawler.store.add(Entity(key="59RS0001", attributes={"code": "59RS0001", "name": "old name"}))

        await crawler.harvest()

        assert crawler.state.verification == {"59RS0001": VerifyStatus.CONFIRMED}
        assert crawler.store.get("59RS0001").attributes["name"] == "old name"
