"""
Tests for the crawl loop: failures, checkpoints, exhaustion and resume.
"""

import threading
from dataclasses import replace

import pytest

from court_harvester.client.gateway import RequestGateway
from court_harvester.credentials import CredentialRotator
from court_harvester.enumeration import EnumerationCrawler, ProgressEvent
from court_harvester.models import Credential
from court_harvester.storage import SnapshotStore

from conftest import FakeSearcher, FakeSession, suggestion

COURTS = {"01RS0001": "AA court", "01RS0002": "AB court"}


@pytest.fixture
def prefix_settings(crawl_settings):
    return replace(crawl_settings, alphabet="AB", result_cap=1, max_depth=2, phases=["prefix"])


class TestHarvest:
    """Tests for complete runs."""

    @pytest.mark.asyncio
    async def test_summary(self, prefix_settings):
        searcher = FakeSearcher(COURTS, cap=1)
        crawler = EnumerationCrawler(searcher, settings=prefix_settings)

        summary = await crawler.harvest()

        assert summary.total_entities == 2
        assert summary.new_entities == 2
        assert summary.completed_phases == ["prefix"]
        assert not summary.exhausted
        assert summary.unverified == {}
        assert summary.counters["requests"] == 4
        assert summary.by_region == {"01": 2}
        assert summary.searcher_stats == {"total_requests": 4}

    @pytest.mark.asyncio
    async def test_failed_query_counts_as_empty(self, prefix_settings):
        searcher = FakeSearcher(COURTS, cap=1, fail=["A"])
        crawler = EnumerationCrawler(searcher, settings=prefix_settings)

        summary = await crawler.harvest()

        assert searcher.calls == ["A", "B"]
        assert summary.counters["failures"] == 1
        assert summary.total_entities == 0
        assert "A" in crawler.state.failed_queries
        assert "A" not in crawler.state.issued_queries

    @pytest.mark.asyncio
    async def test_final_snapshot_written(self, prefix_settings):
        crawler = EnumerationCrawler(FakeSearcher(COURTS, cap=1), settings=prefix_settings)

        summary = await crawler.harvest()

        snapshot = SnapshotStore(prefix_settings.output_dir).load(prefix_settings.output_name)
        assert [e.key for e in snapshot.entities] == ["01RS0001", "01RS0002"]
        assert snapshot.meta["phase"] == "final"
        assert snapshot.meta["total"] == 2
        assert summary.output_path.endswith(prefix_settings.output_name)

    @pytest.mark.asyncio
    async def test_periodic_checkpoint(self, prefix_settings):
        settings = replace(prefix_settings, checkpoint_interval=2)
        saved = []

        class RecordingStore(SnapshotStore):
            def save(self, name, store, progress=None, phase=None):
                saved.append((name, progress["counters"]["requests"]))
                return super().save(name, store, progress=progress, phase=phase)

        crawler = EnumerationCrawler(
            FakeSearcher(COURTS, cap=1),
            settings=settings,
            snapshots=RecordingStore(settings.output_dir),
        )
        await crawler.harvest()

        checkpoints = [requests for name, requests in saved if name == settings.checkpoint_name]
        assert checkpoints[:2] == [2, 4]

    @pytest.mark.asyncio
    async def test_periodic_checkpoint_written_off_loop(self, prefix_settings):
        settings = replace(prefix_settings, checkpoint_interval=1)
        threads = []

        class RecordingStore(SnapshotStore):
            def save(self, name, store, progress=None, phase=None):
                threads.append((name, threading.get_ident()))
                return super().save(name, store, progress=progress, phase=phase)

        crawler = EnumerationCrawler(
            FakeSearcher(COURTS, cap=1),
            settings=settings,
            snapshots=RecordingStore(settings.output_dir),
        )
        await crawler.harvest()

        loop_thread = threading.get_ident()
        periodic = [ident for _, ident in threads[:4]]
        assert all(name == settings.checkpoint_name for name, _ in threads[:4])
        assert loop_thread not in periodic
        assert threads[-1] == (settings.output_name, loop_thread)

    @pytest.mark.asyncio
    async def test_progress_events(self, prefix_settings):
        events = []
        crawler = EnumerationCrawler(
            FakeSearcher(COURTS, cap=1), settings=prefix_settings, listeners=[events.append]
        )

        await crawler.harvest()

        assert len(events) == 4
        assert all(isinstance(e, ProgressEvent) and e.phase == "prefix" for e in events)
        assert events[-1].current == events[-1].total == 4

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_crawl(self, prefix_settings):
        def broken(event):
            raise RuntimeError("listener bug")

        crawler = EnumerationCrawler(
            FakeSearcher(COURTS, cap=1), settings=prefix_settings, listeners=[broken]
        )
        summary = await crawler.harvest()

        assert summary.total_entities == 2

    @pytest.mark.asyncio
    async def test_unknown_phase(self, prefix_settings):
        crawler = EnumerationCrawler(FakeSearcher(COURTS), settings=prefix_settings)

        with pytest.raises(ValueError):
            await crawler.harvest(["prefix", "sideways"])


class TestExhaustion:
    """Tests for running out of credentials mid-crawl."""

    @pytest.mark.asyncio
    async def test_stops_and_reports_unverified(self, prefix_settings):
        settings = replace(prefix_settings, phases=["prefix", "gap", "tail"])
        searcher = FakeSearcher(COURTS, cap=1, budget=2)
        crawler = EnumerationCrawler(searcher, settings=settings)

        summary = await crawler.harvest()

        assert summary.exhausted
        assert searcher.calls == ["A", "B"]
        assert summary.completed_phases == []
        assert summary.unverified == {"prefix": ["AA", "AB"], "gap": [], "tail": []}
        assert summary.total_entities == 1

        snapshot = SnapshotStore(settings.output_dir).load(settings.output_name)
        assert snapshot.meta["phase"] == "prefix"
        assert len(snapshot.entities) == 1

    @pytest.mark.asyncio
    async def test_resume_skips_issued_queries(self, prefix_settings):
        first = EnumerationCrawler(FakeSearcher(COURTS, cap=1, budget=2), settings=prefix_settings)
        await first.harvest()

        snapshot = SnapshotStore(prefix_settings.output_dir).load(prefix_settings.checkpoint_name)
        searcher = FakeSearcher(COURTS, cap=1)
        resumed = EnumerationCrawler.from_snapshot(snapshot, searcher, settings=prefix_settings)
        summary = await resumed.harvest()

        assert searcher.calls == ["AA", "AB"]
        assert summary.total_entities == 2
        assert summary.new_entities == 1
        assert summary.completed_phases == ["prefix"]
        assert summary.counters["requests"] == 4

    @pytest.mark.asyncio
    async def test_completed_phases_skipped_on_resume(self, prefix_settings):
        first = EnumerationCrawler(FakeSearcher(COURTS, cap=1), settings=prefix_settings)
        await first.harvest()

        snapshot = SnapshotStore(prefix_settings.output_dir).load(prefix_settings.output_name)
        searcher = FakeSearcher(COURTS, cap=1)
        resumed = EnumerationCrawler.from_snapshot(snapshot, searcher, settings=prefix_settings)
        summary = await resumed.harvest()

        assert searcher.calls == []
        assert summary.total_entities == 2


def answer_from(courts):
    """Session responder that searches `courts` by name prefix."""

    def respond(body):
        matches = [code for code, name in sorted(courts.items()) if name.startswith(body["query"])]
        return 200, {"suggestions": [suggestion(code, courts[code]) for code in matches[:body["count"]]]}

    return respond


def rotator_over(sessions, gateway_settings, budget=10):
    """Real rotator whose gateways talk to scripted sessions, one per key."""
    credentials = [Credential(name=name, api_key=f"token-{name}", budget=budget) for name in sessions]
    settings = replace(gateway_settings, result_cap=1)

    def factory(credential):
        return RequestGateway(credential, settings=settings, session=sessions[credential.name])

    return CredentialRotator(credentials, gateway_factory=factory)


class TestThroughRotator:
    """Crawls over the real rotator and gateways."""

    @pytest.mark.asyncio
    async def test_quota_errors_counted_across_rotations(self, prefix_settings, gateway_settings):
        sessions = {
            "key1.env": FakeSession([(403, "Forbidden")]),
            "key2.env": FakeSession([(403, "Forbidden")]),
            "key3.env": FakeSession(responder=answer_from(COURTS)),
        }
        rotator = rotator_over(sessions, gateway_settings)
        crawler = EnumerationCrawler(rotator, settings=prefix_settings)

        summary = await crawler.harvest()

        assert summary.total_entities == 2
        assert summary.completed_phases == ["prefix"]
        assert summary.counters["quota_errors"] == 2
        assert summary.counters["requests"] == 4
        assert summary.searcher_stats["quota_errors"] == 2
        assert summary.searcher_stats["current_key"] == "key3.env"

    @pytest.mark.asyncio
    async def test_budget_exhaustion_is_not_a_quota_error(self, prefix_settings, gateway_settings):
        sessions = {"key1.env": FakeSession(responder=answer_from(COURTS))}
        rotator = rotator_over(sessions, gateway_settings, budget=2)

        summary = await EnumerationCrawler(rotator, settings=prefix_settings).harvest()

        assert summary.exhausted
        assert summary.counters["quota_errors"] == 0

    @pytest.mark.asyncio
    async def test_undecodable_response_counts_as_empty(self, prefix_settings, gateway_settings):
        session = FakeSession([(200, b'{"suggestions": [\xff\xfe]}')], responder=answer_from(COURTS))
        rotator = rotator_over({"key1.env": session}, gateway_settings)
        crawler = EnumerationCrawler(rotator, settings=prefix_settings)

        summary = await crawler.harvest()

        assert summary.completed_phases == ["prefix"]
        assert summary.counters["failures"] == 1
        assert "A" in crawler.state.failed_queries
        assert rotator.get_stats()["total_requests"] == summary.counters["requests"]
