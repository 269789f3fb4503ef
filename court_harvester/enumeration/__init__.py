# Enumeration module
from court_harvester.enumeration.crawler import EnumerationCrawler, HarvestSummary
from court_harvester.enumeration.events import LoggingProgressListener, ProgressEvent, ProgressReporter
from court_harvester.enumeration.key_probe import KeyProber, VerifyStatus
from court_harvester.enumeration.prefix_search import PrefixExpansion
from court_harvester.enumeration.state import CrawlCounters, CrawlState, EntityStore, PrefixStats

__all__ = [
    "EnumerationCrawler",
    "HarvestSummary",
    "LoggingProgressListener",
    "ProgressEvent",
    "ProgressReporter",
    "KeyProber",
    "VerifyStatus",
    "PrefixExpansion",
    "CrawlCounters",
    "CrawlState",
    "EntityStore",
    "PrefixStats",
]
