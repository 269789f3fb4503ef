# Snapshot storage module
from court_harvester.storage.snapshot import Snapshot, SnapshotStore

__all__ = ["Snapshot", "SnapshotStore"]
