"""
Snapshot synchronisation.

The SyncCoordinator wires scheduler task outcomes and push channel events
into one shared metric snapshot.

Example:
    >>> from dashsync.sync import SyncCoordinator
"""

from dashsync.sync.coordinator import SnapshotListener, SyncCoordinator

__all__: list[str] = [
    "SnapshotListener",
    "SyncCoordinator",
]
