"""
Abstract interfaces for the sync engine.

The scheduler depends on host visibility only through LivenessSource, so
it stays host-agnostic. Thin adapters translate real visibility events
(a browser tab hidden, a kiosk screen turned off) into LivenessSignal
updates.

Example:
    >>> from dashsync.interfaces import LivenessSignal
    >>> signal = LivenessSignal()
    >>> scheduler = TaskScheduler(liveness=signal)

Modules:
    liveness: LivenessSource ABC and the in-process LivenessSignal
"""

from dashsync.interfaces.liveness import LivenessListener, LivenessSignal, LivenessSource

__all__: list[str] = [
    "LivenessListener",
    "LivenessSignal",
    "LivenessSource",
]
