"""
Liveness signal interface.

Background work pauses while the host is not visible (a hidden browser tab,
a minimised dashboard window) and resumes when it becomes visible again.
The scheduler only depends on the abstract LivenessSource; host adapters
translate real visibility events into ``set_visible`` calls.

Example:
    >>> signal = LivenessSignal()
    >>> unsubscribe = signal.subscribe(lambda visible: print(visible))
    >>> signal.set_visible(False)
    False
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict

import structlog

logger = structlog.get_logger(__name__)

LivenessListener = Callable[[bool], None]


class LivenessSource(ABC):
    """
    Abstract source of a boolean "host is visible" signal.

    Implementations call every subscribed listener with the new value on
    each change. Listeners are called synchronously.
    """

    @property
    @abstractmethod
    def is_visible(self) -> bool:
        """Current visibility."""
        pass

    @abstractmethod
    def subscribe(self, listener: LivenessListener) -> Callable[[], None]:
        """
        Register a listener for visibility changes.

        Args:
            listener: Called with the new visibility on every change.

        Returns:
            Callable[[], None]: Removes this listener when called.
        """
        pass


class LivenessSignal(LivenessSource):
    """
    In-process liveness source driven by explicit ``set_visible`` calls.

    Used by the read API (the dashboard front end reports visibility) and by
    tests.
    """

    def __init__(self, visible: bool = True) -> None:
        self._visible = visible
        self._listeners: Dict[int, LivenessListener] = {}
        self._next_token = 0

    @property
    def is_visible(self) -> bool:
        return self._visible

    def subscribe(self, listener: LivenessListener) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def set_visible(self, visible: bool) -> None:
        """
        Update visibility and notify listeners if it changed.

        Listener errors are logged and do not stop other listeners.
        """
        if visible == self._visible:
            return

        self._visible = visible
        logger.info("liveness_changed", visible=visible, listeners=len(self._listeners))

        for listener in list(self._listeners.values()):
            try:
                listener(visible)
            except Exception as e:
                logger.error(
                    "liveness_listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
