"""
Error taxonomy for the sync engine.

Retryable vs terminal:
    - TransientFetchFailure: one fetch failed; the task backs off and retries.
    - ExhaustedRetriesError: a task hit max_retries and was disabled.
    - ChannelConnectError: the push channel handshake failed; a reconnect is
      scheduled unless the client was disconnected manually or ran out of
      attempts.

Isolated failures (logged, never propagated to other consumers):
    - HandlerFailure: a channel subscriber raised.
    - MalformedMessageError: an inbound frame was not a valid envelope.

The scheduler and the push channel never raise these past their own
boundary for expected failures. They reach callers through hooks,
lifecycle events and ExecutionResult objects.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


class TransientFetchFailure(SyncError):
    """
    A single fetch attempt failed.

    Attributes:
        task_id: Id of the task whose fetch failed.
        attempt: Consecutive failure count including this one.
        cause: The exception raised by the fetcher.
    """

    def __init__(self, task_id: str, attempt: int, cause: BaseException):
        self.task_id = task_id
        self.attempt = attempt
        self.cause = cause
        super().__init__(f"Fetch for task {task_id!r} failed (attempt {attempt}): {cause}")


class ExhaustedRetriesError(SyncError):
    """A task reached max_retries and will not be scheduled again."""

    def __init__(self, task_id: str, max_retries: int):
        self.task_id = task_id
        self.max_retries = max_retries
        super().__init__(
            f"Task {task_id!r} disabled after {max_retries} consecutive failures"
        )


class TaskNotFoundError(SyncError, KeyError):
    """No task with the given id is registered."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownMetricError(SyncError, KeyError):
    """No fetcher is registered for the given metric key."""

    def __init__(self, metric: str):
        self.metric = metric
        super().__init__(f"Unknown metric: {metric}")

    def __str__(self) -> str:
        return self.args[0]


class ChannelConnectError(SyncError, ConnectionError):
    """The push channel handshake failed."""

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        self.url = url
        self.cause = cause
        super().__init__(f"Failed to connect to push channel {url}: {cause}")


class ChannelBusyError(SyncError):
    """connect() was called while a handshake is already in progress."""


class MalformedMessageError(SyncError, ValueError):
    """An inbound frame could not be parsed into a message envelope."""

    def __init__(self, reason: str, raw: str = ""):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Malformed channel message: {reason}")


class HandlerFailure(SyncError):
    """A channel subscriber raised while handling a message."""

    def __init__(self, message_type: str, cause: BaseException):
        self.message_type = message_type
        self.cause = cause
        super().__init__(f"Handler for {message_type!r} failed: {cause}")
