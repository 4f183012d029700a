"""Process-wide registry of in-flight streaming turns, one per chat session."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

_logger = logging.getLogger(__name__)


@dataclass
class StreamingOperation:
    """Cancellation handle of one running turn.

    ``started`` is false while a scheduled turn has not taken its first
    step.  A stop in that window only sets the event, which the turn
    checks first thing.
    """

    session_id: str
    task: asyncio.Task | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.time)
    started: bool = True

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> None:
        """Signal cooperative cancellation and cancel the task.

        The task is left alone when it is the caller itself or has not
        started yet; it will see the event at its next check.
        """
        self.cancel_event.set()
        task = self.task
        if (
            task is not None
            and self.started
            and not task.done()
            and task is not asyncio.current_task()
        ):
            task.cancel()


def uncancel_current_task() -> None:
    """Withdraw the cancellation request a stop sent to the running task."""
    task = asyncio.current_task()
    if task is not None:
        task.uncancel()


class StreamingOperationManager:
    """Maps each chat session to its running :class:`StreamingOperation`.

    Registering a new operation for a session cancels the previous one.
    """

    def __init__(self) -> None:
        self._operations: dict[str, StreamingOperation] = {}

    def register(
        self,
        session_id: str,
        task: asyncio.Task | None = None,
        *,
        started: bool = True,
    ) -> StreamingOperation:
        previous = self._operations.get(session_id)
        if previous is not None and not previous.done:
            _logger.info("Session %s: replacing running stream", session_id)
            previous.cancel()
        operation = StreamingOperation(session_id, task, started=started)
        self._operations[session_id] = operation
        return operation

    def unregister(self, session_id: str, operation: StreamingOperation | None = None) -> None:
        """Forget the session's operation, unless a newer one replaced *operation*."""
        current = self._operations.get(session_id)
        if current is None:
            return
        if operation is None or current is operation:
            del self._operations[session_id]

    def get(self, session_id: str) -> StreamingOperation | None:
        return self._operations.get(session_id)

    def stop_streaming(self, session_id: str) -> bool:
        """Cancel the session's turn.  Returns ``False`` if nothing was running."""
        operation = self._operations.get(session_id)
        if operation is None or operation.done:
            return False
        _logger.info("Session %s: stop requested", session_id)
        operation.cancel()
        return True

    def is_streaming_active(self, session_id: str) -> bool:
        operation = self._operations.get(session_id)
        return operation is not None and not operation.cancelled and not operation.done

    @property
    def active_count(self) -> int:
        return sum(
            1 for op in self._operations.values() if not op.cancelled and not op.done
        )

    def cleanup_finished(self) -> int:
        """Drop operations whose task has ended.  Returns how many were dropped."""
        finished = [sid for sid, op in self._operations.items() if op.done]
        for sid in finished:
            del self._operations[sid]
        return len(finished)

    def cleanup_all(self) -> None:
        """Cancel and forget every operation."""
        for operation in self._operations.values():
            operation.cancel()
        self._operations.clear()
