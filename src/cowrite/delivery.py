"""Comment delivery - a blocking pull queue over the comment store.

The agent calls ``wait_for_comment`` in a loop: handle one comment, call
again. Each call first drains the backlog (pending comments this consumer
has not seen, or has seen with fewer replies), then blocks on the store's
``new_comment`` and ``comment_reopened`` events until one arrives, the
timeout elapses, or the caller cancels.

Bookkeeping is per consumer: one ``CommentDelivery`` per agent
connection. It maps comment id to the reply count last handed out, so a
comment that stays pending is not redelivered on every call.
"""

import asyncio
import threading
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cowrite.events import StoreEvent
from cowrite.logger import get_logger
from cowrite.models import Comment, CommentStatus
from cowrite.store import CommentStore

DEFAULT_WAIT_TIMEOUT = 30.0


class DeliveryKind(str, Enum):
    """Outcome of one wait call."""

    NEW_COMMENT = "new_comment"
    FOLLOW_UP = "follow_up"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class WaitResult(BaseModel):
    """Result of ``wait_for_comment``.

    ``comment`` is set for new_comment/follow_up. ``follow_up`` carries the
    newest user reply text when the user bounced the comment back.
    ``pending_count`` is set on timeout so the caller can decide whether to
    list pending comments right away.
    """

    kind: DeliveryKind
    comment: Comment | None = None
    follow_up: str | None = None
    pending_count: int = Field(default=0, ge=0)

    @property
    def delivered(self) -> bool:
        return self.comment is not None


class CommentDelivery:
    """Per-consumer delivery state and the wait protocol."""

    def __init__(self, store: CommentStore, default_timeout: float = DEFAULT_WAIT_TIMEOUT) -> None:
        self.store = store
        self.default_timeout = default_timeout
        self._delivered: dict[str, int] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(self, comment: Comment) -> int | None:
        # Returns the previous count so an undelivered result can be rolled back
        previous = self._delivered.get(comment.id)
        self._delivered[comment.id] = len(comment.replies)
        return previous

    def _rollback(self, comment_id: str, previous: int | None) -> None:
        with self._lock:
            if previous is None:
                self._delivered.pop(comment_id, None)
            else:
                self._delivered[comment_id] = previous

    def _follow_up(self, comment: Comment) -> WaitResult:
        latest = comment.latest_user_reply()
        return WaitResult(
            kind=DeliveryKind.FOLLOW_UP,
            comment=comment,
            follow_up=latest.text if latest else None,
        )

    def _take_backlog(self) -> tuple[WaitResult, int | None] | None:
        # Caller holds self._lock
        for comment in self.store.get_all(status=CommentStatus.PENDING):
            seen = self._delivered.get(comment.id)
            if seen is None:
                return WaitResult(kind=DeliveryKind.NEW_COMMENT, comment=comment), self._record(comment)
            if len(comment.replies) > seen:
                return self._follow_up(comment), self._record(comment)
        return None

    def next_backlog(self) -> WaitResult | None:
        """Return the first pending comment not yet delivered in its current form.

        Never blocks. Records the delivery when it returns something.
        """
        with self._lock:
            taken = self._take_backlog()
        return taken[0] if taken else None

    def reset(self) -> None:
        """Forget everything delivered so far."""
        with self._lock:
            self._delivered.clear()

    def was_delivered(self, comment_id: str) -> bool:
        with self._lock:
            return comment_id in self._delivered

    # ------------------------------------------------------------------
    # Wait protocol
    # ------------------------------------------------------------------

    async def wait_for_comment(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> WaitResult:
        """Return the next comment needing attention, blocking if there is none.

        Exactly one outcome is produced per call. The moment one source
        settles the call, the other listeners and the timer are removed.

        Args:
            timeout: Seconds to block (defaults to ``default_timeout``)
            cancel: Optional event; setting it ends the wait with a
                ``cancelled`` result

        Returns:
            WaitResult tagged new_comment, follow_up, timeout or cancelled

        Raises:
            asyncio.CancelledError: If the awaiting task itself is cancelled;
                listeners are removed and any claimed comment is released
                so the next call delivers it again
        """
        if timeout is None:
            timeout = self.default_timeout

        backlog = self.next_backlog()
        if backlog is not None:
            return backlog

        loop = asyncio.get_running_loop()
        woken: asyncio.Future[None] = loop.create_future()
        # Guarded by self._lock: whichever source flips "settled" first owns the outcome
        box: dict[str, Any] = {"settled": False, "result": None, "previous": None}

        unsubscribers: list = []

        def release() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        def wake() -> None:
            if not woken.done():
                woken.set_result(None)

        def claim(result: WaitResult, previous: int | None) -> None:
            box["settled"] = True
            box["result"] = result
            box["previous"] = previous

        def on_new_comment(comment: Comment) -> None:
            with self._lock:
                if box["settled"] or comment.id in self._delivered:
                    return
                claim(WaitResult(kind=DeliveryKind.NEW_COMMENT, comment=comment), self._record(comment))
            release()
            loop.call_soon_threadsafe(wake)

        def on_reopened(comment: Comment) -> None:
            with self._lock:
                if box["settled"]:
                    return
                claim(self._follow_up(comment), self._record(comment))
            release()
            loop.call_soon_threadsafe(wake)

        unsubscribers.append(self.store.on(StoreEvent.NEW_COMMENT, on_new_comment))
        unsubscribers.append(self.store.on(StoreEvent.COMMENT_REOPENED, on_reopened))

        cancel_task: asyncio.Task | None = None
        waiters: set[asyncio.Future] = {woken}
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            # An event may have fired between the backlog check and subscribing
            with self._lock:
                if not box["settled"]:
                    late = self._take_backlog()
                    if late is not None:
                        claim(*late)
                settled = box["settled"]
            if not settled:
                await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            with self._lock:
                box["settled"] = True
                claimed = box["result"]
            release()
            if claimed is not None and claimed.comment is not None:
                self._rollback(claimed.comment.id, box["previous"])
            raise
        finally:
            release()
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        with self._lock:
            if box["settled"] and box["result"] is not None:
                return box["result"]
            box["settled"] = True

        if cancel is not None and cancel.is_set():
            get_logger().debug("Wait cancelled")
            return WaitResult(kind=DeliveryKind.CANCELLED)

        pending = self.store.count(CommentStatus.PENDING)
        get_logger().debug("Wait timed out", timeout=timeout, pending=pending)
        return WaitResult(kind=DeliveryKind.TIMEOUT, pending_count=pending)
