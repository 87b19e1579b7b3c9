"""Comment store - lifecycle, anchor reconciliation, events, and persistence.

The store is the single owner of comment state. Every mutation runs under
one re-entrant lock, then emits its events synchronously before returning,
then schedules a best-effort write of the whole comment set to the shared
comments file. Callers always receive copies; the only way to change a
comment is through the methods below.

Status transitions:

    add()                  -> pending
    reply(agent) pending   -> answered
    reply(user)  answered  -> pending   (+ comment_reopened)
    resolve()    any       -> resolved
    reopen()     resolved  -> pending   (+ comment_reopened)
"""

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any

from cowrite.anchors import DEFAULT_SEARCH_WINDOW, find_anchor
from cowrite.config import Settings
from cowrite.events import EventBus, StoreEvent
from cowrite.logger import get_logger
from cowrite.models import (
    AuthorRole,
    Comment,
    CommentStatus,
    Proposal,
    ProposalStatus,
    Reply,
    utc_now,
)
from cowrite.storage import atomic_write_text, dump_comments, read_comments

DEFAULT_RELOAD_GUARD_SECONDS = 0.2


class CommentNotFound(LookupError):  # noqa: N818
    """Raised when an operation references an unknown comment id."""

    def __init__(self, comment_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Comment {comment_id} not found")
        self.comment_id = comment_id


class ProposalNotFound(CommentNotFound):  # noqa: N818
    """Raised when a reply id is unknown or the reply carries no proposal."""

    def __init__(self, comment_id: str, reply_id: str) -> None:
        super().__init__(comment_id, f"Reply {reply_id} with a proposal not found on comment {comment_id}")
        self.reply_id = reply_id


class InvalidTarget(ValueError):  # noqa: N818
    """Raised when a proposal operation targets a whole-file comment."""

    pass


class InvalidTransition(ValueError):  # noqa: N818
    """Raised when a status change is not allowed from the current status."""

    pass


StatusFilter = CommentStatus | str | None


class CommentStore:
    """In-memory comment set backed by a shared JSON file.

    Args:
        persist_path: Comments file; None keeps the store memory-only
        search_window: Characters searched on each side of an anchor
        reload_guard_seconds: Window after our own write during which
            change notifications for the comments file are ignored
        bus: Event bus to emit on (a fresh one by default)
    """

    def __init__(
        self,
        persist_path: Path | None = None,
        *,
        search_window: int = DEFAULT_SEARCH_WINDOW,
        reload_guard_seconds: float = DEFAULT_RELOAD_GUARD_SECONDS,
        bus: EventBus | None = None,
    ) -> None:
        self.persist_path = persist_path
        self.search_window = search_window
        self.reload_guard_seconds = reload_guard_seconds
        self.events = bus or EventBus()

        self._comments: dict[str, Comment] = {}
        self._lock = threading.RLock()
        self._last_write_time = float("-inf")
        self._executor: ThreadPoolExecutor | None = None
        self._last_write: Future | None = None
        self._watcher: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommentStore":
        return cls(
            settings.persist_path,
            search_window=settings.search_window,
            reload_guard_seconds=settings.reload_guard_seconds,
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: StoreEvent, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe to a store event. Returns the unsubscribe function."""
        return self.events.subscribe(event, handler)

    def _emit(self, *events: tuple[StoreEvent, Any]) -> None:
        for event, payload in events:
            self.events.emit(event, payload)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add(self, file: str, offset: int, length: int, selected_text: str, comment: str) -> Comment:
        """Create a pending comment.

        A comment with empty ``selected_text`` is a whole-file comment and
        is always stored at offset 0 with length 0.

        Raises:
            pydantic.ValidationError: If offset/length are negative or file is empty
        """
        if not selected_text:
            offset, length = 0, 0

        new = Comment(
            file=file,
            offset=offset,
            length=length,
            selected_text=selected_text,
            comment=comment,
        )
        with self._lock:
            self._comments[new.id] = new
            snapshot = new.model_copy(deep=True)
            self._schedule_persist()

        get_logger().debug("Comment added", id=new.id, file=file, offset=offset)
        self._emit((StoreEvent.CHANGE, snapshot), (StoreEvent.NEW_COMMENT, snapshot))
        return snapshot

    def add_reply(self, comment_id: str, from_: AuthorRole | str, text: str) -> Reply:
        """Append a reply and apply the reply-driven status transitions.

        Raises:
            CommentNotFound: If the comment does not exist
        """
        author = AuthorRole(from_)
        reopened = False
        with self._lock:
            target = self._require(comment_id)
            reply = Reply(from_=author, text=text)
            target.replies.append(reply)

            if author == AuthorRole.AGENT and target.status == CommentStatus.PENDING:
                target.status = CommentStatus.ANSWERED
            elif author == AuthorRole.USER and target.status == CommentStatus.ANSWERED:
                target.status = CommentStatus.PENDING
                reopened = True

            snapshot = target.model_copy(deep=True)
            self._schedule_persist()

        events: list[tuple[StoreEvent, Any]] = [(StoreEvent.CHANGE, snapshot)]
        if reopened:
            events.append((StoreEvent.COMMENT_REOPENED, snapshot))
        self._emit(*events)
        return reply.model_copy(deep=True)

    def add_proposal_reply(self, comment_id: str, new_text: str, explanation: str = "") -> Reply:
        """Attach an agent reply proposing ``new_text`` for the selected text.

        Raises:
            CommentNotFound: If the comment does not exist
            InvalidTarget: If the comment is a whole-file comment
            ValueError: If ``new_text`` is empty
        """
        # Applying empty text would leave an empty selection, i.e. a whole-file comment
        if not new_text:
            raise ValueError("Proposed text must not be empty")

        with self._lock:
            target = self._require(comment_id)
            if target.is_whole_file:
                raise InvalidTarget(
                    f"Comment {comment_id} is a file-level comment; proposals need a text selection"
                )

            reply = Reply(
                from_=AuthorRole.AGENT,
                text=explanation,
                proposal=Proposal(
                    old_text=target.selected_text,
                    new_text=new_text,
                    explanation=explanation,
                ),
            )
            target.replies.append(reply)
            if target.status == CommentStatus.PENDING:
                target.status = CommentStatus.ANSWERED

            snapshot = target.model_copy(deep=True)
            self._schedule_persist()

        self._emit((StoreEvent.CHANGE, snapshot))
        return reply.model_copy(deep=True)

    def update_proposal_status(self, comment_id: str, reply_id: str, status: ProposalStatus | str) -> Comment:
        """Mark a proposal applied or rejected.

        Applying re-anchors the comment to the proposed text right away:
        ``selected_text`` and ``length`` take the new text's value.

        Raises:
            CommentNotFound: If the comment does not exist
            ProposalNotFound: If the reply does not exist or has no proposal
            InvalidTransition: If the proposal was already applied or rejected
            ValueError: If status is not applied/rejected
        """
        new_status = ProposalStatus(status)
        if new_status == ProposalStatus.PENDING:
            raise ValueError("Proposal status can only be set to applied or rejected")

        with self._lock:
            target = self._require(comment_id)
            reply = target.find_reply(reply_id)
            if reply is None or reply.proposal is None:
                raise ProposalNotFound(comment_id, reply_id)
            if reply.proposal.status != ProposalStatus.PENDING:
                raise InvalidTransition(
                    f"Proposal {reply_id} on comment {comment_id} is already {reply.proposal.status.value}"
                )

            reply.proposal.status = new_status
            if new_status == ProposalStatus.APPLIED:
                target.selected_text = reply.proposal.new_text
                target.length = len(reply.proposal.new_text)

            snapshot = target.model_copy(deep=True)
            self._schedule_persist()

        self._emit((StoreEvent.CHANGE, snapshot))
        return snapshot

    def resolve(self, comment_id: str) -> Comment:
        """Resolve a comment from any status.

        Raises:
            CommentNotFound: If the comment does not exist
        """
        with self._lock:
            target = self._require(comment_id)
            target.status = CommentStatus.RESOLVED
            target.resolved_at = utc_now()
            snapshot = target.model_copy(deep=True)
            self._schedule_persist()

        self._emit((StoreEvent.CHANGE, snapshot))
        return snapshot

    def reopen(self, comment_id: str) -> Comment:
        """Move a resolved comment back to pending.

        Raises:
            CommentNotFound: If the comment does not exist
            InvalidTransition: If the comment is not resolved
        """
        with self._lock:
            target = self._require(comment_id)
            if target.status != CommentStatus.RESOLVED:
                raise InvalidTransition(
                    f"Comment {comment_id} is {target.status.value}; only resolved comments can be reopened"
                )
            target.status = CommentStatus.PENDING
            target.resolved_at = None
            snapshot = target.model_copy(deep=True)
            self._schedule_persist()

        self._emit((StoreEvent.CHANGE, snapshot), (StoreEvent.COMMENT_REOPENED, snapshot))
        return snapshot

    def delete(self, comment_id: str) -> bool:
        """Remove a comment permanently.

        Returns:
            True if it existed, False otherwise
        """
        with self._lock:
            removed = self._comments.pop(comment_id, None)
            if removed is None:
                return False
            self._schedule_persist()

        self._emit((StoreEvent.CHANGE, None))
        return True

    def clear(self) -> None:
        """Remove every comment."""
        with self._lock:
            self._comments.clear()
            self._schedule_persist()
        self._emit((StoreEvent.CHANGE, None))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def adjust_offsets(self, file: str, old_content: str, new_content: str) -> None:
        """Re-anchor the comments of ``file`` after its content changed.

        Each range comment's selected text is searched near its last
        offset; a match moves the comment there, no match leaves it
        untouched. Whole-file comments are skipped. One ``change`` event
        is emitted for the whole file.
        """
        with self._lock:
            file_comments = [c for c in self._comments.values() if c.file == file]
            if not file_comments:
                return

            moved = 0
            for comment in file_comments:
                if comment.is_whole_file:
                    continue
                idx = find_anchor(comment, new_content, self.search_window)
                if idx is not None and idx != comment.offset:
                    comment.offset = idx
                    moved += 1

            self._schedule_persist()

        get_logger().debug("Offsets adjusted", file=file, comments=len(file_comments), moved=moved)
        self._emit((StoreEvent.CHANGE, None))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, comment_id: str) -> Comment | None:
        with self._lock:
            found = self._comments.get(comment_id)
            return found.model_copy(deep=True) if found is not None else None

    def get_all(self, file: str | None = None, status: StatusFilter = None) -> list[Comment]:
        """List comments sorted by offset.

        Args:
            file: Only comments anchored to this file
            status: A CommentStatus (or its value); None or "all" for every status
        """
        status_filter = None
        if status is not None and status != "all":
            status_filter = CommentStatus(status)

        with self._lock:
            results = [
                c.model_copy(deep=True)
                for c in self._comments.values()
                if (file is None or c.file == file)
                and (status_filter is None or c.status == status_filter)
            ]
        return sorted(results, key=lambda c: c.offset)

    def get_for_file(self, file: str) -> list[Comment]:
        return self.get_all(file=file)

    def count(self, status: StatusFilter = None) -> int:
        return len(self.get_all(status=status))

    def __len__(self) -> int:
        with self._lock:
            return len(self._comments)

    def _require(self, comment_id: str) -> Comment:
        found = self._comments.get(comment_id)
        if found is None:
            raise CommentNotFound(comment_id)
        return found

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Populate the store from the comments file without emitting events.

        A missing or unreadable file leaves the store empty.
        """
        if self.persist_path is None:
            return
        try:
            loaded = read_comments(self.persist_path)
        except FileNotFoundError:
            return
        except ValueError as e:
            get_logger().warning(f"Ignoring unreadable comments file: {e}")
            return

        with self._lock:
            self._comments = {c.id: c for c in loaded}
        get_logger().debug("Comments loaded", path=str(self.persist_path), count=len(loaded))

    def reload(self) -> None:
        """Replace in-memory state with the comments file.

        Emits ``new_comment`` for every id that was not known before (a
        comment written by another process) and one ``change``. If the file
        is missing or invalid the store is cleared rather than left stale.
        """
        if self.persist_path is None:
            return
        try:
            loaded = read_comments(self.persist_path)
        except FileNotFoundError:
            loaded = None
        except ValueError as e:
            get_logger().error(f"Failed to reload comments: {e}")
            loaded = None

        with self._lock:
            old_ids = set(self._comments)
            self._comments = {c.id: c for c in loaded} if loaded else {}
            appeared = [c.model_copy(deep=True) for c in (loaded or []) if c.id not in old_ids]

        get_logger().debug("Comments reloaded", count=len(loaded or []), new=len(appeared))
        self._emit(*[(StoreEvent.NEW_COMMENT, c) for c in appeared])
        self._emit((StoreEvent.CHANGE, None))

    def written_recently(self) -> bool:
        """True while inside the guard window after our own write."""
        return time.monotonic() - self._last_write_time < self.reload_guard_seconds

    def handle_external_change(self) -> bool:
        """React to the comments file being created or modified.

        Returns:
            True if the store reloaded, False if the change was our own write
        """
        if self.written_recently():
            return False
        self.reload()
        return True

    def handle_external_delete(self) -> bool:
        """React to the comments file being deleted by someone else."""
        if self.written_recently():
            return False
        with self._lock:
            self._comments.clear()
        self._emit((StoreEvent.CHANGE, None))
        return True

    def _schedule_persist(self) -> None:
        # Caller holds the lock, so the snapshot is consistent and writes queue in order
        if self.persist_path is None:
            return
        text = dump_comments(list(self._comments.values()))
        self._last_write_time = time.monotonic()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cowrite-persist")
        self._last_write = self._executor.submit(self._write_snapshot, self.persist_path, text)

    def _write_snapshot(self, path: Path, text: str) -> None:
        try:
            atomic_write_text(text, path)
        except OSError as e:
            get_logger().error(f"Persist error: {e}")
        finally:
            self._last_write_time = time.monotonic()

    def flush(self, timeout: float | None = None) -> None:
        """Block until every scheduled write has finished."""
        with self._lock:
            last = self._last_write
        # Single worker: the newest write finishing means all earlier ones did
        if last is not None:
            wait([last], timeout=timeout)

    # ------------------------------------------------------------------
    # Watching the comments file
    # ------------------------------------------------------------------

    def start_watching(self) -> None:
        """Reload whenever another process rewrites the comments file."""
        if self._watcher is not None or self.persist_path is None:
            return
        from cowrite.watcher import PersistFileWatcher

        self._watcher = PersistFileWatcher(self)
        self._watcher.start()

    def stop_watching(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    def close(self) -> None:
        """Stop watching, flush pending writes and release the writer thread."""
        self.stop_watching()
        self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
