"""Filesystem watchers feeding the comment store.

Two watchdog handlers:

- PersistFileWatcher: watches the shared comments file and reloads the
  store when another process rewrites it. Writes made by the store itself
  are ignored for a short guard window to avoid reload loops.
- SourceFileWatcher: watches commented source files, keeps their last
  known content, and hands (old, new) pairs to the store so anchors follow
  the text.
"""

from collections.abc import Callable
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cowrite.logger import get_logger

if TYPE_CHECKING:
    from cowrite.store import CommentStore

ContentCallback = Callable[[str, str, str], None]


def _event_path(event: FileSystemEvent) -> Path:
    # src_path can be str or bytes
    src = event.src_path if isinstance(event.src_path, str) else event.src_path.decode("utf-8")
    return Path(src).resolve()


def _dest_path(event: FileSystemEvent) -> Path | None:
    dest = getattr(event, "dest_path", None)
    if not dest:
        return None
    return Path(dest if isinstance(dest, str) else dest.decode("utf-8")).resolve()


class PersistFileWatcher(FileSystemEventHandler):
    """Reload a store when its comments file changes on disk."""

    def __init__(self, store: "CommentStore") -> None:
        if store.persist_path is None:
            raise ValueError("Store has no comments file to watch")
        self.store = store
        self.path = store.persist_path.resolve()
        self._observer: Observer | None = None

    def _is_target(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        return _event_path(event) == self.path or _dest_path(event) == self.path

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._is_target(event):
            self._changed()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._is_target(event):
            self._changed()

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers (including ours) rename a temp file over the target
        if not event.is_directory and _dest_path(event) == self.path:
            self._changed()

    def on_deleted(self, event: FileSystemEvent) -> None:
        if self._is_target(event) and self.store.handle_external_delete():
            get_logger().debug("Comments file deleted externally", path=str(self.path))

    def _changed(self) -> None:
        if self.store.handle_external_change():
            get_logger().debug("Comments file changed externally", path=str(self.path))

    def start(self) -> None:
        if self._observer is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(self, str(self.path.parent), recursive=False)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None


class SourceFileWatcher(FileSystemEventHandler):
    """Track content of watched source files and reconcile anchors on change.

    Args:
        store: Store whose comments are re-anchored
        on_change: Optional callback ``(file, old_content, new_content)``
            run after the store has reconciled, e.g. to push the new
            content to a preview
    """

    def __init__(self, store: "CommentStore", on_change: ContentCallback | None = None) -> None:
        self.store = store
        self.on_change = on_change
        self._contents: dict[Path, str] = {}
        self._lock = Lock()
        self._observer: Observer | None = None
        self._scheduled_dirs: set[Path] = set()

    def watch(self, file: str | Path) -> str:
        """Start tracking ``file``.

        Returns:
            The file's current content

        Raises:
            OSError: If the file cannot be read
        """
        path = Path(file).resolve()
        content = path.read_text(encoding="utf-8")
        with self._lock:
            self._contents[path] = content
            if self._observer is not None and path.parent not in self._scheduled_dirs:
                self._observer.schedule(self, str(path.parent), recursive=False)
                self._scheduled_dirs.add(path.parent)
        return content

    def unwatch(self, file: str | Path) -> None:
        with self._lock:
            self._contents.pop(Path(file).resolve(), None)

    def content(self, file: str | Path) -> str | None:
        """Last content seen for ``file``, or None if it is not watched."""
        with self._lock:
            return self._contents.get(Path(file).resolve())

    @property
    def files(self) -> list[Path]:
        with self._lock:
            return sorted(self._contents)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.refresh(_event_path(event))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.refresh(_event_path(event))

    def on_moved(self, event: FileSystemEvent) -> None:
        dest = _dest_path(event)
        if not event.is_directory and dest is not None:
            self.refresh(dest)

    def refresh(self, path: Path) -> bool:
        """Re-read a watched file and reconcile if its content changed.

        Returns:
            True if the content changed and the store was notified
        """
        with self._lock:
            if path not in self._contents:
                return False
            old_content = self._contents[path]

        try:
            new_content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            get_logger().error(f"File watch read error: {e}")
            return False

        if new_content == old_content:
            return False

        with self._lock:
            self._contents[path] = new_content

        self.notify(str(path), old_content, new_content)
        return True

    def notify(self, file: str, old_content: str, new_content: str) -> None:
        """Hand one content change to the store and the optional callback."""
        self.store.adjust_offsets(file, old_content, new_content)
        if self.on_change is not None:
            self.on_change(file, old_content, new_content)

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        with self._lock:
            for directory in {p.parent for p in self._contents}:
                observer.schedule(self, str(directory), recursive=False)
                self._scheduled_dirs.add(directory)
            self._observer = observer
        observer.start()

    def stop(self) -> None:
        with self._lock:
            observer = self._observer
            self._observer = None
            self._scheduled_dirs.clear()
        if observer is not None:
            observer.stop()
            observer.join()
