"""File system watching for hot-reload.

Low-level notifications come from a ``watchdog`` observer running in its own
thread. They are filtered with the same exclusion rules as the hash
calculator, classified into write/create/delete/rename, and handed to the
event loop as an async stream of FileChangeEvent.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    DirCreatedEvent,
    FileCreatedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .errors import WatchError
from .hashing import default_exclusions, should_exclude
from .models import FileChangeEvent, FileOperation

logger = logging.getLogger(__name__)

_CLOSED = object()

_OPERATIONS = {
    EVENT_TYPE_MODIFIED: FileOperation.WRITE,
    EVENT_TYPE_CREATED: FileOperation.CREATE,
    EVENT_TYPE_DELETED: FileOperation.DELETE,
    EVENT_TYPE_MOVED: FileOperation.RENAME,
}


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog notifications from the observer thread to the loop."""

    def __init__(
        self,
        watcher: "FileWatcher",
        root: Path,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
    ):
        super().__init__()
        self.watcher = watcher
        self.root = root
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._forward(event)
        if event.event_type == EVENT_TYPE_MOVED and event.dest_path:
            # The new name is reported as a create, like a file moved into the tree
            created = DirCreatedEvent if event.is_directory else FileCreatedEvent
            self._forward(created(event.dest_path))

    def _forward(self, event: FileSystemEvent) -> None:
        change = self.watcher.translate(event, self.root)
        if change is None:
            return

        new_directory = change.operation is FileOperation.CREATE and event.is_directory
        try:
            if new_directory:
                self.loop.call_soon_threadsafe(
                    self.watcher.watch_new_directory, Path(os.fsdecode(event.src_path))
                )
            self.loop.call_soon_threadsafe(self.queue.put_nowait, change)
        except RuntimeError:
            # Event loop already closed; the stream has ended
            self.watcher.logger.debug(f"Dropping event after loop shutdown: {change.path}")


class FileWatcher:
    """
    Watches a directory tree for file changes.

    Every non-excluded directory gets its own non-recursive watch, so large
    excluded trees such as node_modules are never registered. Directories
    created while watching are registered as they appear.
    """

    def __init__(
        self,
        exclusions: Optional[Iterable[str]] = None,
        logger: Optional[logging.Logger] = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ):
        """
        Initialize file watcher.

        Args:
            exclusions: Extra patterns to ignore, applied on top of the defaults
            logger: Logger to use (defaults to the module logger)
            observer_factory: Creates the watchdog observer
        """
        self.exclusions = default_exclusions() + list(exclusions or [])
        self.logger = logger or logging.getLogger(__name__)
        self._observer_factory = observer_factory
        self._observer: Optional[BaseObserver] = None
        self._handler: Optional[_ChangeHandler] = None

    def should_exclude(self, rel_path: str) -> bool:
        """Check a path relative to the watched root against all exclusions."""
        return should_exclude(rel_path, self.exclusions)

    def translate(self, event: FileSystemEvent, root: Path) -> Optional[FileChangeEvent]:
        """
        Convert a watchdog notification into a FileChangeEvent.

        Args:
            event: Low-level notification
            root: Watched root directory (absolute)

        Returns:
            FileChangeEvent, or None if the notification is excluded or does
            not map to a semantic operation
        """
        operation = _OPERATIONS.get(event.event_type)
        if operation is None:
            return None
        # Directory "modified" just means its listing changed
        if operation is FileOperation.WRITE and event.is_directory:
            return None

        rel_path = os.path.relpath(os.fsdecode(event.src_path), root).replace(os.sep, "/")
        if rel_path == "." or rel_path.startswith("../"):
            return None
        if self.should_exclude(rel_path):
            return None

        return FileChangeEvent(path=rel_path, operation=operation)

    def watch(self, root: str | Path) -> AsyncIterator[FileChangeEvent]:
        """
        Start watching a directory tree.

        Must be called from a running event loop. The returned stream ends
        when close() is called or the consuming task is cancelled; call
        watch() again for a new stream.

        Args:
            root: Directory to watch

        Returns:
            Async iterator of FileChangeEvent

        Raises:
            WatchError: If the watches cannot be registered
        """
        if self._observer is not None:
            raise WatchError("watcher is already running", suggestion="Call close() first")

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        root_path = Path(root).resolve()

        observer = self._observer_factory()
        handler = _ChangeHandler(self, root_path, loop, queue)
        self._observer = observer
        self._handler = handler

        try:
            count = self._schedule_tree(root_path)
            observer.start()
        except OSError as e:
            self._observer = None
            self._handler = None
            raise WatchError(f"failed to watch {root_path}", cause=e) from e

        self.logger.info(f"Watching {count} directories under {root_path}")
        return self._stream(observer, queue)

    async def _stream(
        self, observer: BaseObserver, queue: asyncio.Queue
    ) -> AsyncIterator[FileChangeEvent]:
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                self.logger.debug(f"File changed: {item.path} ({item.operation.value})")
                yield item
        finally:
            if self._observer is observer:
                self._observer = None
                self._handler = None
            self._stop_observer(observer)
            # The observer thread may take a moment to exit; never block the loop on it
            await asyncio.to_thread(observer.join, 2)

    def watch_new_directory(self, path: Path) -> None:
        """Register watches for a directory created after watch() started."""
        if self._observer is None or self._handler is None or not path.is_dir():
            return
        try:
            self._schedule_tree(path)
        except OSError as e:
            self.logger.warning(f"Failed to watch new directory {path}: {e}")

    def _schedule_tree(self, top: Path) -> int:
        """Schedule a watch on ``top`` and its non-excluded subdirectories."""
        root = self._handler.root
        count = 0

        def _raise(error: OSError) -> None:
            raise error

        for dirpath, dirnames, _ in os.walk(top, onerror=_raise):
            rel_dir = os.path.relpath(dirpath, root).replace(os.sep, "/")
            if self.should_exclude(rel_dir):
                dirnames[:] = []
                continue
            dirnames[:] = [
                d for d in dirnames
                if not self.should_exclude(d if rel_dir == "." else f"{rel_dir}/{d}")
            ]
            self._observer.schedule(self._handler, dirpath, recursive=False)
            self.logger.debug(f"Watching directory {rel_dir}")
            count += 1
        return count

    def _stop_observer(self, observer: BaseObserver) -> None:
        """Signal the observer thread to exit without waiting for it."""
        if observer.is_alive():
            observer.stop()

    def close(self) -> None:
        """Stop watching and end the active stream."""
        observer, handler = self._observer, self._handler
        if observer is None or handler is None:
            return

        self._observer = None
        self._handler = None
        self._stop_observer(observer)

        if not handler.loop.is_closed():
            handler.loop.call_soon_threadsafe(handler.queue.put_nowait, _CLOSED)
        self.logger.info("File watcher closed")
