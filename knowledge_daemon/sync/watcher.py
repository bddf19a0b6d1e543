"""
Graph-file watcher.

Uses watchdog to notice when another tool rewrites the external graph file
and imports the change into the store.  Writes made by the sync engine
itself are recognised by content digest and ignored.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import SyncInProgressError
from .engine import GraphSyncEngine

logger = logging.getLogger(__name__)


class GraphFileHandler:
    """
    Event handler that imports the graph file when it changes.

    Parameters
    ----------
    engine:
        Sync engine used to run the import.
    debounce_seconds:
        Minimum delay between two imports (editors and tools often write
        a file several times in a row).
    """

    def __init__(self, engine: GraphSyncEngine, debounce_seconds: float = 1.0) -> None:
        self._engine = engine
        self._target = os.path.abspath(engine.graph_path)
        self._debounce = debounce_seconds
        self._last_event = 0.0
        self._lock = threading.Lock()
        self.imports = 0

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._handle_change(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle_change(event.src_path)

    def on_moved(self, event) -> None:
        # atomic writers (including ours) replace the file by rename
        if not event.is_directory:
            self._handle_change(event.dest_path)

    def _is_target(self, path: str) -> bool:
        return os.path.abspath(path) == self._target

    def _is_debounced(self) -> bool:
        now = time.time()
        with self._lock:
            if now - self._last_event < self._debounce:
                return True
            self._last_event = now
        return False

    def _handle_change(self, path: str) -> None:
        if not self._is_target(path):
            return
        if self._engine.is_running or self._engine.is_own_write(self._target):
            return
        if self._is_debounced():
            return

        logger.info("[Graph watcher] External change to %s, importing", self._target)
        try:
            result = self._engine.import_graph()
        except SyncInProgressError:
            logger.info("[Graph watcher] Import skipped: sync in progress")
            return
        except Exception:
            logger.exception("[Graph watcher] Import of %s crashed", self._target)
            return
        if result.success:
            self.imports += 1


class _WatchdogAdapter(FileSystemEventHandler):
    def __init__(self, handler: GraphFileHandler) -> None:
        self._h = handler

    def on_modified(self, event):
        self._h.on_modified(event)

    def on_created(self, event):
        self._h.on_created(event)

    def on_moved(self, event):
        self._h.on_moved(event)


class GraphFileWatcher:
    """
    Watches the directory holding the graph file.

    Usage::

        watcher = GraphFileWatcher(engine)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(self, engine: GraphSyncEngine, debounce_seconds: float = 1.0) -> None:
        self._engine = engine
        self._handler = GraphFileHandler(engine, debounce_seconds)
        self._observer: Optional[Observer] = None

    @property
    def handler(self) -> GraphFileHandler:
        return self._handler

    def start(self) -> None:
        """Start the observer thread (non-blocking)."""
        if self._observer is not None:
            return
        directory = os.path.dirname(os.path.abspath(self._engine.graph_path))
        os.makedirs(directory, exist_ok=True)
        observer = Observer()
        observer.daemon = True
        observer.schedule(_WatchdogAdapter(self._handler), directory, recursive=False)
        observer.start()
        self._observer = observer
        logger.info("[Graph watcher] Watching %s", self._engine.graph_path)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the observer thread."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=timeout)
        self._observer = None
        logger.info("[Graph watcher] Stopped")

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
