"""Debounced watcher for changes made to a vault outside this process.

The native subscription is an ``inotify_simple.INotify`` read by a daemon
thread. Every raw event goes through ``handle_raw_event``, which classifies
the path and arms a per-path timer; a new event for the same path restarts
the timer, so a burst of writes from one save produces one notification.
"""

import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

import inotify_simple

from kol_noter_store.models.schema import ChangeType, ExternalChangeEvent, ItemType
from kol_noter_store.storage.base import ChangeCallback, ChangeListeners, Unsubscribe
from kol_noter_store.storage.vault_adapter import (
    ASSETS_DIR,
    CONFIG_DIR,
    NOTE_SUFFIX,
    PROJECT_METADATA,
    SYSTEM_METADATA,
    VISUAL_SIDECAR_SUFFIX,
)
from kol_noter_store.utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 300
RECENT_CHANGES_LIMIT = 10
_READ_TIMEOUT_MS = 500

_flags = inotify_simple.flags
_WATCH_MASK = (
    _flags.CREATE | _flags.CLOSE_WRITE | _flags.DELETE | _flags.MOVED_TO | _flags.MOVED_FROM
)

_CHANGE_TYPES = {
    "create": ChangeType.CREATED,
    "modify": ChangeType.UPDATED,
    "remove": ChangeType.DELETED,
}


def _raw_kind(mask: int) -> str:
    if mask & _flags.MOVED_TO:
        return "rename"
    if mask & _flags.CREATE:
        return "create"
    if mask & (_flags.DELETE | _flags.MOVED_FROM):
        return "remove"
    return "modify"


def merge_change(previous: Optional[ChangeType], current: ChangeType) -> ChangeType:
    """Combine two events for one path that land in the same debounce window."""
    if previous == ChangeType.CREATED and current == ChangeType.UPDATED:
        return ChangeType.CREATED
    if previous == ChangeType.DELETED and current != ChangeType.DELETED:
        # Delete-and-recreate, as editors do on atomic saves
        return ChangeType.UPDATED
    return current


def _is_ignored_dir(name: str) -> bool:
    return name.startswith(".") or name == ASSETS_DIR


def classify_path(rel_path: str, kind: str) -> Optional[Tuple[ChangeType, ItemType]]:
    """Classify a vault-relative path by shape alone.

    Returns:
        ``(change type, item type)``, or None for paths the watcher ignores:
        the config directory, assets, hidden files, sidecars and anything
        that is not a note or metadata file.
    """
    parts = rel_path.split("/")
    filename = parts[-1]
    if any(_is_ignored_dir(part) for part in parts[:-1]) or filename.startswith("."):
        return None
    if filename.endswith(VISUAL_SIDECAR_SUFFIX):
        return None

    change_type = _CHANGE_TYPES.get(kind, ChangeType.UPDATED)
    if filename == SYSTEM_METADATA:
        return change_type, ItemType.SYSTEM
    if filename == PROJECT_METADATA:
        return change_type, ItemType.PROJECT
    if filename.endswith(NOTE_SUFFIX) and not filename.startswith("_"):
        return change_type, ItemType.NOTE
    return None


class FileWatcher:
    """Watches one vault root at a time and emits ``ExternalChangeEvent``s."""

    def __init__(self, debounce_ms: int = DEFAULT_DEBOUNCE_MS, clock: Callable[[], int] = now_ms):
        self.debounce_ms = debounce_ms
        self._clock = clock
        self._listeners = ChangeListeners()
        self._delivery_lock = threading.Lock()
        self._timers_lock = threading.Lock()
        self._pending: Dict[str, Tuple[threading.Timer, ChangeType]] = {}
        self._recent: Deque[ExternalChangeEvent] = deque(maxlen=RECENT_CHANGES_LIMIT)
        self._vault_path: Optional[Path] = None
        self._inotify: Optional[inotify_simple.INotify] = None
        self._watches: Dict[int, Path] = {}
        # Note and metadata files known to exist, vault-relative
        self._known: Set[str] = set()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, vault_path: Path) -> bool:
        """Watch ``vault_path`` recursively, replacing any previous watch.

        Returns:
            False when the native subscription cannot be created.
        """
        self.stop()
        root = Path(vault_path).resolve()
        self._vault_path = root
        self._stop.clear()
        try:
            self._inotify = inotify_simple.INotify()
            self._add_tree(root)
        except OSError as e:
            logger.error(f"Failed to start file watcher for {root}: {e}")
            self._close_inotify()
            self._vault_path = None
            return False

        self._thread = threading.Thread(
            target=self._read_loop, name="kol-noter-watcher", daemon=True
        )
        self._thread.start()
        logger.info(f"File watcher started for {root} ({len(self._watches)} directories)")
        return True

    def stop(self) -> None:
        """Stop watching and cancel every pending timer."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2)
        self._close_inotify()

        with self._timers_lock:
            for timer, _ in self._pending.values():
                timer.cancel()
            self._pending.clear()

        if self._vault_path is not None:
            logger.info(f"File watcher stopped for {self._vault_path}")
        self._vault_path = None

    def _close_inotify(self) -> None:
        if self._inotify is not None:
            try:
                self._inotify.close()
            except OSError as e:
                logger.debug(f"Closing inotify handle failed: {e}")
        self._inotify = None
        self._watches.clear()
        self._known.clear()

    @property
    def is_watching(self) -> bool:
        return self._inotify is not None and self._thread is not None

    @property
    def vault_path(self) -> Optional[Path]:
        return self._vault_path

    @property
    def pending_count(self) -> int:
        with self._timers_lock:
            return len(self._pending)

    @property
    def recent_changes(self) -> List[ExternalChangeEvent]:
        """The last emitted events, newest first."""
        return list(reversed(self._recent))

    def on_file_change(self, callback: ChangeCallback) -> Unsubscribe:
        return self._listeners.subscribe(callback)

    # ------------------------------------------------------------------
    # Native subscription
    # ------------------------------------------------------------------

    def _add_tree(self, directory: Path) -> None:
        self._add_watch(directory)
        for current, dirnames, filenames in os.walk(directory):
            dirnames[:] = [d for d in dirnames if not _is_ignored_dir(d)]
            for name in dirnames:
                self._add_watch(Path(current) / name)
            for name in filenames:
                self._remember(Path(current) / name)

    def _remember(self, abs_path: Path) -> None:
        rel_path = self._relative(abs_path)
        if rel_path is not None and classify_path(rel_path, "modify") is not None:
            self._known.add(rel_path)

    def _add_watch(self, directory: Path) -> None:
        wd = self._inotify.add_watch(str(directory), _WATCH_MASK)
        self._watches[wd] = directory

    def _read_loop(self) -> None:
        inotify = self._inotify
        while not self._stop.is_set() and inotify is not None:
            try:
                events = inotify.read(timeout=_READ_TIMEOUT_MS)
            except (OSError, ValueError):
                # Handle closed by stop()
                break
            for event in events:
                self._dispatch_native(event)

    def _dispatch_native(self, event) -> None:
        directory = self._watches.get(event.wd)
        if directory is None or not event.name:
            return
        path = directory / event.name
        if event.mask & _flags.ISDIR:
            if event.mask & (_flags.CREATE | _flags.MOVED_TO) and not _is_ignored_dir(event.name):
                try:
                    self._add_tree(path)
                except OSError as e:
                    logger.warning(f"Cannot watch new directory {path}: {e}")
            return
        self.handle_raw_event(path, _raw_kind(event.mask))

    # ------------------------------------------------------------------
    # Classification and debounce
    # ------------------------------------------------------------------

    def handle_raw_event(self, abs_path: Path, kind: str) -> None:
        """Classify one raw filesystem event and (re)arm its debounce timer.

        Args:
            abs_path: Absolute path of the changed file
            kind: ``"create"``, ``"modify"``, ``"remove"`` or ``"rename"``.
                A rename onto a file that already existed is an atomic save
                and counts as a modification.
        """
        rel_path = self._relative(abs_path)
        if rel_path is None:
            return
        if kind == "rename":
            kind = "modify" if rel_path in self._known else "create"
        classified = classify_path(rel_path, kind)
        if classified is None:
            return
        change_type, item_type = classified

        with self._timers_lock:
            if change_type == ChangeType.DELETED:
                self._known.discard(rel_path)
            else:
                self._known.add(rel_path)
            previous = self._pending.pop(rel_path, None)
            if previous is not None:
                previous[0].cancel()
                change_type = merge_change(previous[1], change_type)
            timer = threading.Timer(
                self.debounce_ms / 1000.0, self._fire, args=(rel_path, change_type, item_type)
            )
            timer.daemon = True
            self._pending[rel_path] = (timer, change_type)
            timer.start()

    def _relative(self, abs_path: Path) -> Optional[str]:
        if self._vault_path is None:
            return None
        try:
            return Path(abs_path).resolve().relative_to(self._vault_path).as_posix()
        except ValueError:
            return None

    def _fire(self, rel_path: str, change_type: ChangeType, item_type: ItemType) -> None:
        with self._timers_lock:
            pending = self._pending.get(rel_path)
            if pending is None or pending[0] is not threading.current_thread():
                # Superseded by a newer event for this path, or stopped
                return
            del self._pending[rel_path]

        event = ExternalChangeEvent(
            type=change_type, path=rel_path, item_type=item_type, timestamp=self._clock()
        )
        logger.debug(f"External change: {event.kind} {rel_path}")
        # One callback at a time across all paths
        with self._delivery_lock:
            self._recent.append(event)
            self._listeners.emit(event)
