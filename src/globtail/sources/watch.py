"""
Change notification for tailed files.

A watcher is asked to `watch(path, callback)` and returns a Subscription.
The callback always runs on the asyncio loop that created the subscription,
with one WatchEvent at a time. Two backends:

  * WatchdogWatcher - inotify/kqueue/FSEvents through watchdog. The observer
    thread never touches tailer state; it hands events to the loop with
    call_soon_threadsafe.
  * PollingWatcher - stats the path on a timer. For filesystems where native
    notification does not work (NFS, some container mounts).
"""
from __future__ import annotations
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Protocol, Tuple
import asyncio
import logging
import os
import threading

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class WatchEvent(str, Enum):
    MODIFIED = "modified"
    MOVED = "moved"
    DELETED = "deleted"
    UNSUBSCRIBED = "unsubscribed"


WatchCallback = Callable[[WatchEvent], None]


class Subscription:
    """One callback bound to one path. Cancelling is final."""

    def __init__(
        self,
        path: str,
        callback: WatchCallback,
        loop: asyncio.AbstractEventLoop,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.path = path
        self.loop = loop
        self.cancelled = False
        self._callback = callback
        self._on_cancel = on_cancel

    def deliver(self, event: WatchEvent) -> None:
        if not self.cancelled:
            self._callback(event)

    def deliver_threadsafe(self, event: WatchEvent) -> None:
        try:
            self.loop.call_soon_threadsafe(self.deliver, event)
        except RuntimeError:
            # loop already closed; nobody is listening any more
            logger.debug("Dropping %s for %s: event loop closed", event.value, self.path)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        self.loop.call_soon(self._callback, WatchEvent.UNSUBSCRIBED)


class Watcher(Protocol):
    def watch(self, path: str, callback: WatchCallback) -> Subscription: ...

    def stop(self) -> None: ...


def _normalize(path) -> str:
    return os.path.normpath(os.path.abspath(os.fsdecode(path)))


# -------------------------
# watchdog backend
# -------------------------
class _DirectoryHandler(FileSystemEventHandler):
    """Fans events for one watched directory out to per-file subscriptions."""

    def __init__(self, directory: str) -> None:
        super().__init__()
        self.directory = directory
        self.identity = _directory_identity(directory)
        self.watch = None
        # cleared from the observer thread once the directory itself is gone
        self.alive = True
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def add(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.setdefault(sub.path, []).append(sub)

    def remove(self, sub: Subscription) -> bool:
        """Remove `sub`; returns True when no subscriptions are left."""
        with self._lock:
            subs = self._subscriptions.get(sub.path, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.path, None)
            return not self._subscriptions

    def usable(self) -> bool:
        """False once the directory was removed or replaced by another one."""
        return self.alive and _directory_identity(self.directory) == self.identity

    def _dispatch_to(self, path: str, event: WatchEvent) -> None:
        with self._lock:
            subs = list(self._subscriptions.get(path, ()))
        for sub in subs:
            sub.deliver_threadsafe(event)

    def _dispatch_all(self, event: WatchEvent) -> None:
        with self._lock:
            subs = [sub for subs in self._subscriptions.values() for sub in subs]
        for sub in subs:
            sub.deliver_threadsafe(event)

    def on_any_event(self, event: FileSystemEvent) -> None:
        src = _normalize(event.src_path)
        if src == self.directory and event.event_type in (EVENT_TYPE_DELETED, EVENT_TYPE_MOVED):
            # the backend drops its watch after this; nothing more will arrive
            logger.debug("Watched directory %s went away", self.directory)
            self.alive = False
            self._dispatch_all(WatchEvent.DELETED)
            return
        if event.is_directory:
            return
        if event.event_type in (EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED):
            self._dispatch_to(src, WatchEvent.MODIFIED)
        elif event.event_type == EVENT_TYPE_DELETED:
            self._dispatch_to(src, WatchEvent.DELETED)
        elif event.event_type == EVENT_TYPE_MOVED:
            self._dispatch_to(src, WatchEvent.MOVED)
            dest = getattr(event, "dest_path", "")
            if dest:
                # something was renamed onto a watched name: new content there
                self._dispatch_to(_normalize(dest), WatchEvent.MODIFIED)


def _directory_identity(directory: str) -> Optional[Tuple[int, int]]:
    try:
        st = os.stat(directory)
    except OSError:
        return None
    return st.st_dev, st.st_ino


class WatchdogWatcher:
    """
    Native change notification through a single watchdog Observer.
    Files are watched through their parent directory (non-recursive); one
    observer watch is shared by every subscription in that directory.

    A directory that is removed (or removed and recreated) is watched afresh
    by the next watch() call for a path inside it.
    """

    def __init__(self, observer: Optional[Observer] = None) -> None:
        self._observer = observer if observer is not None else Observer()
        self._started = False
        self._handlers: Dict[str, _DirectoryHandler] = {}

    def watch(self, path: str, callback: WatchCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        path = _normalize(path)
        directory = os.path.dirname(path)

        handler = self._handlers.get(directory)
        if handler is not None and not handler.usable():
            logger.debug("Directory %s was replaced; dropping its old watch", directory)
            self._drop(handler)
            handler = None
        if handler is None:
            handler = _DirectoryHandler(directory)
            handler.watch = self._observer.schedule(handler, directory, recursive=False)
            self._handlers[directory] = handler
            logger.debug("Watching directory %s", directory)
        if not self._started:
            self._observer.start()
            self._started = True

        sub = Subscription(path, callback, loop, partial(self._unsubscribe, handler))
        handler.add(sub)
        return sub

    def _unsubscribe(self, handler: _DirectoryHandler, sub: Subscription) -> None:
        if handler.remove(sub):
            self._drop(handler)
            logger.debug("Stopped watching directory %s", handler.directory)

    def _drop(self, handler: _DirectoryHandler) -> None:
        if self._handlers.get(handler.directory) is not handler:
            return
        del self._handlers[handler.directory]
        try:
            self._observer.unschedule(handler.watch)
        except (KeyError, OSError):
            # already gone with its directory
            pass

    def stop(self, timeout: float = 5.0) -> None:
        if not self._started:
            return
        self._observer.stop()
        self._observer.join(timeout)
        self._started = False
        self._handlers.clear()
        # observer threads cannot be restarted
        self._observer = Observer()


# -------------------------
# polling backend
# -------------------------
class _PollingSubscription(Subscription):
    def __init__(self, path, callback, loop, on_cancel, interval: float) -> None:
        super().__init__(path, callback, loop, on_cancel)
        self.interval = interval
        self.handle: Optional[asyncio.TimerHandle] = None
        self.last = self._stat()

    def _stat(self) -> Optional[os.stat_result]:
        try:
            return os.stat(self.path)
        except OSError:
            return None

    def arm(self) -> None:
        if not self.cancelled:
            self.handle = self.loop.call_later(self.interval, self.poll)

    def poll(self) -> None:
        self.handle = None
        if self.cancelled:
            return
        previous, current = self.last, self._stat()
        self.last = current

        if previous is not None and current is None:
            self.deliver(WatchEvent.DELETED)
        elif previous is None and current is not None:
            self.deliver(WatchEvent.MODIFIED)
        elif previous is not None and current is not None:
            if (previous.st_dev, previous.st_ino) != (current.st_dev, current.st_ino):
                self.deliver(WatchEvent.MOVED)
            elif (previous.st_size, previous.st_mtime_ns) != (current.st_size, current.st_mtime_ns):
                self.deliver(WatchEvent.MODIFIED)
        self.arm()


class PollingWatcher:
    def __init__(self, interval: float = 1.0) -> None:
        if interval <= 0:
            raise ValueError(f"poll interval must be positive, got {interval}")
        self.interval = interval
        self._subscriptions: List[_PollingSubscription] = []

    def watch(self, path: str, callback: WatchCallback) -> Subscription:
        loop = asyncio.get_running_loop()
        sub = _PollingSubscription(_normalize(path), callback, loop, self._unsubscribe, self.interval)
        self._subscriptions.append(sub)
        sub.arm()
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        if isinstance(sub, _PollingSubscription) and sub.handle is not None:
            sub.handle.cancel()
            sub.handle = None

    def stop(self) -> None:
        for sub in list(self._subscriptions):
            sub.cancel()


_default_watcher: Optional[WatchdogWatcher] = None


def default_watcher() -> WatchdogWatcher:
    """Process-wide watchdog watcher used when a tailer is given none."""
    global _default_watcher
    if _default_watcher is None:
        _default_watcher = WatchdogWatcher()
    return _default_watcher
