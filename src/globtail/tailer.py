"""
Follow a single file like `tail -F`, driven by an asyncio event loop.

Every state transition happens in a callback scheduled on the loop that
constructed the tailer, so a tailer never needs a lock: at most one read is
pending at any time and receive_data() is called in file order.

Example
    class Printer(FileTailer):
        def receive_data(self, data):
            sys.stdout.buffer.write(data)

    async def main():
        Printer("/var/log/messages")
        await asyncio.Event().wait()
"""
from __future__ import annotations
from typing import BinaryIO, Callable, Optional, Union
import asyncio
import errno
import logging
import os
import stat

from .metadata import FileMetadataSnapshot, read_link, stat_snapshot
from .sources.watch import Subscription, WatchEvent, Watcher, default_watcher

logger = logging.getLogger(__name__)

# Start position meaning "only data appended from now on".
END = -1

# Maximum size to read at a time from a single file.
CHUNK_SIZE = 65536

# Backoff applied only when reads fail; active tailing always reads with no delay.
MIN_BACKOFF = 0.1
MAX_BACKOFF = 2.0


class FileTailer:
    """
    Tail one file, delivering raw byte chunks to receive_data().

    * path: file to follow. Must exist and must not be a directory.
    * start_position: byte offset to start reading at, or END to only
      follow data written after construction.
    * watcher: change-notification backend; the shared watchdog watcher
      when omitted.

    Rotation (rename + recreate), truncation, symlink retargeting and the file
    going missing for a while are all survived without losing the bytes
    still unread in the old file.

    Must be constructed while an asyncio loop is running.
    """

    CHUNK_SIZE = CHUNK_SIZE

    def __init__(
        self,
        path: Union[str, os.PathLike],
        start_position: int = END,
        *,
        watcher: Optional[Watcher] = None,
        symlink_check_interval: float = 1.0,
        missing_file_check_interval: float = 1.0,
    ) -> None:
        self._path = os.fspath(path)
        if start_position != END and start_position < 0:
            raise ValueError(f"start_position must be >= 0 or END, got {start_position}")

        st = os.stat(self._path)
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), self._path)

        self._loop = asyncio.get_running_loop()
        self._watcher = watcher if watcher is not None else default_watcher()
        self.symlink_check_interval = symlink_check_interval
        self.missing_file_check_interval = missing_file_check_interval

        self._file: Optional[BinaryIO] = None
        self._snapshot: Optional[FileMetadataSnapshot] = None
        self._position = 0
        self._backoff = 0.0
        self._subscription: Optional[Subscription] = None
        self._read_handle: Optional[asyncio.Handle] = None
        self._missing_handle: Optional[asyncio.TimerHandle] = None
        self._symlink_handle: Optional[asyncio.TimerHandle] = None
        self._reopen_on_eof = False
        self._closed = False

        logger.debug("Tailing %s starting at position %s", self._path, start_position)
        self._open()
        self._watch()
        if start_position == END:
            self._position = self._file.seek(0, os.SEEK_END)
        else:
            self._position = self._file.seek(start_position, os.SEEK_SET)
            self._schedule_read()

    @property
    def path(self) -> str:
        return self._path

    @property
    def position(self) -> int:
        """Offset of the next byte to be read from the current file."""
        return self._position

    @property
    def closed(self) -> bool:
        return self._closed

    # -------------------------
    # Consumer hooks
    # -------------------------
    def receive_data(self, data: bytes) -> None:
        """
        Called once per successful read with the raw bytes, in file order.
        Splitting into lines is up to the subclass.
        """
        raise NotImplementedError(
            f"{type(self).__name__}.receive_data is not implemented. "
            "Did you forget to implement this in your subclass?"
        )

    def eof(self) -> None:
        """Called every time a read hits end of file. close() may be called here."""

    def restarted(self) -> None:
        """
        Called when reading starts over at offset 0, after a reopen of a
        rotated or recreated file or after a truncation. Data delivered before
        this call came from the previous contents.
        """

    def close(self) -> None:
        """
        Stop tailing. Nothing is read or reopened after this returns; the file
        and the watch are released on the next loop iteration.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug("Closing tailer for %s", self._path)
        self._loop.call_soon(self._release)

    # -------------------------
    # Internals
    # -------------------------
    def _release(self) -> None:
        for handle in (self._read_handle, self._missing_handle, self._symlink_handle):
            if handle is not None:
                handle.cancel()
        self._read_handle = self._missing_handle = self._symlink_handle = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._close_file()

    def _open(self) -> None:
        f = open(self._path, "rb", buffering=0)
        try:
            snapshot = stat_snapshot(self._path, f)
        except OSError:
            f.close()
            raise
        self._file = f
        self._snapshot = snapshot
        self._position = 0
        self._backoff = 0.0
        self._reopen_on_eof = False
        self._schedule_symlink_check()

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _watch(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        # notifications for a symlink arrive on the file it points to
        target = os.path.realpath(self._path)
        try:
            self._subscription = self._watcher.watch(target, self._notify)
        except OSError as e:
            logger.warning("Unable to watch %s for changes: %s", target, e)

    def _notify(self, event: WatchEvent) -> None:
        if self._closed:
            return
        logger.debug("%s on %s", event.value, self._path)
        if event is WatchEvent.MODIFIED:
            self._schedule_read()
        elif event is WatchEvent.MOVED:
            # drain what is left of the old file first, then reopen
            self._reopen_on_eof = True
            self._schedule_read()
        elif event is WatchEvent.DELETED:
            # drained up to EOF, where the missing path is noticed
            if self._file is None:
                self._wait_for_file()
            else:
                self._schedule_read()
        elif event is WatchEvent.UNSUBSCRIBED:
            # only matters when the backend dropped the live subscription
            if self._subscription is not None and self._subscription.cancelled:
                self._subscription = None
                self._wait_for_file()

    def _schedule_read(self) -> None:
        if self._closed or self._file is None or self._read_handle is not None:
            return
        self._read_handle = self._loop.call_later(self._backoff, self._read)

    def _read(self) -> None:
        self._read_handle = None
        if self._closed or self._file is None:
            return
        try:
            data = self._file.read(self.CHUNK_SIZE)
        except OSError as e:
            self._backoff = min(max(self._backoff * 2, MIN_BACKOFF), MAX_BACKOFF)
            logger.warning("Read from %s failed (%s); retrying in %.1fs", self._path, e, self._backoff)
            self._schedule_read()
            return

        if data:
            self._position += len(data)
            self._backoff = 0.0
            self.receive_data(data)
            self._schedule_read()
            return

        self.eof()
        if not self._closed:
            self._handle_eof()

    def _handle_eof(self) -> None:
        if self._reopen_on_eof:
            logger.info("%s was moved; reopening", self._path)
            self._reopen()
            return

        try:
            snapshot = stat_snapshot(self._path)
        except FileNotFoundError:
            logger.info("%s is missing; waiting for it to come back", self._path)
            self._wait_for_file()
            return
        except OSError as e:
            logger.warning("Unable to stat %s (%s); waiting", self._path, e)
            self._wait_for_file()
            return

        previous = self._snapshot
        if snapshot.changed_from(previous):
            logger.info("%s now refers to a different file; reopening", self._path)
            self._reopen()
            return

        self._snapshot = snapshot
        if snapshot.size < previous.size or snapshot.size < self._position:
            logger.info("File likely truncated... %s", self._path)
            self._position = self._file.seek(0, os.SEEK_SET)
            self.restarted()
            self._schedule_read()

    def _reopen(self) -> None:
        if self._closed:
            return
        self._close_file()
        try:
            self._open()
        except OSError as e:
            logger.debug("Reopen of %s failed: %s", self._path, e)
            self._wait_for_file()
            return
        logger.info("Reopened %s", self._path)
        self.restarted()
        self._watch()
        self._schedule_read()

    def _wait_for_file(self) -> None:
        if self._closed or self._missing_handle is not None:
            return
        self._missing_handle = self._loop.call_later(
            self.missing_file_check_interval, self._check_missing_file
        )

    def _check_missing_file(self) -> None:
        self._missing_handle = None
        if self._closed:
            return
        try:
            snapshot = stat_snapshot(self._path)
        except OSError:
            self._wait_for_file()
            return

        if self._file is None:
            self._reopen()
        elif snapshot.changed_from(self._snapshot):
            # a new file took the name; finish the old one first
            self._reopen_on_eof = True
            self._schedule_read()
        else:
            # still the file we have open
            if self._subscription is None:
                self._watch()
            self._schedule_read()

    def _schedule_symlink_check(self) -> None:
        if self._symlink_handle is not None:
            self._symlink_handle.cancel()
            self._symlink_handle = None
        if self._closed or not self._snapshot.is_symlink:
            return
        self._symlink_handle = self._loop.call_later(self.symlink_check_interval, self._check_symlink)

    def _check_symlink(self) -> None:
        self._symlink_handle = None
        if self._closed:
            return
        previous = self._snapshot
        try:
            identity, target = read_link(self._path)
        except OSError:
            # gone, or no longer a link
            changed = True
        else:
            changed = identity != previous.symlink_identity or target != previous.symlink_target

        if not changed:
            self._schedule_symlink_check()
            return

        logger.info("Symlink %s changed; reopening once the old target is drained", self._path)
        if self._file is None:
            self._wait_for_file()
            return
        self._reopen_on_eof = True
        self._schedule_read()


class CallbackTailer(FileTailer):
    """Tailer that hands every chunk to callback(tailer, data)."""

    def __init__(self, path, callback: Callable[[FileTailer, bytes], None], start_position: int = END, **kwargs) -> None:
        self._callback = callback
        super().__init__(path, start_position, **kwargs)

    def receive_data(self, data: bytes) -> None:
        self._callback(self, data)


TailHandler = Union[type, Callable[[FileTailer, bytes], None]]


def file_tail(path, handler: Optional[TailHandler] = None, start_position: int = END, **kwargs) -> FileTailer:
    """
    Tail `path` with `handler`, which is either a FileTailer subclass or a
    callable taking (tailer, data).
    """
    if handler is None:
        handler = FileTailer
    if isinstance(handler, type):
        if not issubclass(handler, FileTailer):
            raise TypeError(f"{handler.__name__} is not a FileTailer subclass")
        return handler(path, start_position, **kwargs)
    if callable(handler):
        return CallbackTailer(path, handler, start_position, **kwargs)
    raise TypeError(f"handler must be a FileTailer subclass or a callable, got {handler!r}")
