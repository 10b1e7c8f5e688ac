"""
Watch a glob pattern for files appearing and disappearing, and optionally
tail every file it finds.

Files are tracked by (device, inode), not by name: a hardlink or a rename
that still matches the pattern is the same file and is reported once.
"""
from __future__ import annotations
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Union
import asyncio
import glob
import logging
import os
import re

from .metadata import FileIdentity
from .tailer import END, FileTailer, TailHandler, file_tail

logger = logging.getLogger(__name__)

TailerFactory = Callable[[str, int], FileTailer]


class ExcludeRuleSet:
    """Ordered regex rules; a path is excluded by the first rule that matches it."""

    def __init__(self, rules: Iterable[Union[str, Pattern[str]]] = ()) -> None:
        self.rules: List[Pattern[str]] = [re.compile(r) if isinstance(r, str) else r for r in rules]

    def match(self, path: str) -> Optional[Pattern[str]]:
        for rule in self.rules:
            if rule.search(path) is not None:
                return rule
        return None

    def __len__(self) -> int:
        return len(self.rules)


class GlobScanner:
    """
    Periodically expand `pattern` and report changes.

    Subclasses implement file_found(path) and optionally file_deleted(path).
    Scanning starts on construction: once on the next loop iteration, then
    every `interval` seconds until stop().
    """

    def __init__(self, pattern: str, interval: float = 60.0) -> None:
        self.pattern = pattern
        self.interval = interval
        self._files: Dict[FileIdentity, str] = {}
        self._loop = asyncio.get_running_loop()
        self._handle: Optional[asyncio.Handle] = None
        self._running = False
        self.start()

    @property
    def tracked(self) -> Dict[FileIdentity, str]:
        return dict(self._files)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._handle = self._loop.call_soon(self._tick)

    def stop(self) -> None:
        """Cancel future scans. Anything already started from a scan keeps running."""
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def file_found(self, path: str) -> None:
        raise NotImplementedError(
            f"{type(self).__name__}.file_found is not implemented. "
            "Did you forget to implement this in your subclass?"
        )

    def file_deleted(self, path: str) -> None:
        pass

    def _tick(self) -> None:
        self._handle = None
        try:
            self.scan()
        except Exception:
            logger.exception("Scan of %s failed", self.pattern)
        if self._running:
            self._handle = self._loop.call_later(self.interval, self._tick)

    def scan(self) -> None:
        """Run one scan now, notifying file_found / file_deleted."""
        logger.debug("Searching for files in %s", self.pattern)
        seen: Dict[FileIdentity, str] = {}
        found: List[str] = []

        for path in sorted(glob.glob(self.pattern, recursive=True)):
            try:
                st = os.stat(path)
            except OSError:
                # vanished between listing and stat, or a dangling link
                continue
            identity = FileIdentity.from_stat(st)
            if identity in seen:
                continue
            seen[identity] = path
            if identity not in self._files:
                found.append(path)
            self._files[identity] = path

        missing = [(identity, path) for identity, path in self._files.items() if identity not in seen]
        for identity, _ in missing:
            del self._files[identity]

        for path in found:
            logger.debug("Found %s", path)
            self.file_found(path)
        for _, path in missing:
            logger.debug("Lost %s", path)
            self.file_deleted(path)


class GlobTailCoordinator(GlobScanner):
    """
    Tail every file matching `pattern`.

    * tailer_factory(path, start_position) builds the tailer for a new file;
      a FileTailer subclass can be passed directly.
    * exclude: regexes (or an ExcludeRuleSet) for paths never to tail.

    Files that disappear are left to their tailers, which notice on their own.
    A path that already has a live tailer is not tailed twice: a file
    rotated into its place is picked up by that tailer.
    """

    def __init__(
        self,
        pattern: str,
        tailer_factory: TailerFactory,
        interval: float = 60.0,
        exclude: Union[ExcludeRuleSet, Iterable[Union[str, Pattern[str]]]] = (),
        start_position: int = END,
    ) -> None:
        self.tailer_factory = tailer_factory
        self.exclude = exclude if isinstance(exclude, ExcludeRuleSet) else ExcludeRuleSet(exclude)
        self.start_position = start_position
        self.tailers: List[FileTailer] = []
        super().__init__(pattern, interval)

    def file_found(self, path: str) -> None:
        logger.info("%s: Trying %s", type(self).__name__, path)
        if self.exclude.match(path) is not None:
            self.file_excluded(path)
            return
        self.tailers = [t for t in self.tailers if not t.closed]
        if any(t.path == path for t in self.tailers):
            logger.debug("%s: %s is already being tailed", type(self).__name__, path)
            return
        try:
            tailer = self.tailer_factory(path, self.start_position)
        except (PermissionError, IsADirectoryError, FileNotFoundError) as e:
            self.file_error(path, e)
            return
        logger.info("%s: Watching %s", type(self).__name__, path)
        self.tailers.append(tailer)

    def file_excluded(self, path: str) -> None:
        logger.info("%s: Skipping path %s due to exclude rule", type(self).__name__, path)

    def file_error(self, path: str, error: OSError) -> None:
        logger.warning("%s while trying to tail %s: %s", type(error).__name__, path, error)

    def file_deleted(self, path: str) -> None:
        pass

    def close(self) -> None:
        """Stop scanning and close every tailer started so far."""
        self.stop()
        for tailer in self.tailers:
            tailer.close()


def glob_tail(
    pattern: str,
    handler: Optional[TailHandler] = None,
    interval: float = 60.0,
    exclude: Iterable[Union[str, Pattern[str]]] = (),
    start_position: int = END,
    **tailer_kwargs,
) -> GlobTailCoordinator:
    """Tail every file matching `pattern` with `handler` (see file_tail)."""

    def factory(path: str, position: int) -> FileTailer:
        return file_tail(path, handler, position, **tailer_kwargs)

    return GlobTailCoordinator(pattern, factory, interval, exclude, start_position)
