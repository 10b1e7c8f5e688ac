from __future__ import annotations
import asyncio
import json
import logging
import re
from dataclasses import replace
from typing import Callable, Dict, List, Optional
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .config import Config, GlobSpec, TailSettings, load_config
from .globwatch import GlobScanner, GlobTailCoordinator
from .sources.watch import PollingWatcher, WatchdogWatcher, Watcher
from .tailer import FileTailer

app = typer.Typer(help="globtail - follow files and glob patterns like tail -F")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log reopen, truncation and discovery events"),
    debug: bool = typer.Option(False, "--debug", help="Log every notification and scan"),
):
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


# -------------------------
# Output
# -------------------------
def _emit_line(path: str, line: str, json_out: bool) -> None:
    if json_out:
        print(json.dumps({"path": path, "line": line}, ensure_ascii=False))
    else:
        console.print(f"[cyan]{escape(path)}[/cyan] {escape(line)}", soft_wrap=True, highlight=False)


def _emit_event(event: str, path: str, json_out: bool) -> None:
    if json_out:
        print(json.dumps({"event": event, "path": path}, ensure_ascii=False))
    else:
        color = "green" if event == "found" else "yellow"
        console.print(f"[{color}]{event}[/{color}] {escape(path)}", soft_wrap=True, highlight=False)


def _describe(e: OSError) -> str:
    if isinstance(e, FileNotFoundError):
        return f"File not found: {e.filename}\nPlease check the file path and try again"
    if isinstance(e, IsADirectoryError):
        return f"Is a directory, not a file: {e.filename}"
    if isinstance(e, PermissionError):
        return f"Permission denied: {e.filename}\nPlease ensure you have read permission for this file"
    return str(e)


class LineReader(FileTailer):
    """
    Splits tailed bytes into lines and prints them.
    With once=True it reads up to the current end of file and then closes itself.
    """

    def __init__(self, path, start_position, *, json_out: bool = False, once: bool = False, **kwargs):
        self._buffer = b""
        self.json_out = json_out
        self.once = once
        super().__init__(path, start_position, **kwargs)
        if once:
            # also covers start at END, where no read would be scheduled
            self._schedule_read()

    def receive_data(self, data: bytes) -> None:
        lines = (self._buffer + data).split(b"\n")
        self._buffer = lines.pop()
        for line in lines:
            self._emit(line)

    def eof(self) -> None:
        if not self.once:
            return
        self._flush()
        self.close()

    def restarted(self) -> None:
        # an unterminated line from the previous contents ends here
        self._flush()

    def _flush(self) -> None:
        if self._buffer:
            self._emit(self._buffer)
            self._buffer = b""

    def _emit(self, raw: bytes) -> None:
        _emit_line(self.path, raw.decode("utf-8", errors="replace"), self.json_out)


class EventPrinter(GlobScanner):
    def __init__(self, pattern: str, interval: float, json_out: bool = False) -> None:
        self.json_out = json_out
        super().__init__(pattern, interval)

    def file_found(self, path: str) -> None:
        _emit_event("found", path, self.json_out)

    def file_deleted(self, path: str) -> None:
        _emit_event("deleted", path, self.json_out)


# -------------------------
# Runners
# -------------------------
def _make_watcher(poll_interval: Optional[float]) -> Watcher:
    if poll_interval:
        return PollingWatcher(poll_interval)
    return WatchdogWatcher()


def _tailer_kwargs(settings: TailSettings, watcher: Watcher) -> Dict:
    return {
        "watcher": watcher,
        "symlink_check_interval": settings.symlink_check_interval,
        "missing_file_check_interval": settings.missing_file_check_interval,
    }


async def _wait(tailers: Callable[[], List[FileTailer]], once: bool) -> None:
    if not once:
        await asyncio.Event().wait()
    while any(not t.closed for t in tailers()):
        await asyncio.sleep(0.05)


async def _tail(paths: List[str], start: int, once: bool, json_out: bool, settings: TailSettings) -> None:
    watcher = _make_watcher(settings.poll_interval)
    kwargs = _tailer_kwargs(settings, watcher)
    tailers: List[FileTailer] = []
    try:
        for path in paths:
            tailers.append(LineReader(path, start, json_out=json_out, once=once, **kwargs))
        await _wait(lambda: tailers, once)
    finally:
        for tailer in tailers:
            tailer.close()
        await asyncio.sleep(0)
        watcher.stop()


async def _glob_tail(specs: List[GlobSpec], start: int, once: bool, json_out: bool, settings: TailSettings) -> None:
    watcher = _make_watcher(settings.poll_interval)
    kwargs = _tailer_kwargs(settings, watcher)
    coordinators: List[GlobTailCoordinator] = []

    def factory(path: str, position: int) -> FileTailer:
        return LineReader(path, position, json_out=json_out, once=once, **kwargs)

    try:
        for spec in specs:
            coordinator = GlobTailCoordinator(spec.pattern, factory, spec.interval, spec.exclude, start)
            if once:
                coordinator.stop()
                coordinator.scan()
            coordinators.append(coordinator)
        await _wait(lambda: [t for c in coordinators for t in c.tailers], once)
    finally:
        for coordinator in coordinators:
            coordinator.close()
        await asyncio.sleep(0)
        watcher.stop()


async def _globwatch(patterns: List[str], interval: float, once: bool, json_out: bool) -> None:
    scanners: List[GlobScanner] = []
    try:
        for pattern in patterns:
            scanner = EventPrinter(pattern, interval, json_out)
            if once:
                scanner.stop()
                scanner.scan()
            scanners.append(scanner)
        if not once:
            await asyncio.Event().wait()
    finally:
        for scanner in scanners:
            scanner.stop()


def _load_or_exit(config: Optional[str]) -> Config:
    if config is None:
        return Config()
    try:
        return load_config(config)
    except FileNotFoundError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}", style="red")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {escape(str(e))}", style="red")
        raise typer.Exit(1)


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (FileNotFoundError, IsADirectoryError, PermissionError) as e:
        console.print(f"[bold red]Error:[/bold red] {escape(_describe(e))}", style="red")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped.[/yellow]")


# -------------------------
# Commands
# -------------------------
@app.command()
def tail(
    paths: List[str] = typer.Argument(..., help="Files to follow"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to globtail YAML config"),
    from_start: bool = typer.Option(False, "--from-start", help="Read files from the beginning (default: follow new data only)"),
    once: bool = typer.Option(False, "--once", help="Stop at end of file instead of following"),
    json_out: bool = typer.Option(False, "--json", help="Output JSON lines ({path, line})"),
    poll: Optional[float] = typer.Option(None, "--poll", min=0.01, help="Poll every N seconds instead of native file notification"),
):
    """
    Follow one or more files, surviving rotation, truncation and deletion.
    """
    cfg = _load_or_exit(config)
    settings = replace(cfg.tail, poll_interval=poll) if poll else cfg.tail
    start = 0 if from_start else settings.start
    _run(_tail(paths, start, once, json_out, settings))


@app.command("glob-tail")
def glob_tail(
    patterns: Optional[List[str]] = typer.Argument(None, help="Glob patterns to tail (quote them so the shell does not expand them)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to globtail YAML config"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", "-x", help="Regex of paths never to tail (repeatable)"),
    interval: Optional[float] = typer.Option(None, "--interval", "-i", min=0.01, help="Seconds between glob scans (default 60)"),
    from_start: bool = typer.Option(False, "--from-start", help="Read found files from the beginning (default: follow new data only)"),
    once: bool = typer.Option(False, "--once", help="Scan once, read every file to its end and exit"),
    json_out: bool = typer.Option(False, "--json", help="Output JSON lines ({path, line})"),
    poll: Optional[float] = typer.Option(None, "--poll", min=0.01, help="Poll every N seconds instead of native file notification"),
):
    """
    Tail every file matching the patterns, picking up new files as they appear.

    Example:
        globtail glob-tail "/var/log/*.log" -x '\\.gz$'
    """
    cfg = _load_or_exit(config)
    try:
        extra = [re.compile(x) for x in exclude or []]
    except re.error as e:
        console.print(f"[bold red]Configuration Error:[/bold red] invalid --exclude regex: {escape(str(e))}", style="red")
        raise typer.Exit(1)

    specs = [GlobSpec(pattern=p) for p in patterns] if patterns else list(cfg.globs)
    if not specs:
        console.print(
            "[bold red]Error:[/bold red] No glob patterns given "
            "(pass them as arguments or under 'globs' in --config)",
            style="red",
        )
        raise typer.Exit(1)
    specs = [replace(s, interval=interval or s.interval, exclude=s.exclude + extra) for s in specs]

    settings = replace(cfg.tail, poll_interval=poll) if poll else cfg.tail
    start = 0 if from_start else settings.start
    _run(_glob_tail(specs, start, once, json_out, settings))


@app.command()
def globwatch(
    patterns: List[str] = typer.Argument(..., help="Glob patterns to watch"),
    interval: float = typer.Option(60.0, "--interval", "-i", min=0.01, help="Seconds between glob scans"),
    once: bool = typer.Option(False, "--once", help="Scan once and exit"),
    json_out: bool = typer.Option(False, "--json", help="Output JSON lines ({event, path})"),
):
    """
    Report files appearing and disappearing under the patterns.
    """
    _run(_globwatch(patterns, interval, once, json_out))
