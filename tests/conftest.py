"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
common fixtures and configuration for all test files.
"""
from __future__ import annotations
import asyncio
import pytest
from pathlib import Path

from globtail.sources.watch import Subscription, WatchEvent


class FakeWatcher:
    """
    Watcher whose events are fired by the test instead of the OS.
    Uses the real Subscription so cancel/unsubscribe behave as in production.
    """

    def __init__(self):
        self.subscriptions = []
        self.stopped = False

    def watch(self, path, callback):
        sub = Subscription(str(path), callback, asyncio.get_running_loop(), self.subscriptions.remove)
        self.subscriptions.append(sub)
        return sub

    def fire(self, event: WatchEvent):
        for sub in list(self.subscriptions):
            sub.deliver(event)

    def stop(self):
        self.stopped = True


@pytest.fixture
def watcher():
    """A FakeWatcher instance."""
    return FakeWatcher()


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root):
    """Return path to the example configuration."""
    return project_root / "configs" / "globtail.yaml"
