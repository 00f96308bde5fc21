"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest


class FakeFetchClient:
    """Fetch client double that fails chosen sources a number of times."""

    name = "fake-client"

    def __init__(self, failures=None, setup_error=None, delay=0.0):
        # source -> remaining failures, negative fails forever
        self.failures = dict(failures or {})
        self.setup_error = setup_error
        self.delay = delay
        self.calls: list[tuple[str, Path, bool]] = []
        self.logins: list[str] = []
        self.setup_calls = 0
        self._lock = threading.Lock()

    def setup(self) -> None:
        self.setup_calls += 1
        if self.setup_error:
            raise RuntimeError(self.setup_error)

    def login(self, token: str) -> bool:
        self.logins.append(token)
        return True

    def download(self, source, destination: Path) -> None:
        key = str(source)
        with self._lock:
            self.calls.append((key, Path(destination), Path(destination).is_dir()))
            remaining = self.failures.get(key, 0)
            if remaining > 0:
                self.failures[key] = remaining - 1
            fail = remaining != 0
        if self.delay:
            time.sleep(self.delay)
        if fail:
            raise RuntimeError(f"simulated failure for {key}")
        filename = getattr(source, "filename", None)
        if filename:
            (Path(destination) / filename).write_text("weights")

    def attempts_for(self, key: str) -> int:
        return sum(1 for call in self.calls if call[0] == key)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def fake_client_factory():
    return FakeFetchClient


@pytest.fixture()
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture()
def fake_clock():
    ticks = iter(range(0, 10_000))

    def _clock() -> float:
        return float(next(ticks))

    return _clock
