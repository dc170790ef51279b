"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from kv_chat.store import MemoryKV  # noqa: E402


class SpyKV(MemoryKV):
    """MemoryKV that records every get/put it receives."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        super().__init__(initial)
        self.gets: List[str] = []
        self.puts: List[str] = []

    async def get(self, key: str) -> Optional[bytes]:
        self.gets.append(key)
        return await super().get(key)

    async def put(self, key: str, value: bytes) -> None:
        self.puts.append(key)
        await super().put(key, value)


class FakeModel:
    """Model capability returning a fixed result and recording its inputs."""

    def __init__(self, result: Any = None, reply: str = "ok") -> None:
        self.result = {"response": reply} if result is None else result
        self.calls: List[List[Dict[str, str]]] = []

    async def run(self, messages):
        self.calls.append(messages)
        return self.result


class FailingModel:
    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc or RuntimeError("model exploded")
        self.calls = 0

    async def run(self, messages):
        self.calls += 1
        raise self.exc


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for transcripts during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in ["KV_CHAT_CONFIG", "CLOUDFLARE_API_TOKEN", "CLOUDFLARE_ACCOUNT_ID"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("KV_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def spy_kv() -> SpyKV:
    return SpyKV()
