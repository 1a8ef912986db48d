"""Shared fixtures: a fake HTTP session, a controllable clock and wired services."""

from __future__ import annotations

import io
from typing import Dict, List, Tuple

import pytest
import requests
from PIL import Image

from config.settings import AppConfig
from modules.services.image_cache import RemoteImageCache
from modules.services.storage_service import ImageStorageService
from modules.storage.content_directory import ContentDirectory
from modules.storage.ledger import MetadataLedger


class DummyResponse:
    """Streaming response stand-in supporting the context manager protocol."""

    def __init__(self, status_code: int, body: bytes, content_type: str) -> None:
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "DummyResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class DummySession:
    """Serve registered URLs and record every GET."""

    def __init__(self) -> None:
        self.payloads: Dict[str, Tuple[int, bytes, str]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}

    def add(self, url: str, body: bytes, status: int = 200, content_type: str = "image/jpeg") -> None:
        self.payloads[url] = (status, body, content_type)

    def fail(self, url: str, exc: Exception | None = None) -> None:
        self.errors[url] = exc or requests.ConnectionError("connection refused")

    def get(self, url: str, stream: bool = False, timeout: float | None = None) -> DummyResponse:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        status, body, content_type = self.payloads.get(url, (404, b"not found", "text/html"))
        return DummyResponse(status, body, content_type)


class FakeClock:
    """Callable returning a settable epoch time in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def png_bytes(size: Tuple[int, int] = (4, 4), color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def session() -> DummySession:
    return DummySession()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig.for_root(tmp_path / "data", verify_images=False)


@pytest.fixture
def ledger(config) -> MetadataLedger:
    return MetadataLedger(config.ledger_path)


@pytest.fixture
def make_directory(session, clock):
    """Build a ContentDirectory wired to the fake session and clock."""

    def _make(root, verify_images: bool = False) -> ContentDirectory:
        return ContentDirectory(root, session, verify_images=verify_images, clock=clock)

    return _make


@pytest.fixture
def png():
    return png_bytes


@pytest.fixture
def cache(config, ledger, clock, make_directory) -> RemoteImageCache:
    directory = make_directory(config.cache_dir)
    return RemoteImageCache(config, ledger, directory, clock=clock)


@pytest.fixture
def storage(config, ledger, clock, make_directory) -> ImageStorageService:
    directory = make_directory(config.storage_dir)
    return ImageStorageService(config, ledger, directory, clock=clock)


@pytest.fixture
def make_source(tmp_path):
    """Write a local source file of ``size`` bytes and return its path."""
    sources = tmp_path / "sources"
    sources.mkdir()
    counter = {"value": 0}

    def _make(size: int = 16, suffix: str = ".jpg", data: bytes | None = None) -> str:
        counter["value"] += 1
        path = sources / f"source_{counter['value']}{suffix}"
        path.write_bytes(data if data is not None else b"x" * size)
        return str(path)

    return _make
