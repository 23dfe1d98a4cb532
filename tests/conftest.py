import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


class FakeUpstream:
    """Scripted upstream: yields the given chunks, then optionally raises or blocks."""

    def __init__(
        self,
        chunks: Iterable[bytes],
        error: Optional[BaseException] = None,
        block_after: bool = False,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.block_after = block_after
        self.pulled = 0
        self.close_calls = 0
        self.released = threading.Event()

    def iter_chunks(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk
        if self.block_after:
            self.released.wait(timeout=5)
            return
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.close_calls += 1
        self.released.set()


class FakeClient:
    def __init__(self, upstream: Optional[FakeUpstream] = None, error: Optional[Exception] = None) -> None:
        self.upstream = upstream
        self.error = error
        self.payloads: List[Dict[str, Any]] = []
        self.healthy = True

    def open_stream(self, payload: Dict[str, Any]) -> FakeUpstream:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        assert self.upstream is not None
        return self.upstream

    def check_health(self) -> bool:
        return self.healthy


@pytest.fixture
def make_upstream():
    return FakeUpstream


@pytest.fixture
def make_client():
    return FakeClient


def frame(delta: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': delta}]})}\n\n".encode("utf-8")


@pytest.fixture
def make_frame():
    return frame
