from __future__ import annotations

from enum import Enum
import json
import logging
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse, urlunparse

import requests

from .errors import UpstreamTransportError


logger = logging.getLogger("relay.llm")


class ReasoningEffort(str, Enum):
    """How much intermediate reasoning the model performs before answering."""

    NONE = "none"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _EFFORT_ORDER.index(self)

    # str already orders lexically, so every comparison is overridden.
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ReasoningEffort):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ReasoningEffort):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ReasoningEffort):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ReasoningEffort):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "ReasoningEffort":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown reasoning effort '{value}'.") from None


_EFFORT_ORDER = list(ReasoningEffort)

DEFAULT_REASONING_EFFORT = ReasoningEffort.MINIMAL


class UpstreamStream:
    """
    An accepted streaming response from the inference backend.

    ``iter_chunks`` blocks on the network; callers in async code run it in a
    worker thread. ``close`` releases the connection and is safe to call more
    than once.
    """

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def iter_chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except requests.RequestException as exc:
            if self._closed:
                return
            raise UpstreamTransportError(f"Upstream stream interrupted: {exc}") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()

    @property
    def closed(self) -> bool:
        return self._closed


class InferenceClient:
    """
    Minimal HTTP client for the streaming chat endpoint of the inference service.
    """

    def __init__(
        self,
        stream_url: str,
        api_key: str = "",
        connect_timeout: float = 10.0,
        health_url: str = "",
    ) -> None:
        self.stream_url = stream_url
        self.api_key = api_key
        self.connect_timeout = connect_timeout
        self.health_url = health_url or _derive_health_url(stream_url)

    @classmethod
    def from_settings(cls, config: Dict[str, Any]) -> "InferenceClient":
        return cls(
            stream_url=config["stream_url"],
            api_key=config.get("api_key", ""),
            connect_timeout=float(config.get("connect_timeout", 10.0)),
            health_url=config.get("health_url", ""),
        )

    def open_stream(self, payload: Dict[str, Any]) -> UpstreamStream:
        headers = {
            "Accept": "text/event-stream",
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            # Generations can run for a long time; only the connect phase is bounded.
            response = requests.post(
                self.stream_url,
                headers=headers,
                data=json.dumps(payload),
                stream=True,
                timeout=(self.connect_timeout, None),
            )
        except requests.RequestException as exc:
            raise UpstreamTransportError(f"Inference backend unreachable: {exc}") from exc
        if response.status_code >= 400:
            try:
                detail = response.text[:500]
            finally:
                response.close()
            raise UpstreamTransportError(
                f"Inference backend returned {response.status_code}: {detail}"
            )
        logger.debug("Upstream stream accepted by %s", self.stream_url)
        return UpstreamStream(response)

    def check_health(self, timeout: float = 3.0) -> bool:
        if not self.health_url:
            return False
        try:
            response = requests.get(self.health_url, timeout=timeout)
        except requests.RequestException:
            return False
        return response.status_code < 400


def _derive_health_url(stream_url: str) -> Optional[str]:
    parsed = urlparse(stream_url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return urlunparse((parsed.scheme, parsed.netloc, "/health", "", "", ""))
