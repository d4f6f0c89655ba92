"""
Chat completion capability used by NeuroDesk.

Defines the abstract client every provider implements: given a model id
and a message history, return a token stream plus rate-limit metadata, or
raise one of the ``ChatCompletionError`` kinds.
"""

import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, List, Mapping, Optional, Sequence


@dataclass(frozen=True)
class ImageUpload:
    """An image sent along with the last user turn."""
    filename: str
    data: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class RateLimitInfo:
    """Rate-limit headers of the last response. Any field may be missing."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None

    @property
    def has_data(self) -> bool:
        return self.remaining is not None or self.limit is not None


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_reset(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse a rate-limit reset header.

    Accepts epoch seconds, seconds from now, Go-style durations ("6m0s",
    "250ms") and ISO 8601 timestamps.
    """
    if not value:
        return None
    value = value.strip()
    now = now or datetime.now(timezone.utc)

    try:
        number = float(value)
    except ValueError:
        number = None
    if number is not None:
        # Large values are epoch timestamps, small ones are relative
        if number > 1_000_000_000:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        return now + timedelta(seconds=number)

    parts = _DURATION_PART_RE.findall(value)
    if parts and "".join(n + u for n, u in parts) == value:
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
        return now + timedelta(seconds=seconds)

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def rate_limit_from_headers(
    headers: Mapping[str, str],
    limit_keys: Sequence[str],
    remaining_keys: Sequence[str],
    reset_keys: Sequence[str]
) -> RateLimitInfo:
    """Build RateLimitInfo from the first present header of each group."""
    def first(keys: Sequence[str]) -> Optional[str]:
        for key in keys:
            value = headers.get(key)
            if value is not None:
                return value
        return None

    return RateLimitInfo(
        limit=_parse_int(first(limit_keys)),
        remaining=_parse_int(first(remaining_keys)),
        reset_at=parse_reset(first(reset_keys))
    )


class StreamResponse:
    """
    A token stream and the rate-limit metadata of its response.

    The token iterator can be consumed once. ``close`` stops the
    underlying HTTP stream early.
    """

    def __init__(
        self,
        tokens: Iterable[str],
        rate_limit: Optional[RateLimitInfo] = None,
        on_close: Optional[Callable[[], None]] = None
    ):
        self._tokens = iter(tokens)
        self.rate_limit = rate_limit or RateLimitInfo()
        self._on_close = on_close
        self._consumed = False
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            if self._consumed:
                raise RuntimeError("Token stream can only be consumed once")
            self._consumed = True
        return self._iterate()

    def _iterate(self) -> Iterator[str]:
        try:
            for token in self._tokens:
                if self.closed:
                    return
                if token:
                    yield token
        finally:
            self.close()

    def text(self) -> str:
        """Consume the stream and return the full reply."""
        return "".join(self)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close:
            self._on_close()


class ChatCompletionClient(ABC):
    """Abstract base class for chat completion providers."""

    provider_name = "unknown"

    @abstractmethod
    def stream_complete(
        self,
        model: str,
        messages: List[Mapping[str, str]],
        temperature: float = 0.2,
        images: Optional[Sequence[ImageUpload]] = None
    ) -> StreamResponse:
        """Start a streaming completion.

        Args:
            model: Model id
            messages: Ordered ``{"role", "content"}`` mappings
            temperature: Sampling temperature
            images: Images attached to the last user message

        Returns:
            StreamResponse with the token stream and rate-limit metadata

        Raises:
            MissingCredentialError, InvalidResponseError, HttpError, NetworkError
        """
        ...

    def complete(
        self,
        model: str,
        messages: List[Mapping[str, str]],
        temperature: float = 0.2
    ) -> str:
        """Non-streaming convenience wrapper around ``stream_complete``."""
        return self.stream_complete(model, messages, temperature).text()
