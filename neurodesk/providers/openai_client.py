"""
OpenAI client for NeuroDesk using the Chat Completions API.

Streams completions with ``stream=True`` through ``with_raw_response`` so
the ``x-ratelimit-*`` headers are available alongside the token stream.
"""

import base64
import logging
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from openai import OpenAI
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
)

from .base import ChatCompletionClient, ImageUpload, StreamResponse, rate_limit_from_headers
from ..config import get_config
from ..errors import (
    ChatCompletionError,
    HttpError,
    InvalidResponseError,
    MissingCredentialError,
    NetworkError,
)

logger = logging.getLogger(__name__)

LIMIT_HEADERS = ("x-ratelimit-limit", "x-ratelimit-limit-requests")
REMAINING_HEADERS = ("x-ratelimit-remaining", "x-ratelimit-remaining-requests")
RESET_HEADERS = ("x-ratelimit-reset", "x-ratelimit-reset-requests")


def handle_openai_error(error: Exception) -> ChatCompletionError:
    """Convert OpenAI SDK errors to the chat completion error kinds."""
    if isinstance(error, ChatCompletionError):
        return error
    if isinstance(error, APIStatusError):
        body = ""
        try:
            body = error.response.text
        except Exception:
            body = str(error)
        return HttpError(error.status_code, body)
    if isinstance(error, (APIConnectionError, APITimeoutError)):
        return NetworkError(error)
    if isinstance(error, APIError):
        return InvalidResponseError(str(error))
    return InvalidResponseError(f"Unexpected response: {error}")


def attach_images(
    messages: List[Mapping[str, str]],
    images: Optional[Sequence[ImageUpload]]
) -> List[dict]:
    """Turn the last user message into text plus inline image parts."""
    converted: List[dict] = [dict(m) for m in messages]
    if not images:
        return converted
    for message in reversed(converted):
        if message.get("role") == "user":
            parts: List[dict] = [{"type": "text", "text": message.get("content", "")}]
            for image in images:
                encoded = base64.b64encode(image.data).decode("ascii")
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.mime_type};base64,{encoded}"}
                })
            message["content"] = parts
            break
    return converted


class OpenAIChatClient(ChatCompletionClient):
    """Client for the OpenAI Chat Completions API."""

    provider_name = "openai"

    def __init__(self, api_key: Optional[str] = None, client: Optional[Any] = None):
        """
        Initialize the client.

        Args:
            api_key: API key (defaults to config ``api.api_key``)
            client: Pre-built SDK client, mainly for tests
        """
        config = get_config()
        self.api_key = api_key or config.api.api_key
        self.base_url = config.api.base_url
        self.timeout = config.api.request_timeout
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise MissingCredentialError("OpenAI")
            kwargs = {"api_key": self.api_key, "timeout": self.timeout}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def stream_complete(
        self,
        model: str,
        messages: List[Mapping[str, str]],
        temperature: float = 0.2,
        images: Optional[Sequence[ImageUpload]] = None
    ) -> StreamResponse:
        if self._client is None and not self.api_key:
            raise MissingCredentialError("OpenAI")

        try:
            raw = self.client.chat.completions.with_raw_response.create(
                model=model,
                messages=attach_images(messages, images),
                temperature=temperature,
                stream=True
            )
            rate_limit = rate_limit_from_headers(
                raw.headers, LIMIT_HEADERS, REMAINING_HEADERS, RESET_HEADERS
            )
            stream = raw.parse()
        except (APIError, APIConnectionError, APITimeoutError) as e:
            logger.error(f"OpenAI request failed: {e}")
            raise handle_openai_error(e)

        logger.debug(f"OpenAI stream opened, rate limit {rate_limit}")
        return StreamResponse(
            self._tokens(stream),
            rate_limit=rate_limit,
            on_close=getattr(stream, "close", None)
        )

    @staticmethod
    def _tokens(stream: Any) -> Iterator[str]:
        try:
            for chunk in stream:
                choices = getattr(chunk, "choices", None)
                if choices is None:
                    raise InvalidResponseError("Streaming chunk without choices.")
                if not choices:
                    continue
                content = getattr(choices[0].delta, "content", None)
                if content:
                    yield content
        except (APIError, APIConnectionError, APITimeoutError) as e:
            raise handle_openai_error(e)
