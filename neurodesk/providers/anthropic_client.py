"""
Anthropic client for NeuroDesk.

Streams Messages API responses through ``with_raw_response`` so the
``anthropic-ratelimit-requests-*`` headers come back with the token stream.
System turns are passed as the ``system`` parameter.
"""

import base64
import logging
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple

import anthropic

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

LIMIT_HEADERS = ("anthropic-ratelimit-requests-limit",)
REMAINING_HEADERS = ("anthropic-ratelimit-requests-remaining",)
RESET_HEADERS = ("anthropic-ratelimit-requests-reset",)


def handle_anthropic_error(error: Exception) -> ChatCompletionError:
    """Convert Anthropic SDK errors to the chat completion error kinds."""
    if isinstance(error, ChatCompletionError):
        return error
    if isinstance(error, anthropic.APIStatusError):
        try:
            body = error.response.text
        except Exception:
            body = str(error)
        return HttpError(error.status_code, body)
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return NetworkError(error)
    return InvalidResponseError(f"Unexpected response: {error}")


def split_system(
    messages: List[Mapping[str, str]],
    images: Optional[Sequence[ImageUpload]] = None
) -> Tuple[str, List[dict]]:
    """Separate system turns and convert the rest to Messages API format."""
    system_parts: List[str] = []
    converted: List[dict] = []
    for message in messages:
        if message.get("role") == "system":
            system_parts.append(message.get("content", ""))
        else:
            converted.append({"role": message["role"], "content": message.get("content", "")})

    if images:
        for message in reversed(converted):
            if message["role"] == "user":
                blocks: List[dict] = []
                for image in images:
                    blocks.append({
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": image.mime_type,
                            "data": base64.b64encode(image.data).decode("ascii"),
                        },
                    })
                blocks.append({"type": "text", "text": message["content"]})
                message["content"] = blocks
                break

    return "\n\n".join(p for p in system_parts if p), converted


class AnthropicChatClient(ChatCompletionClient):
    """Client for the Anthropic Messages API."""

    provider_name = "anthropic"

    def __init__(self, api_key: Optional[str] = None, client: Optional[Any] = None):
        """
        Initialize the client.

        Args:
            api_key: API key (defaults to config ``api.api_key``)
            client: Pre-built SDK client, mainly for tests
        """
        config = get_config()
        self.api_key = api_key or config.api.api_key
        self.max_tokens = config.api.max_tokens
        self.timeout = config.api.request_timeout
        self.base_url = config.api.base_url
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise MissingCredentialError("Anthropic")
            kwargs = {"api_key": self.api_key, "timeout": self.timeout}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = anthropic.Anthropic(**kwargs)
        return self._client

    def stream_complete(
        self,
        model: str,
        messages: List[Mapping[str, str]],
        temperature: float = 0.2,
        images: Optional[Sequence[ImageUpload]] = None
    ) -> StreamResponse:
        if self._client is None and not self.api_key:
            raise MissingCredentialError("Anthropic")

        system, converted = split_system(messages, images)
        kwargs = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": converted,
            "temperature": temperature,
            "stream": True,
        }
        if system:
            kwargs["system"] = system

        try:
            raw = self.client.messages.with_raw_response.create(**kwargs)
            rate_limit = rate_limit_from_headers(
                raw.headers, LIMIT_HEADERS, REMAINING_HEADERS, RESET_HEADERS
            )
            stream = raw.parse()
        except anthropic.APIError as e:
            logger.error(f"Anthropic request failed: {e}")
            raise handle_anthropic_error(e)

        return StreamResponse(
            self._tokens(stream),
            rate_limit=rate_limit,
            on_close=getattr(stream, "close", None)
        )

    @staticmethod
    def _tokens(stream: Any) -> Iterator[str]:
        try:
            for event in stream:
                event_type = getattr(event, "type", None)
                if event_type is None:
                    raise InvalidResponseError("Streaming event without a type.")
                if event_type == "content_block_delta":
                    text = getattr(event.delta, "text", None)
                    if text:
                        yield text
                elif event_type == "error":
                    raise InvalidResponseError(str(getattr(event, "error", "stream error")))
        except anthropic.APIError as e:
            raise handle_anthropic_error(e)
