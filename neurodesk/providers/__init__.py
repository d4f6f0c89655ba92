"""
Chat completion providers for NeuroDesk.

This package provides the abstract ``ChatCompletionClient`` capability and
its OpenAI and Anthropic implementations.
"""

from .base import ChatCompletionClient, ImageUpload, RateLimitInfo, StreamResponse
from .factory import create_client
from .openai_client import OpenAIChatClient
from .anthropic_client import AnthropicChatClient

__all__ = [
    "ChatCompletionClient",
    "ImageUpload",
    "RateLimitInfo",
    "StreamResponse",
    "create_client",
    "OpenAIChatClient",
    "AnthropicChatClient",
]
