"""
Provider factory for creating chat completion clients.

Creates the appropriate client based on configuration settings.
"""

import logging
from typing import Optional

from .base import ChatCompletionClient
from .anthropic_client import AnthropicChatClient
from .openai_client import OpenAIChatClient
from ..config import get_config
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def create_client(provider: Optional[str] = None) -> ChatCompletionClient:
    """Create the chat completion client for the configured provider.

    Args:
        provider: Optional provider override (defaults to config value)

    Returns:
        A ChatCompletionClient implementation

    Raises:
        ConfigurationError: If the provider is unknown
    """
    config = get_config()

    if provider is None:
        provider = config.api.provider

    provider = provider.lower()

    logger.info(f"Creating chat client for provider: {provider}")

    if provider == "openai":
        return OpenAIChatClient()

    elif provider == "anthropic":
        return AnthropicChatClient()

    else:
        raise ConfigurationError(
            f"Unknown provider: {provider}. Supported providers: openai, anthropic"
        )
