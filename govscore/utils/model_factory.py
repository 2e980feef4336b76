"""Chat model construction for the summarization collaborator.

OpenAI models are the default; Grok models go through the same
OpenAI-compatible client with the XAI endpoint.
"""

import os
from typing import Any, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from govscore.utils.logger import logger


def extract_text_content(content: Any) -> str:
    """
    Normalize LLM message content to a plain text string.

    Some providers return a list of `{"type": "text", "text": ...}` blocks
    instead of a plain string.

    Examples:
        >>> extract_text_content("Hello world")
        'Hello world'
        >>> extract_text_content([{"type": "text", "text": "Hello"}])
        'Hello'
    """
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text_value = part.get("text", "")
                if text_value:
                    return text_value
        return " ".join([
            p.get("text", "") for p in content
            if isinstance(p, dict) and p.get("text")
        ])
    if isinstance(content, str):
        return content
    return str(content) if content is not None else ""


def is_xai_model(model_name: str) -> bool:
    """
    Examples:
        >>> is_xai_model("grok-3-mini")
        True
        >>> is_xai_model("gpt-4o-mini")
        False
    """
    return model_name.lower().startswith("grok")


def create_chat_model(
    model_name: Optional[str] = None,
    temperature: float = 0.2,
    timeout: float = 60,
) -> BaseChatModel:
    """Create a chat model for the given model name.

    Args:
        model_name: e.g. "gpt-4o-mini" or "grok-3-mini". Defaults to SUMMARY_MODEL.
        temperature: Sampling temperature.
        timeout: Per-request timeout in seconds.

    Raises:
        ValueError: If the API key for the model's provider is not set.

    Environment Variables:
        SUMMARY_MODEL: Default model name (default: "gpt-4o-mini")
        OPENAI_API_KEY: Required for OpenAI models
        X_AI_API_KEY: Required for XAI (Grok) models
        XAI_BASE_URL: Base URL for the XAI API (default: "https://api.x.ai/v1")
    """
    if model_name is None:
        model_name = os.getenv("SUMMARY_MODEL", "gpt-4o-mini")

    if is_xai_model(model_name):
        xai_api_key = os.getenv("X_AI_API_KEY")
        if not xai_api_key:
            raise ValueError("X_AI_API_KEY environment variable is required for XAI (Grok) models")
        model = ChatOpenAI(
            model=model_name,
            api_key=xai_api_key,
            base_url=os.getenv("XAI_BASE_URL", "https://api.x.ai/v1"),
            temperature=temperature,
            timeout=timeout,
            max_retries=2,
        )
        provider = "xai"
    else:
        openai_api_key = os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required for OpenAI models")
        model = ChatOpenAI(
            model=model_name,
            temperature=temperature,
            api_key=openai_api_key,
            timeout=timeout,
            max_retries=2,
        )
        provider = "openai"

    logger.info("Created %s chat model %s", provider, model_name)
    return model
