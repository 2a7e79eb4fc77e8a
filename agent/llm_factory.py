from __future__ import annotations

from typing import Any

from langchain_openai import ChatOpenAI

from config.settings import AgentSettings


def build_chat_model(settings: AgentSettings, *, temperature: float, streaming: bool = False) -> ChatOpenAI:
    """OpenAI-compatible chat model (OpenRouter by default). Raises AgentConfigError if unconfigured."""
    settings.require_llm()
    return ChatOpenAI(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url,
        temperature=temperature,
        streaming=streaming,
        max_retries=2,
    )


def content_text(content: Any) -> str:
    """Flatten a message `content` (str or list of parts) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content)
