"""
Runtime settings for the chat agent.

Values come from the environment; a local .env file is loaded first.
LLM credentials are checked only when a model is needed, so the API and the
tests start without them.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_MODEL = "openai/gpt-4o-mini"


class AgentConfigError(RuntimeError):
    """The LLM provider is not configured (missing API key or model)."""


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class AgentSettings:
    api_key: Optional[str] = None
    model: str = DEFAULT_OPENROUTER_MODEL
    base_url: str = DEFAULT_OPENROUTER_BASE_URL
    temperature: float = 0.2
    intent_temperature: float = 0.0
    max_tool_rounds: int = 5
    tool_timeout_s: float = 20.0
    classifier_timeout_s: float = 8.0
    portfolio_api_base_url: str = "http://localhost:3333"
    portfolio_api_token: Optional[str] = None
    auth_jwt_secret: Optional[str] = None
    auth_jwt_audience: Optional[str] = None
    chat_rate_limit: str = "20/minute"
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)

    @classmethod
    def from_env(cls) -> "AgentSettings":
        origins = _env_str("CORS_ORIGINS", "http://localhost:3000") or ""
        return cls(
            api_key=_env_str("OPENROUTER_API_KEY") or _env_str("OPENAI_API_KEY"),
            model=_env_str("OPENROUTER_MODEL", DEFAULT_OPENROUTER_MODEL) or "",
            base_url=_env_str("OPENROUTER_BASE_URL", DEFAULT_OPENROUTER_BASE_URL) or "",
            temperature=_env_float("AGENT_TEMPERATURE", 0.2),
            intent_temperature=_env_float("AGENT_INTENT_TEMPERATURE", 0.0),
            max_tool_rounds=max(1, _env_int("AGENT_MAX_TOOL_ROUNDS", 5)),
            tool_timeout_s=_env_float("AGENT_TOOL_TIMEOUT_SEC", 20.0),
            classifier_timeout_s=_env_float("AGENT_CLASSIFIER_TIMEOUT_SEC", 8.0),
            portfolio_api_base_url=(
                _env_str("PORTFOLIO_API_BASE_URL", "http://localhost:3333") or ""
            ).rstrip("/"),
            portfolio_api_token=_env_str("PORTFOLIO_API_TOKEN"),
            auth_jwt_secret=_env_str("AUTH_JWT_SECRET"),
            auth_jwt_audience=_env_str("AUTH_JWT_AUDIENCE"),
            chat_rate_limit=_env_str("CHAT_RATE_LIMIT", "20/minute") or "20/minute",
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )

    def require_llm(self) -> None:
        if not self.api_key:
            raise AgentConfigError(
                "LLM API key is not configured. Set OPENROUTER_API_KEY in the environment."
            )
        if not self.model:
            raise AgentConfigError(
                "LLM model is not configured. Set OPENROUTER_MODEL in the environment."
            )


_settings: Optional[AgentSettings] = None


def get_settings() -> AgentSettings:
    global _settings
    if _settings is None:
        _settings = AgentSettings.from_env()
    return _settings
