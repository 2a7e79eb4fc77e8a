from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from services.backend.portfolio_client import PortfolioBackend
from services.market_data.historical_service import MarketDataProvider

logger = logging.getLogger("agent.tools")

InputKind = Literal["object", "json_string"]
ToolInput = Union[str, Dict[str, Any], None]


@dataclass(frozen=True)
class ToolContext:
    user_id: str
    backend: PortfolioBackend
    market_data: MarketDataProvider
    user_currency: str = "USD"


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


def default_invalid_args(exc: ValidationError) -> str:
    return f"Error: Invalid arguments. {describe_validation_error(exc)}."


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    run: Callable[[BaseModel, ToolContext], Awaitable[str]]
    failure: str
    input_kind: InputKind = "object"
    invalid_args: Callable[[ValidationError], str] = default_invalid_args

    def openai_schema(self) -> Dict[str, Any]:
        """Function-calling schema for `bind_tools`."""
        params = self.input_model.model_json_schema(by_alias=True)
        params.pop("title", None)
        params.setdefault("properties", {})
        params.setdefault("type", "object")
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": params,
            },
        }


@dataclass(frozen=True)
class BoundTool:
    """A tool bound to one user's context. `invoke` never raises."""

    spec: ToolSpec
    ctx: ToolContext

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def description(self) -> str:
        return self.spec.description

    @property
    def input_kind(self) -> InputKind:
        return self.spec.input_kind

    def openai_schema(self) -> Dict[str, Any]:
        return self.spec.openai_schema()

    def _parse(self, payload: ToolInput) -> Dict[str, Any]:
        if payload is None:
            return {}
        if isinstance(payload, str):
            data = json.loads(payload or "{}")
        else:
            data = payload
        if not isinstance(data, dict):
            raise ValueError("arguments must be a JSON object")
        return data

    async def invoke(self, payload: ToolInput) -> str:
        try:
            raw = self._parse(payload)
        except ValueError:
            return "Error: Invalid arguments. Could not parse the tool input as a JSON object."

        try:
            args = self.spec.input_model.model_validate(raw)
        except ValidationError as exc:
            return self.spec.invalid_args(exc)

        try:
            return await self.spec.run(args, self.ctx)
        except Exception as exc:
            logger.warning("tool.failed name=%s err=%s", self.spec.name, type(exc).__name__)
            message = str(exc) or type(exc).__name__
            return f"Error: Could not {self.spec.failure}. {message}"


def fmt_num(value: Any, digits: int = 2) -> str:
    if value is None:
        return "N/A"
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    return f"{number:,.{digits}f}"


def fmt_pct(ratio: Any, digits: int = 2) -> str:
    """`ratio` is a fraction (0.1234 -> 12.34%)."""
    if ratio is None:
        return "N/A"
    try:
        return f"{float(ratio) * 100:.{digits}f}%"
    except (TypeError, ValueError):
        return "N/A"


def first_present(data: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None
