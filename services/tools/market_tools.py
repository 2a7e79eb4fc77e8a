from __future__ import annotations

import re
from datetime import date

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from services.market_data.historical_service import DATA_SOURCES
from .base import ToolContext, ToolSpec, describe_validation_error

REQUIRED_HINT = "Required: symbol, dataSource, from, to (YYYY-MM-DD)."
_ISO_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MarketHistoricalInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    symbol: str = Field(description="Ticker, e.g. AAPL or BTC")
    data_source: str = Field(alias="dataSource", description="YAHOO for stocks/ETFs, COINGECKO for crypto")
    from_: str = Field(alias="from", description="Start date, YYYY-MM-DD")
    to: str = Field(description="End date, YYYY-MM-DD")

    @field_validator("symbol", "data_source", "from_", "to")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        value = (v or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value


def invalid_market_args(exc: ValidationError) -> str:
    return f"Error: Invalid arguments. {describe_validation_error(exc)}. {REQUIRED_HINT}"


def _parse_day(value: str):
    if not _ISO_DAY_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


async def run_market_historical(args: MarketHistoricalInput, ctx: ToolContext) -> str:
    start = _parse_day(args.from_)
    end = _parse_day(args.to)
    if start is None or end is None:
        return "Error: Invalid date format. Use YYYY-MM-DD for from and to."
    if start > end:
        return "Error: from date must be before or equal to to date."

    source = args.data_source.upper()
    if source not in DATA_SOURCES:
        return f'Error: Invalid dataSource "{args.data_source}". Use one of: {", ".join(DATA_SOURCES)}.'

    symbol = args.symbol.upper()
    prices = await ctx.market_data.get_historical(symbol, source, start, end)
    if not prices:
        return f"No historical data found for symbol {symbol} and date range {args.from_} to {args.to}."
    return "\n".join(f"{symbol}: {day} -> {prices[day]}" for day in sorted(prices))


MARKET_HISTORICAL = ToolSpec(
    name="market_historical",
    description=(
        "Use when the user asks for the historical price of a symbol on a date or over a date range, e.g. "
        '"What was the price of X on date D?", "Price of AAPL on 2024-01-15". Required: symbol, '
        "dataSource (YAHOO or COINGECKO), from and to (YYYY-MM-DD)."
    ),
    input_model=MarketHistoricalInput,
    run=run_market_historical,
    failure="retrieve market historical data",
    input_kind="json_string",
    invalid_args=invalid_market_args,
)
