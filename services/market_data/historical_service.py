# services/market_data/historical_service.py
from __future__ import annotations

import asyncio
import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import httpx
import pandas as pd
from yahooquery import Ticker

from .retry import retry_async

logger = logging.getLogger(__name__)

COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3").rstrip("/")
COINGECKO_TIMEOUT_SEC = float(os.getenv("COINGECKO_TIMEOUT_SEC", "10"))
MARKET_RETRY_ATTEMPTS = int(os.getenv("MARKET_RETRY_ATTEMPTS", "3"))
MARKET_RETRY_DELAY_SEC = float(os.getenv("MARKET_RETRY_DELAY_SEC", "1.5"))

DATA_SOURCES = ("YAHOO", "COINGECKO")

# ticker -> CoinGecko coin id
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "LTC": "litecoin",
    "BNB": "binancecoin",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "LINK": "chainlink",
    "USDT": "tether",
    "USDC": "usd-coin",
    "TRX": "tron",
    "SHIB": "shiba-inu",
    "XLM": "stellar",
    "ATOM": "cosmos",
}


class MarketDataProvider(Protocol):
    async def get_historical(self, symbol: str, data_source: str, start: date, end: date) -> Dict[str, float]:
        ...


def _yahoo_history(symbol: str, start: date, end: date) -> Dict[str, float]:
    """Daily closes keyed by YYYY-MM-DD. `end` is inclusive."""
    tq = Ticker(symbol, asynchronous=False, formatted=False, validate=False)
    df = tq.history(start=start.isoformat(), end=(end + timedelta(days=1)).isoformat(), interval="1d")

    if isinstance(df, dict):
        # yahooquery reports per-symbol errors as {symbol: "message"}
        message = df.get(symbol) if isinstance(df.get(symbol), str) else None
        if message:
            raise RuntimeError(message)
        return {}
    if df is None or not isinstance(df, pd.DataFrame) or df.empty:
        return {}

    df = df.reset_index()
    if "index" in df.columns and "date" not in df.columns:
        df = df.rename(columns={"index": "date"})
    if "date" not in df.columns:
        return {}

    price_col = "adjclose" if "adjclose" in df.columns else "close"
    if price_col not in df.columns:
        return {}

    df["date"] = pd.to_datetime(df["date"], utc=True, errors="coerce")
    df = df.dropna(subset=["date", price_col]).sort_values("date")

    out: Dict[str, float] = {}
    for ts, price in zip(df["date"], df[price_col]):
        out[ts.date().isoformat()] = float(price)
    return out


def _epoch(d: date, *, end_of_day: bool = False) -> int:
    t = time(23, 59, 59) if end_of_day else time(0, 0, 0)
    return int(datetime.combine(d, t, tzinfo=timezone.utc).timestamp())


class MarketDataService:
    """Historical daily prices: equities via Yahoo, crypto via CoinGecko."""

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = MARKET_RETRY_ATTEMPTS,
        retry_delay_s: float = MARKET_RETRY_DELAY_SEC,
    ):
        self._client = client
        self.retry_attempts = retry_attempts
        self.retry_delay_s = retry_delay_s

    async def _coingecko_history(self, symbol: str, start: date, end: date) -> Dict[str, float]:
        coin_id = COINGECKO_IDS.get(symbol.upper(), symbol.lower())
        url = f"{COINGECKO_API_URL}/coins/{coin_id}/market_chart/range"
        params = {
            "vs_currency": "usd",
            "from": _epoch(start),
            "to": _epoch(end, end_of_day=True),
        }
        if self._client is not None:
            response = await self._client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(COINGECKO_TIMEOUT_SEC)) as client:
                response = await client.get(url, params=params)
        response.raise_for_status()
        payload: Any = response.json()

        out: Dict[str, float] = {}
        prices = payload.get("prices") if isinstance(payload, dict) else None
        for point in prices or []:
            if not isinstance(point, (list, tuple)) or len(point) < 2:
                continue
            day = datetime.fromtimestamp(float(point[0]) / 1000, tz=timezone.utc).date().isoformat()
            # last sample of the day wins
            out[day] = float(point[1])
        return out

    async def get_historical(self, symbol: str, data_source: str, start: date, end: date) -> Dict[str, float]:
        sym = (symbol or "").strip().upper()
        source = (data_source or "").strip().upper()
        if source == "YAHOO":
            fetch = lambda: asyncio.to_thread(_yahoo_history, sym, start, end)  # noqa: E731
        elif source == "COINGECKO":
            fetch = lambda: self._coingecko_history(sym, start, end)  # noqa: E731
        else:
            raise ValueError(f"unsupported data source {data_source!r}")

        result = await retry_async(
            fetch,
            attempts=self.retry_attempts,
            delay=self.retry_delay_s,
            label=f"{source.lower()}_history",
        )
        logger.info(
            "market_data.historical source=%s symbol=%s points=%s", source, sym, len(result)
        )
        return result
