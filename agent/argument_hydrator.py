"""
Best-effort filling of tool arguments the model tends to drop on short
follow-ups ("and on Jan 15?"). Supplied values are never replaced; the tool
still validates whatever comes out of here.
"""
from __future__ import annotations

import re
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .intent_heuristics import NON_TICKER_WORDS
from .state_models import Turn

HYDRATED_TOOLS: FrozenSet[str] = frozenset({"market_historical"})

EQUITY_DATA_SOURCE = "YAHOO"
CRYPTO_DATA_SOURCE = "COINGECKO"

CRYPTO_SYMBOLS = frozenset(
    {
        "BTC", "ETH", "SOL", "XRP", "ADA", "DOGE", "DOT", "LTC", "BNB", "AVAX",
        "MATIC", "LINK", "USDT", "USDC", "TRX", "SHIB", "XLM", "ATOM",
    }
)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAME = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)

_CASHTAG_RE = re.compile(r"\$([A-Za-z]{1,10})\b")
_UPPER_TOKEN_RE = re.compile(r"\b[A-Z]{1,5}(?:[.-][A-Z]{1,2})?\b")
_LOWER_TOKEN_RE = re.compile(r"\b[a-z]{2,5}\b")
_MARKED_LOWER_RE = re.compile(r"\b(?:of|for|symbol|ticker)\s+([a-z]{2,5})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_MONTH_DAY_RE = re.compile(_MONTH_NAME + r"\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b", re.IGNORECASE)
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?" + _MONTH_NAME + r"\b", re.IGNORECASE)

# Lowercase words that are never read as tickers.
COMMON_WORDS = frozenset(
    """
    a about after again ago all also am an and any are as ask at back be been before both but by
    can check close cost could daily data date dates day days did do does down each end etf ever
    every find first for from fund funds get give go good had has have hey hi high how i if in
    info into is it its just last let lets like look low many may me mid more most much my near
    need new next no not now of off ok okay on one only open or our out over past per pls price
    quote range rate rates same see sell buy share show since so some start stock than thank
    thanks that the their them then there these they this those time to today too trade two
    under until up us usd value very vs want was we week weeks were what when where which who
    why will with worth would year years yes you your hello help please tell sure right cash money
    total gain loss chart much well
    jan feb mar apr jun jul aug sep sept oct nov dec june july march april
    mon tue wed thu fri sat sun
    """.split()
)


def _is_supplied(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _lower_ticker(text: str) -> Optional[str]:
    # Lowercase words only count when they name a known coin, follow
    # "of/for/symbol/ticker", or are the whole message ("tsla?").
    tokens = [t for t in _LOWER_TOKEN_RE.findall(text) if t not in COMMON_WORDS]
    for token in tokens:
        if token.upper() in CRYPTO_SYMBOLS:
            return token.upper()
    for match in _MARKED_LOWER_RE.finditer(text):
        if match.group(1) not in COMMON_WORDS:
            return match.group(1).upper()
    if len(text.split()) == 1 and tokens:
        return tokens[0].upper()
    return None


def _ticker_from_text(text: str) -> Optional[str]:
    if not text:
        return None
    for match in _CASHTAG_RE.finditer(text):
        return match.group(1).upper()
    for token in _UPPER_TOKEN_RE.findall(text):
        if token not in NON_TICKER_WORDS:
            return token
    return _lower_ticker(text)


def infer_symbol(message: str, prior_user_texts: Sequence[str]) -> Optional[str]:
    found = _ticker_from_text(message)
    if found:
        return found
    # Newest turn first, so the latest mention wins.
    for text in reversed(list(prior_user_texts)):
        found = _ticker_from_text(text)
        if found:
            return found
    return None


def infer_data_source(symbol: str) -> str:
    base = (symbol or "").upper().split("-")[0]
    return CRYPTO_DATA_SOURCE if base in CRYPTO_SYMBOLS else EQUITY_DATA_SOURCE


def _last_year(texts: Iterable[str]) -> Optional[int]:
    """Most recent 4-digit year across `texts` given oldest-first."""
    for text in reversed(list(texts)):
        years = _YEAR_RE.findall(text or "")
        if years:
            return int(years[-1])
    return None


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _month_day(text: str) -> Optional[Tuple[int, int]]:
    match = _MONTH_DAY_RE.search(text)
    if match:
        return _MONTHS[match.group(1)[:3].lower()], int(match.group(2))
    match = _DAY_MONTH_RE.search(text)
    if match:
        return _MONTHS[match.group(2)[:3].lower()], int(match.group(1))
    return None


def infer_date_range(
    message: str,
    history_texts: Sequence[str],
    today: date,
) -> Tuple[Optional[str], Optional[str]]:
    iso = [_safe_date(int(y), int(m), int(d)) for y, m, d in _ISO_DATE_RE.findall(message)]
    iso = [d for d in iso if d is not None]
    if iso:
        start = iso[0]
        end = iso[1] if len(iso) > 1 else iso[0]
        return start.isoformat(), end.isoformat()

    without_iso = _ISO_DATE_RE.sub(" ", message)
    month_day = _month_day(without_iso)
    if month_day:
        year = _last_year([without_iso]) or _last_year(history_texts) or today.year
        day = _safe_date(year, month_day[0], month_day[1])
        if day is not None:
            return day.isoformat(), day.isoformat()

    year = _last_year([without_iso])
    if year is not None:
        return date(year, 1, 1).isoformat(), date(year, 12, 31).isoformat()
    return None, None


class ArgumentHydrator:
    def __init__(
        self,
        tools: Iterable[str] = HYDRATED_TOOLS,
        today: Callable[[], date] = date.today,
    ):
        self.tools = frozenset(tools)
        self._today = today

    def applies_to(self, tool_name: str) -> bool:
        return tool_name in self.tools

    def hydrate(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]],
        message: str,
        history: Sequence[Turn],
    ) -> Dict[str, Any]:
        args: Dict[str, Any] = dict(arguments or {})
        if not self.applies_to(tool_name):
            return args

        message = message or ""
        prior_user: List[str] = [t.text for t in history if t.role == "human"]

        if not _is_supplied(args.get("symbol")):
            symbol = infer_symbol(message, prior_user)
            if symbol:
                args["symbol"] = symbol

        if not _is_supplied(args.get("dataSource")) and _is_supplied(args.get("symbol")):
            args["dataSource"] = infer_data_source(str(args["symbol"]))

        has_from = _is_supplied(args.get("from"))
        has_to = _is_supplied(args.get("to"))
        if not has_from and not has_to:
            start, end = infer_date_range(message, [t.text for t in history], self._today())
            if start and end:
                args["from"], args["to"] = start, end
        elif has_from and not has_to:
            args["to"] = args["from"]
        elif has_to and not has_from:
            args["from"] = args["to"]
        return args
