"""
Deterministic intent signals.

Every predicate here can only push a message toward "on topic"; none of them
can reject one. They run before any model call.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .state_models import IntentState

DOMAIN_KEYWORD_RE = re.compile(
    r"\b(portfolio|allocations?|holdings?|positions?|investments?|account summary|"
    r"performance|returns?|pnl|profits?|loss(?:es)?|drawdown|activit(?:y|ies)|"
    r"transactions?|orders?|bought|sold|buy|sell|reports?|rule violations?|risk check|"
    r"compliance|historical|prices?|market data|dividends?|balances?|cash|transfers?)\b",
    re.IGNORECASE,
)

TICKER_LIKE_RE = re.compile(r"\b[A-Z]{2,10}\b")

# Capitalised words that are not tickers.
NON_TICKER_WORDS = frozenset(
    {
        "I", "A", "OK", "HI", "NO", "YES", "US", "USA", "UK", "EU", "AI", "TV", "PM", "AM",
        "ID", "IT", "PDF", "API", "URL", "FAQ", "FYI", "LOL", "OMG", "ASAP", "ETA", "CEO",
        "CFO", "CTO", "SEC", "CPI", "GDP", "USD", "HELP", "PLEASE", "THANKS", "HELLO",
    }
)

ANAPHORA_RE = re.compile(r"\b(it|that|this|those|these|them)\b", re.IGNORECASE)

OUT_OF_DOMAIN_RE = re.compile(
    r"\b(weather|rain|recipes?|cook(?:ing)?|movies?|films?|songs?|music|lyrics|jokes?|"
    r"poems?|football|soccer|basketball|baseball|tennis|nba|nfl|horoscope|"
    r"celebrit(?:y|ies)|dating|vacation|homework|translate)\b",
    re.IGNORECASE,
)

FOLLOW_UP_MAX_WORDS = 6


@dataclass(frozen=True)
class HeuristicSignals:
    keyword: bool = False
    entity_hint: bool = False
    follow_up: bool = False

    @property
    def hit(self) -> bool:
        return self.keyword or self.entity_hint or self.follow_up

    @property
    def reason(self) -> Optional[str]:
        if self.keyword:
            return "domain_keyword"
        if self.entity_hint:
            return "market_entity"
        if self.follow_up:
            return "short_follow_up"
        return None


def _is_shouted(text: str) -> bool:
    words = re.findall(r"[A-Za-z]{2,}", text)
    if len(words) < 3:
        return False
    upper = sum(1 for w in words if w.isupper())
    return upper * 2 > len(words)


def ticker_like_tokens(text: str) -> List[str]:
    """All-caps tokens that could be tickers. An all-caps sentence yields none."""
    if not text or _is_shouted(text):
        return []
    out: List[str] = []
    for token in TICKER_LIKE_RE.findall(text):
        if token in NON_TICKER_WORDS or token in out:
            continue
        out.append(token)
    return out


def has_domain_keyword(text: str) -> bool:
    return bool(DOMAIN_KEYWORD_RE.search(text or ""))


def mentions_entity(text: str, entities: Iterable[str]) -> bool:
    for entity in entities:
        value = (entity or "").strip()
        if not value:
            continue
        if re.search(r"(?<!\w)" + re.escape(value) + r"(?!\w)", text, re.IGNORECASE):
            return True
    return False


def has_market_entity_hint(text: str, recent_entities: Iterable[str] = ()) -> bool:
    # a ticker with or without a date: "NVDA?", "what do you think about NVDA"
    if ticker_like_tokens(text):
        return True
    return mentions_entity(text, recent_entities)


def has_out_of_domain_vocabulary(text: str) -> bool:
    return bool(OUT_OF_DOMAIN_RE.search(text or ""))


def is_short_follow_up(text: str, intent_state: IntentState) -> bool:
    if intent_state.last_intent != "on_topic":
        return False
    if has_out_of_domain_vocabulary(text):
        return False
    words = (text or "").split()
    if not words:
        return False
    return len(words) <= FOLLOW_UP_MAX_WORDS or bool(ANAPHORA_RE.search(text))


def evaluate_heuristics(message: str, intent_state: IntentState) -> HeuristicSignals:
    text = (message or "").strip()
    return HeuristicSignals(
        keyword=has_domain_keyword(text),
        entity_hint=has_market_entity_hint(text, intent_state.recent_entities),
        follow_up=is_short_follow_up(text, intent_state),
    )
