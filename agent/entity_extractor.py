from __future__ import annotations

import re
from typing import Iterable, List

from .intent_heuristics import ticker_like_tokens

ENTITIES_PER_TURN = 10
TOOL_SNIPPET_CHARS = 500

_LABEL_RE = re.compile(r"\b[A-Z][a-zA-Z&'.]+(?:\s+[A-Z][a-zA-Z&'.]+)+")
_LEADING_STOPWORDS = frozenset(
    {"The", "This", "That", "These", "Those", "Here", "There", "Your", "My", "Our", "It", "I",
     "What", "How", "When", "Which", "Net", "Total", "Current", "Summary", "Holdings", "Accounts"}
)


def _labels(text: str) -> List[str]:
    out: List[str] = []
    for match in _LABEL_RE.finditer(text or ""):
        words = match.group(0).split()
        while words and words[0] in _LEADING_STOPWORDS:
            words = words[1:]
        if len(words) >= 2:
            out.append(" ".join(words).rstrip(".'"))
    return out


def extract_entities(
    user_message: str,
    final_text: str = "",
    tool_outputs: Iterable[str] = (),
    limit: int = ENTITIES_PER_TURN,
) -> List[str]:
    """
    Ticker-like tokens and capitalised multi-word labels, oldest source first:
    tool output snippets, then the reply, then the user's own message, so the
    user's mentions end up most recent.
    """
    sources: List[str] = [(out or "")[:TOOL_SNIPPET_CHARS] for out in tool_outputs]
    sources.append(final_text or "")
    sources.append(user_message or "")

    found: List[str] = []
    for text in sources:
        if text.startswith("Error:"):
            continue
        for entity in ticker_like_tokens(text) + _labels(text):
            value = entity.strip()
            if not value:
                continue
            if value in found:
                found.remove(value)
            found.append(value)
    if limit <= 0:
        return []
    return found[-limit:]
