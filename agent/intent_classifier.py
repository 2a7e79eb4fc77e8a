from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from .llm_factory import content_text
from .prompts import INTENT_LENIENT_SYSTEM_PROMPT, INTENT_SYSTEM_PROMPT
from .state_models import Classification, IntentState, Turn

logger = logging.getLogger(__name__)

TURN_SUMMARY_MAX_CHARS = 300
_LABELS = ("on_topic", "off_topic", "uncertain")


@dataclass(frozen=True)
class ClassificationInput:
    message: str
    history: Sequence[Turn] = field(default_factory=tuple)
    intent_state: IntentState = field(default_factory=IntentState)


class IntentClassifier(Protocol):
    async def classify(self, request: ClassificationInput, *, lenient: bool = False) -> Classification:
        ...


def unparseable(reason: str = "unparseable_classifier_output") -> Classification:
    return Classification(label="uncertain", confidence=0.5, reason=reason)


def _strip_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`").strip()
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:].strip()
    return cleaned


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.5
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.5


def _load_object(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except ValueError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def parse_classification(raw: str) -> Classification:
    text = _strip_fences(raw)
    if not text:
        return unparseable()

    data = _load_object(text)
    if data is not None:
        label = str(data.get("label") or "").strip().lower()
        if label in _LABELS:
            return Classification(
                label=label,  # type: ignore[arg-type]
                confidence=_coerce_confidence(data.get("confidence")),
                reason=str(data.get("reason") or "").strip()[:200],
            )
        return unparseable()

    # Older prompt variants answered a bare yes/no ("is this in scope?").
    legacy = text.strip().strip(".!").strip().lower()
    if legacy == "yes":
        return Classification(label="on_topic", confidence=0.9, reason="legacy_yes")
    if legacy == "no":
        return Classification(label="off_topic", confidence=0.9, reason="legacy_no")
    return unparseable()


def _summarize(text: str, limit: int = TURN_SUMMARY_MAX_CHARS) -> str:
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3].rstrip() + "..."


def build_classifier_context(request: ClassificationInput) -> str:
    state = request.intent_state
    last_user = next((t.text for t in reversed(request.history) if t.role == "human"), "")
    last_assistant = next((t.text for t in reversed(request.history) if t.role == "assistant"), "")
    lines: List[str] = [
        f"Last intent: {state.last_intent}",
        f"Last tool used: {state.last_tool_used or 'none'}",
        f"Recent entities: {', '.join(state.recent_entities[-5:]) or 'none'}",
        f"Last user turn: {_summarize(last_user) or 'none'}",
        f"Last assistant turn: {_summarize(last_assistant) or 'none'}",
        "",
        f"Current message: {request.message.strip()}",
    ]
    return "\n".join(lines)


class LlmIntentClassifier:
    """Chat-model classifier. Never raises: failures read as uncertain/0.5."""

    def __init__(self, llm: BaseChatModel, *, timeout_s: float = 8.0):
        self.llm = llm
        self.timeout_s = float(timeout_s)

    async def classify(self, request: ClassificationInput, *, lenient: bool = False) -> Classification:
        messages = [
            SystemMessage(content=INTENT_LENIENT_SYSTEM_PROMPT if lenient else INTENT_SYSTEM_PROMPT),
            HumanMessage(content=build_classifier_context(request)),
        ]
        try:
            res = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning("agent.classifier.timeout lenient=%s timeout_s=%s", lenient, self.timeout_s)
            return unparseable("classifier_timeout")
        except Exception as exc:
            logger.warning("agent.classifier.error lenient=%s err=%s", lenient, type(exc).__name__)
            return unparseable("classifier_error")

        result = parse_classification(content_text(getattr(res, "content", res)))
        logger.info(
            "agent.classifier lenient=%s label=%s confidence=%.2f",
            lenient,
            result.label,
            result.confidence,
        )
        return result
