"""
Intent gate: decides whether a message runs the tool loop, gets the fixed
off-topic reply, or gets a clarification question.

Heuristics run first and can only accept. The classifier is consulted when
no heuristic fires, with one lenient second pass for uncertain or
near-threshold off-topic results. Rejection needs a higher confidence than
asking for clarification.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, TypedDict

from langgraph.graph import END, StateGraph

from .intent_classifier import ClassificationInput, IntentClassifier
from .intent_heuristics import HeuristicSignals, evaluate_heuristics
from .prompts import OFF_TOPIC_MESSAGE
from .state_models import Classification, GateAction, GateDecision, IntentPatch, IntentState, Turn

logger = logging.getLogger(__name__)

HARD_BLOCK_CONFIDENCE = 0.85
CLARIFY_CONFIDENCE = 0.5
NEAR_THRESHOLD_CEILING = 0.95

TOOL_TOPICS = {
    "portfolio_details": "your holdings and allocation",
    "portfolio_performance": "your portfolio performance",
    "portfolio_report": "your portfolio report",
    "activities_list": "your recent activities",
    "market_historical": "historical market prices",
    "cash_transfer": "moving cash between your accounts",
}


class GateState(TypedDict, total=False):
    message: str
    history: List[Turn]
    intent_state: IntentState
    signals: HeuristicSignals
    classification: Classification
    second_pass: bool
    decision: GateDecision


def needs_second_pass(classification: Classification) -> bool:
    if classification.label == "uncertain":
        return True
    return (
        classification.label == "off_topic"
        and CLARIFY_CONFIDENCE <= classification.confidence < NEAR_THRESHOLD_CEILING
    )


def decide(signals: HeuristicSignals, classification: Optional[Classification]) -> GateAction:
    if signals.hit:
        return "proceed"
    if classification is None:
        return "proceed"
    if classification.label == "off_topic" and classification.confidence >= HARD_BLOCK_CONFIDENCE:
        return "off_topic"
    if classification.label == "uncertain":
        return "clarify"
    if classification.label == "off_topic" and classification.confidence >= CLARIFY_CONFIDENCE:
        return "clarify"
    return "proceed"


def _join_entities(entities: Sequence[str]) -> str:
    if len(entities) == 1:
        return entities[0]
    return f"{entities[0]} and {entities[1]}"


def build_clarification(intent_state: IntentState) -> str:
    entities = [e for e in intent_state.recent_entities if e.strip()][-2:]
    topic = TOOL_TOPICS.get(intent_state.last_tool_used or "")
    if topic and entities:
        return (
            f"Just to check: are you asking about {topic} for {_join_entities(entities)}? "
            "Tell me a bit more and I'll look it up."
        )
    if topic:
        return (
            f"Just to check: is this a follow-up about {topic}? "
            "If not, let me know whether you need portfolio, activity or market data."
        )
    if entities:
        return (
            f"Do you mean something about {_join_entities(entities)}? "
            "I can look up holdings, performance, activities or historical prices."
        )
    return (
        "Could you clarify what you'd like to know? I can help with your portfolio, "
        "performance, activities, reports and historical market prices."
    )


def _after_heuristics(state: GateState) -> str:
    return "decide" if state["signals"].hit else "classify"


def _after_classify(state: GateState) -> str:
    return "reclassify" if needs_second_pass(state["classification"]) else "decide"


class IntentGate:
    def __init__(self, classifier: IntentClassifier):
        self.classifier = classifier
        self._graph = self._build_graph()

    def _build_graph(self):
        workflow = StateGraph(GateState)
        workflow.add_node("heuristics", self._heuristics_node)
        workflow.add_node("classify", self._classify_node)
        workflow.add_node("reclassify", self._reclassify_node)
        workflow.add_node("decide", self._decide_node)

        workflow.set_entry_point("heuristics")
        workflow.add_conditional_edges(
            "heuristics", _after_heuristics, {"classify": "classify", "decide": "decide"}
        )
        workflow.add_conditional_edges(
            "classify", _after_classify, {"reclassify": "reclassify", "decide": "decide"}
        )
        workflow.add_edge("reclassify", "decide")
        workflow.add_edge("decide", END)
        return workflow.compile()

    def _classification_input(self, state: GateState) -> ClassificationInput:
        return ClassificationInput(
            message=state["message"],
            history=tuple(state.get("history") or ()),
            intent_state=state["intent_state"],
        )

    async def _heuristics_node(self, state: GateState) -> dict:
        return {"signals": evaluate_heuristics(state["message"], state["intent_state"])}

    async def _classify_node(self, state: GateState) -> dict:
        result = await self.classifier.classify(self._classification_input(state))
        return {"classification": result}

    async def _reclassify_node(self, state: GateState) -> dict:
        result = await self.classifier.classify(self._classification_input(state), lenient=True)
        return {"classification": result, "second_pass": True}

    async def _decide_node(self, state: GateState) -> dict:
        signals = state["signals"]
        classification = state.get("classification")
        action = decide(signals, classification)
        reply = None
        patch = None
        if action == "off_topic":
            reply = OFF_TOPIC_MESSAGE
            patch = IntentPatch(last_intent="off_topic", pending_clarification=False)
        elif action == "clarify":
            reply = build_clarification(state["intent_state"])
            patch = IntentPatch(last_intent="uncertain", pending_clarification=True)

        logger.info(
            "agent.gate action=%s heuristic=%s label=%s confidence=%s second_pass=%s",
            action,
            signals.reason,
            classification.label if classification else None,
            f"{classification.confidence:.2f}" if classification else None,
            bool(state.get("second_pass")),
        )
        return {
            "decision": GateDecision(
                action=action,
                reply=reply,
                patch=patch,
                heuristic=signals.reason,
                classification=classification,
                second_pass=bool(state.get("second_pass")),
            )
        }

    async def evaluate(
        self,
        message: str,
        history: Sequence[Turn],
        intent_state: IntentState,
    ) -> GateDecision:
        final = await self._graph.ainvoke(
            {
                "message": (message or "").strip(),
                "history": list(history),
                "intent_state": intent_state,
            }
        )
        return final["decision"]
