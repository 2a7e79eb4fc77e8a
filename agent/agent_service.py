from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, AsyncIterator, Mapping, Optional, Set, Union

from agent.argument_hydrator import ArgumentHydrator
from agent.conversation_store import CHAT_INTENT_HISTORY, CHAT_MAX_HISTORY, ConversationStore
from agent.intent_classifier import LlmIntentClassifier
from agent.intent_gate import IntentGate
from agent.llm_factory import build_chat_model
from agent.prompts import FALLBACK_RESPONSE
from agent.state_models import ChatReply, IntentPatch, IntentState, OrchestrationResult, TextDelta
from agent.tool_orchestrator import AgentTool, DisconnectProbe, ToolOrchestrator
from config.settings import AgentSettings, get_settings

logger = logging.getLogger(__name__)

TurnEvent = Union[TextDelta, ChatReply]

# Strong refs for fire-and-forget persistence tasks scheduled during cancellation.
_background_tasks: Set[asyncio.Task] = set()


def result_patch(result: OrchestrationResult, previous: IntentState) -> IntentPatch:
    return IntentPatch(
        last_intent="on_topic",
        last_tool_used=result.last_tool_used or previous.last_tool_used,
        recent_entities=result.entities,
        pending_clarification=result.clarification,
    )


@lru_cache(maxsize=8)
def shared_gate(settings: AgentSettings) -> IntentGate:
    """Classifier model and compiled gate graph, built once per settings."""
    llm = build_chat_model(settings, temperature=settings.intent_temperature)
    return IntentGate(LlmIntentClassifier(llm, timeout_s=settings.classifier_timeout_s))


@lru_cache(maxsize=8)
def shared_orchestrator(settings: AgentSettings) -> ToolOrchestrator:
    llm = build_chat_model(settings, temperature=settings.temperature, streaming=True)
    return ToolOrchestrator(
        llm,
        hydrator=ArgumentHydrator(),
        max_rounds=settings.max_tool_rounds,
        tool_timeout_s=settings.tool_timeout_s,
    )


class AgentService:
    """
    One chat turn: load state -> gate -> orchestrate -> persist.
    Only this class writes to the ConversationStore.
    """

    def __init__(
        self,
        store: ConversationStore,
        tools: Mapping[str, AgentTool],
        *,
        settings: Optional[AgentSettings] = None,
        gate: Optional[IntentGate] = None,
        orchestrator: Optional[ToolOrchestrator] = None,
        intent_history: int = CHAT_INTENT_HISTORY,
        full_history: int = CHAT_MAX_HISTORY,
    ):
        self.store = store
        self.tools = tools
        self.settings = settings or get_settings()
        self._gate = gate
        self._orchestrator = orchestrator
        self.intent_history = intent_history
        self.full_history = full_history

    @property
    def gate(self) -> IntentGate:
        if self._gate is None:
            self._gate = shared_gate(self.settings)
        return self._gate

    @property
    def orchestrator(self) -> ToolOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = shared_orchestrator(self.settings)
        return self._orchestrator

    def resolve_conversation_id(self, conversation_id: Optional[str]) -> str:
        value = (conversation_id or "").strip()
        return value or self.store.create_conversation_id()

    async def _persist(
        self,
        conversation_id: str,
        user_id: Any,
        message: str,
        reply: str,
        patch: Optional[IntentPatch],
    ) -> None:
        await self.store.append_turn(conversation_id, user_id, message, reply)
        if patch is not None:
            await self.store.update_intent_state(conversation_id, user_id, patch)

    def _persist_in_background(
        self,
        conversation_id: str,
        user_id: Any,
        message: str,
        partial: str,
        patch: IntentPatch,
    ) -> None:
        if not partial:
            return
        try:
            task = asyncio.get_running_loop().create_task(
                self._persist(conversation_id, user_id, message, partial, patch)
            )
        except RuntimeError:
            logger.warning("agent.partial_not_persisted conversation_id=%s", conversation_id)
            return
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def turn_events(
        self,
        user_id: Any,
        conversation_id: str,
        message: str,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[TurnEvent]:
        """TextDelta for every visible fragment, then one ChatReply with the persisted text."""
        self.settings.require_llm()
        message = (message or "").strip()
        if not message:
            raise ValueError("Message is required")

        intent_state = await self.store.get_intent_state(conversation_id, user_id)
        recent = await self.store.get_history(conversation_id, user_id, self.intent_history)
        decision = await self.gate.evaluate(message, recent, intent_state)

        if decision.action != "proceed":
            reply = decision.reply or FALLBACK_RESPONSE
            await self._persist(conversation_id, user_id, message, reply, decision.patch)
            yield TextDelta(reply)
            yield ChatReply(text=reply, conversation_id=conversation_id)
            return

        history = await self.store.get_history(conversation_id, user_id, self.full_history)
        streamed = []
        result: Optional[OrchestrationResult] = None
        try:
            async for event in self.orchestrator.run(
                message=message,
                history=history,
                tools=self.tools,
                is_disconnected=is_disconnected,
            ):
                if isinstance(event, TextDelta):
                    streamed.append(event.text)
                    yield event
                else:
                    result = event
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("agent.cancelled conversation_id=%s chars=%s", conversation_id, len("".join(streamed)))
            self._persist_in_background(
                conversation_id,
                user_id,
                message,
                "".join(streamed).strip(),
                IntentPatch(last_intent="on_topic"),
            )
            raise

        if result is None:
            result = OrchestrationResult(text="".join(streamed).strip() or FALLBACK_RESPONSE)

        text = result.text
        if result.disconnected:
            text = "".join(streamed).strip()
            if not text:
                logger.info("agent.disconnected_empty conversation_id=%s", conversation_id)
                return

        await self._persist(conversation_id, user_id, message, text, result_patch(result, intent_state))
        logger.info(
            "agent.turn conversation_id=%s rounds=%s tools=%s clarification=%s budget_exhausted=%s",
            conversation_id,
            result.rounds,
            ",".join(result.tools_used) or "-",
            result.clarification,
            result.budget_exhausted,
        )
        yield ChatReply(text=text, conversation_id=conversation_id)

    async def chat(self, user_id: Any, message: str, conversation_id: Optional[str] = None) -> ChatReply:
        conversation_id = self.resolve_conversation_id(conversation_id)
        reply: Optional[ChatReply] = None
        async for event in self.turn_events(user_id, conversation_id, message):
            if isinstance(event, ChatReply):
                reply = event
        if reply is None:
            return ChatReply(text=FALLBACK_RESPONSE, conversation_id=conversation_id)
        return reply

    async def stream_chat(
        self,
        user_id: Any,
        conversation_id: str,
        message: str,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[str]:
        async for event in self.turn_events(
            user_id, conversation_id, message, is_disconnected=is_disconnected
        ):
            if isinstance(event, TextDelta):
                yield event.text
