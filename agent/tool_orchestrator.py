from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from agent.argument_hydrator import ArgumentHydrator
from agent.entity_extractor import extract_entities
from agent.llm_factory import content_text
from agent.prompts import AGENT_SYSTEM_PROMPT, FALLBACK_RESPONSE, TOOL_NOT_FOUND_MESSAGE
from agent.state_models import OrchestrationResult, TextDelta, ToolCall, Turn

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 5
DEFAULT_TOOL_TIMEOUT_S = 20.0
MARKET_HISTORICAL_TOOL = "market_historical"
MARKET_FIELDS = ("symbol", "dataSource", "from", "to")

_FIELD_RE = re.compile(r"(?<![\w.])(symbol|dataSource|from|to):")

OrchestratorEvent = Union[TextDelta, OrchestrationResult]
DisconnectProbe = Callable[[], Awaitable[bool]]


class AgentTool(Protocol):
    name: str
    input_kind: str

    def openai_schema(self) -> Dict[str, Any]: ...

    async def invoke(self, payload: Any) -> str: ...


def history_messages(history: Sequence[Turn]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for turn in history:
        if turn.role == "human":
            out.append(HumanMessage(content=turn.text))
        else:
            out.append(AIMessage(content=turn.text))
    return out


def _missing_market_fields(result: str) -> List[str]:
    detail = result.split("Required:", 1)[0]
    found = [m.group(1) for m in _FIELD_RE.finditer(detail)]
    return [f for f in MARKET_FIELDS if f in found]


def market_clarification(result: str) -> Optional[str]:
    """
    Clarifying question for a market_historical argument error, or None when the
    result is data (or an error the model can explain on its own).
    """
    if not result.startswith("Error:"):
        return None

    if result.startswith("Error: Invalid date format"):
        return (
            "Which date should I use for the historical price? "
            "Please give it as YYYY-MM-DD (for example 2024-01-15) or a date range."
        )
    if result.startswith("Error: from date must be before"):
        return "The start date is after the end date. Which date range did you mean (from and to, YYYY-MM-DD)?"
    if not result.startswith("Error: Invalid arguments"):
        return None

    missing = _missing_market_fields(result) or list(MARKET_FIELDS)
    needs: List[str] = []
    if "symbol" in missing:
        needs.append("the symbol (for example AAPL or BTC)")
    elif "dataSource" in missing:
        needs.append("whether the symbol is a stock/ETF (YAHOO) or a cryptocurrency (COINGECKO) for dataSource")
    if "from" in missing or "to" in missing:
        needs.append("the date or date range (from and to, YYYY-MM-DD)")
    if not needs:
        needs.append("the symbol and the date (YYYY-MM-DD)")
    return f"To look up the historical price I still need {' and '.join(needs)}. Could you tell me?"


async def _probe(is_disconnected: Optional[DisconnectProbe]) -> bool:
    if is_disconnected is None:
        return False
    try:
        return bool(await is_disconnected())
    except Exception:
        logger.debug("agent.disconnect_probe_failed", exc_info=True)
        return False


class ToolOrchestrator:
    """
    Model <-> tool loop. `run` is an async generator: TextDelta while the model
    streams, then exactly one OrchestrationResult as the last item.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        *,
        hydrator: Optional[ArgumentHydrator] = None,
        max_rounds: int = MAX_TOOL_ROUNDS,
        tool_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        system_prompt: str = AGENT_SYSTEM_PROMPT,
    ):
        self.llm = llm
        self.hydrator = hydrator or ArgumentHydrator()
        self.max_rounds = max(1, int(max_rounds))
        self.tool_timeout_s = tool_timeout_s
        self.system_prompt = system_prompt

    async def _invoke_tool(self, tool: AgentTool, arguments: Dict[str, Any]) -> str:
        payload: Any = json.dumps(arguments) if tool.input_kind == "json_string" else arguments
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(tool.invoke(payload), timeout=self.tool_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("agent.tool name=%s status=timeout timeout_s=%s", tool.name, self.tool_timeout_s)
            return f"Error: Tool {tool.name} timed out after {self.tool_timeout_s:g}s."
        except Exception as exc:
            logger.exception("agent.tool name=%s status=error", tool.name)
            return f"Error: Tool {tool.name} failed. {str(exc) or type(exc).__name__}"

        latency_ms = int((time.perf_counter() - start) * 1000)
        text = result if isinstance(result, str) else str(result)
        logger.info(
            "agent.tool name=%s status=%s latency_ms=%s",
            tool.name,
            "error" if text.startswith("Error:") else "ok",
            latency_ms,
        )
        return text

    async def run(
        self,
        *,
        message: str,
        history: Sequence[Turn],
        tools: Mapping[str, AgentTool],
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncIterator[OrchestratorEvent]:
        messages: List[BaseMessage] = [
            SystemMessage(content=self.system_prompt),
            *history_messages(history),
            HumanMessage(content=message),
        ]
        model = self.llm.bind_tools([tool.openai_schema() for tool in tools.values()]) if tools else self.llm

        tools_used: List[str] = []
        calls: List[ToolCall] = []
        outputs: List[str] = []
        last_text = ""

        def finish(text: str, rounds: int, *, reply_entities: bool = True, **flags: Any) -> OrchestrationResult:
            return OrchestrationResult(
                text=text,
                tools_used=list(tools_used),
                tool_calls=list(calls),
                entities=extract_entities(message, text if reply_entities else "", outputs),
                rounds=rounds,
                **flags,
            )

        for round_no in range(1, self.max_rounds + 1):
            if await _probe(is_disconnected):
                logger.info("agent.disconnected round=%s", round_no)
                yield finish(last_text.strip(), round_no - 1, disconnected=True)
                return

            response = None
            streamed = ""
            async for chunk in model.astream(messages):
                response = chunk if response is None else response + chunk
                text = content_text(chunk.content)
                if text:
                    streamed += text
                    yield TextDelta(text)

            text = content_text(response.content) if response is not None else streamed
            last_text = text or last_text
            tool_calls = list(getattr(response, "tool_calls", None) or [])
            logger.info("agent.round n=%s/%s tool_calls=%s", round_no, self.max_rounds, len(tool_calls))

            if not tool_calls:
                final = text.strip()
                if not final:
                    final = FALLBACK_RESPONSE
                    yield TextDelta(final)
                yield finish(final, round_no)
                return

            if await _probe(is_disconnected):
                logger.info("agent.disconnected round=%s before_tools=true", round_no)
                yield finish(text.strip(), round_no, disconnected=True)
                return

            normalized = []
            for index, call in enumerate(tool_calls):
                normalized.append(
                    {
                        "name": call.get("name") or "",
                        "args": dict(call.get("args") or {}),
                        "id": call.get("id") or f"call_{round_no}_{index}",
                    }
                )

            tool_messages: List[ToolMessage] = []
            for call in normalized:
                name = call["name"]
                args = call["args"]
                tool = tools.get(name)
                if tool is None:
                    logger.warning("agent.tool name=%s status=not_found", name)
                    result = TOOL_NOT_FOUND_MESSAGE
                else:
                    if self.hydrator.applies_to(name):
                        args = self.hydrator.hydrate(name, args, message, history)
                    result = await self._invoke_tool(tool, args)
                    tools_used.append(name)
                    outputs.append(result)

                calls.append(ToolCall(name=name, arguments=args, call_id=call["id"], result_text=result))

                if name == MARKET_HISTORICAL_TOOL:
                    question = market_clarification(result)
                    if question:
                        logger.info("agent.clarify tool=%s", name)
                        yield TextDelta(f"\n\n{question}" if streamed.strip() else question)
                        yield finish(question, round_no, reply_entities=False, clarification=True)
                        return

                tool_messages.append(ToolMessage(content=result, tool_call_id=call["id"]))

            messages.append(AIMessage(content=text, tool_calls=normalized))
            messages.extend(tool_messages)

        logger.warning("agent.budget_exhausted rounds=%s", self.max_rounds)
        final = last_text.strip()
        if not final:
            final = FALLBACK_RESPONSE
            yield TextDelta(final)
        yield finish(final, self.max_rounds, budget_exhausted=True)
