import asyncio
import json
import unittest
from datetime import date

from langchain_core.messages import AIMessageChunk, ToolMessage

from agent.argument_hydrator import ArgumentHydrator
from agent.prompts import FALLBACK_RESPONSE, TOOL_NOT_FOUND_MESSAGE
from agent.state_models import OrchestrationResult, TextDelta, Turn
from agent.tool_orchestrator import ToolOrchestrator, market_clarification
from services.tools.base import BoundTool, ToolContext
from services.tools.market_tools import MARKET_HISTORICAL


def text_chunk(text):
    return AIMessageChunk(content=text)


def tool_chunk(name, args, call_id="call_1", index=0):
    return AIMessageChunk(
        content="",
        tool_call_chunks=[
            {"name": name, "args": json.dumps(args), "id": call_id, "index": index, "type": "tool_call_chunk"}
        ],
    )


class _FakeStreamingModel:
    """Replays one scripted list of chunks per astream call; the last script repeats."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []
        self.bound_schemas = None

    def bind_tools(self, schemas):
        self.bound_schemas = schemas
        return self

    async def astream(self, messages):
        self.calls.append(list(messages))
        idx = min(len(self.calls) - 1, len(self.scripts) - 1)
        for chunk in self.scripts[idx]:
            yield chunk


class _FakeTool:
    def __init__(self, name, result="ok", *, input_kind="object", delay=0.0, exc=None):
        self.name = name
        self.input_kind = input_kind
        self.result = result
        self.delay = delay
        self.exc = exc
        self.payloads = []

    def openai_schema(self):
        return {
            "type": "function",
            "function": {"name": self.name, "description": "", "parameters": {"type": "object", "properties": {}}},
        }

    async def invoke(self, payload):
        self.payloads.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return self.result


class _FakeMarketData:
    def __init__(self, prices=None):
        self.prices = prices or {}
        self.calls = []

    async def get_historical(self, symbol, data_source, start, end):
        self.calls.append((symbol, data_source, start, end))
        return self.prices


async def _collect(orchestrator, message, tools, history=(), **kwargs):
    deltas, results = [], []
    async for event in orchestrator.run(message=message, history=list(history), tools=tools, **kwargs):
        if isinstance(event, TextDelta):
            deltas.append(event.text)
        else:
            results.append(event)
    return deltas, results


def _orchestrator(model, **kwargs):
    hydrator = ArgumentHydrator(today=lambda: date(2025, 6, 30))
    return ToolOrchestrator(model, hydrator=hydrator, **kwargs)


def _market_tool(market_data):
    ctx = ToolContext(user_id="u1", backend=None, market_data=market_data)
    return BoundTool(spec=MARKET_HISTORICAL, ctx=ctx)


class ToolOrchestratorTests(unittest.TestCase):
    def test_streams_text_and_finishes_without_tools(self):
        model = _FakeStreamingModel([text_chunk("Hello "), text_chunk("world")])
        deltas, results = asyncio.run(_collect(_orchestrator(model), "hi there", {}))

        self.assertEqual(deltas, ["Hello ", "world"])
        self.assertEqual(len(results), 1)
        self.assertIsInstance(results[0], OrchestrationResult)
        self.assertEqual(results[0].text, "Hello world")
        self.assertEqual(results[0].rounds, 1)
        self.assertEqual(results[0].tools_used, [])

    def test_empty_answer_uses_fallback(self):
        model = _FakeStreamingModel([text_chunk("   ")])
        deltas, results = asyncio.run(_collect(_orchestrator(model), "hi", {}))
        self.assertEqual(results[0].text, FALLBACK_RESPONSE)
        self.assertEqual(deltas[-1], FALLBACK_RESPONSE)

    def test_tool_round_feeds_result_back_to_model(self):
        details = _FakeTool("portfolio_details", result="Holdings (allocation %):\n- AAPL (Apple Inc): 60.00%")
        model = _FakeStreamingModel(
            [tool_chunk("portfolio_details", {})],
            [text_chunk("Your largest holding is AAPL at 60% allocation.")],
        )
        deltas, results = asyncio.run(
            _collect(_orchestrator(model), "How is my portfolio doing?", {"portfolio_details": details})
        )
        result = results[0]

        self.assertEqual(details.payloads, [{}])
        self.assertEqual(result.tools_used, ["portfolio_details"])
        self.assertEqual(result.last_tool_used, "portfolio_details")
        self.assertEqual(result.rounds, 2)
        self.assertIn("allocation", result.text)
        self.assertIn("AAPL", result.entities)
        self.assertIn("Apple Inc", result.entities)
        self.assertEqual(len(model.bound_schemas), 1)

        second_call = model.calls[1]
        tool_messages = [m for m in second_call if isinstance(m, ToolMessage)]
        self.assertEqual(len(tool_messages), 1)
        self.assertEqual(tool_messages[0].tool_call_id, "call_1")
        self.assertIn("AAPL", tool_messages[0].content)
        self.assertEqual(second_call[-2].tool_calls[0]["name"], "portfolio_details")

    def test_history_is_sent_before_current_message(self):
        model = _FakeStreamingModel([text_chunk("ok")])
        history = [Turn(role="human", text="earlier"), Turn(role="assistant", text="reply")]
        asyncio.run(_collect(_orchestrator(model), "now", {}, history=history))
        contents = [m.content for m in model.calls[0]]
        self.assertEqual(contents[1:], ["earlier", "reply", "now"])

    def test_round_budget_forces_final_answer(self):
        tool = _FakeTool("portfolio_report", result="Rules: 1 of 2 fulfilled.")
        model = _FakeStreamingModel([tool_chunk("portfolio_report", {})])
        deltas, results = asyncio.run(
            _collect(_orchestrator(model, max_rounds=3), "run my report", {"portfolio_report": tool})
        )
        result = results[0]

        self.assertEqual(len(model.calls), 3)
        self.assertEqual(len(tool.payloads), 3)
        self.assertTrue(result.budget_exhausted)
        self.assertEqual(result.text, FALLBACK_RESPONSE)
        self.assertEqual(deltas, [FALLBACK_RESPONSE])

    def test_budget_exhaustion_keeps_streamed_text(self):
        tool = _FakeTool("portfolio_report")
        model = _FakeStreamingModel([text_chunk("Checking your rules."), tool_chunk("portfolio_report", {})])
        _deltas, results = asyncio.run(
            _collect(_orchestrator(model, max_rounds=2), "run my report", {"portfolio_report": tool})
        )
        self.assertTrue(results[0].budget_exhausted)
        self.assertEqual(results[0].text, "Checking your rules.")

    def test_unknown_tool_gets_fixed_message(self):
        model = _FakeStreamingModel([tool_chunk("delete_everything", {})], [text_chunk("Sorry, I can't do that.")])
        _deltas, results = asyncio.run(_collect(_orchestrator(model), "do it", {}))
        tool_messages = [m for m in model.calls[1] if isinstance(m, ToolMessage)]
        self.assertEqual(tool_messages[0].content, TOOL_NOT_FOUND_MESSAGE)
        self.assertEqual(results[0].tools_used, [])
        self.assertEqual(results[0].tool_calls[0].result_text, TOOL_NOT_FOUND_MESSAGE)

    def test_multiple_calls_run_in_request_order(self):
        order = []

        class _Recording(_FakeTool):
            async def invoke(self, payload):
                order.append(self.name)
                return await super().invoke(payload)

        tools = {"portfolio_details": _Recording("portfolio_details"), "activities_list": _Recording("activities_list")}
        first_round = tool_chunk("activities_list", {"take": 5}, call_id="a", index=0) + tool_chunk(
            "portfolio_details", {}, call_id="b", index=1
        )
        model = _FakeStreamingModel([first_round], [text_chunk("done")])
        _deltas, results = asyncio.run(_collect(_orchestrator(model), "summary of my activities", tools))
        self.assertEqual(order, ["activities_list", "portfolio_details"])
        self.assertEqual(results[0].last_tool_used, "portfolio_details")
        self.assertEqual(tools["activities_list"].payloads, [{"take": 5}])

    def test_tool_timeout_and_exception_become_error_strings(self):
        slow = _FakeTool("portfolio_details", delay=1.0)
        broken = _FakeTool("portfolio_report", exc=RuntimeError("backend exploded"))
        first_round = tool_chunk("portfolio_details", {}, call_id="a", index=0) + tool_chunk(
            "portfolio_report", {}, call_id="b", index=1
        )
        model = _FakeStreamingModel([first_round], [text_chunk("Something failed.")])
        asyncio.run(
            _collect(
                _orchestrator(model, tool_timeout_s=0.01),
                "portfolio and report",
                {"portfolio_details": slow, "portfolio_report": broken},
            )
        )
        contents = [m.content for m in model.calls[1] if isinstance(m, ToolMessage)]
        self.assertTrue(contents[0].startswith("Error: Tool portfolio_details timed out"))
        self.assertTrue(contents[1].startswith("Error: Tool portfolio_report failed."))

    def test_market_history_is_hydrated_from_message(self):
        market = _FakeMarketData({"2024-01-15": 185.2})
        model = _FakeStreamingModel(
            [tool_chunk("market_historical", {})],
            [text_chunk("AAPL closed at 185.2 on 2024-01-15.")],
        )
        _deltas, results = asyncio.run(
            _collect(
                _orchestrator(model),
                "price of AAPL on 2024-01-15",
                {"market_historical": _market_tool(market)},
            )
        )
        self.assertEqual(market.calls, [("AAPL", "YAHOO", date(2024, 1, 15), date(2024, 1, 15))])
        self.assertEqual(results[0].tool_calls[0].arguments["dataSource"], "YAHOO")
        self.assertFalse(results[0].clarification)

    def test_missing_market_arguments_short_circuit_with_clarification(self):
        market = _FakeMarketData()
        model = _FakeStreamingModel([tool_chunk("market_historical", {})], [text_chunk("should not be called")])
        deltas, results = asyncio.run(
            _collect(_orchestrator(model), "what was the price then?", {"market_historical": _market_tool(market)})
        )
        result = results[0]

        self.assertEqual(len(model.calls), 1)
        self.assertEqual(market.calls, [])
        self.assertTrue(result.clarification)
        self.assertIn("symbol", result.text)
        self.assertIn("from and to", result.text)
        self.assertFalse(result.text.startswith("Error:"))
        self.assertEqual(deltas, [result.text])
        self.assertEqual(result.entities, [])

    def test_clarification_asks_for_symbol_when_message_names_none(self):
        market = _FakeMarketData()
        model = _FakeStreamingModel([tool_chunk("market_historical", {})], [text_chunk("should not be called")])
        _deltas, results = asyncio.run(
            _collect(
                _orchestrator(model),
                "Can you fetch historical prices?",
                {"market_historical": _market_tool(market)},
            )
        )
        result = results[0]

        self.assertTrue(result.clarification)
        self.assertEqual(market.calls, [])
        self.assertIn("symbol", result.text)
        self.assertNotIn("symbol", result.tool_calls[0].arguments)

    def test_disconnect_before_first_round_stops_model_calls(self):
        async def gone():
            return True

        model = _FakeStreamingModel([text_chunk("never")])
        _deltas, results = asyncio.run(_collect(_orchestrator(model), "hi", {}, is_disconnected=gone))
        self.assertEqual(model.calls, [])
        self.assertTrue(results[0].disconnected)


class MarketClarificationTests(unittest.TestCase):
    def test_data_results_are_not_clarified(self):
        self.assertIsNone(market_clarification("AAPL: 2024-01-15 -> 185.2"))
        self.assertIsNone(market_clarification("Error: Could not retrieve market historical data. timeout"))

    def test_names_only_missing_fields(self):
        text = market_clarification(
            "Error: Invalid arguments. from: Field required; to: Field required. "
            "Required: symbol, dataSource, from, to (YYYY-MM-DD)."
        )
        self.assertIn("date", text)
        self.assertNotIn("symbol (", text)

    def test_data_source_only_asked_when_symbol_known(self):
        text = market_clarification("Error: Invalid arguments. symbol: Field required; dataSource: Field required.")
        self.assertIn("symbol", text)
        self.assertNotIn("COINGECKO", text)

    def test_date_errors(self):
        self.assertIn("YYYY-MM-DD", market_clarification("Error: Invalid date format. Use YYYY-MM-DD for from and to."))
        self.assertIn("date range", market_clarification("Error: from date must be before or equal to to date."))


if __name__ == "__main__":
    unittest.main()
