import asyncio
import unittest

from langchain_core.messages import AIMessage

from agent.intent_classifier import ClassificationInput, LlmIntentClassifier, parse_classification
from agent.intent_gate import IntentGate, build_clarification, decide, needs_second_pass
from agent.intent_heuristics import HeuristicSignals, evaluate_heuristics, ticker_like_tokens
from agent.prompts import OFF_TOPIC_MESSAGE
from agent.state_models import Classification, IntentState, Turn


class _ScriptedClassifier:
    def __init__(self, *results):
        self._results = list(results)
        self.calls = []

    async def classify(self, request, *, lenient=False):
        self.calls.append((request.message, lenient))
        idx = min(len(self.calls) - 1, len(self._results) - 1)
        return self._results[idx]


class _FakeChatModel:
    def __init__(self, content=None, exc=None):
        self.content = content
        self.exc = exc

    async def ainvoke(self, messages):
        if self.exc:
            raise self.exc
        return AIMessage(content=self.content)


def _on_topic_state(**kwargs):
    return IntentState(last_intent="on_topic", **kwargs)


class HeuristicTests(unittest.TestCase):
    def test_domain_keyword(self):
        signals = evaluate_heuristics("How is my portfolio doing?", IntentState())
        self.assertTrue(signals.keyword)
        self.assertEqual(signals.reason, "domain_keyword")

    def test_ticker_with_date(self):
        signals = evaluate_heuristics("what was NVDA on 2024-03-01", IntentState())
        self.assertTrue(signals.entity_hint)

    def test_bare_ticker(self):
        self.assertTrue(evaluate_heuristics("NVDA?", IntentState()).entity_hint)

    def test_recent_entity_reference(self):
        state = IntentState(recent_entities=["Apple Inc"])
        self.assertTrue(evaluate_heuristics("and apple inc again please tell me more", state).entity_hint)

    def test_shouted_sentence_has_no_tickers(self):
        self.assertEqual(ticker_like_tokens("WHAT IS GOING ON HERE"), [])

    def test_follow_up_needs_on_topic_prior_turn(self):
        self.assertFalse(evaluate_heuristics("and the other one?", IntentState()).follow_up)
        self.assertTrue(evaluate_heuristics("and the other one?", _on_topic_state()).follow_up)

    def test_follow_up_blocked_by_out_of_domain_words(self):
        self.assertFalse(evaluate_heuristics("what about the weather?", _on_topic_state()).follow_up)


class DecisionPolicyTests(unittest.TestCase):
    def test_heuristic_hit_always_proceeds(self):
        signals = HeuristicSignals(keyword=True)
        for label in ("on_topic", "off_topic", "uncertain"):
            self.assertEqual(decide(signals, Classification(label=label, confidence=1.0)), "proceed")

    def test_thresholds(self):
        none = HeuristicSignals()
        self.assertEqual(decide(none, Classification(label="off_topic", confidence=0.9)), "off_topic")
        self.assertEqual(decide(none, Classification(label="off_topic", confidence=0.7)), "clarify")
        self.assertEqual(decide(none, Classification(label="off_topic", confidence=0.3)), "proceed")
        self.assertEqual(decide(none, Classification(label="uncertain", confidence=0.5)), "clarify")
        self.assertEqual(decide(none, Classification(label="on_topic", confidence=0.6)), "proceed")

    def test_second_pass_band(self):
        self.assertTrue(needs_second_pass(Classification(label="uncertain", confidence=0.9)))
        self.assertTrue(needs_second_pass(Classification(label="off_topic", confidence=0.9)))
        self.assertFalse(needs_second_pass(Classification(label="off_topic", confidence=0.97)))
        self.assertFalse(needs_second_pass(Classification(label="off_topic", confidence=0.2)))
        self.assertFalse(needs_second_pass(Classification(label="on_topic", confidence=0.6)))

    def test_clarification_names_topic_and_two_latest_entities(self):
        state = IntentState(last_tool_used="market_historical", recent_entities=["MSFT", "AAPL", "TSLA"])
        text = build_clarification(state)
        self.assertIn("historical market prices", text)
        self.assertIn("AAPL and TSLA", text)
        self.assertNotIn("MSFT", text)


class IntentGateTests(unittest.TestCase):
    def test_keyword_overrides_confident_off_topic_classifier(self):
        classifier = _ScriptedClassifier(Classification(label="off_topic", confidence=0.99))
        gate = IntentGate(classifier)
        decision = asyncio.run(gate.evaluate("How is my portfolio doing?", [], IntentState()))
        self.assertEqual(decision.action, "proceed")
        self.assertEqual(decision.heuristic, "domain_keyword")
        self.assertEqual(classifier.calls, [])

    def test_ticker_inside_sentence_overrides_confident_off_topic(self):
        classifier = _ScriptedClassifier(Classification(label="off_topic", confidence=0.99))
        gate = IntentGate(classifier)
        decision = asyncio.run(gate.evaluate("What do you think about NVDA", [], IntentState()))
        self.assertEqual(decision.action, "proceed")
        self.assertEqual(decision.heuristic, "market_entity")
        self.assertEqual(classifier.calls, [])

    def test_weather_is_rejected(self):
        classifier = _ScriptedClassifier(Classification(label="off_topic", confidence=0.97))
        gate = IntentGate(classifier)
        decision = asyncio.run(gate.evaluate("What's the weather today?", [], IntentState()))
        self.assertEqual(decision.action, "off_topic")
        self.assertEqual(decision.reply, OFF_TOPIC_MESSAGE)
        self.assertEqual(decision.patch.last_intent, "off_topic")
        self.assertFalse(decision.patch.pending_clarification)
        self.assertEqual(len(classifier.calls), 1)

    def test_short_follow_up_skips_classifier(self):
        classifier = _ScriptedClassifier(Classification(label="off_topic", confidence=0.99))
        gate = IntentGate(classifier)
        history = [
            Turn(role="human", text="How did my portfolio perform this year?"),
            Turn(role="assistant", text="Net performance: 12.5%"),
        ]
        state = _on_topic_state(last_tool_used="portfolio_performance")
        decision = asyncio.run(gate.evaluate("what about last month?", history, state))
        self.assertEqual(decision.action, "proceed")
        self.assertEqual(decision.heuristic, "short_follow_up")
        self.assertEqual(classifier.calls, [])

    def test_uncertain_gets_lenient_second_pass(self):
        classifier = _ScriptedClassifier(
            Classification(label="uncertain", confidence=0.5),
            Classification(label="on_topic", confidence=0.8),
        )
        gate = IntentGate(classifier)
        decision = asyncio.run(gate.evaluate("can you walk me through something", [], IntentState()))
        self.assertEqual(decision.action, "proceed")
        self.assertTrue(decision.second_pass)
        self.assertEqual([lenient for _, lenient in classifier.calls], [False, True])

    def test_near_threshold_off_topic_that_stays_uncertain_asks_to_clarify(self):
        classifier = _ScriptedClassifier(
            Classification(label="off_topic", confidence=0.9),
            Classification(label="uncertain", confidence=0.6),
        )
        gate = IntentGate(classifier)
        state = IntentState(last_tool_used="portfolio_details", recent_entities=["AAPL"])
        decision = asyncio.run(gate.evaluate("can you walk me through something", [], state))
        self.assertEqual(decision.action, "clarify")
        self.assertTrue(decision.patch.pending_clarification)
        self.assertEqual(decision.patch.last_intent, "uncertain")
        self.assertIn("AAPL", decision.reply)

    def test_same_input_same_decision(self):
        gate = IntentGate(_ScriptedClassifier(Classification(label="off_topic", confidence=0.7)))
        first = asyncio.run(gate.evaluate("tell me something nice", [], IntentState()))
        second = asyncio.run(gate.evaluate("tell me something nice", [], IntentState()))
        self.assertEqual(first.action, second.action)


class ClassifierParsingTests(unittest.TestCase):
    def test_json_output(self):
        result = parse_classification('{"label": "off_topic", "confidence": 0.91, "reason": "weather"}')
        self.assertEqual(result.label, "off_topic")
        self.assertAlmostEqual(result.confidence, 0.91)

    def test_fenced_json_and_clamping(self):
        result = parse_classification('```json\n{"label": "on_topic", "confidence": 3}\n```')
        self.assertEqual(result.label, "on_topic")
        self.assertEqual(result.confidence, 1.0)

    def test_unparseable_is_uncertain(self):
        for raw in ("", "sure thing", '{"label": "maybe"}', "[1, 2]"):
            result = parse_classification(raw)
            self.assertEqual((result.label, result.confidence), ("uncertain", 0.5), raw)

    def test_legacy_yes_no(self):
        self.assertEqual(parse_classification("Yes.").label, "on_topic")
        self.assertEqual(parse_classification("no").label, "off_topic")

    def test_llm_classifier_errors_read_as_uncertain(self):
        classifier = LlmIntentClassifier(_FakeChatModel(exc=RuntimeError("boom")))
        result = asyncio.run(classifier.classify(ClassificationInput(message="hello")))
        self.assertEqual(result.label, "uncertain")
        self.assertEqual(result.reason, "classifier_error")

    def test_llm_classifier_parses_model_reply(self):
        classifier = LlmIntentClassifier(_FakeChatModel('{"label": "on_topic", "confidence": 0.7}'))
        result = asyncio.run(classifier.classify(ClassificationInput(message="hello")))
        self.assertEqual(result.label, "on_topic")


if __name__ == "__main__":
    unittest.main()
