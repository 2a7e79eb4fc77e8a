import json
import unittest

from fastapi.testclient import TestClient
from jose import jwt

from agent.state_models import ChatReply
from config.settings import AgentConfigError, AgentSettings, get_settings
from main import app
from routers.agent_chat_routes import get_agent_service
from services.auth import RequestUser, get_current_user


class _FakeService:
    def __init__(self, *, text="Hello", chunks=("Hel", "lo"), exc=None):
        self.text = text
        self.chunks = chunks
        self.exc = exc
        self.calls = []

    def resolve_conversation_id(self, conversation_id):
        return (conversation_id or "").strip() or "generated-id"

    async def chat(self, user_id, message, conversation_id=None):
        self.calls.append((user_id, message, conversation_id))
        if self.exc:
            raise self.exc
        return ChatReply(text=self.text, conversation_id=self.resolve_conversation_id(conversation_id))

    async def stream_chat(self, user_id, conversation_id, message, *, is_disconnected=None):
        self.calls.append((user_id, message, conversation_id))
        for chunk in self.chunks:
            yield chunk
        if self.exc:
            raise self.exc


def _parse_sse(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        lines = block.split("\n")
        event = lines[0].replace("event: ", "")
        payload = json.loads(lines[1].replace("data: ", ""))
        events.append((event, payload))
    return events


class AgentChatRoutesTests(unittest.TestCase):
    def setUp(self):
        self.service = _FakeService()
        app.dependency_overrides[get_current_user] = lambda: RequestUser(id="user-1")
        app.dependency_overrides[get_agent_service] = lambda: self.service
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def test_chat_returns_text_and_conversation_id(self):
        res = self.client.post("/api/agent/chat", json={"message": "  How is my portfolio?  ", "conversationId": "c1"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"text": "Hello", "conversationId": "c1"})
        self.assertEqual(self.service.calls, [("user-1", "How is my portfolio?", "c1")])

    def test_blank_message_is_rejected(self):
        res = self.client.post("/api/agent/chat", json={"message": "   "})
        self.assertEqual(res.status_code, 422)

    def test_configuration_error_is_400(self):
        self.service.exc = AgentConfigError("LLM API key is not configured. Set OPENROUTER_API_KEY in the environment.")
        res = self.client.post("/api/agent/chat", json={"message": "hi"})
        self.assertEqual(res.status_code, 400)
        self.assertIn("OPENROUTER_API_KEY", res.json()["detail"])

    def test_unexpected_error_is_generic_500(self):
        self.service.exc = RuntimeError("secret stack detail")
        res = self.client.post("/api/agent/chat", json={"message": "hi"})
        self.assertEqual(res.status_code, 500)
        self.assertNotIn("secret", res.json()["detail"])

    def test_stream_emits_meta_tokens_done(self):
        res = self.client.post("/api/agent/chat/stream", json={"message": "hi"})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.headers["content-type"].startswith("text/event-stream"))
        self.assertEqual(res.headers["cache-control"], "no-cache")
        self.assertEqual(res.headers["x-accel-buffering"], "no")
        self.assertEqual(
            _parse_sse(res.text),
            [
                ("meta", {"conversationId": "generated-id"}),
                ("token", {"chunk": "Hel"}),
                ("token", {"chunk": "lo"}),
                ("done", {}),
            ],
        )

    def test_stream_error_event_then_done(self):
        self.service.chunks = ("partial",)
        self.service.exc = RuntimeError("boom")
        res = self.client.post("/api/agent/chat/stream", json={"message": "hi", "conversationId": "c9"})
        events = _parse_sse(res.text)
        self.assertEqual([name for name, _ in events], ["meta", "token", "error", "done"])
        self.assertNotIn("boom", events[2][1]["error"])


class AgentChatAuthTests(unittest.TestCase):
    def setUp(self):
        self.service = _FakeService()
        app.dependency_overrides[get_agent_service] = lambda: self.service
        app.dependency_overrides[get_settings] = lambda: AgentSettings(auth_jwt_secret="test-secret")
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def test_missing_token_is_401(self):
        res = self.client.post("/api/agent/chat", json={"message": "hi"})
        self.assertEqual(res.status_code, 401)

    def test_bad_signature_is_401(self):
        token = jwt.encode({"sub": "user-7"}, "other-secret", algorithm="HS256")
        res = self.client.post(
            "/api/agent/chat", json={"message": "hi"}, headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual(res.status_code, 401)

    def test_valid_token_uses_sub_as_user_id(self):
        token = jwt.encode({"sub": "user-7"}, "test-secret", algorithm="HS256")
        res = self.client.post(
            "/api/agent/chat", json={"message": "hi"}, headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.service.calls[0][0], "user-7")


if __name__ == "__main__":
    unittest.main()
