from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
import weakref
from typing import Any, Iterable, List, Optional

from pydantic import TypeAdapter, ValidationError

from services.cache.cache_backend import CacheBackend, get_cache_backend
from .state_models import IntentPatch, IntentState, Turn, now_iso

logger = logging.getLogger(__name__)

CHAT_HISTORY_TTL_SEC = int(os.getenv("CHAT_HISTORY_TTL_SEC", "604800"))  # 7d
CHAT_MAX_HISTORY = int(os.getenv("CHAT_MAX_HISTORY", "20"))
CHAT_INTENT_HISTORY = int(os.getenv("CHAT_INTENT_HISTORY", "4"))
CHAT_MAX_STORED_TURNS = int(os.getenv("CHAT_MAX_STORED_TURNS", "50"))
CHAT_ENTITIES_MAX = int(os.getenv("CHAT_ENTITIES_MAX", "20"))

CONVERSATION_PREFIX = "agent:conversation:"
INTENT_STATE_PREFIX = "agent:intent-state:"

_TURNS = TypeAdapter(List[Turn])


def _conversation_key(user_id: Any, conversation_id: str) -> str:
    return f"{CONVERSATION_PREFIX}{str(user_id)}:{(conversation_id or '').strip()}"


def _intent_key(user_id: Any, conversation_id: str) -> str:
    return f"{INTENT_STATE_PREFIX}{str(user_id)}:{(conversation_id or '').strip()}"


def merge_entities(existing: Iterable[Any], incoming: Iterable[Any], cap: int = CHAT_ENTITIES_MAX) -> List[str]:
    """Ordered union: blanks dropped, a repeated entity moves to the end, newest `cap` kept."""
    merged: List[str] = []
    for item in list(existing) + list(incoming):
        if not isinstance(item, str):
            continue
        value = item.strip()
        if not value:
            continue
        if value in merged:
            merged.remove(value)
        merged.append(value)
    if cap <= 0:
        return []
    return merged[-cap:]


class ConversationStore:
    """
    Turn history and intent state per (user, conversation), each under its
    own key and TTL. Corrupted payloads read as empty/default state; backend
    errors propagate.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        *,
        ttl_seconds: int = CHAT_HISTORY_TTL_SEC,
        max_stored_turns: int = CHAT_MAX_STORED_TURNS,
        entities_max: int = CHAT_ENTITIES_MAX,
    ) -> None:
        self._backend = backend
        self.ttl_seconds = int(ttl_seconds)
        # Whole human/assistant pairs only.
        self.max_stored_turns = max(2, int(max_stored_turns) // 2 * 2)
        self.entities_max = int(entities_max)
        # Serializes read-modify-write per key within this process.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = get_cache_backend()
        return self._backend

    @staticmethod
    def create_conversation_id() -> str:
        return str(uuid.uuid4())

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _read_json(self, key: str) -> Any:
        raw = await asyncio.to_thread(self.backend.get, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("agent.store.decode_failed namespace=%s", key.split(":", 2)[1])
            return None

    async def _write_json(self, key: str, payload: Any, ttl_seconds: int) -> None:
        raw = json.dumps(payload, separators=(",", ":"))
        await asyncio.to_thread(self.backend.setex, key, ttl_seconds, raw)

    async def _load_turns(self, key: str) -> List[Turn]:
        payload = await self._read_json(key)
        if payload is None:
            return []
        try:
            return _TURNS.validate_python(payload)
        except ValidationError:
            logger.warning("agent.store.invalid_history")
            return []

    # ── history ─────────────────────────────────────────────────────

    async def get_history(
        self,
        conversation_id: str,
        user_id: Any,
        limit: int = CHAT_MAX_HISTORY,
    ) -> List[Turn]:
        if limit <= 0:
            return []
        turns = await self._load_turns(_conversation_key(user_id, conversation_id))
        return turns[-limit:]

    async def append_turn(
        self,
        conversation_id: str,
        user_id: Any,
        human_text: str,
        assistant_text: str,
        ttl_seconds: Optional[int] = None,
    ) -> List[Turn]:
        key = _conversation_key(user_id, conversation_id)
        ttl = int(ttl_seconds) if ttl_seconds else self.ttl_seconds
        async with self._lock_for(key):
            turns = await self._load_turns(key)
            turns.append(Turn(role="human", text=human_text or ""))
            turns.append(Turn(role="assistant", text=assistant_text or ""))
            if len(turns) > self.max_stored_turns:
                turns = turns[-self.max_stored_turns:]
            await self._write_json(key, [t.model_dump() for t in turns], ttl)
        return turns

    # ── intent state ────────────────────────────────────────────────

    async def _load_intent_state(self, key: str) -> IntentState:
        payload = await self._read_json(key)
        if not isinstance(payload, dict):
            return IntentState()
        try:
            state = IntentState.model_validate(payload)
        except ValidationError:
            logger.warning("agent.store.invalid_intent_state")
            return IntentState()
        # Stored lists written by other versions may violate the entity invariant.
        state.recent_entities = merge_entities(state.recent_entities, [], self.entities_max)
        return state

    async def get_intent_state(self, conversation_id: str, user_id: Any) -> IntentState:
        return await self._load_intent_state(_intent_key(user_id, conversation_id))

    async def update_intent_state(
        self,
        conversation_id: str,
        user_id: Any,
        patch: IntentPatch,
        ttl_seconds: Optional[int] = None,
    ) -> IntentState:
        key = _intent_key(user_id, conversation_id)
        ttl = int(ttl_seconds) if ttl_seconds else self.ttl_seconds
        fields = patch.model_fields_set
        async with self._lock_for(key):
            current = await self._load_intent_state(key)
            updated = current.model_copy(
                update={
                    "last_intent": (
                        patch.last_intent
                        if "last_intent" in fields and patch.last_intent
                        else current.last_intent
                    ),
                    "last_tool_used": (
                        patch.last_tool_used if "last_tool_used" in fields else current.last_tool_used
                    ),
                    "recent_entities": merge_entities(
                        current.recent_entities, patch.recent_entities, self.entities_max
                    ),
                    "pending_clarification": (
                        bool(patch.pending_clarification)
                        if "pending_clarification" in fields and patch.pending_clarification is not None
                        else current.pending_clarification
                    ),
                    "updated_at": now_iso(),
                }
            )
            await self._write_json(key, updated.model_dump(by_alias=True), ttl)
        return updated
