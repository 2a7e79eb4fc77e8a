from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator

TurnRole = Literal["human", "assistant"]
IntentLabel = Literal["on_topic", "off_topic", "uncertain"]
GateAction = Literal["proceed", "off_topic", "clarify"]

EPOCH_ISO = "1970-01-01T00:00:00Z"


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: TurnRole
    text: StrictStr


class IntentState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_intent: IntentLabel = Field(default="uncertain", alias="lastIntent")
    last_tool_used: Optional[StrictStr] = Field(default=None, alias="lastToolUsed")
    recent_entities: List[StrictStr] = Field(default_factory=list, alias="recentEntities")
    pending_clarification: StrictBool = Field(default=False, alias="pendingClarification")
    updated_at: StrictStr = Field(default=EPOCH_ISO, alias="updatedAt")


class IntentPatch(BaseModel):
    """Merge-patch for IntentState; only explicitly set fields are applied."""

    last_intent: Optional[IntentLabel] = None
    last_tool_used: Optional[str] = None
    recent_entities: List[str] = Field(default_factory=list)
    pending_clarification: Optional[bool] = None


class Classification(BaseModel):
    label: IntentLabel = "uncertain"
    confidence: float = 0.5
    reason: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        if v != v:  # NaN
            return 0.5
        return min(1.0, max(0.0, float(v)))


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    reply: Optional[str] = None
    patch: Optional[IntentPatch] = None
    heuristic: Optional[str] = None
    classification: Optional[Classification] = None
    second_pass: bool = False


@dataclass
class ToolCall:
    name: str
    arguments: Dict[str, Any]
    call_id: str = ""
    result_text: str = ""


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass
class OrchestrationResult:
    text: str
    tools_used: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    clarification: bool = False
    rounds: int = 0
    budget_exhausted: bool = False
    disconnected: bool = False

    @property
    def last_tool_used(self) -> Optional[str]:
        return self.tools_used[-1] if self.tools_used else None


@dataclass(frozen=True)
class ChatReply:
    text: str
    conversation_id: str


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
