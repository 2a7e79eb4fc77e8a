import json
import logging
from typing import Any, AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent.agent_service import AgentService
from agent.conversation_store import ConversationStore
from config.settings import AgentConfigError, AgentSettings, get_settings
from middleware.rate_limit import CHAT_RATE_LIMIT, limiter
from services.auth import RequestUser, get_current_user
from services.backend.portfolio_client import PortfolioApiClient
from services.market_data.historical_service import MarketDataService
from services.tools.base import ToolContext
from services.tools.registry import build_tools

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_ERROR = "Something went wrong while generating a response. Please try again."
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=8000)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId", max_length=128)

    @field_validator("message")
    @classmethod
    def _strip_message(cls, v: str) -> str:
        value = v.strip()
        if not value:
            raise ValueError("Message is required")
        return value


# ─── Shared dependencies ───────────────────────────────────────────

_store: Optional[ConversationStore] = None
_portfolio_client: Optional[PortfolioApiClient] = None
_market_data: Optional[MarketDataService] = None


def get_conversation_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store


def get_portfolio_client(settings: AgentSettings = Depends(get_settings)) -> PortfolioApiClient:
    global _portfolio_client
    if _portfolio_client is None:
        _portfolio_client = PortfolioApiClient(
            settings.portfolio_api_base_url, token=settings.portfolio_api_token
        )
    return _portfolio_client


def get_market_data_service() -> MarketDataService:
    global _market_data
    if _market_data is None:
        _market_data = MarketDataService()
    return _market_data


def get_agent_service(
    user: RequestUser = Depends(get_current_user),
    settings: AgentSettings = Depends(get_settings),
    store: ConversationStore = Depends(get_conversation_store),
    backend: PortfolioApiClient = Depends(get_portfolio_client),
    market_data: MarketDataService = Depends(get_market_data_service),
) -> AgentService:
    ctx = ToolContext(
        user_id=user.id,
        backend=backend,
        market_data=market_data,
        user_currency=user.currency,
    )
    return AgentService(store, build_tools(ctx), settings=settings)


def _sse_pack(event: str, data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    lines = payload.splitlines() or [""]
    out = f"event: {event}\n" if event else ""
    for line in lines:
        out += f"data: {line}\n"
    out += "\n"
    return out


# ─── Routes ────────────────────────────────────────────────────────

@router.post("/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat_endpoint(
    request: Request,
    req: ChatRequest,
    user: RequestUser = Depends(get_current_user),
    service: AgentService = Depends(get_agent_service),
):
    try:
        reply = await service.chat(user.id, req.message, req.conversation_id)
    except AgentConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("agent.chat_failed")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    return {"text": reply.text, "conversationId": reply.conversation_id}


@router.post("/chat/stream")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat_stream_endpoint(
    request: Request,
    req: ChatRequest,
    user: RequestUser = Depends(get_current_user),
    service: AgentService = Depends(get_agent_service),
):
    conversation_id = service.resolve_conversation_id(req.conversation_id)

    async def event_stream() -> AsyncGenerator[str, None]:
        yield _sse_pack("meta", {"conversationId": conversation_id})
        try:
            async for chunk in service.stream_chat(
                user.id,
                conversation_id,
                req.message,
                is_disconnected=request.is_disconnected,
            ):
                yield _sse_pack("token", {"chunk": chunk})
        except AgentConfigError as exc:
            yield _sse_pack("error", {"error": str(exc)})
        except Exception:
            logger.exception("agent.stream_failed conversation_id=%s", conversation_id)
            yield _sse_pack("error", {"error": GENERIC_ERROR})
        yield _sse_pack("done", {})

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
