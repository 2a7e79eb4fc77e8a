# main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config.logging_config import configure_logging
from config.settings import get_settings
from middleware.rate_limit import limiter
from middleware.request_logging import RequestLoggingMiddleware
from routers.agent_chat_routes import router as agent_chat_router

configure_logging()

settings = get_settings()

app = FastAPI(title="Portfolio Agent")

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(agent_chat_router, prefix="/api/agent")


@app.get("/health")
def health():
    return {"status": "ok"}
