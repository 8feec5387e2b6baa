import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.config import get_settings
from app.core.dependencies import build_calendar_adapter, close_http_client, get_http_client
from app.core.exceptions import register_exception_handlers
from app.core.security import RequestContextMiddleware
from app.routers import calendar, events

settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    http = await get_http_client()
    app.state.calendar_adapter = build_calendar_adapter(http, settings)
    logger.info("Calendar adapter ready for calendar %s", settings.GOOGLE_CALENDAR_ID)
    yield
    await close_http_client()


app = FastAPI(title="Enrollment Calendar API", version="1.0.0", redirect_slashes=False, lifespan=lifespan)

register_exception_handlers(app)

app.state.limiter = events.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Authorization", "X-Request-ID"],
)

app.include_router(events.router, prefix="/events", tags=["events"])
app.include_router(calendar.router, prefix="/calendar", tags=["calendar"])

@app.get("/")
async def root():
    return {"message": "Enrollment Calendar API"}

@app.get("/health")
async def health():
    return {"status": "healthy"}
