from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import os
import re
import logging
import sqlite3
from pathlib import Path
import asyncio
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from . import leaderboard
from .errors import StorePermissionError, create_error_response
from .store import LeaderboardStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)


leaderboard_lock = asyncio.Lock()
leaderboard_scheduler: Optional[AsyncIOScheduler] = None

# Store handle is initialized on startup.
store: Optional[LeaderboardStore] = None

DEFAULT_MAX_PROOF_BYTES = 10 * 1024 * 1024


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _max_proof_bytes() -> int:
    try:
        return int(os.environ.get("MAX_PROOF_BYTES") or DEFAULT_MAX_PROOF_BYTES)
    except ValueError:
        return DEFAULT_MAX_PROOF_BYTES


def _get_store() -> LeaderboardStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return store


# ============== MODELS ==============

NAME_PATTERN = re.compile(r"^[A-Za-z0-9 _-]{1,30}$")
CALORIES_PATTERN = re.compile(r"^\d{1,5}$")
MAX_CALORIES = 10000

REQUIRED_MESSAGE = "Name and calories required"
INVALID_CALORIES_MESSAGE = (
    "Please enter valid calories. Valid calories must be a whole number between 1 and 10000."
)
INVALID_NAME_MESSAGE = (
    "Please enter a valid name. A valid name may include letters, numbers, underscores, or dashes."
)


class EntryCreate(BaseModel):
    name: str
    calories: int
    proof: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError(REQUIRED_MESSAGE)
        if not isinstance(value, str):
            raise ValueError(INVALID_NAME_MESSAGE)
        name = value.strip()
        if not name:
            raise ValueError(REQUIRED_MESSAGE)
        if not NAME_PATTERN.match(name):
            raise ValueError(INVALID_NAME_MESSAGE)
        return name

    @field_validator("calories", mode="before")
    @classmethod
    def check_calories(cls, value: Any) -> int:
        if value is None or value == "" or value == 0 or value == "0":
            raise ValueError(REQUIRED_MESSAGE)
        if isinstance(value, bool):
            raise ValueError(INVALID_CALORIES_MESSAGE)
        if isinstance(value, int):
            calories = value
        elif isinstance(value, float) and value.is_integer():
            calories = int(value)
        elif isinstance(value, str) and CALORIES_PATTERN.match(value.strip()):
            calories = int(value.strip())
        else:
            raise ValueError(INVALID_CALORIES_MESSAGE)
        if not 1 <= calories <= MAX_CALORIES:
            raise ValueError(INVALID_CALORIES_MESSAGE)
        return calories

    @field_validator("proof")
    @classmethod
    def check_proof(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > _max_proof_bytes():
            raise ValueError("Proof image is too large")
        return value or None


class EntryResponse(BaseModel):
    id: int
    message: str
    updated: bool


class LogItem(BaseModel):
    date: str
    calories: int
    proof: Optional[str] = None


class WeeklyUser(BaseModel):
    name: str
    total_calories: int = Field(serialization_alias="totalCalories")
    logs: List[LogItem]


class WeeklyResponse(BaseModel):
    users: List[WeeklyUser]
    last_reset: int = Field(serialization_alias="lastReset")


class StatsUser(BaseModel):
    name: str
    total_calories: int = Field(serialization_alias="totalCalories")
    entries: int


class MonthlyResponse(BaseModel):
    users: List[StatsUser]
    month: str


class LifetimeResponse(BaseModel):
    users: List[StatsUser]


class ResetResponse(BaseModel):
    message: str
    last_reset: int = Field(serialization_alias="lastReset")


class CountdownResponse(BaseModel):
    timezone: str
    now: str
    day_end: str
    week_end: str
    month_end: str
    day_remaining_seconds: int
    week_remaining_seconds: int
    month_remaining_seconds: int


# ============== LEADERBOARD HELPERS ==============

async def _ensure_current_week(s: LeaderboardStore) -> None:
    # Fallback if the scheduler (or the client) missed the Monday rollover.
    if not _env_flag("AUTO_WEEKLY_RESET", True):
        return
    async with leaderboard_lock:
        await run_in_threadpool(leaderboard.reset_week_if_due, s)


async def _scheduled_daily_maintenance() -> None:
    if store is None:
        return
    async with leaderboard_lock:
        await run_in_threadpool(leaderboard.run_daily_maintenance, store)


async def _scheduled_weekly_reset() -> None:
    if store is None:
        return
    async with leaderboard_lock:
        await run_in_threadpool(leaderboard.reset_week_if_due, store)


# ============== LIFECYCLE ==============

@asynccontextmanager
async def lifespan(application: FastAPI):
    global store, leaderboard_scheduler

    data_file = os.environ.get("DB_PATH")
    path = Path(data_file) if data_file else (ROOT_DIR / "leaderboard.db")
    try:
        store = LeaderboardStore(path)
    except StorePermissionError as e:
        logger.error("ERROR: %s", e)
        raise

    now = leaderboard.now_lb()
    await run_in_threadpool(store.initialize, leaderboard.to_ms(now), leaderboard.month_key(now))
    logger.info("Connected to SQLite database at %s", path)

    await _scheduled_daily_maintenance()
    await _ensure_current_week(store)

    if _env_flag("ENABLE_SCHEDULER", True) and leaderboard_scheduler is None:
        tz = leaderboard.get_leaderboard_tz()
        leaderboard_scheduler = AsyncIOScheduler(timezone=tz)
        leaderboard_scheduler.add_job(
            _scheduled_daily_maintenance,
            CronTrigger(hour=0, minute=0, second=1, timezone=tz),
            id="daily_leaderboard_maintenance",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        if _env_flag("AUTO_WEEKLY_RESET", True):
            leaderboard_scheduler.add_job(
                _scheduled_weekly_reset,
                CronTrigger(day_of_week="mon", hour=0, minute=0, second=5, timezone=tz),
                id="weekly_leaderboard_reset",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
            )
        leaderboard_scheduler.start()
        logger.info("Leaderboard scheduler started (daily cleanup: 00:00:01 %s)", tz.key)

    try:
        yield
    finally:
        if leaderboard_scheduler is not None:
            leaderboard_scheduler.shutdown(wait=False)
            leaderboard_scheduler = None
            logger.info("Leaderboard scheduler stopped")
        store = None


# Create the main app without a prefix
app = FastAPI(title="Burnboard API", lifespan=lifespan)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ============== ERROR HANDLERS ==============

def _validation_message(errors: List[Dict[str, Any]]) -> str:
    messages = []
    for error in errors:
        if error.get("type") == "missing":
            return REQUIRED_MESSAGE
        ctx_error = (error.get("ctx") or {}).get("error")
        messages.append(str(ctx_error) if ctx_error else error.get("msg", "Invalid request"))
    if REQUIRED_MESSAGE in messages:
        return REQUIRED_MESSAGE
    if INVALID_CALORIES_MESSAGE in messages:
        return INVALID_CALORIES_MESSAGE
    return messages[0] if messages else "Invalid request"


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail), exc.status_code),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=create_error_response(_validation_message(exc.errors()), 400),
    )


@app.exception_handler(sqlite3.Error)
async def database_exception_handler(request: Request, exc: sqlite3.Error):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content=create_error_response(str(exc), 500))


# ============== LEADERBOARD ROUTES ==============

@api_router.get("/data", response_model=WeeklyResponse)
async def get_weekly_data():
    s = _get_store()
    await _ensure_current_week(s)
    return await run_in_threadpool(leaderboard.weekly_board, s)


@api_router.get("/monthly", response_model=MonthlyResponse)
async def get_monthly_leaderboard():
    s = _get_store()
    # Fallback if the daily maintenance run missed the month boundary.
    async with leaderboard_lock:
        await run_in_threadpool(leaderboard.reset_monthly_if_needed, s)
    return await run_in_threadpool(leaderboard.monthly_board, s)


@api_router.get("/lifetime", response_model=LifetimeResponse)
async def get_lifetime_leaderboard():
    return await run_in_threadpool(leaderboard.lifetime_board, _get_store())


@api_router.post("/entry", response_model=EntryResponse)
async def add_entry(payload: EntryCreate):
    s = _get_store()
    async with leaderboard_lock:
        if _env_flag("AUTO_WEEKLY_RESET", True):
            await run_in_threadpool(leaderboard.reset_week_if_due, s)
        result = await run_in_threadpool(
            leaderboard.record_entry, s, payload.name, payload.calories, payload.proof
        )
    return EntryResponse(id=result.id, message=result.message, updated=result.updated)


@api_router.post("/reset", response_model=ResetResponse)
async def reset_weekly_data():
    s = _get_store()
    async with leaderboard_lock:
        last_reset = await run_in_threadpool(leaderboard.reset_week, s)
    return ResetResponse(message="Leaderboard reset", last_reset=last_reset)


@api_router.get("/countdown", response_model=CountdownResponse)
async def get_leaderboard_countdown():
    data = leaderboard.countdown()
    return CountdownResponse(
        timezone=data["timezone"],
        now=data["now"].isoformat(),
        day_end=data["day_end"].isoformat(),
        week_end=data["week_end"].isoformat(),
        month_end=data["month_end"].isoformat(),
        day_remaining_seconds=data["day_remaining_seconds"],
        week_remaining_seconds=data["week_remaining_seconds"],
        month_remaining_seconds=data["month_remaining_seconds"],
    )


# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "Burnboard Leaderboard API"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# Include the router in the main app
app.include_router(api_router)

cors_origins_env = os.environ.get('CORS_ORIGINS', '*')
cors_origins = [o.strip() for o in cors_origins_env.split(',') if o.strip()]
if not cors_origins:
    cors_origins = ['*']
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
