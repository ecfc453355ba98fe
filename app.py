# app.py
# =============================================================================
# FitTrack API: Workouts, Body Weight, Macros, Programs & AI Insights
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Append-only records, newest-first reads, one analysis endpoint.
# =============================================================================

from __future__ import annotations

import os
import logging
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Integer,
    String,
    desc,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from analysis import ProgressAnalyzer
from schemas import (
    AnalysisErrorOut,
    GenericResponse,
    HealthOut,
    InsertMacro,
    InsertProgram,
    InsertWeight,
    InsertWorkout,
    MacroOut,
    ProgramOut,
    ProgressInsight,
    WeightOut,
    WorkoutOut,
)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("fittrack-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   2) env FITTRACK_DB (path to a SQLite file, created if missing)
#   3) ./data/fittrack.db if it exists
#   4) ./fittrack.db  (fallback)
# -----------------------------------------------------------------------------
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "fittrack")

if _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_PATH = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    engine = create_async_engine(DB_PATH, echo=False, pool_pre_ping=True)
    log.info(f"Using Cloud SQL (async): {_cloud_sql}")
else:
    env_db = os.getenv("FITTRACK_DB")
    if env_db:
        DB_PATH = env_db
    else:
        candidates = [
            str((OSPath(__file__).parent / "data" / "fittrack.db").resolve()),
            str((OSPath(__file__).parent / "fittrack.db").resolve()),
        ]
        DB_PATH = next((p for p in candidates if OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class Workout(Base):
    __tablename__ = "workouts"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exercise: Mapped[str] = mapped_column(String, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    reps: Mapped[int] = mapped_column(Integer, nullable=False)
    sets: Mapped[int] = mapped_column(Integer, nullable=False)
    rpe: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tempo: Mapped[Optional[str]] = mapped_column(String, nullable=True)       # e.g. "3-1-1-0"
    rest_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # seconds
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    program_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    phase: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    week_in_program: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    warmup_sets: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # [{weight, reps}]


class Weight(Base):
    __tablename__ = "weights"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Macro(Base):
    __tablename__ = "macros"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    calories: Mapped[int] = mapped_column(Integer, nullable=False)
    protein: Mapped[int] = mapped_column(Integer, nullable=False)
    carbs: Mapped[int] = mapped_column(Integer, nullable=False)
    fats: Mapped[int] = mapped_column(Integer, nullable=False)
    water_intake: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # ml
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Program(Base):
    __tablename__ = "programs"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    exercises: Mapped[list] = mapped_column(JSON, nullable=False)  # [{name, sets, reps}]
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# -----------------------------------------------------------------------------
# Startup: create tables & run migrations
# -----------------------------------------------------------------------------
_MIGRATIONS = [
    ("workouts", "program_id", "ALTER TABLE workouts ADD COLUMN program_id INTEGER"),
    ("workouts", "phase", "ALTER TABLE workouts ADD COLUMN phase VARCHAR"),
    ("workouts", "week_in_program", "ALTER TABLE workouts ADD COLUMN week_in_program INTEGER"),
    ("workouts", "warmup_sets", "ALTER TABLE workouts ADD COLUMN warmup_sets JSON"),
    ("macros", "water_intake", "ALTER TABLE macros ADD COLUMN water_intake INTEGER"),
]


async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # One transaction per column: PostgreSQL aborts the whole txn on any error.
    for table, col_name, col_sql in _MIGRATIONS:
        try:
            async with engine.begin() as conn:
                await conn.execute(text(f"SELECT {col_name} FROM {table} LIMIT 1"))
        except Exception:
            try:
                async with engine.begin() as conn:
                    await conn.execute(text(col_sql))
                    log.info(f"Added {col_name} column to {table} table")
            except Exception as e:
                log.warning(f"Migration for {col_name} ({table}): {e}")


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="FitTrack API",
    description="Workout, body-weight and nutrition log with AI progress insights.",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.analyzer = ProgressAnalyzer()


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------
_INVALID_MESSAGES = {
    "/api/workouts": "Invalid workout data",
    "/api/weights": "Invalid weight data",
    "/api/programs": "Invalid program data",
    "/api/macros": "Invalid macro data",
}


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    message = _INVALID_MESSAGES.get(request.url.path.rstrip("/"), "Invalid request data")
    log.info(f"Rejected {request.method} {request.url.path}: {len(exc.errors())} validation error(s)")
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {type(exc).__name__}: {exc}"},
    )


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "300"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]
    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )
    _rate_limit_store[client_ip].append(now)
    # Prune stale IPs
    if len(_rate_limit_store) > 1000:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if _cloud_sql:
        return f"Cloud SQL PostgreSQL ({_cloud_sql})"
    return "SQLite"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _stamp(d: Optional[datetime]) -> datetime:
    return d if d is not None else _utcnow()


async def _list_workouts(s: AsyncSession) -> List[WorkoutOut]:
    result = await s.execute(select(Workout).order_by(desc(Workout.date), desc(Workout.id)))
    return [WorkoutOut.model_validate(w) for w in result.scalars().all()]


async def _list_weights(s: AsyncSession) -> List[WeightOut]:
    result = await s.execute(select(Weight).order_by(desc(Weight.date), desc(Weight.id)))
    return [WeightOut.model_validate(w) for w in result.scalars().all()]


async def _list_macros(s: AsyncSession) -> List[MacroOut]:
    result = await s.execute(select(Macro).order_by(desc(Macro.date), desc(Macro.id)))
    return [MacroOut.model_validate(m) for m in result.scalars().all()]


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="FitTrack API v1 is running")


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
@app.get("/api/workouts", response_model=List[WorkoutOut])
async def get_workouts() -> List[WorkoutOut]:
    async with async_session() as s:
        return await _list_workouts(s)


@app.post("/api/workouts", response_model=WorkoutOut)
async def create_workout(w: InsertWorkout) -> WorkoutOut:
    data = w.model_dump()
    data["date"] = _stamp(w.date)
    async with async_session() as s:
        obj = Workout(**data)
        s.add(obj)
        await s.commit()
        await s.refresh(obj)
    return WorkoutOut.model_validate(obj)


# -----------------------------------------------------------------------------
# Body weight
# -----------------------------------------------------------------------------
@app.get("/api/weights", response_model=List[WeightOut])
async def get_weights() -> List[WeightOut]:
    async with async_session() as s:
        return await _list_weights(s)


@app.post("/api/weights", response_model=WeightOut)
async def create_weight(w: InsertWeight) -> WeightOut:
    async with async_session() as s:
        obj = Weight(weight=w.weight, date=_stamp(w.date), notes=w.notes or None)
        s.add(obj)
        await s.commit()
        await s.refresh(obj)
    return WeightOut.model_validate(obj)


# -----------------------------------------------------------------------------
# Programs
# -----------------------------------------------------------------------------
@app.get("/api/programs", response_model=List[ProgramOut])
async def get_programs() -> List[ProgramOut]:
    async with async_session() as s:
        result = await s.execute(
            select(Program).order_by(desc(Program.created_at), desc(Program.id))
        )
        rows = result.scalars().all()
    return [ProgramOut.model_validate(p) for p in rows]


@app.post("/api/programs", response_model=ProgramOut)
async def create_program(p: InsertProgram) -> ProgramOut:
    async with async_session() as s:
        obj = Program(
            name=p.name,
            description=p.description or None,
            exercises=[e.model_dump() for e in p.exercises],
            created_at=_utcnow(),
        )
        s.add(obj)
        await s.commit()
        await s.refresh(obj)
    return ProgramOut.model_validate(obj)


# -----------------------------------------------------------------------------
# Macros
# -----------------------------------------------------------------------------
@app.get("/api/macros", response_model=List[MacroOut])
async def get_macros() -> List[MacroOut]:
    async with async_session() as s:
        return await _list_macros(s)


@app.post("/api/macros", response_model=MacroOut)
async def create_macro(m: InsertMacro) -> MacroOut:
    data = m.model_dump()
    data["date"] = _stamp(m.date)
    data["notes"] = m.notes or None
    async with async_session() as s:
        obj = Macro(**data)
        s.add(obj)
        await s.commit()
        await s.refresh(obj)
    return MacroOut.model_validate(obj)


# -----------------------------------------------------------------------------
# AI analysis
# -----------------------------------------------------------------------------
@app.get(
    "/api/analysis",
    response_model=ProgressInsight,
    response_model_exclude_none=True,
    responses={500: {"model": AnalysisErrorOut}},
)
async def get_analysis(
    request: Request,
    exercise: Optional[str] = Query(None, description="only analyse this exercise"),
):
    try:
        async with async_session() as s:
            workouts = await _list_workouts(s)
            weights = await _list_weights(s)
            macros = await _list_macros(s)
        analyzer: ProgressAnalyzer = request.app.state.analyzer
        return await analyzer.analyze(workouts, weights, macros, exercise)
    except Exception as e:
        log.error(f"Analysis failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"message": "Failed to generate insights", "error": str(e) or type(e).__name__},
        )
