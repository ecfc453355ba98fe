# schemas.py
# =============================================================================
# FitTrack API: Pydantic v2 request/response models
# Insert* models are validated once at the boundary; *Out models mirror rows.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Trend = Literal["improving", "stagnating", "declining"]


def _to_utc_naive(v: Optional[datetime]) -> Optional[datetime]:
    if v is None or v.tzinfo is None:
        return v
    return v.astimezone(timezone.utc).replace(tzinfo=None)


def _non_empty(v: str, what: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{what} cannot be empty")
    return v


class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
class WarmupSet(BaseModel):
    weight: float = Field(ge=0)
    reps: int = Field(ge=0)


class InsertWorkout(BaseModel):
    """One logged exercise: working weight x reps x sets, plus optional detail."""
    exercise: str
    weight: float = Field(ge=0)
    reps: int = Field(ge=0)
    sets: int = Field(ge=0)
    rpe: Optional[int] = None
    tempo: Optional[str] = None
    rest_time: Optional[int] = Field(default=None, ge=0)
    date: Optional[datetime] = None
    notes: Optional[str] = None
    program_id: Optional[int] = None
    phase: Optional[str] = None
    week_in_program: Optional[int] = Field(default=None, ge=1)
    warmup_sets: List[WarmupSet] = Field(default_factory=list)

    @field_validator("exercise")
    @classmethod
    def validate_exercise(cls, v: str) -> str:
        return _non_empty(v, "exercise name")

    @field_validator("rpe")
    @classmethod
    def validate_rpe(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and (v < 1 or v > 10):
            raise ValueError("rpe must be between 1 and 10")
        return v

    @field_validator("date")
    @classmethod
    def normalize_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc_naive(v)


class WorkoutOut(BaseModel):
    id: int
    exercise: str
    weight: float
    reps: int
    sets: int
    rpe: Optional[int] = None
    tempo: Optional[str] = None
    rest_time: Optional[int] = None
    date: datetime
    notes: Optional[str] = None
    program_id: Optional[int] = None
    phase: Optional[str] = None
    week_in_program: Optional[int] = None
    warmup_sets: List[WarmupSet] = Field(default_factory=list)
    model_config = ConfigDict(from_attributes=True)

    @field_validator("warmup_sets", mode="before")
    @classmethod
    def default_warmups(cls, v):
        return v or []


# -----------------------------------------------------------------------------
# Body weight
# -----------------------------------------------------------------------------
class InsertWeight(BaseModel):
    weight: float = Field(ge=0)
    date: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc_naive(v)


class WeightOut(BaseModel):
    id: int
    weight: float
    date: datetime
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


# -----------------------------------------------------------------------------
# Macros
# -----------------------------------------------------------------------------
class InsertMacro(BaseModel):
    calories: int = Field(ge=0)
    protein: int = Field(ge=0)
    carbs: int = Field(ge=0)
    fats: int = Field(ge=0)
    water_intake: Optional[int] = Field(default=None, ge=0)  # ml
    date: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc_naive(v)


class MacroOut(BaseModel):
    id: int
    date: datetime
    calories: int
    protein: int
    carbs: int
    fats: int
    water_intake: Optional[int] = None
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


# -----------------------------------------------------------------------------
# Programs
# -----------------------------------------------------------------------------
class ExerciseSpec(BaseModel):
    name: str
    sets: int = Field(ge=0)
    reps: int = Field(ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _non_empty(v, "exercise name")


class InsertProgram(BaseModel):
    name: str
    description: Optional[str] = None
    exercises: List[ExerciseSpec]

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _non_empty(v, "program name")


class ProgramOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    exercises: List[ExerciseSpec] = Field(default_factory=list)
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# -----------------------------------------------------------------------------
# Insights
# -----------------------------------------------------------------------------
class MacroAdjustments(BaseModel):
    calories: Optional[int] = None
    protein: Optional[int] = None
    carbs: Optional[int] = None
    fats: Optional[int] = None


class ProgressInsight(BaseModel):
    type: Literal["weight", "workout", "nutrition"] = "nutrition"
    trend: Trend
    analysis: str
    recommendations: List[str] = Field(default_factory=list)
    macro_adjustments: Optional[MacroAdjustments] = None


class AnalysisErrorOut(BaseModel):
    message: str
    error: str
