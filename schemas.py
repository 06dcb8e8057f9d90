"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic) → definen qué DATOS acepta/devuelve la API

Si un campo no cumple (peso negativo, pasos < 0...) → 422 automático,
antes de que el dato llegue al motor de puntuación.

Convención de nombres:
  XxxCreate / XxxLog / XxxSync → lo que entra (POST)
  XxxResponse → lo que devuelve la API (GET)
"""

from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Literal, Optional


# =============================================================================
# ===================== TRACKING ==============================================
# =============================================================================

class ManualWeightLog(BaseModel):
    """Peso anotado a mano por el usuario (en libras)"""
    user_id: int
    challenge_id: int
    weight: float = Field(gt=0, le=1500)
    day: Optional[date] = None
    # day → si no viene, hoy en la zona del proceso

class TelemetrySync(BaseModel):
    """Un dato del dispositivo en vivo"""
    user_id: int
    steps: int = Field(ge=0)
    weight: Optional[float] = Field(default=None, gt=0, le=1500)
    recorded_at: Optional[datetime] = None
    # recorded_at → instante de la lectura; si no viene, ahora
    timezone: Optional[str] = None
    source: Literal["device-sync", "aggregate-sync"] = "device-sync"
    # source → solo orígenes de sincronización; el peso manual va por /tracking/weight


# =============================================================================
# ===================== HISTORIAL =============================================
# =============================================================================

class HistoryEntryResponse(BaseModel):
    user_id: int
    day: date
    steps: int
    weight: Optional[float] = None
    source: str
    updated_at: Optional[datetime] = None
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== PARTICIPANTES =========================================
# =============================================================================

class ParticipantResponse(BaseModel):
    """Estado de puntuación de un usuario en un desafío"""
    challenge_id: int
    user_id: int
    starting_weight: Optional[float] = None
    last_weight: Optional[float] = None
    last_step_count: int
    last_step_day: Optional[date] = None
    last_step_point_day: Optional[date] = None
    step_goal_points: int
    step_goal_days_achieved: int
    weight_loss_points: int
    total_points: int
    joined_at: Optional[datetime] = None
    model_config = {"from_attributes": True}

class SyncResponse(BaseModel):
    day: date
    participants: list[ParticipantResponse]


# =============================================================================
# ===================== LEADERBOARD ===========================================
# =============================================================================

class LeaderboardEntryResponse(BaseModel):
    user_id: int
    name: str
    rank: int
    total_points: int
    step_goal_points: int
    weight_loss_points: int
    step_goal_days_achieved: int
    starting_weight: Optional[float] = None
    current_weight: Optional[float] = None
    last_step_count: int
    step_goal: int
    step_goal_met: bool
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== ADMIN =================================================
# =============================================================================

class ReconcileReportResponse(BaseModel):
    challenges: int
    participants: int
    corrected: int
    failed: int

class BackfillReportResponse(BaseModel):
    users_synced: int
    users_skipped: int
    users_failed: int
    days_written: int
    participants_reconciled: int
    failures: dict[int, str] = {}
    model_config = {"from_attributes": True}

class HistoryCorrectionResponse(BaseModel):
    user_id: int
    day: date
    deleted: bool
    challenges_reconciled: int
